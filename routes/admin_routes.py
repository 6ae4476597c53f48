"""
Admin dashboard route handlers: overview, analytics, health, logs, settings and testing
"""
import csv
import io
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone

import pytz
from flask import Blueprint, Response, g, jsonify, request

from config import Config
from services.chatbase_service import ChatbaseConfigError, ChatbaseError, ChatbaseService
from services.supabase_client import get_supabase
from services.system_config_service import list_config_rows, set_config, validate_config_value
from utils.auth import require_admin
from utils.errors import ApiError, BadRequest, NotFound, Unprocessable, handle_api_errors
from utils.logger import get_logger
from utils.validators import get_json_body

logger = get_logger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')

ACTIVITY_SOURCE_LIMIT = 10
ACTIVITY_LIMIT = 20
HEALTH_ONLINE_MINUTES = 5
HEALTH_WARNING_MINUTES = 30
ANALYTICS_DEFAULT_DAYS = 30
ANALYTICS_MAX_DAYS = 365
TOP_AGENTS_LIMIT = 10
CSV_HEADER = ['Timestamp', 'Level', 'Agent', 'Phone', 'Direction', 'Message', 'Details']


def _count(query) -> int:
    return query.execute().count or 0


def _local_midnight_utc(now=None) -> datetime:
    """Start of the current day in the business timezone, as UTC"""
    tz = pytz.timezone(Config.TIMEZONE)
    local_now = (now or datetime.now(timezone.utc)).astimezone(tz)
    midnight = tz.localize(datetime(local_now.year, local_now.month, local_now.day))
    return midnight.astimezone(timezone.utc)


def _agent_lookup(agent_ids, columns='id, name'):
    """Map agent id -> agent row for the given ids"""
    ids = sorted({agent_id for agent_id in agent_ids if agent_id})
    if not ids:
        return {}
    resp = get_supabase().table('agents').select(columns).in_('id', ids).execute()
    return {row['id']: row for row in resp.data or []}


def _parse_time(value):
    if not value:
        return None
    return datetime.fromisoformat(str(value).replace('Z', '+00:00'))


@admin_bp.route('/stats', methods=['GET'])
@require_admin
@handle_api_errors('Failed to fetch dashboard statistics')
def stats():
    """Headline numbers for the dashboard overview"""
    supabase = get_supabase()
    now = datetime.now(timezone.utc)
    day_ago = (now - timedelta(hours=24)).isoformat()
    week_ago = (now - timedelta(days=7)).isoformat()

    return jsonify({
        'success': True,
        'totalAgents': _count(
            supabase.table('agents').select('id', count='exact').eq('status', 'active')
        ),
        'activeConversations': _count(
            supabase.table('conversation_logs').select('agent_id', count='exact').gte('created_at', day_ago)
        ),
        'messagesToday': _count(
            supabase.table('conversation_logs').select('id', count='exact')
            .gte('created_at', _local_midnight_utc(now).isoformat())
        ),
        'documentsThisWeek': _count(
            supabase.table('document_generations').select('id', count='exact').gte('created_at', week_ago)
        ),
        'calculatorsThisWeek': _count(
            supabase.table('calculator_history').select('id', count='exact').gte('created_at', week_ago)
        ),
    })


def _as_utc(value):
    moment = _parse_time(value)
    if moment and moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _per_day(rows):
    counts = OrderedDict()
    for row in rows:
        moment = _as_utc(row.get('created_at'))
        if moment:
            day = moment.astimezone(timezone.utc).date().isoformat()
            counts[day] = counts.get(day, 0) + 1
    return [{'date': day, 'count': count} for day, count in counts.items()]


def _distribution(names):
    counts = OrderedDict()
    for name in names:
        counts[name] = counts.get(name, 0) + 1
    return [{'name': name, 'value': value} for name, value in counts.items()]


def _since(supabase, table, columns, start):
    return (
        supabase.table(table)
        .select(columns)
        .gte('created_at', start)
        .order('created_at')
        .execute()
    ).data or []


@admin_bp.route('/analytics', methods=['GET'])
@require_admin
@handle_api_errors('Failed to fetch analytics data')
def analytics():
    """
    Chart data over the last ?days= days (default 30)

    Returns:
        Per-day counts, document and calculator type distributions,
        the ten most active agents and the busiest local hour
    """
    try:
        days = int(request.args.get('days', ANALYTICS_DEFAULT_DAYS))
    except ValueError:
        raise BadRequest('days must be a number')
    if not 1 <= days <= ANALYTICS_MAX_DAYS:
        raise BadRequest(f'days must be between 1 and {ANALYTICS_MAX_DAYS}')

    supabase = get_supabase()
    start = _local_midnight_utc(datetime.now(timezone.utc) - timedelta(days=days)).isoformat()

    messages = _since(supabase, 'conversation_logs', 'agent_id, created_at', start)
    documents = _since(supabase, 'document_generations', 'template_filename, created_at', start)
    calculations = _since(supabase, 'calculator_history', 'calculator_id, created_at', start)

    calculator_ids = sorted({row['calculator_id'] for row in calculations if row.get('calculator_id')})
    calculator_names = {}
    if calculator_ids:
        resp = supabase.table('calculators').select('id, name').in_('id', calculator_ids).execute()
        calculator_names = {row['id']: row.get('name') for row in resp.data or []}

    agents = _agent_lookup(row.get('agent_id') for row in messages)
    per_agent = OrderedDict()
    for row in messages:
        agent_id = row.get('agent_id')
        entry = per_agent.setdefault(agent_id, {
            'name': agents.get(agent_id, {}).get('name') or 'Unknown',
            'count': 0,
        })
        entry['count'] += 1
    top_agents = sorted(per_agent.values(), key=lambda entry: entry['count'], reverse=True)[:TOP_AGENTS_LIMIT]

    tz = pytz.timezone(Config.TIMEZONE)
    hours = OrderedDict()
    for row in messages:
        moment = _as_utc(row.get('created_at'))
        if moment:
            hour = moment.astimezone(tz).hour
            hours[hour] = hours.get(hour, 0) + 1
    peak_hour = max(hours, key=hours.get) if hours else 0

    return jsonify({
        'success': True,
        'messagesPerDay': _per_day(messages),
        'documentsPerDay': _per_day(documents),
        'calculatorsPerDay': _per_day(calculations),
        'documentTypes': _distribution(
            (row.get('template_filename') or 'Unknown').replace('.docx', '') for row in documents
        ),
        'calculatorTypes': _distribution(
            calculator_names.get(row.get('calculator_id')) or row.get('calculator_id') or 'Unknown'
            for row in calculations
        ),
        'topAgents': top_agents,
        'peakHour': peak_hour,
        'totalMessages': len(messages),
        'totalDocuments': len(documents),
        'totalCalculators': len(calculations),
    })


@admin_bp.route('/activity', methods=['GET'])
@require_admin
@handle_api_errors('Failed to fetch recent activities')
def activity():
    """Latest messages, documents and calculator uses across all agents"""
    supabase = get_supabase()
    sources = [
        ('message', 'conversation_logs', 'id, created_at, direction, channel, agent_id',
         lambda row: f"{'Received' if row.get('direction') == 'inbound' else 'Sent'} {row.get('channel') or 'whatsapp'} message"),
        ('document', 'document_generations', 'id, created_at, template_filename, agent_id',
         lambda row: f"Generated {row.get('template_filename') or 'document'} document"),
        ('calculator', 'calculator_history', 'id, created_at, calculator_id, agent_id',
         lambda row: f"Used {row.get('calculator_id')} calculator"),
    ]

    rows = []
    for activity_type, table, columns, describe in sources:
        try:
            resp = (
                supabase.table(table)
                .select(columns)
                .order('created_at', desc=True)
                .limit(ACTIVITY_SOURCE_LIMIT)
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to load {table} for activity feed: {e}")
            continue
        rows.extend((activity_type, describe, row) for row in resp.data or [])

    agents = _agent_lookup(row.get('agent_id') for _, _, row in rows)

    activities = [
        {
            'id': row['id'],
            'type': activity_type,
            'agentName': agents.get(row.get('agent_id'), {}).get('name') or 'Unknown Agent',
            'description': describe(row),
            'timestamp': row.get('created_at'),
        }
        for activity_type, describe, row in rows
    ]
    activities.sort(key=lambda item: item['timestamp'] or '', reverse=True)

    return jsonify({'success': True, 'activities': activities[:ACTIVITY_LIMIT]})


def _channel_health(service: str, direction: str, noun: str, empty_message: str, now: datetime):
    resp = (
        get_supabase().table('conversation_logs')
        .select('timestamp')
        .eq('direction', direction)
        .order('timestamp', desc=True)
        .limit(1)
        .execute()
    )
    last = _parse_time(resp.data[0].get('timestamp')) if resp.data else None
    if last is None:
        return {'service': service, 'status': 'offline', 'lastUpdate': None, 'message': empty_message}

    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    minutes_ago = (now - last).total_seconds() / 60
    if minutes_ago < HEALTH_ONLINE_MINUTES:
        status = 'online'
    elif minutes_ago < HEALTH_WARNING_MINUTES:
        status = 'warning'
    else:
        status = 'offline'

    return {
        'service': service,
        'status': status,
        'lastUpdate': resp.data[0]['timestamp'],
        'message': f"Last {noun} {round(minutes_ago)}m ago",
    }


@admin_bp.route('/health', methods=['GET'])
@require_admin
@handle_api_errors('Failed to fetch health status')
def system_health():
    now = datetime.now(timezone.utc)
    health = []

    try:
        get_supabase().table('agents').select('id').limit(1).execute()
        health.append({'service': 'Database', 'status': 'online', 'lastUpdate': now.isoformat(),
                       'message': 'Connected'})
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health.append({'service': 'Database', 'status': 'offline', 'lastUpdate': None,
                       'message': 'Connection error'})
        return jsonify({'success': True, 'health': health})

    health.append(_channel_health('Messaging Webhook', 'inbound', 'message', 'No messages received', now))
    health.append(_channel_health('OpenAI API', 'outbound', 'response', 'No responses generated', now))

    return jsonify({'success': True, 'health': health})


def _int_arg(name: str, default: int, minimum: int = 0) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        raise BadRequest(f"{name} must be an integer")
    return max(value, minimum)


@admin_bp.route('/logs', methods=['GET'])
@require_admin
@handle_api_errors('Failed to fetch logs')
def logs():
    """
    Conversation log viewer

    Query params: level (error|info), search, startDate, endDate, limit,
    offset and format=csv for a download.
    """
    level = request.args.get('level')
    search = request.args.get('search')
    start_date = request.args.get('startDate')
    end_date = request.args.get('endDate')
    limit = _int_arg('limit', 100, minimum=1)
    offset = _int_arg('offset', 0)

    query = (
        get_supabase().table('conversation_logs')
        .select('id, agent_id, message_text, direction, error_message, created_at', count='exact')
    )
    if level == 'error':
        query = query.not_.is_('error_message', 'null')
    elif level == 'info':
        query = query.is_('error_message', 'null')
    if search:
        query = query.or_(f"message_text.ilike.%{search}%,error_message.ilike.%{search}%")
    if start_date:
        query = query.gte('created_at', start_date)
    if end_date:
        query = query.lte('created_at', end_date)

    resp = query.order('created_at', desc=True).range(offset, offset + limit - 1).execute()
    rows = resp.data or []
    agents = _agent_lookup((row.get('agent_id') for row in rows), columns='id, name, phone_number')

    entries = []
    for row in rows:
        agent = agents.get(row.get('agent_id'), {})
        entries.append({
            'id': row['id'],
            'timestamp': row.get('created_at'),
            'level': 'error' if row.get('error_message') else 'info',
            'message': row.get('message_text') or '',
            'agent_name': agent.get('name') or 'Unknown',
            'agent_phone': agent.get('phone_number') or '',
            'direction': row.get('direction'),
            'details': row.get('error_message') or '',
        })

    if request.args.get('format') == 'csv':
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator='\n')
        buffer.write(','.join(CSV_HEADER) + '\n')
        for entry in entries:
            writer.writerow([
                entry['timestamp'], entry['level'], entry['agent_name'], entry['agent_phone'],
                entry['direction'], entry['message'], entry['details'],
            ])
        return Response(
            buffer.getvalue(),
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename="sophia-logs-{int(time.time() * 1000)}.csv"'},
        )

    return jsonify({
        'success': True,
        'logs': entries,
        'total': resp.count or 0,
        'limit': limit,
        'offset': offset,
    })


@admin_bp.route('/config', methods=['GET'])
@require_admin
@handle_api_errors('Failed to fetch configuration')
def get_system_config():
    return jsonify({'success': True, 'configs': list_config_rows()})


@admin_bp.route('/config', methods=['PATCH'])
@require_admin
@handle_api_errors('Failed to update configuration')
def update_system_config():
    data = get_json_body()
    key = data.get('key')
    value = data.get('value')

    if not key:
        raise BadRequest('Config key is required')

    if not validate_config_value(key, value):
        raise BadRequest(f"Invalid value for config key: {key}")

    user_id = g.admin['sub'] if g.admin.get('source') == 'admin_users' else None
    updated = set_config(key, value, user_id=user_id)
    if updated is None:
        raise NotFound(f"Config key not found: {key}")

    logger.info(f"Config key {key} changed by {g.admin.get('email')}")
    return jsonify({'success': True, 'config': updated})


@admin_bp.route('/templates/documents', methods=['GET'])
@require_admin
@handle_api_errors('Failed to fetch document templates')
def document_template_usage():
    """Usage count and last use per template, most used first"""
    resp = (
        get_supabase().table('document_generations')
        .select('template_filename, created_at')
        .order('created_at', desc=True)
        .execute()
    )

    usage = OrderedDict()
    for row in resp.data or []:
        filename = row.get('template_filename') or 'unknown'
        stats = usage.setdefault(filename, {'usage_count': 0, 'last_used': row.get('created_at')})
        stats['usage_count'] += 1
        if (row.get('created_at') or '') > (stats['last_used'] or ''):
            stats['last_used'] = row.get('created_at')

    templates = [
        {'template_filename': filename, **stats}
        for filename, stats in usage.items()
    ]
    templates.sort(key=lambda item: item['usage_count'], reverse=True)

    return jsonify({'success': True, 'templates': templates})


@admin_bp.route('/testing', methods=['POST'])
@require_admin
@handle_api_errors('Failed to generate response')
def test_conversation():
    """Send a message to the Chatbase agent from the admin console"""
    data = get_json_body()

    message = data.get('message')
    if not isinstance(message, str) or not message.strip():
        raise Unprocessable('Message is required')

    try:
        service = ChatbaseService()
        reply = service.generate_sophia_response(message.strip(), data.get('conversationId'))
    except ChatbaseConfigError as e:
        logger.error(f"Chatbase is not configured: {e}")
        raise ApiError('Chatbase bot ID is not configured. Set CHATBASE_BOT_ID in your environment.', 500)
    except ChatbaseError as e:
        logger.error(f"Chatbase testing request failed: {e}")
        raise ApiError(str(e), 502)

    return jsonify({
        'success': True,
        'message': reply['text'],
        'usage': reply['usage'],
        'finishReason': reply['finish_reason'],
        'conversationId': reply['conversation_id'],
    })
