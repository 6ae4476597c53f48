"""
Admin agent management handlers
"""
import math

from flask import Blueprint, jsonify, request

from services.supabase_client import get_supabase, is_unique_violation
from utils.auth import require_admin
from utils.errors import BadRequest, Conflict, NotFound, handle_api_errors
from utils.logger import get_logger, mask_phone
from utils.validators import get_json_body, is_valid_agent_email, is_valid_e164

logger = get_logger(__name__)

agents_bp = Blueprint('agents', __name__, url_prefix='/api/admin/agents')

INVALID_EMAIL = 'Invalid email format'
INVALID_PHONE = 'Invalid phone format. Use E.164 format (e.g., +35799123456)'
DUPLICATE_EMAIL = 'An agent with this email already exists'
DUPLICATE_PHONE = 'An agent with this phone number already exists'


def _exists(column: str, value: str, exclude_id: str = None) -> bool:
    query = get_supabase().table('agents').select('id').eq(column, value)
    if exclude_id:
        query = query.neq('id', exclude_id)
    return bool(query.limit(1).execute().data)


def _count(table: str, agent_id: str) -> int:
    resp = get_supabase().table(table).select('id', count='exact').eq('agent_id', agent_id).execute()
    return resp.count or 0


def _positive_int_arg(name: str, default: int) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        raise BadRequest(f"{name} must be an integer")
    return max(value, 1)


@agents_bp.route('', methods=['GET'])
@require_admin
@handle_api_errors('Failed to fetch agents')
def list_agents():
    """Paginated agent list; search matches name or email, status is active|inactive"""
    page = _positive_int_arg('page', 1)
    limit = _positive_int_arg('limit', 20)
    search = request.args.get('search', '').strip()
    status = request.args.get('status')
    offset = (page - 1) * limit

    query = get_supabase().table('agents').select('*', count='exact')
    if search:
        query = query.or_(f"name.ilike.%{search}%,email.ilike.%{search}%")
    if status == 'active':
        query = query.eq('is_active', True)
    elif status == 'inactive':
        query = query.eq('is_active', False)

    resp = query.order('created_at', desc=True).range(offset, offset + limit - 1).execute()
    total = resp.count or 0

    return jsonify({
        'success': True,
        'agents': resp.data or [],
        'total': total,
        'page': page,
        'limit': limit,
        'totalPages': math.ceil(total / limit) if total else 0,
    })


@agents_bp.route('', methods=['POST'])
@require_admin
@handle_api_errors('Failed to create agent')
def create_agent():
    data = get_json_body()
    name = data.get('name')
    email = data.get('email')
    phone = data.get('phone')

    if not name or not email or not phone:
        raise BadRequest('Name, email, and phone are required')
    if not is_valid_agent_email(email):
        raise BadRequest(INVALID_EMAIL)
    if not is_valid_e164(phone):
        raise BadRequest(INVALID_PHONE)

    if _exists('email', email):
        raise Conflict(DUPLICATE_EMAIL)
    if _exists('phone_number', phone):
        raise Conflict(DUPLICATE_PHONE)

    try:
        resp = get_supabase().table('agents').insert({
            'name': name,
            'email': email,
            'phone_number': phone,
            'is_active': True,
            'status': 'active',
        }).execute()
    except Exception as e:
        if is_unique_violation(e):
            raise Conflict('An agent with this email or phone number already exists')
        raise

    agent = resp.data[0] if resp.data else None
    logger.info(f"Agent created for {mask_phone(phone)}")
    return jsonify({'success': True, 'agent': agent}), 201


@agents_bp.route('/<agent_id>', methods=['GET'])
@require_admin
@handle_api_errors('Failed to fetch agent details')
def get_agent(agent_id):
    """Agent row with usage counts and the ten most recent activities"""
    supabase = get_supabase()

    resp = supabase.table('agents').select('*').eq('id', agent_id).limit(1).execute()
    if not resp.data:
        raise NotFound('Agent not found')
    agent = resp.data[0]

    messages = (
        supabase.table('conversation_logs')
        .select('id, message_text, direction, timestamp')
        .eq('agent_id', agent_id)
        .order('timestamp', desc=True)
        .limit(5)
        .execute()
    ).data or []
    documents = (
        supabase.table('document_generations')
        .select('id, template_filename, created_at')
        .eq('agent_id', agent_id)
        .order('created_at', desc=True)
        .limit(5)
        .execute()
    ).data or []

    recent_activity = [
        {
            'id': msg['id'],
            'type': 'message',
            'description': f"{'Received' if msg.get('direction') == 'inbound' else 'Sent'} message",
            'timestamp': msg.get('timestamp'),
        }
        for msg in messages
    ] + [
        {
            'id': doc['id'],
            'type': 'document',
            'description': f"Generated {(doc.get('template_filename') or 'document').replace('.docx', '')}",
            'timestamp': doc.get('created_at'),
        }
        for doc in documents
    ]
    recent_activity.sort(key=lambda item: item['timestamp'] or '', reverse=True)

    return jsonify({
        'success': True,
        'agent': agent,
        'stats': {
            'messages': _count('conversation_logs', agent_id),
            'documents': _count('document_generations', agent_id),
            'calculators': _count('calculator_history', agent_id),
            'lastActive': messages[0].get('timestamp') if messages else None,
        },
        'recentActivity': recent_activity[:10],
    })


@agents_bp.route('/<agent_id>', methods=['PATCH'])
@require_admin
@handle_api_errors('Failed to update agent')
def update_agent(agent_id):
    data = get_json_body()
    updates = {}

    if data.get('name') is not None:
        updates['name'] = data['name']

    if data.get('email') is not None:
        if not is_valid_agent_email(data['email']):
            raise BadRequest(INVALID_EMAIL)
        if _exists('email', data['email'], exclude_id=agent_id):
            raise Conflict(DUPLICATE_EMAIL)
        updates['email'] = data['email']

    if data.get('phone') is not None:
        if not is_valid_e164(data['phone']):
            raise BadRequest(INVALID_PHONE)
        if _exists('phone_number', data['phone'], exclude_id=agent_id):
            raise Conflict(DUPLICATE_PHONE)
        updates['phone_number'] = data['phone']

    if data.get('is_active') is not None:
        updates['is_active'] = bool(data['is_active'])
        updates['status'] = 'active' if updates['is_active'] else 'inactive'

    if not updates:
        raise BadRequest('No fields to update')

    resp = get_supabase().table('agents').update(updates).eq('id', agent_id).execute()
    if not resp.data:
        raise NotFound('Agent not found or update failed')

    logger.info(f"Agent {agent_id} updated: {', '.join(sorted(updates))}")
    return jsonify({'success': True, 'agent': resp.data[0]})


@agents_bp.route('/<agent_id>', methods=['DELETE'])
@require_admin
@handle_api_errors('Failed to deactivate agent')
def deactivate_agent(agent_id):
    """Soft delete: the row stays, flagged inactive"""
    resp = (
        get_supabase().table('agents')
        .update({'is_active': False, 'status': 'inactive'})
        .eq('id', agent_id)
        .execute()
    )
    if not resp.data:
        raise NotFound('Agent not found or deactivation failed')

    logger.info(f"Agent {agent_id} deactivated")
    return jsonify({'success': True, 'agent': resp.data[0]})
