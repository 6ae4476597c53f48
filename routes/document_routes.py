"""
Document template, generation, session and flow analytics handlers
"""
from datetime import datetime, timezone

from flask import Blueprint, jsonify, request

from services.document_service import (
    TemplateNotFoundError, TemplateRenderError, TemplateValidationError,
    document_service, generate_variable_schema, template_schema,
)
from services.document_session_service import (
    SessionClosedError, SessionNotFoundError, document_session_service,
)
from services.flow_performance_service import flow_performance_service
from services.supabase_client import get_supabase
from utils.auth import require_admin
from utils.errors import BadRequest, Conflict, NotFound, handle_api_errors
from utils.logger import get_logger, mask_phone
from utils.validators import get_json_body

logger = get_logger(__name__)

documents_bp = Blueprint('documents', __name__, url_prefix='/api')


@documents_bp.route('/documents/templates', methods=['GET'])
@handle_api_errors('Failed to fetch templates')
def list_templates():
    """Templates filtered by status (default active) and optional category"""
    status = request.args.get('status', 'active')
    category = request.args.get('category')

    query = get_supabase().table('document_templates').select('*').eq('status', status)
    if category:
        query = query.eq('category', category)
    templates = query.order('category').order('name').execute().data or []

    return jsonify({'success': True, 'templates': templates, 'count': len(templates)})


@documents_bp.route('/documents/templates/<template_id>', methods=['GET'])
@handle_api_errors()
def get_template(template_id):
    resp = get_supabase().table('document_templates').select('*').eq('id', template_id).limit(1).execute()
    if not resp.data:
        raise NotFound('Template not found')
    return jsonify({'success': True, 'template': resp.data[0]})


@documents_bp.route('/documents/templates/<template_id>', methods=['PUT'])
@require_admin
@handle_api_errors('Failed to update template')
def update_template(template_id):
    """Partial update; new content re-derives the variable schema"""
    data = get_json_body()
    updates = {'updated_at': datetime.now(timezone.utc).isoformat()}

    for field in ('name', 'description', 'category'):
        if data.get(field):
            updates[field] = data[field]
    if data.get('content'):
        updates['template_content'] = data['content']
        updates['variables'] = generate_variable_schema(data['content'])

    resp = get_supabase().table('document_templates').update(updates).eq('id', template_id).execute()
    if not resp.data:
        raise NotFound('Template not found')

    logger.info(f"Template {template_id} updated")
    return jsonify({'success': True, 'template': resp.data[0]})


@documents_bp.route('/documents/templates/<template_id>', methods=['DELETE'])
@require_admin
@handle_api_errors('Failed to delete template')
def delete_template(template_id):
    """Soft delete by archiving the template"""
    resp = (
        get_supabase().table('document_templates')
        .update({'status': 'archived', 'updated_at': datetime.now(timezone.utc).isoformat()})
        .eq('id', template_id)
        .execute()
    )
    if not resp.data:
        raise NotFound('Template not found')

    logger.info(f"Template {template_id} archived")
    return jsonify({'success': True, 'message': 'Template deleted successfully'})


@documents_bp.route('/documents/generate', methods=['POST'])
@handle_api_errors()
def generate_document():
    """
    Render a template and deliver it over WhatsApp

    Expected payload:
    {
        "template_id": "...",
        "variables": {"client_name": "..."},
        "agent_phone_number": "+35799123456"
    }
    """
    data = get_json_body()
    template_id = data.get('template_id')
    variables = data.get('variables')
    phone_number = data.get('agent_phone_number')

    if not template_id or not variables or not phone_number:
        raise BadRequest('Missing required fields: template_id, variables, agent_phone_number')

    try:
        result = document_service.generate_and_deliver(template_id, variables, phone_number)
    except TemplateNotFoundError:
        raise NotFound('Template not found or inactive')
    except TemplateValidationError as e:
        logger.warning(f"Template {template_id} variable validation failed: {e.errors}")
        return jsonify({
            'success': False,
            'error': 'Variable validation failed',
            'validation_errors': e.errors,
        }), 400
    except TemplateRenderError as e:
        logger.error(f"Template {template_id} rendering failed: {e.errors}")
        return jsonify({
            'success': False,
            'error': 'Document rendering failed',
            'rendering_errors': e.errors,
        }), 500

    logger.info(f"Generated document from template {template_id} for {mask_phone(phone_number)}")
    return jsonify(result)


@documents_bp.route('/flow-performance', methods=['GET'])
@handle_api_errors()
def flow_performance():
    """?dashboard=true, ?flowId=... or ?templateId=..."""
    if request.args.get('dashboard') == 'true':
        return jsonify({'success': True, 'dashboard': flow_performance_service.get_performance_dashboard()})

    flow_id = request.args.get('flowId')
    if flow_id:
        metrics = flow_performance_service.get_flow_metrics(flow_id)
        if not metrics:
            raise NotFound('Flow not found or no data available')
        return jsonify({'success': True, 'metrics': metrics})

    template_id = request.args.get('templateId')
    if template_id:
        return jsonify({
            'success': True,
            'summary': flow_performance_service.get_template_performance_summary(template_id),
        })

    raise BadRequest('flowId, templateId, or dashboard parameter required')


@documents_bp.route('/flow-performance', methods=['POST'])
@handle_api_errors()
def flow_performance_action():
    data = get_json_body()
    action = data.get('action')

    if action == 'check-alerts':
        alerts = flow_performance_service.check_and_send_alerts()
        return jsonify({'success': True, 'message': 'Alerts checked', 'alerts': alerts})

    if action == 'record':
        required = ('session_id', 'flow_id', 'template_id', 'step_id', 'event_type')
        missing = [field for field in required if not data.get(field)]
        if missing:
            raise BadRequest(f"Missing required fields: {', '.join(missing)}")
        try:
            flow_performance_service.record_event(
                data['session_id'], data['flow_id'], data['template_id'], data['step_id'],
                data['event_type'], time_spent=data.get('time_spent'), metadata=data.get('metadata'),
            )
        except ValueError as e:
            raise BadRequest(str(e))
        return jsonify({'success': True, 'message': 'Event recorded'}), 201

    raise BadRequest('Invalid action')


def _session_error(error):
    if isinstance(error, SessionNotFoundError):
        return NotFound('Session not found')
    if isinstance(error, SessionClosedError):
        return Conflict(str(error))
    return NotFound('Template not found or inactive')


def _render_failure(session_ref, error):
    logger.error(f"Document session {session_ref} rendering failed: {error.errors}")
    return jsonify({
        'success': False,
        'error': 'Document rendering failed',
        'rendering_errors': error.errors,
    }), 500


def _continue_session(session_id, message, collected_fields=None):
    try:
        result = document_session_service.continue_session(session_id, message, collected_fields)
    except (SessionNotFoundError, SessionClosedError, TemplateNotFoundError) as e:
        raise _session_error(e)
    except TemplateRenderError as e:
        return _render_failure(session_id, e)
    return jsonify({'success': True, **result})


@documents_bp.route('/document-sessions', methods=['GET'])
@handle_api_errors('Failed to fetch sessions')
def list_document_sessions():
    """?sessionId=... for one session, ?agentId=... for an agent's latest sessions"""
    session_id = request.args.get('sessionId')
    if session_id:
        try:
            session = document_session_service.get_session(session_id)
        except SessionNotFoundError:
            raise NotFound('Session not found')
        return jsonify({'success': True, 'session': session})

    agent_id = request.args.get('agentId')
    if agent_id:
        return jsonify({'success': True, 'sessions': document_session_service.list_agent_sessions(agent_id)})

    raise BadRequest('sessionId or agentId is required')


@documents_bp.route('/document-sessions', methods=['POST'])
@handle_api_errors('Failed to create session')
def create_document_session():
    """
    Open a session and ask for the first missing value

    Expected payload:
    {
        "agentId": "...",
        "templateId": "...",
        "message": "viewing form for Maria",
        "collectedFields": {"client_name": "Maria"}
    }
    """
    data = get_json_body()
    agent_id = data.get('agentId')
    template_id = data.get('templateId')
    message = data.get('message')

    if not agent_id or not template_id or not message:
        raise BadRequest('agentId, templateId, and message are required')

    try:
        result = document_session_service.start_session(agent_id, template_id, message, data.get('collectedFields'))
    except TemplateNotFoundError:
        raise NotFound('Template not found or inactive')
    except TemplateRenderError as e:
        return _render_failure(template_id, e)

    return jsonify({'success': True, **result}), 201


@documents_bp.route('/document-sessions', methods=['PUT'])
@handle_api_errors('Failed to update session')
def update_document_session():
    data = get_json_body()
    session_id = data.get('sessionId')
    message = data.get('message')

    if not session_id or not message:
        raise BadRequest('sessionId and message are required')

    return _continue_session(session_id, message, data.get('collectedFields'))


@documents_bp.route('/document-sessions', methods=['DELETE'])
@handle_api_errors('Failed to cancel session')
def cancel_document_session():
    session_id = request.args.get('sessionId')
    if not session_id:
        raise BadRequest('sessionId is required')

    try:
        document_session_service.cancel_session(session_id)
    except SessionNotFoundError:
        raise NotFound('Session not found')

    return jsonify({'success': True})


@documents_bp.route('/document-sessions/<session_id>', methods=['GET'])
@handle_api_errors('Failed to fetch session')
def get_document_session(session_id):
    try:
        session = document_session_service.get_session(session_id)
    except SessionNotFoundError:
        raise NotFound('Session not found')

    template = document_session_service.get_template(session['document_template_id'], active_only=False)
    return jsonify({
        'success': True,
        'session': session,
        'template': {
            'name': template.get('name'),
            'category': template.get('category'),
            'variables': template_schema(template),
        } if template else None,
    })


@documents_bp.route('/document-sessions/<session_id>', methods=['POST'])
@handle_api_errors('Failed to resume session')
def resume_document_session(session_id):
    message = get_json_body().get('message')
    if not message:
        raise BadRequest('message is required')

    return _continue_session(session_id, message)


@documents_bp.route('/document-sessions/<session_id>', methods=['DELETE'])
@handle_api_errors('Failed to delete session')
def delete_document_session(session_id):
    try:
        document_session_service.delete_session(session_id)
    except SessionNotFoundError:
        raise NotFound('Session not found')

    return jsonify({'success': True})
