"""
Multi-step document request sessions

A session collects the variables of one active template over several
messages and renders the document once every required value is valid.
Each step is recorded as a flow_performance_events row with the template id
as the flow id.
"""
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from services.document_service import (
    TemplateNotFoundError, TemplateRenderError, document_service, render_template,
    template_schema, validate_template_variables,
)
from services.flow_performance_service import flow_performance_service
from services.supabase_client import get_supabase
from utils.logger import get_logger

logger = get_logger(__name__)

RECENT_SESSIONS_LIMIT = 10
COLLECTING = 'collecting'


class SessionNotFoundError(LookupError):
    pass


class SessionClosedError(ValueError):
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class DocumentSessionService:
    """Create, continue, cancel and delete document_request_sessions rows"""

    def __init__(self, supabase=None, documents=None, flows=None):
        self._supabase_client = supabase
        self._documents = documents
        self._flows = flows

    @property
    def supabase(self):
        return self._supabase_client or get_supabase()

    @property
    def documents(self):
        return self._documents or document_service

    @property
    def flows(self):
        return self._flows or flow_performance_service

    def get_session(self, session_id: str) -> Dict[str, Any]:
        resp = (
            self.supabase.table('document_request_sessions')
            .select('*')
            .eq('id', session_id)
            .limit(1)
            .execute()
        )
        if not resp.data:
            raise SessionNotFoundError(session_id)
        return resp.data[0]

    def list_agent_sessions(self, agent_id: str, limit: int = RECENT_SESSIONS_LIMIT) -> List[Dict[str, Any]]:
        resp = (
            self.supabase.table('document_request_sessions')
            .select('*')
            .eq('agent_id', agent_id)
            .order('created_at', desc=True)
            .limit(limit)
            .execute()
        )
        return resp.data or []

    def get_template(self, template_id: str, active_only: bool = True) -> Optional[Dict[str, Any]]:
        query = self.supabase.table('document_templates').select('*').eq('id', template_id)
        if active_only:
            query = query.eq('status', 'active')
        resp = query.limit(1).execute()
        return resp.data[0] if resp.data else None

    def _track(self, session: Dict[str, Any], step_id: str, event_type: str) -> None:
        template_id = session['document_template_id']
        try:
            self.flows.record_event(session['id'], template_id, template_id, step_id, event_type)
        except Exception as e:
            logger.error(f"Failed to record {event_type} for session {session['id']}: {e}")

    def _save(self, session: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
        updates['updated_at'] = _now()
        resp = (
            self.supabase.table('document_request_sessions')
            .update(updates)
            .eq('id', session['id'])
            .execute()
        )
        return resp.data[0] if resp.data else {**session, **updates}

    def _advance(self, session: Dict[str, Any], template: Dict[str, Any],
                 collected: Dict[str, Any], answered: Optional[str] = None) -> Dict[str, Any]:
        """Ask for the next missing value, or render the document when none is left"""
        schema = template_schema(template)
        validation = validate_template_variables(schema, collected)

        rejected: Dict[str, str] = {}
        for item in validation['invalid_variables']:
            rejected.setdefault(item['name'], item['reason'])
            collected.pop(item['name'], None)

        outstanding = set(validation['missing_variables']) | set(rejected)
        missing = [variable['name'] for variable in schema if variable['name'] in outstanding]
        if answered and answered not in outstanding:
            self._track(session, answered, 'step_complete')

        response = {
            'templateId': template['id'],
            'templateName': template.get('name'),
            'collectedFields': collected,
            'missingFields': missing,
        }

        if missing:
            next_field = missing[0]
            variable = next(v for v in schema if v['name'] == next_field)
            label = variable.get('label') or next_field
            if next_field in rejected:
                content = f"{label}: {rejected[next_field]}. Please provide it again."
            else:
                content = f"Please provide {label}."

            session = self._save(session, {
                'collected_fields': collected,
                'missing_fields': missing,
                'status': COLLECTING,
                'last_prompt': next_field,
            })
            response.update({'type': 'question', 'content': content, 'nextStep': next_field})
            return {'session': session, 'response': response}

        rendered = render_template(template.get('template_content') or '', schema, collected)
        if not rendered['success']:
            raise TemplateRenderError(rendered['errors'])

        session = self._save(session, {
            'collected_fields': collected,
            'missing_fields': [],
            'status': 'completed',
            'completed_at': _now(),
        })
        self._track(session, 'complete', 'flow_complete')
        logger.info(f"Document session {session['id']} completed for template {template['id']}")

        response.update({'type': 'document', 'content': rendered['content'], 'nextStep': None})
        return {'session': session, 'response': response}

    def start_session(self, agent_id: str, template_id: str, message: str,
                      collected_fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Open a session for an active template

        Values the agent's message already names are taken as collected.

        Raises:
            TemplateNotFoundError: Template missing or inactive
        """
        template = self.get_template(template_id)
        if not template:
            raise TemplateNotFoundError(template_id)

        known = {variable['name'] for variable in template_schema(template)}
        collected: Dict[str, Any] = {}
        parsed = self.documents.parse_document_request(message)
        if parsed:
            collected.update({name: value for name, value in parsed['variables'].items() if name in known})
        collected.update(collected_fields or {})

        now = _now()
        session = {
            'id': new_session_id(),
            'agent_id': agent_id,
            'document_template_id': template_id,
            'collected_fields': {},
            'missing_fields': [],
            'status': COLLECTING,
            'last_prompt': None,
            'created_at': now,
            'updated_at': now,
        }
        self.supabase.table('document_request_sessions').insert(session).execute()
        self._track(session, 'start', 'step_start')
        logger.info(f"Document session {session['id']} opened by agent {agent_id} for template {template_id}")

        return self._advance(session, template, collected)

    def continue_session(self, session_id: str, message: Optional[str],
                         collected_fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Apply the agent's answer to the pending question and move the session on

        Raises:
            SessionNotFoundError: Unknown session
            SessionClosedError: Session is no longer collecting values
            TemplateNotFoundError: Template was archived meanwhile
        """
        session = self.get_session(session_id)
        if session.get('status') != COLLECTING:
            raise SessionClosedError(f"Session is {session.get('status')}")

        template = self.get_template(session['document_template_id'])
        if not template:
            raise TemplateNotFoundError(session['document_template_id'])

        collected = dict(session.get('collected_fields') or {})
        collected.update(collected_fields or {})

        answered = session.get('last_prompt')
        if answered and message and message.strip() and collected.get(answered) in (None, ''):
            collected[answered] = message.strip()

        return self._advance(session, template, collected, answered=answered)

    def cancel_session(self, session_id: str) -> Dict[str, Any]:
        session = self.get_session(session_id)
        self._track(session, session.get('last_prompt') or 'start', 'flow_abandon')
        # flow_abandon marks the row abandoned; the cancellation status replaces it
        return self._save(session, {'status': 'cancelled'})

    def delete_session(self, session_id: str) -> None:
        resp = (
            self.supabase.table('document_request_sessions')
            .delete()
            .eq('id', session_id)
            .execute()
        )
        if not resp.data:
            raise SessionNotFoundError(session_id)
        logger.info(f"Document session {session_id} deleted")


# Create a singleton instance
document_session_service = DocumentSessionService()
