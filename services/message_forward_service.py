"""
Forwarding Telegram messages to WhatsApp recipients
"""
import re
from typing import Dict, Any, List, Optional

from services.supabase_client import get_supabase
from utils.logger import get_logger, mask_phone

logger = get_logger(__name__)

# "forward to +35799123456: message"
FORWARD_TO_PATTERN = re.compile(r'^forward\s+to\s+(\+?\d+)\s*:\s*(.+)$', re.IGNORECASE | re.DOTALL)
# "/forward +35799123456 message"
SLASH_FORWARD_PATTERN = re.compile(r'^/forward\s+(\+?\d+)\s+(.+)$', re.IGNORECASE | re.DOTALL)
PHONE_PATTERN = re.compile(r'^\+?(\d{1,4})?\d{8,15}$')


def parse_forward_command(text: str) -> Dict[str, Any]:
    """
    Recognise a forward command

    Returns:
        Dict with is_forward_command and, when true, recipient and message
    """
    text = (text or '').strip()
    for pattern in (FORWARD_TO_PATTERN, SLASH_FORWARD_PATTERN):
        match = pattern.match(text)
        if match:
            return {
                'is_forward_command': True,
                'recipient': match.group(1),
                'message': match.group(2).strip(),
            }
    return {'is_forward_command': False}


def validate_phone_number(phone: str) -> bool:
    """Cyprus (+357 and 8 digits) or generic international number"""
    return bool(PHONE_PATTERN.match(re.sub(r'[\s-]', '', phone or '')))


class MessageForwardService:
    """Sends agent-dictated messages to WhatsApp and records each forward"""

    def __init__(self, whatsapp_service=None, supabase=None):
        self._whatsapp_service = whatsapp_service
        self._supabase_client = supabase

    @property
    def whatsapp_service(self):
        if self._whatsapp_service is None:
            from services.whatsapp_service import whatsapp_service
            self._whatsapp_service = whatsapp_service
        return self._whatsapp_service

    @property
    def supabase(self):
        """Injected client, else the shared one"""
        return self._supabase_client or get_supabase()

    def forward_to_whatsapp(self, agent_id: str, telegram_chat_id: str, recipient_phone: str,
                            message: str, message_type: str = 'text') -> Dict[str, Any]:
        formatted_phone = recipient_phone if recipient_phone.startswith('+') else f"+{recipient_phone}"

        result = self.whatsapp_service.send_message(formatted_phone, message)

        if result.get('success'):
            self._log_message_forward(agent_id, str(telegram_chat_id), formatted_phone, message,
                                      message_type, 'sent')
            logger.info(f"Forwarded message from agent {agent_id} to {mask_phone(formatted_phone)}")
            return {'success': True, 'message_id': result.get('message_id')}

        error = result.get('error') or 'Unknown error'
        logger.error(f"Failed to forward message to {mask_phone(formatted_phone)}: {error}")
        self._log_message_forward(agent_id, str(telegram_chat_id), formatted_phone, message,
                                  message_type, 'failed', error)
        return {'success': False, 'error': error}

    def _log_message_forward(self, agent_id: str, source_chat_id: str, destination: str, content: str,
                             message_type: str, status: str, error_message: Optional[str] = None) -> None:
        try:
            self.supabase.table('message_forwards').insert({
                'agent_id': agent_id,
                'source_platform': 'telegram',
                'source_chat_id': source_chat_id,
                'destination_platform': 'whatsapp',
                'destination_identifier': destination,
                'message_content': content,
                'message_type': message_type,
                'forward_status': status,
                'error_message': error_message,
            }).execute()
        except Exception as e:
            logger.error(f"Failed to log message forward: {e}")

    def get_forward_history(self, agent_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        resp = (
            self.supabase.table('message_forwards')
            .select('*')
            .eq('agent_id', agent_id)
            .order('forwarded_at', desc=True)
            .limit(limit)
            .execute()
        )
        return resp.data or []


# Create a singleton instance
message_forward_service = MessageForwardService()
