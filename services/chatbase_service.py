"""
Chatbase chat API client used by the admin testing console
"""
import uuid
from typing import Dict, Any, Optional

import requests

from config import Config
from utils.logger import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 30
DEFAULT_REPLY = "I'm not sure how to help with that yet."


class ChatbaseConfigError(RuntimeError):
    """CHATBASE_AGENT_ID (or CHATBASE_BOT_ID) is not configured"""


class ChatbaseError(Exception):
    """Chatbase could not produce a reply"""


class ChatbaseService:
    def __init__(self, agent_id: Optional[str] = None, api_url: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.agent_id = agent_id or Config.CHATBASE_AGENT_ID
        self.api_url = api_url or Config.CHATBASE_API_URL
        if not self.agent_id:
            raise ChatbaseConfigError('CHATBASE_AGENT_ID environment variable is not set')
        self.session = session or requests.Session()

    def generate_sophia_response(self, message: str, conversation_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Ask the Chatbase agent for a reply

        Returns:
            Dict with text, usage, finish_reason and conversation_id

        Raises:
            ValueError: Empty message
            ChatbaseError: Chatbase rejected the request or could not be reached
        """
        if not message or not message.strip():
            raise ValueError('Message is required to generate a response')

        conversation_id = conversation_id or str(uuid.uuid4())
        payload = {
            'agentId': self.agent_id,
            'message': message,
            'conversationId': conversation_id,
            'stream': False,
        }

        try:
            response = self.session.post(
                self.api_url,
                json=payload,
                headers={'Accept': 'application/json'},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Chatbase request failed: {e}")
            raise ChatbaseError(f"Chatbase API error: {e}") from e

        if not response.ok:
            logger.error(f"Chatbase API error response {response.status_code}: {response.text[:500]}")
            if response.status_code == 401:
                raise ChatbaseError('Chatbase authentication failed. Please check your CHATBASE_AGENT_ID.')
            if response.status_code == 403:
                raise ChatbaseError('Chatbase access forbidden. Please check your agent permissions.')
            if response.status_code == 404:
                raise ChatbaseError('Chatbase agent not found. Please check your CHATBASE_AGENT_ID.')
            raise ChatbaseError(f"Chatbase API error: {response.status_code} {response.reason}")

        try:
            data = response.json()
        except ValueError as e:
            raise ChatbaseError('Chatbase API error: invalid JSON response') from e

        return {
            'text': data.get('text') or DEFAULT_REPLY,
            'usage': data.get('usage'),
            'finish_reason': 'stop',
            'conversation_id': data.get('conversationId') or conversation_id,
        }
