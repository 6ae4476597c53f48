"""
Telegram Bot API client
"""
import hmac
import json
import time
from typing import Dict, Any, Optional

import requests

from config import Config
from utils.logger import get_logger

logger = get_logger(__name__)

TELEGRAM_API_BASE = 'https://api.telegram.org'
MAX_RETRIES = 3
INITIAL_RETRY_DELAY = 1.0  # seconds
REQUEST_TIMEOUT = 10


class TelegramAPIError(Exception):
    """Telegram answered with ok=false"""


class TelegramService:
    """Service class for the Telegram Bot API"""

    def __init__(self, bot_token: Optional[str] = None, session: Optional[requests.Session] = None,
                 sleep=time.sleep):
        self._bot_token = bot_token
        self._session = session
        self._sleep = sleep

    @property
    def bot_token(self) -> str:
        token = self._bot_token or Config.TELEGRAM_BOT_TOKEN
        if not token:
            raise RuntimeError('TELEGRAM_BOT_TOKEN environment variable is required')
        return token

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @property
    def base_url(self) -> str:
        return f"{TELEGRAM_API_BASE}/bot{self.bot_token}"

    def send_message(self, chat_id: int, text: str, **options) -> Dict[str, Any]:
        """Send a text message; options are passed through (parse_mode, reply_markup, ...)"""
        payload = {'chat_id': chat_id, 'text': text, **options}
        return self._make_request('sendMessage', payload)

    def set_webhook(self, url: str, secret_token: Optional[str] = None) -> bool:
        payload = {
            'url': url,
            'allowed_updates': json.dumps(['message', 'callback_query']),
        }
        if secret_token:
            payload['secret_token'] = secret_token
        return self._make_request('setWebhook', payload)

    def get_webhook_info(self) -> Dict[str, Any]:
        return self._make_request('getWebhookInfo')

    def delete_webhook(self) -> bool:
        return self._make_request('deleteWebhook')

    def get_me(self) -> Dict[str, Any]:
        return self._make_request('getMe')

    def _make_request(self, method: str, payload: Optional[Dict[str, Any]] = None):
        """POST to the Bot API with exponential backoff, returning the result field"""
        url = f"{self.base_url}/{method}"
        last_error = None

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self.session.post(url, json=payload, timeout=REQUEST_TIMEOUT)
                data = response.json()
                if not data.get('ok'):
                    raise TelegramAPIError(f"Telegram API error: {data.get('description') or 'Unknown error'}")
                return data.get('result')
            except (requests.exceptions.RequestException, ValueError, TelegramAPIError) as e:
                last_error = e

            if attempt < MAX_RETRIES:
                delay = INITIAL_RETRY_DELAY * (2 ** (attempt - 1))
                logger.warning(
                    f"Telegram API request {method} failed (attempt {attempt}/{MAX_RETRIES}), "
                    f"retrying in {delay}s: {last_error}"
                )
                self._sleep(delay)

        logger.error(f"Telegram API request {method} failed after max retries: {last_error}")
        raise last_error

    @staticmethod
    def validate_webhook_signature(secret_token: str, received_token: Optional[str]) -> bool:
        """Compare the X-Telegram-Bot-Api-Secret-Token header with the configured secret"""
        if not received_token or not secret_token:
            return False
        return hmac.compare_digest(secret_token.encode('utf-8'), received_token.encode('utf-8'))


# Create a singleton instance
telegram_service = TelegramService()
