"""
Outbound WhatsApp messages through Twilio
"""
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from config import Config
from services.supabase_client import try_get_supabase, is_unique_violation
from utils.logger import get_logger, mask_phone

logger = get_logger(__name__)

MAX_RETRIES = 3
INITIAL_RETRY_DELAY = 1.0  # seconds, doubled per attempt

RATE_LIMIT_MESSAGES_PER_SECOND = 80
RATE_LIMIT_WINDOW = 1.0

# Invalid number, authentication, unverified number
PERMANENT_ERROR_CODES = (21211, 20003, 21408)


class SlidingWindowLimiter:
    """In-process limit on sends per window"""

    def __init__(self, limit: int, window: float):
        self.limit = limit
        self.window = window
        self._timestamps = deque()
        self._lock = threading.Lock()

    def _trim(self, now: float):
        while self._timestamps and self._timestamps[0] <= now - self.window:
            self._timestamps.popleft()

    def check_limit(self) -> bool:
        now = time.monotonic()
        with self._lock:
            self._trim(now)
            if len(self._timestamps) >= self.limit:
                return False
            self._timestamps.append(now)
            return True

    def get_wait_time(self) -> float:
        """Seconds until the oldest send leaves the window"""
        now = time.monotonic()
        with self._lock:
            self._trim(now)
            if len(self._timestamps) < self.limit:
                return 0.0
            return max(0.0, self.window - (now - self._timestamps[0]))


def format_whatsapp_number(phone_number: str) -> str:
    return f"whatsapp:{(phone_number or '').replace('whatsapp:', '', 1).strip()}"


class WhatsAppService:
    """Service class for sending WhatsApp messages"""

    def __init__(self, client: Optional[Client] = None, rate_limit_per_second: Optional[int] = None,
                 sleep=time.sleep):
        self._twilio_client = client
        self.rate_limiter = SlidingWindowLimiter(
            rate_limit_per_second or RATE_LIMIT_MESSAGES_PER_SECOND, RATE_LIMIT_WINDOW
        )
        self._sleep = sleep

    @property
    def twilio(self) -> Client:
        """Lazy-init Twilio client, preferring an API key over the auth token"""
        if self._twilio_client is None:
            if not Config.TWILIO_ACCOUNT_SID or not Config.TWILIO_WHATSAPP_NUMBER:
                raise RuntimeError(
                    'Missing required environment variables: TWILIO_ACCOUNT_SID or TWILIO_WHATSAPP_NUMBER'
                )
            if Config.TWILIO_API_KEY_SID and Config.TWILIO_API_KEY_SECRET:
                self._twilio_client = Client(
                    Config.TWILIO_API_KEY_SID,
                    Config.TWILIO_API_KEY_SECRET,
                    Config.TWILIO_ACCOUNT_SID,
                )
            elif Config.TWILIO_AUTH_TOKEN:
                self._twilio_client = Client(Config.TWILIO_ACCOUNT_SID, Config.TWILIO_AUTH_TOKEN)
            else:
                raise RuntimeError(
                    'Missing authentication: set TWILIO_API_KEY_SID + TWILIO_API_KEY_SECRET or TWILIO_AUTH_TOKEN'
                )
        return self._twilio_client

    def send_message(self, phone_number: str, message_text: str, agent_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Send a WhatsApp message and log it for the agent

        Args:
            phone_number: Recipient in E.164, with or without the whatsapp: prefix
            message_text: Message body
            agent_id: Agent to attribute the outbound log row to

        Returns:
            Dict with success, message_id, error and timestamp
        """
        try:
            if not self.rate_limiter.check_limit():
                wait_time = self.rate_limiter.get_wait_time()
                logger.info(f"Rate limit reached, waiting {wait_time:.3f}s before sending to {mask_phone(phone_number)}")
                self._sleep(wait_time)
                if not self.rate_limiter.check_limit():
                    raise RuntimeError('Rate limit exceeded after waiting')

            message = self._send_with_retry(phone_number, message_text)
        except Exception as e:
            return {
                'success': False,
                'message_id': None,
                'error': self._describe_error(e, phone_number),
                'timestamp': datetime.now(timezone.utc).isoformat(),
            }

        if agent_id:
            self._log_outbound_message(agent_id, message_text, message.sid)

        logger.info(f"WhatsApp message {message.sid} sent to {mask_phone(phone_number)}")
        return {
            'success': True,
            'message_id': message.sid,
            'error': None,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

    def _send_with_retry(self, phone_number: str, message_text: str):
        last_error = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                return self.twilio.messages.create(
                    from_=format_whatsapp_number(Config.TWILIO_WHATSAPP_NUMBER),
                    to=format_whatsapp_number(phone_number),
                    body=message_text,
                )
            except TwilioRestException as e:
                last_error = e
                if e.code in PERMANENT_ERROR_CODES:
                    raise
            except Exception as e:
                last_error = e

            if attempt < MAX_RETRIES:
                delay = INITIAL_RETRY_DELAY * (2 ** (attempt - 1))
                logger.warning(f"Twilio send attempt {attempt} failed, retrying in {delay}s: {last_error}")
                self._sleep(delay)

        raise last_error

    def _describe_error(self, error: Exception, phone_number: str) -> str:
        masked = mask_phone(phone_number)

        if isinstance(error, TwilioRestException):
            logger.error(f"Twilio error {error.code} sending to {masked}: {error.msg}")
            messages = {
                21211: f"Invalid phone number: {masked}",
                20003: 'Authentication error - invalid Twilio credentials',
                20429: 'Rate limit exceeded - message queued for retry',
                21408: f"Permission denied - unverified number: {masked}",
            }
            return messages.get(error.code, f"Failed to send message: {error.msg}")

        logger.error(f"Error sending WhatsApp message to {masked}: {error}")
        return f"Failed to send message: {error}"

    def _log_outbound_message(self, agent_id: str, message_text: str, message_id: str) -> None:
        supabase = try_get_supabase()
        if supabase is None:
            return

        try:
            supabase.table('conversation_logs').insert({
                'agent_id': agent_id,
                'message_text': message_text,
                'direction': 'outbound',
                'channel': 'whatsapp',
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'message_id': message_id,
                'delivery_status': 'queued',
            }).execute()
        except Exception as e:
            if is_unique_violation(e):
                logger.info(f"Duplicate message ID {message_id}, skipping insert")
            else:
                logger.error(f"Error logging outbound message {message_id} for agent {agent_id}: {e}")


# Create a singleton instance
whatsapp_service = WhatsAppService()
