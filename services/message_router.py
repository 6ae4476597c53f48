"""
Conversation pipeline for inbound WhatsApp and Telegram messages

Webhook routes acknowledge first and hand the message to dispatch(),
which runs it on a small background pool.
"""
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from config import Config
from services.calculator_service import calculator_service
from services.message_forward_service import (
    message_forward_service, parse_forward_command, validate_phone_number,
)
from services.metrics_service import metrics_service
from services.openai_service import openai_service
from services.rate_limiter import get_telegram_rate_limiter
from services.supabase_client import get_supabase, is_unique_violation
from services.system_config_service import get_config
from services.telegram_auth_service import telegram_auth_service
from services.telegram_service import telegram_service
from services.whatsapp_service import whatsapp_service
from utils.logger import get_logger, mask_phone
from utils.validators import is_valid_email

logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 10

RATE_LIMIT_NOTICE = "⚠️ You're sending messages too quickly. Please wait a moment and try again."
REGISTRATION_PROMPT = (
    "👋 Welcome to Sophia, the zyprus.com AI assistant!\n\n"
    "To get started, please reply with the email address you are registered with as an agent."
)
EMAIL_NOT_FOUND = (
    "❌ I couldn't find an active agent with that email address. "
    "Please check the email and try again, or contact your administrator."
)
INVALID_EMAIL = "That doesn't look like an email address. Please reply with your registered agent email."
PROCESSING_ERROR = "Sorry, something went wrong while processing your message. Please try again."

_executor = ThreadPoolExecutor(max_workers=Config.WEBHOOK_WORKERS, thread_name_prefix='webhook')


def _log_task_failure(future):
    error = future.exception()
    if error is not None:
        logger.error(f"Background message processing failed: {error}")


def dispatch(fn, *args, inline: bool = False):
    """Run fn now when inline, otherwise on the background pool"""
    if inline:
        return fn(*args)
    future = _executor.submit(fn, *args)
    future.add_done_callback(_log_task_failure)
    return future


class MessageRouter:
    """Routes inbound messages to registration, forwarding or AI replies"""

    def __init__(self, openai=None, whatsapp=None, telegram=None, telegram_auth=None,
                 forwarder=None, calculators=None, metrics=None, rate_limiter=None):
        self.openai = openai or openai_service
        self.whatsapp = whatsapp or whatsapp_service
        self.telegram = telegram or telegram_service
        self.telegram_auth = telegram_auth or telegram_auth_service
        self.forwarder = forwarder or message_forward_service
        self.calculators = calculators or calculator_service
        self.metrics = metrics or metrics_service
        self._rate_limiter = rate_limiter

    @property
    def rate_limiter(self):
        if self._rate_limiter is None:
            self._rate_limiter = get_telegram_rate_limiter()
        return self._rate_limiter

    # Shared helpers

    def find_agent_by_phone(self, phone_number: str) -> Optional[Dict[str, Any]]:
        resp = (
            get_supabase().table('agents')
            .select('id, name, email, phone_number')
            .eq('phone_number', phone_number)
            .limit(1)
            .execute()
        )
        return resp.data[0] if resp.data else None

    def load_history(self, agent_id: str, channel: str) -> List[Dict[str, str]]:
        """Recent messages as chat roles, oldest first"""
        limit = get_config('max_conversation_history', DEFAULT_HISTORY_LIMIT)
        if not isinstance(limit, int) or limit <= 0:
            limit = DEFAULT_HISTORY_LIMIT

        try:
            resp = (
                get_supabase().table('conversation_logs')
                .select('message_text, direction, created_at')
                .eq('agent_id', agent_id)
                .eq('channel', channel)
                .order('created_at', desc=True)
                .limit(limit)
                .execute()
            )
        except Exception as e:
            logger.error(f"Could not load conversation history for agent {agent_id}: {e}")
            return []

        history = []
        for row in reversed(resp.data or []):
            if not row.get('message_text'):
                continue
            role = 'user' if row.get('direction') == 'inbound' else 'assistant'
            history.append({'role': role, 'content': row['message_text']})
        return history

    def log_message(self, agent_id: str, text: str, direction: str, channel: str,
                    message_id: Optional[str] = None) -> bool:
        """
        Insert a conversation_logs row

        Returns:
            False when message_id was already logged (a webhook retry)
        """
        row = {
            'agent_id': agent_id,
            'message_text': text,
            'direction': direction,
            'channel': channel,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }
        if message_id:
            row['message_id'] = message_id

        try:
            get_supabase().table('conversation_logs').insert(row).execute()
        except Exception as e:
            if is_unique_violation(e):
                logger.info(f"Duplicate message ID {message_id}, skipping insert")
                return False
            raise
        return True

    def run_calculator(self, agent_id: Optional[str], tool_call: Dict[str, Any]) -> str:
        """Execute a calculate tool call and return the text to send back"""
        arguments = tool_call.get('arguments') or {}
        calculator_name = arguments.get('calculator_name')
        inputs = arguments.get('inputs') or {}

        result = self.calculators.execute_calculator(calculator_name, inputs)
        self._record_calculation(agent_id, calculator_name, inputs, result)

        if result['success']:
            return result['result']['formatted_output']

        error = result['error']
        text = f"I couldn't complete that calculation: {error['message']}"
        if error.get('fallback_url'):
            text += f"\n\nYou can also use the online calculator: {error['fallback_url']}"
        return text

    def _record_calculation(self, agent_id, calculator_name, inputs, result) -> None:
        if not result['success']:
            return
        try:
            supabase = get_supabase()
            calc = supabase.table('calculators').select('id').eq('name', calculator_name).limit(1).execute()
            supabase.table('calculator_history').insert({
                'calculator_id': calc.data[0]['id'] if calc.data else None,
                'agent_id': agent_id,
                'inputs': inputs,
                'result': result['result'],
                'success': True,
            }).execute()
        except Exception as e:
            logger.error(f"Failed to record calculator history for {calculator_name}: {e}")

    def generate_reply(self, text: str, agent_id: Optional[str], history: List[Dict[str, str]]) -> Dict[str, Any]:
        """AI reply, with calculator tool calls resolved to their output"""
        started = time.time()
        response = self.openai.generate_response(text, {
            'agent_id': agent_id,
            'message_history': history,
            'model': get_config('openai_model'),
        })
        self.metrics.track_performance('ai_response_time', (time.time() - started) * 1000)

        calculator_calls = [call for call in response.get('tool_calls') or [] if call['name'] == 'calculate']
        if calculator_calls:
            response['text'] = '\n\n'.join(self.run_calculator(agent_id, call) for call in calculator_calls)

        return response

    # WhatsApp

    def handle_whatsapp_message(self, phone_number: str, text: str, message_sid: str) -> Dict[str, Any]:
        started = time.time()
        self.metrics.track_request('whatsapp')
        masked = mask_phone(phone_number)

        try:
            agent = self.find_agent_by_phone(phone_number)
            if agent is None:
                logger.warning(f"Agent not found for phone number {masked} (message {message_sid})")
                return {'status': 'unknown_agent'}

            history = self.load_history(agent['id'], 'whatsapp')

            if not self.log_message(agent['id'], text, 'inbound', 'whatsapp', message_sid):
                return {'status': 'duplicate'}

            reply = self.generate_reply(text, agent['id'], history)
            send_result = self.whatsapp.send_message(phone_number, reply['text'], agent_id=agent['id'])
            if not send_result['success']:
                self.metrics.track_error('whatsapp')
                logger.error(f"Reply to {masked} failed: {send_result['error']}")

            logger.info(f"Processed WhatsApp message {message_sid} from agent {agent['id']}")
            return {'status': 'replied', 'agent_id': agent['id'], 'send_result': send_result}
        except Exception as e:
            self.metrics.track_error('whatsapp')
            logger.error(f"Error processing WhatsApp message {message_sid} from {masked}: {e}")
            raise
        finally:
            self.metrics.track_performance('message_processing_time', (time.time() - started) * 1000)

    # Telegram

    def handle_telegram_update(self, update: Dict[str, Any]) -> Dict[str, Any]:
        message = update.get('message')
        if not message:
            logger.info(f"No message in Telegram update {update.get('update_id')}, skipping")
            return {'status': 'skipped'}

        text = (message.get('text') or '').strip()
        if not text:
            return {'status': 'skipped'}

        chat_id = message['chat']['id']
        sender = message.get('from') or {}
        user_id = sender.get('id', chat_id)

        started = time.time()
        self.metrics.track_request('telegram')

        try:
            limit = self.rate_limiter.check_limit(str(user_id))
            if not limit['allowed']:
                self.metrics.track_rate_limit('telegram')
                logger.warning(f"Telegram user {user_id} rate limited")
                self.telegram.send_message(chat_id, RATE_LIMIT_NOTICE)
                return {'status': 'rate_limited'}

            telegram_user = self.telegram_auth.get_telegram_user(user_id)
            if telegram_user is None:
                return self._handle_registration(text, chat_id, user_id, sender)

            if text.startswith('/start'):
                self.telegram.send_message(
                    chat_id,
                    "👋 Welcome back! You're already registered. How can I help you today?",
                )
                return {'status': 'welcome_back'}

            self.telegram_auth.update_last_active(user_id)
            self.metrics.track_active_user(str(user_id))

            forward = parse_forward_command(text)
            if forward['is_forward_command']:
                return self._handle_forward(forward, telegram_user, chat_id)

            return self._handle_ai_message(text, telegram_user, chat_id, message.get('message_id'))
        except Exception as e:
            self.metrics.track_error('telegram')
            logger.error(f"Error processing Telegram update {update.get('update_id')}: {e}")
            self._notify_failure(chat_id)
            raise
        finally:
            self.metrics.track_performance('message_processing_time', (time.time() - started) * 1000)

    def _notify_failure(self, chat_id: int) -> None:
        try:
            self.telegram.send_message(chat_id, PROCESSING_ERROR)
        except Exception as e:
            logger.error(f"Could not notify Telegram chat {chat_id} of failure: {e}")

    def _handle_registration(self, text: str, chat_id: int, user_id: int, sender: Dict[str, Any]) -> Dict[str, Any]:
        if text.startswith('/start'):
            self.telegram.send_message(chat_id, REGISTRATION_PROMPT)
            return {'status': 'registration_prompted'}

        if not is_valid_email(text):
            self.telegram.send_message(chat_id, f"{REGISTRATION_PROMPT}\n\n{INVALID_EMAIL}")
            return {'status': 'registration_prompted'}

        agent = self.telegram_auth.get_agent_by_email(text)
        if agent is None:
            logger.info(f"Telegram registration failed for user {user_id}: unknown email")
            self.telegram.send_message(chat_id, EMAIL_NOT_FOUND)
            return {'status': 'registration_failed'}

        self.telegram_auth.register_telegram_user(
            telegram_user_id=user_id,
            chat_id=chat_id,
            agent_id=agent['id'],
            username=sender.get('username'),
            first_name=sender.get('first_name'),
            last_name=sender.get('last_name'),
        )
        self.metrics.track_registration()

        name = agent.get('name') or sender.get('first_name') or 'there'
        self.telegram.send_message(
            chat_id,
            f"✅ Registration successful! Welcome, {name}.\n\n"
            "You can now ask me for calculations and documents, or forward messages to WhatsApp with:\n"
            "forward to +35799123456: Your message",
        )
        return {'status': 'registered', 'agent_id': agent['id']}

    def _handle_forward(self, forward: Dict[str, Any], telegram_user: Dict[str, Any], chat_id: int) -> Dict[str, Any]:
        recipient = forward['recipient']
        if not validate_phone_number(recipient):
            self.telegram.send_message(
                chat_id,
                "❌ Invalid phone number. Please use international format, e.g. +35799123456",
            )
            return {'status': 'forward_invalid'}

        result = self.forwarder.forward_to_whatsapp(
            agent_id=telegram_user['agent_id'],
            telegram_chat_id=str(chat_id),
            recipient_phone=recipient,
            message=forward['message'],
        )
        self.metrics.track_message_forward(result['success'])

        if result['success']:
            self.telegram.send_message(chat_id, f"✅ Message forwarded to {recipient} on WhatsApp.")
            return {'status': 'forwarded'}

        self.telegram.send_message(chat_id, f"❌ Failed to forward message: {result['error']}")
        return {'status': 'forward_failed'}

    def _handle_ai_message(self, text: str, telegram_user: Dict[str, Any], chat_id: int,
                           message_id: Optional[int]) -> Dict[str, Any]:
        agent_id = telegram_user['agent_id']
        history = self.load_history(agent_id, 'telegram')

        log_id = f"tg-{chat_id}-{message_id}" if message_id is not None else None
        if not self.log_message(agent_id, text, 'inbound', 'telegram', log_id):
            return {'status': 'duplicate'}

        reply = self.generate_reply(text, agent_id, history)
        self.telegram.send_message(chat_id, reply['text'])
        self.log_message(agent_id, reply['text'], 'outbound', 'telegram')

        return {'status': 'replied', 'agent_id': agent_id}


# Create a singleton instance
message_router = MessageRouter()
