"""
Telegram user registration against the agents table
"""
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from services.supabase_client import get_supabase
from utils.logger import get_logger
from utils.validators import is_valid_email

logger = get_logger(__name__)


class TelegramAuthService:
    """Links Telegram accounts to registered agents"""

    def __init__(self, supabase=None):
        self._supabase_client = supabase

    @property
    def supabase(self):
        """Injected client, else the shared one"""
        return self._supabase_client or get_supabase()

    def is_user_registered(self, telegram_user_id: int) -> bool:
        return self.get_telegram_user(telegram_user_id) is not None

    def get_telegram_user(self, telegram_user_id: int) -> Optional[Dict[str, Any]]:
        resp = (
            self.supabase.table('telegram_users')
            .select('*')
            .eq('telegram_user_id', telegram_user_id)
            .eq('is_active', True)
            .limit(1)
            .execute()
        )
        return resp.data[0] if resp.data else None

    def get_agent_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Active agent with this email, compared lower-cased"""
        resp = (
            self.supabase.table('agents')
            .select('id, email, name')
            .eq('email', email.lower().strip())
            .eq('status', 'active')
            .limit(1)
            .execute()
        )
        return resp.data[0] if resp.data else None

    def register_telegram_user(self, telegram_user_id: int, chat_id: int, agent_id: str,
                               username: Optional[str] = None, first_name: Optional[str] = None,
                               last_name: Optional[str] = None) -> Dict[str, Any]:
        resp = self.supabase.table('telegram_users').insert({
            'agent_id': agent_id,
            'telegram_user_id': telegram_user_id,
            'telegram_username': username,
            'telegram_first_name': first_name,
            'telegram_last_name': last_name,
            'chat_id': chat_id,
            'is_active': True,
        }).execute()
        logger.info(f"Telegram user {telegram_user_id} registered for agent {agent_id}")
        return resp.data[0] if resp.data else {}

    def update_last_active(self, telegram_user_id: int) -> None:
        try:
            (
                self.supabase.table('telegram_users')
                .update({'last_active_at': datetime.now(timezone.utc).isoformat()})
                .eq('telegram_user_id', telegram_user_id)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error updating last active for Telegram user {telegram_user_id}: {e}")

    def deactivate_telegram_user(self, telegram_user_id: int) -> None:
        (
            self.supabase.table('telegram_users')
            .update({'is_active': False})
            .eq('telegram_user_id', telegram_user_id)
            .execute()
        )

    @staticmethod
    def validate_email(email: str) -> bool:
        return is_valid_email(email)


# Create a singleton instance
telegram_auth_service = TelegramAuthService()
