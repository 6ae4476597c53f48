"""
Operator settings stored in the system_config table

Values are JSON-encoded text. Reads go through a short in-process cache.
"""
import json
import re
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from services.supabase_client import get_supabase
from utils.logger import get_logger

logger = get_logger(__name__)

CACHE_TTL = 60  # seconds

ALLOWED_OPENAI_MODELS = ('gpt-4o-mini', 'gpt-4-turbo', 'gpt-4o', 'gpt-3.5-turbo')
URL_REGEX = re.compile(r'^https?://.+')

_config_cache: Dict[str, tuple] = {}
_cache_lock = threading.Lock()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


CONFIG_VALIDATORS = {
    'openai_model': lambda v: isinstance(v, str) and v in ALLOWED_OPENAI_MODELS,
    'response_timeout_ms': lambda v: _is_number(v) and 1000 <= v <= 60000,
    'rate_limit_per_second': lambda v: _is_number(v) and 0 < v <= 100,
    'max_conversation_history': lambda v: _is_number(v) and 0 < v <= 50,
    'auto_archive_days': lambda v: _is_number(v) and 0 < v <= 365,
    'whatsapp_webhook_url': lambda v: isinstance(v, str) and bool(URL_REGEX.match(v)),
    'telegram_webhook_url': lambda v: isinstance(v, str) and (v == '' or bool(URL_REGEX.match(v))),
}


def validate_config_value(key: str, value: Any) -> bool:
    """Keys without a validator accept any value"""
    validator = CONFIG_VALIDATORS.get(key)
    return validator(value) if validator else True


def _decode(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning(f"system_config value is not valid JSON: {raw[:50]}")
        return raw


def _parse_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {**row, 'value': _decode(row.get('value'))}


def get_config(key: str, default: Any = None) -> Any:
    """Return the decoded value for key, or default when missing or unreadable"""
    now = time.time()
    with _cache_lock:
        cached = _config_cache.get(key)
        if cached and now - cached[1] < CACHE_TTL:
            return cached[0]

    try:
        resp = get_supabase().table('system_config').select('value').eq('key', key).limit(1).execute()
    except Exception as e:
        logger.error(f"Error getting config key {key}: {e}")
        return default

    if not resp.data:
        logger.warning(f"Config key not found: {key}")
        return default

    value = _decode(resp.data[0].get('value'))
    with _cache_lock:
        _config_cache[key] = (value, now)
    return value


def set_config(key: str, value: Any, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Store a new value for an existing key

    Returns:
        The updated row with its value decoded, or None when the key does not exist
    """
    update_data = {
        'value': json.dumps(value),
        'updated_at': datetime.now(timezone.utc).isoformat(),
    }
    if user_id:
        update_data['updated_by'] = user_id

    resp = get_supabase().table('system_config').update(update_data).eq('key', key).execute()
    invalidate_config_cache(key)

    if not resp.data:
        return None

    logger.info(f"Config key {key} updated")
    return _parse_row(resp.data[0])


def get_all_config() -> Dict[str, Any]:
    """All settings as a key -> value mapping"""
    try:
        resp = get_supabase().table('system_config').select('key, value').execute()
    except Exception as e:
        logger.error(f"Error getting all config: {e}")
        return {}
    return {row['key']: _decode(row.get('value')) for row in resp.data or []}


def list_config_rows() -> List[Dict[str, Any]]:
    """Rows for the admin settings view, ordered by key"""
    resp = (
        get_supabase().table('system_config')
        .select('key, value, description, updated_at')
        .order('key')
        .execute()
    )
    return [_parse_row(row) for row in resp.data or []]


def invalidate_config_cache(key: Optional[str] = None) -> None:
    with _cache_lock:
        if key:
            _config_cache.pop(key, None)
        else:
            _config_cache.clear()
