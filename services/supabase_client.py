"""
Supabase client shared by the route handlers and services
"""
from supabase import create_client, Client
from config import Config
from utils.logger import get_logger

logger = get_logger(__name__)

# Postgres unique violation, raised when Twilio retries a delivered webhook
UNIQUE_VIOLATION = '23505'

_supabase_client = None

def is_supabase_configured() -> bool:
    """Check if Supabase credentials are present"""
    return bool(Config.SUPABASE_URL and Config.SUPABASE_SERVICE_ROLE_KEY)

def get_supabase() -> Client:
    """Lazy-init the service-role Supabase client"""
    global _supabase_client
    if _supabase_client is None:
        if not is_supabase_configured():
            raise RuntimeError(
                "Missing Supabase environment variables: SUPABASE_URL and "
                "SUPABASE_SERVICE_ROLE_KEY are required"
            )
        _supabase_client = create_client(Config.SUPABASE_URL, Config.SUPABASE_SERVICE_ROLE_KEY)
        logger.info("Supabase client initialized successfully")
    return _supabase_client

def try_get_supabase():
    """Return the client, or None when configuration is missing"""
    try:
        return get_supabase()
    except Exception as e:
        logger.warning(f"Supabase client unavailable: {e}")
        return None

def is_unique_violation(error: Exception) -> bool:
    """True when a PostgREST error is a duplicate key violation"""
    return getattr(error, 'code', None) == UNIQUE_VIOLATION
