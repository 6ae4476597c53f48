"""
Redis client service for shared rate-limit counters
"""
import redis
from config import Config
from utils.logger import get_logger

logger = get_logger(__name__)

# Redis URL from environment or config
REDIS_URL = getattr(Config, 'REDIS_URL', None)

if REDIS_URL:
    try:
        redis_client = redis.from_url(REDIS_URL, decode_responses=True)
        logger.info("Redis client initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize Redis client: {e}")
        redis_client = None
else:
    logger.warning("REDIS_URL not configured - using in-memory rate limiting")
    redis_client = None
