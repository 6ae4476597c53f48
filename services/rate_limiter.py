"""
Fixed-window rate limiting per identifier (user ID, chat ID, phone number)

Counters live in Redis when REDIS_URL is configured so every gunicorn worker
shares them; otherwise they are kept in process memory.
"""
import threading
import time
from typing import Dict, Any, Optional

import services.redis_client as redis_client_module
from utils.logger import get_logger

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiterService:
    """Allow at most max_requests per window_ms for each identifier"""

    def __init__(self, max_requests: int = 30, window_ms: int = 60000,
                 namespace: str = 'default', redis=None):
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.namespace = namespace
        self._redis = redis
        self._requests: Dict[str, Dict[str, int]] = {}
        self._lock = threading.Lock()

    @property
    def redis(self):
        if self._redis is None:
            self._redis = redis_client_module.redis_client
        return self._redis

    def _key(self, identifier: str) -> str:
        return f"ratelimit:{self.namespace}:{identifier}"

    def check_limit(self, identifier: str) -> Dict[str, Any]:
        """
        Count one request for identifier

        Returns:
            Dict with allowed, remaining and reset_at (epoch ms)
        """
        if self.redis is not None:
            try:
                return self._check_limit_redis(identifier)
            except Exception as e:
                logger.warning(f"Redis rate limit check failed, using in-memory counters: {e}")

        return self._check_limit_memory(identifier)

    def _check_limit_redis(self, identifier: str) -> Dict[str, Any]:
        key = self._key(identifier)
        count = self.redis.incr(key)
        if count == 1:
            self.redis.pexpire(key, self.window_ms)
            ttl = self.window_ms
        else:
            ttl = self.redis.pttl(key)
            if ttl is None or ttl < 0:
                # Key lost its expiry, start a fresh window
                self.redis.pexpire(key, self.window_ms)
                ttl = self.window_ms

        reset_at = _now_ms() + int(ttl)
        if count > self.max_requests:
            return {'allowed': False, 'remaining': 0, 'reset_at': reset_at}

        return {
            'allowed': True,
            'remaining': self.max_requests - count,
            'reset_at': reset_at,
        }

    def _check_limit_memory(self, identifier: str) -> Dict[str, Any]:
        now = _now_ms()
        with self._lock:
            self._purge_expired(now)
            entry = self._requests.get(identifier)

            if entry is None or entry['reset_at'] < now:
                reset_at = now + self.window_ms
                self._requests[identifier] = {'count': 1, 'reset_at': reset_at}
                return {
                    'allowed': True,
                    'remaining': self.max_requests - 1,
                    'reset_at': reset_at,
                }

            if entry['count'] >= self.max_requests:
                return {'allowed': False, 'remaining': 0, 'reset_at': entry['reset_at']}

            entry['count'] += 1
            return {
                'allowed': True,
                'remaining': self.max_requests - entry['count'],
                'reset_at': entry['reset_at'],
            }

    def _purge_expired(self, now: int) -> None:
        expired = [key for key, entry in self._requests.items() if entry['reset_at'] < now]
        for key in expired:
            del self._requests[key]

    def reset(self, identifier: str) -> None:
        """Forget the counter for one identifier"""
        with self._lock:
            self._requests.pop(identifier, None)
        if self.redis is not None:
            try:
                self.redis.delete(self._key(identifier))
            except Exception as e:
                logger.warning(f"Could not reset Redis rate limit for {identifier}: {e}")

    def clear_all(self) -> None:
        with self._lock:
            self._requests.clear()
        if self.redis is not None:
            try:
                keys = list(self.redis.scan_iter(match=self._key('*')))
                if keys:
                    self.redis.delete(*keys)
            except Exception as e:
                logger.warning(f"Could not clear Redis rate limits: {e}")

    def get_stats(self, identifier: str) -> Dict[str, Any]:
        """Current request count and window end for identifier"""
        if self.redis is not None:
            try:
                key = self._key(identifier)
                count = self.redis.get(key)
                ttl = self.redis.pttl(key)
                return {
                    'requests': int(count or 0),
                    'limit': self.max_requests,
                    'reset_at': _now_ms() + ttl if count and ttl and ttl > 0 else None,
                }
            except Exception as e:
                logger.warning(f"Could not read Redis rate limit stats: {e}")

        with self._lock:
            entry = self._requests.get(identifier)
        return {
            'requests': entry['count'] if entry else 0,
            'limit': self.max_requests,
            'reset_at': entry['reset_at'] if entry else None,
        }


_telegram_rate_limiter: Optional[RateLimiterService] = None
_whatsapp_rate_limiter: Optional[RateLimiterService] = None


def get_telegram_rate_limiter() -> RateLimiterService:
    """30 messages per minute per Telegram user"""
    global _telegram_rate_limiter
    if _telegram_rate_limiter is None:
        _telegram_rate_limiter = RateLimiterService(30, 60000, namespace='telegram')
    return _telegram_rate_limiter


def get_whatsapp_rate_limiter() -> RateLimiterService:
    """80 messages per second for the WhatsApp Business API"""
    global _whatsapp_rate_limiter
    if _whatsapp_rate_limiter is None:
        _whatsapp_rate_limiter = RateLimiterService(80, 1000, namespace='whatsapp')
    return _whatsapp_rate_limiter
