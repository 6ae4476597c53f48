"""
In-process operational metrics for monitoring and the detailed health check
"""
import threading
import time
from datetime import datetime, timezone
from typing import Dict, Any, Optional

PLATFORMS = ('telegram', 'whatsapp')
PERFORMANCE_METRICS = ('webhook_response_time', 'ai_response_time', 'message_processing_time')


class _Metric:
    __slots__ = ('count', 'total', 'min', 'max', 'last_updated')

    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.min: Optional[float] = None
        self.max: Optional[float] = None
        self.last_updated = time.time()

    def increment(self):
        self.count += 1
        self.last_updated = time.time()

    def observe(self, value: float):
        self.count += 1
        self.total += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)
        self.last_updated = time.time()

    @property
    def average(self) -> float:
        return self.total / self.count if self.count else 0


class MetricsService:
    """Counters for requests, errors, timings, rate limits, users and forwards"""

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def reset(self):
        """Reset all metrics and the uptime clock"""
        self._start_time = time.time()
        self._requests = {name: _Metric() for name in PLATFORMS + ('total',)}
        self._errors = {name: _Metric() for name in PLATFORMS + ('total',)}
        self._performance = {name: _Metric() for name in PERFORMANCE_METRICS}
        self._rate_limits = {name: _Metric() for name in PLATFORMS}
        self._registrations = _Metric()
        self._active_users = set()
        self._forwards = {'successful': _Metric(), 'failed': _Metric()}

    def track_request(self, platform: str):
        with self._lock:
            self._requests[platform].increment()
            self._requests['total'].increment()

    def track_error(self, platform: str):
        with self._lock:
            self._errors[platform].increment()
            self._errors['total'].increment()

    def track_performance(self, metric: str, duration_ms: float):
        """Record a timing in milliseconds"""
        with self._lock:
            self._performance[metric].observe(duration_ms)

    def track_rate_limit(self, platform: str):
        with self._lock:
            self._rate_limits[platform].increment()

    def track_registration(self):
        with self._lock:
            self._registrations.increment()

    def track_active_user(self, user_id: str):
        with self._lock:
            self._active_users.add(str(user_id))

    def track_message_forward(self, success: bool):
        with self._lock:
            self._forwards['successful' if success else 'failed'].increment()

    def get_error_rate(self, platform: Optional[str] = None) -> float:
        """Errors as a percentage of requests"""
        key = platform or 'total'
        requests = self._requests[key].count
        return (self._errors[key].count / requests) * 100 if requests else 0

    def get_average_performance(self, metric: str) -> float:
        return self._performance[metric].average

    def get_uptime(self) -> int:
        """Uptime in milliseconds"""
        return int((time.time() - self._start_time) * 1000)

    def get_metrics_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            successful = self._forwards['successful'].count
            failed = self._forwards['failed'].count
            total_forwards = successful + failed

            return {
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'uptime': self.get_uptime(),
                'requests': {name: metric.count for name, metric in self._requests.items()},
                'errors': {
                    **{name: metric.count for name, metric in self._errors.items()},
                    'error_rate': self.get_error_rate(),
                },
                'performance': {
                    name: {
                        'avg': metric.average,
                        'min': metric.min or 0,
                        'max': metric.max or 0,
                    }
                    for name, metric in self._performance.items()
                },
                'rate_limits': {name: metric.count for name, metric in self._rate_limits.items()},
                'users': {
                    'registrations': self._registrations.count,
                    'active_users': len(self._active_users),
                },
                'message_forwards': {
                    'successful': successful,
                    'failed': failed,
                    'success_rate': (successful / total_forwards) * 100 if total_forwards else 0,
                },
            }


# Create a singleton instance
metrics_service = MetricsService()


def get_metrics_service() -> MetricsService:
    return metrics_service
