"""
HTTP-facing error types for the Sophia API
"""
from functools import wraps
from typing import Optional

from flask import request

from utils.logger import get_logger

logger = get_logger(__name__)


class ApiError(Exception):
    """Error that maps directly to an HTTP response"""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, details=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self):
        body = {'success': False, 'error': self.message}
        if self.details is not None:
            body['details'] = self.details
        return body


class BadRequest(ApiError):
    status_code = 400


class Unauthorized(ApiError):
    status_code = 401

    def __init__(self, message: str = 'Unauthorized', **kwargs):
        super().__init__(message, **kwargs)


class Forbidden(ApiError):
    status_code = 403

    def __init__(self, message: str = 'Forbidden', **kwargs):
        super().__init__(message, **kwargs)


class NotFound(ApiError):
    status_code = 404


class Conflict(ApiError):
    status_code = 409


class Unprocessable(ApiError):
    status_code = 422


def handle_api_errors(message: str = 'Internal server error'):
    """
    Map unexpected exceptions raised by a view to a logged 500 ApiError

    ApiError subclasses pass through untouched so their status is kept.
    """
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            try:
                return view(*args, **kwargs)
            except ApiError:
                raise
            except Exception as e:
                logger.error(f"{request.method} {request.path} failed: {e}", exc_info=True)
                raise ApiError(message, 500) from e

        return wrapper

    return decorator
