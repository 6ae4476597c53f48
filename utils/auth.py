"""
Admin session utilities

Signed session tokens (PyJWT, HS256), bcrypt password hashing and the
require_admin decorator used by every admin route.
"""
import time
from functools import wraps
from typing import Any, Dict, Optional

import bcrypt
import jwt
from flask import g, request

from config import Config
from utils.errors import Forbidden, Unauthorized
from utils.logger import get_logger

logger = get_logger(__name__)

JWT_ALG = 'HS256'
ADMIN_ROLES = ('admin', 'super_admin')

# Identity handed out for the shared access code
ACCESS_CODE_USER = {
    'id': 'admin',
    'email': 'admin@sophia.local',
    'name': 'Sophia Admin',
    'role': 'admin',
}


def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    salt = bcrypt.gensalt(rounds=10)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a bcrypt hash"""
    if not isinstance(password, str) or not isinstance(password_hash, str):
        return False
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed hash stored in the database
        return False


def create_session_token(user: Dict[str, Any], source: str = 'access_code',
                         expires_in: Optional[int] = None) -> str:
    now = int(time.time())
    payload = {
        'sub': str(user['id']),
        'email': user.get('email'),
        'name': user.get('name'),
        'role': user.get('role', 'admin'),
        'source': source,
        'iat': now,
        'exp': now + (expires_in or Config.SESSION_MAX_AGE),
    }
    return jwt.encode(payload, Config.SESSION_SECRET, algorithm=JWT_ALG)


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode and verify a session token, raising Unauthorized on failure"""
    try:
        return jwt.decode(token, Config.SESSION_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise Unauthorized('Session expired')
    except jwt.InvalidTokenError as e:
        logger.warning(f"Rejected session token: {e}")
        raise Unauthorized()


def get_request_token() -> Optional[str]:
    """Read the session token from the Authorization header or cookie"""
    auth_header = request.headers.get('Authorization', '')
    if auth_header.lower().startswith('bearer '):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get(Config.SESSION_COOKIE)


def get_current_session() -> Dict[str, Any]:
    token = get_request_token()
    if not token:
        raise Unauthorized()
    return decode_session_token(token)


def _is_active_admin_user(user_id: str) -> bool:
    from services.supabase_client import get_supabase

    try:
        resp = (
            get_supabase().table('admin_users')
            .select('id, is_active')
            .eq('id', user_id)
            .eq('is_active', True)
            .limit(1)
            .execute()
        )
    except Exception as e:
        logger.error(f"Admin user lookup failed: {e}")
        return False
    return bool(resp.data)


def require_admin(view):
    """Reject the request unless it carries a valid admin session"""

    @wraps(view)
    def wrapper(*args, **kwargs):
        session = get_current_session()

        if session.get('role') not in ADMIN_ROLES:
            raise Forbidden()

        if session.get('source') == 'admin_users' and not _is_active_admin_user(session['sub']):
            raise Forbidden()

        g.admin = session
        return view(*args, **kwargs)

    return wrapper


def is_super_admin(session: Optional[Dict[str, Any]]) -> bool:
    return bool(session) and session.get('role') == 'super_admin'
