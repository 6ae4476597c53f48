"""
Admin login, session and logout handlers
"""
import hmac

from flask import Blueprint, jsonify, current_app

from config import Config
from services.supabase_client import get_supabase
from utils.auth import (
    ACCESS_CODE_USER, create_session_token, get_current_session, verify_password,
)
from utils.errors import BadRequest, Unauthorized, handle_api_errors
from utils.logger import get_logger
from utils.validators import get_json_body

logger = get_logger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')

INVALID_CREDENTIALS = 'Invalid credentials'


def _session_response(user, source):
    token = create_session_token(user, source=source)
    response = jsonify({
        'success': True,
        'user': {
            'id': str(user['id']),
            'email': user.get('email'),
            'name': user.get('name'),
            'role': user.get('role', 'admin'),
        },
        'token': token,
    })
    response.set_cookie(
        Config.SESSION_COOKIE,
        token,
        max_age=Config.SESSION_MAX_AGE,
        httponly=True,
        samesite='Lax',
        secure=not current_app.debug and not current_app.testing,
    )
    return response


def _login_with_access_code(access_code: str):
    expected = current_app.config.get('ADMIN_ACCESS_CODE')
    if not expected or not hmac.compare_digest(str(access_code).encode('utf-8'), expected.encode('utf-8')):
        logger.warning("Rejected admin login with invalid access code")
        raise Unauthorized(INVALID_CREDENTIALS)

    logger.info("Admin logged in with access code")
    return _session_response(ACCESS_CODE_USER, 'access_code')


def _login_with_password(email: str, password: str):
    resp = (
        get_supabase().table('admin_users')
        .select('id, email, name, role, password_hash, is_active')
        .eq('email', email.lower().strip())
        .limit(1)
        .execute()
    )
    user = resp.data[0] if resp.data else None

    if not user or not user.get('is_active') or not verify_password(password, user.get('password_hash')):
        logger.warning(f"Rejected admin login for {email}")
        raise Unauthorized(INVALID_CREDENTIALS)

    logger.info(f"Admin user {user['id']} logged in")
    return _session_response(user, 'admin_users')


@auth_bp.route('/login', methods=['POST'])
@handle_api_errors('Login failed')
def login():
    """
    Accepts either {"accessCode"} or {"email", "password"}

    Returns:
        Session user and token; the token is also set as an HttpOnly cookie
    """
    data = get_json_body()

    access_code = data.get('accessCode')
    if access_code:
        return _login_with_access_code(access_code)

    email = data.get('email')
    password = data.get('password')
    if email and password:
        if not isinstance(email, str) or not isinstance(password, str):
            raise BadRequest('Email and password must be strings')
        return _login_with_password(email, password)

    raise BadRequest('Access code or email and password are required')


@auth_bp.route('/session', methods=['GET'])
def session():
    current = get_current_session()
    return jsonify({
        'success': True,
        'user': {
            'id': current['sub'],
            'email': current.get('email'),
            'name': current.get('name'),
            'role': current.get('role'),
        },
        'expires': current.get('exp'),
    })


@auth_bp.route('/logout', methods=['POST'])
def logout():
    response = jsonify({'success': True})
    response.delete_cookie(Config.SESSION_COOKIE)
    return response
