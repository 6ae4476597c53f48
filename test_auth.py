"""
Tests for admin sessions: password hashing, tokens and the auth endpoints
"""
import time

import jwt
import pytest

from config import Config
from conftest import ADMIN_ACCESS_CODE
from utils.auth import (
    ACCESS_CODE_USER, create_session_token, decode_session_token, hash_password,
    is_super_admin, verify_password,
)
from utils.errors import Unauthorized


def test_password_hash_roundtrip():
    hashed = hash_password('s3cret!')

    assert hashed.startswith('$2b$10$')
    assert verify_password('s3cret!', hashed) is True
    assert verify_password('wrong', hashed) is False
    assert verify_password('s3cret!', 'not-a-bcrypt-hash') is False
    assert verify_password('', hashed) is False
    assert verify_password(12345, hashed) is False


def test_session_token_carries_identity():
    token = create_session_token(ACCESS_CODE_USER, source='access_code')
    claims = decode_session_token(token)

    assert claims['sub'] == 'admin'
    assert claims['role'] == 'admin'
    assert claims['source'] == 'access_code'
    assert claims['exp'] - claims['iat'] == Config.SESSION_MAX_AGE


def test_expired_token_is_rejected():
    token = create_session_token(ACCESS_CODE_USER, expires_in=-10)

    with pytest.raises(Unauthorized) as excinfo:
        decode_session_token(token)
    assert excinfo.value.message == 'Session expired'


def test_tampered_token_is_rejected():
    forged = jwt.encode({'sub': 'admin', 'role': 'admin', 'exp': int(time.time()) + 60}, 'other-secret',
                        algorithm='HS256')

    with pytest.raises(Unauthorized):
        decode_session_token(forged)


def test_is_super_admin():
    assert is_super_admin({'role': 'super_admin'}) is True
    assert is_super_admin({'role': 'admin'}) is False
    assert is_super_admin(None) is False


class TestLogin:
    def test_access_code_login_sets_cookie(self, client):
        resp = client.post('/api/auth/login', json={'accessCode': ADMIN_ACCESS_CODE})

        assert resp.status_code == 200
        body = resp.get_json()
        assert body['success'] is True
        assert body['user']['id'] == 'admin'
        assert decode_session_token(body['token'])['source'] == 'access_code'

        cookie = resp.headers.get('Set-Cookie')
        assert cookie.startswith(f"{Config.SESSION_COOKIE}=")
        assert 'HttpOnly' in cookie

    def test_wrong_access_code(self, client):
        resp = client.post('/api/auth/login', json={'accessCode': 'guess'})

        assert resp.status_code == 401
        assert resp.get_json() == {'success': False, 'error': 'Invalid credentials'}

    def test_wrong_non_ascii_access_code(self, client):
        resp = client.post('/api/auth/login', json={'accessCode': 'pässwort'})

        assert resp.status_code == 401
        assert resp.get_json()['error'] == 'Invalid credentials'

    @pytest.mark.parametrize('payload', [
        {'email': 'ops@sophia.cy', 'password': 12345},
        {'email': ['ops@sophia.cy'], 'password': 'hunter22'},
    ])
    def test_non_string_credentials(self, client, payload):
        resp = client.post('/api/auth/login', json=payload)

        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Email and password must be strings'

    def test_password_login(self, client, fake_db):
        fake_db.seed('admin_users', {
            'email': 'ops@sophia.cy',
            'name': 'Ops',
            'role': 'super_admin',
            'password_hash': hash_password('hunter22'),
            'is_active': True,
        })

        resp = client.post('/api/auth/login', json={'email': 'OPS@sophia.cy', 'password': 'hunter22'})

        assert resp.status_code == 200
        body = resp.get_json()
        assert body['user']['role'] == 'super_admin'
        assert decode_session_token(body['token'])['source'] == 'admin_users'

    def test_password_login_inactive_user(self, client, fake_db):
        fake_db.seed('admin_users', {
            'email': 'old@sophia.cy',
            'role': 'admin',
            'password_hash': hash_password('hunter22'),
            'is_active': False,
        })

        resp = client.post('/api/auth/login', json={'email': 'old@sophia.cy', 'password': 'hunter22'})
        assert resp.status_code == 401

    def test_missing_credentials(self, client):
        resp = client.post('/api/auth/login', json={})

        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Access code or email and password are required'

    def test_invalid_json(self, client):
        resp = client.post('/api/auth/login', data='not json', content_type='application/json')
        assert resp.status_code == 400


class TestSession:
    def test_session_with_bearer_token(self, client, admin_headers):
        resp = client.get('/api/auth/session', headers=admin_headers)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body['user']['email'] == ACCESS_CODE_USER['email']
        assert body['expires'] > time.time()

    def test_session_without_token(self, client):
        resp = client.get('/api/auth/session')
        assert resp.status_code == 401

    def test_session_from_cookie(self, client):
        login = client.post('/api/auth/login', json={'accessCode': ADMIN_ACCESS_CODE})
        assert login.status_code == 200

        resp = client.get('/api/auth/session')
        assert resp.status_code == 200

    def test_logout_clears_cookie(self, client):
        resp = client.post('/api/auth/logout')

        assert resp.get_json() == {'success': True}
        assert f"{Config.SESSION_COOKIE}=;" in resp.headers.get('Set-Cookie')


class TestRequireAdmin:
    def test_non_admin_role_is_forbidden(self, client):
        token = create_session_token({'id': 'u1', 'role': 'viewer'})
        resp = client.get('/api/admin/config', headers={'Authorization': f'Bearer {token}'})
        assert resp.status_code == 403

    def test_deactivated_admin_user_is_forbidden(self, client, fake_db):
        user = fake_db.seed('admin_users', {'email': 'a@b.cy', 'role': 'admin', 'is_active': False})
        token = create_session_token(user, source='admin_users')

        resp = client.get('/api/admin/config', headers={'Authorization': f'Bearer {token}'})
        assert resp.status_code == 403

    def test_missing_token(self, client):
        resp = client.get('/api/admin/stats')

        assert resp.status_code == 401
        assert resp.get_json() == {'success': False, 'error': 'Unauthorized'}
