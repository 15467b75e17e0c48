"""Admin request gate.

A single ``before_request`` hook verifies the admin session for every
request. Admin pages and the admin API are refused without a valid token.
Other routes see the verified identity through ``g.admin`` and the
``x-admin-*`` request headers, which are stripped from client input first.
"""
from functools import wraps
from typing import List, Optional, Tuple

from flask import current_app, g, jsonify, redirect, request

from admin_auth import AdminIdentity, csrf_token_for, has_permission, verify_csrf

ADMIN_UI_PREFIX = '/admin'
ADMIN_API_PREFIX = '/api/admin'
AUTH_API_PREFIX = '/api/admin/auth/'
LOGIN_PAGE = '/admin'

TOKEN_COOKIE = 'admin-token'
CSRF_COOKIE = 'admin-csrf'
CSRF_HEADER = 'X-CSRF-Token'

IDENTITY_ENVIRON_KEYS = ('HTTP_X_ADMIN_ID', 'HTTP_X_ADMIN_EMAIL', 'HTTP_X_ADMIN_ROLE')
SAFE_METHODS = frozenset({'GET', 'HEAD', 'OPTIONS'})


def is_admin_api(path: str) -> bool:
    return path == ADMIN_API_PREFIX or path.startswith(ADMIN_API_PREFIX + '/')


def is_gated(path: str) -> bool:
    if path.rstrip('/') == LOGIN_PAGE or path.startswith(AUTH_API_PREFIX):
        return False
    return path.startswith(ADMIN_UI_PREFIX + '/') or is_admin_api(path)


def read_tokens() -> List[Tuple[str, str]]:
    """Candidate ``(token, source)`` pairs: the cookie first, then a bearer header."""
    candidates = []
    token = request.cookies.get(TOKEN_COOKIE)
    if token:
        candidates.append((token, 'cookie'))
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        token = header[len('Bearer '):].strip()
        if token:
            candidates.append((token, 'bearer'))
    return candidates


def client_ip() -> str:
    if current_app.config.get('TRUST_FORWARDED_FOR'):
        forwarded = request.headers.get('X-Forwarded-For', '')
        if forwarded:
            return forwarded.split(',')[0].strip()
    return request.remote_addr or 'unknown'


def current_admin() -> Optional[AdminIdentity]:
    return g.get('admin')


def set_session_cookies(response, token: str) -> None:
    config = current_app.config
    secure = config['IS_PRODUCTION']
    max_age = config['SESSION_TIMEOUT_SECONDS']
    response.set_cookie(TOKEN_COOKIE, token, max_age=max_age, path='/',
                        httponly=True, secure=secure, samesite='Strict')
    # readable by the dashboard script so it can echo it back
    response.set_cookie(CSRF_COOKIE, csrf_token_for(token, config['CSRF_SECRET']), max_age=max_age,
                        path='/', httponly=False, secure=secure, samesite='Strict')


def clear_session_cookies(response) -> None:
    secure = current_app.config['IS_PRODUCTION']
    response.set_cookie(TOKEN_COOKIE, '', max_age=0, expires=0, path='/',
                        httponly=True, secure=secure, samesite='Strict')
    response.set_cookie(CSRF_COOKIE, '', max_age=0, expires=0, path='/',
                        httponly=False, secure=secure, samesite='Strict')


def csrf_rejection():
    """403 response when a cookie-authenticated unsafe request lacks the CSRF echo."""
    if not current_app.config.get('CSRF_PROTECTION') or request.method in SAFE_METHODS:
        return None
    if g.get('admin_token_source') != 'cookie':
        return None
    if verify_csrf(g.admin_token, request.headers.get(CSRF_HEADER), current_app.config['CSRF_SECRET']):
        return None
    print(f"[WARN] CSRF check failed for {request.method} {request.path}")
    return json_error('Invalid or missing CSRF token', 403)


def admin_gate():
    for key in IDENTITY_ENVIRON_KEYS:
        request.environ.pop(key, None)
    g.admin = None
    g.admin_token = None
    g.admin_token_source = None

    auth = current_app.extensions['admin_auth']
    identity = token = source = None
    for token, source in read_tokens():
        identity = auth.verify_session(token)
        if identity is not None:
            break
    path = request.path

    if identity is None:
        if not is_gated(path):
            return None
        if is_admin_api(path):
            return json_error('Authentication required', 401)
        response = redirect(LOGIN_PAGE)
        if request.cookies.get(TOKEN_COOKIE):
            clear_session_cookies(response)
        return response

    g.admin = identity
    g.admin_token = token
    g.admin_token_source = source
    request.environ['HTTP_X_ADMIN_ID'] = identity.id
    request.environ['HTTP_X_ADMIN_EMAIL'] = identity.email
    request.environ['HTTP_X_ADMIN_ROLE'] = identity.role

    if is_gated(path) and is_admin_api(path):
        return csrf_rejection()
    return None


def init_admin_gate(app) -> None:
    app.before_request(admin_gate)


def require_permission(permission: str):
    """Handler decorator: 401 without an admin session, 403 without ``permission``."""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            identity = current_admin()
            if identity is None:
                return json_error('Authentication required', 401)
            if not is_gated(request.path):
                rejected = csrf_rejection()
                if rejected is not None:
                    return rejected
            if not has_permission(identity, permission):
                print(f"[WARN] {identity.email} lacks {permission} for {request.path}")
                return json_error('Insufficient permissions', 403)
            return f(*args, **kwargs)
        return decorated
    return decorator


def json_error(message: str, status: int):
    return jsonify({'success': False, 'error': message}), status
