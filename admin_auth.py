import hashlib
import hmac
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import bcrypt
import jwt

JWT_ALGORITHM = 'HS256'
BCRYPT_ROUNDS = 12

ADMIN_PERMISSIONS = {
    'view_customers': 'View customers',
    'edit_customers': 'Edit customers',
    'delete_customers': 'Delete customers',
    'view_orders': 'View orders',
    'edit_orders': 'Edit orders',
    'delete_orders': 'Delete orders',
    'view_products': 'View products',
    'edit_products': 'Edit products',
    'delete_products': 'Delete products',
    'manage_inventory': 'Manage inventory',
    'bulk_operations': 'Bulk operations',
    'view_analytics': 'View analytics',
    'manage_settings': 'Manage settings',
    'backup_data': 'Download backups',
    'restore_data': 'Restore backups',
}

ROLE_PERMISSIONS = {
    'super_admin': frozenset(ADMIN_PERMISSIONS),
    'admin': frozenset(ADMIN_PERMISSIONS) - {'delete_customers', 'manage_settings', 'restore_data'},
    'manager': frozenset({
        'view_customers', 'view_orders', 'edit_orders', 'view_products',
        'edit_products', 'manage_inventory', 'view_analytics',
    }),
}

_DURATION_RE = re.compile(r'^\s*(\d+)\s*([smhd]?)\s*$')
_DURATION_UNITS = {'': 1, 's': 1, 'm': 60, 'h': 3600, 'd': 86400}


def parse_duration(value) -> timedelta:
    """Parse '24h', '30m', '7d' or a plain number of seconds."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    match = _DURATION_RE.match(str(value).lower())
    if not match:
        raise ValueError(f'Unrecognised duration: {value!r}')
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _DURATION_UNITS[unit])


def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=rounds)).decode('utf-8')


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not password or not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        # malformed hash
        return False


@dataclass
class AdminIdentity:
    id: str
    email: str
    name: str
    role: str
    permissions: List[str] = field(default_factory=list)
    login_time: int = 0

    @classmethod
    def for_role(cls, user_id: str, email: str, name: str, role: str, login_time: int) -> 'AdminIdentity':
        permissions = sorted(ROLE_PERMISSIONS.get(role, frozenset()))
        return cls(id=user_id, email=email, name=name, role=role,
                   permissions=permissions, login_time=login_time)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'role': self.role,
            'permissions': list(self.permissions),
            'loginTime': self.login_time,
        }


def has_permission(identity: Optional[AdminIdentity], permission: str) -> bool:
    if identity is None:
        return False
    return permission in identity.permissions


class AdminAuth:
    """Credential checks and session tokens for the single admin identity."""

    def __init__(self, admin_email: str, password_hash: str, jwt_secret: str,
                 expires_in='24h', session_timeout: int = 24 * 60 * 60,
                 admin_name: str = 'Admin User', clock: Callable[[], float] = time.time):
        self.admin_email = admin_email
        self.password_hash = password_hash
        self.jwt_secret = jwt_secret
        self.expires_in = parse_duration(expires_in)
        self.session_timeout = session_timeout
        self.admin_name = admin_name
        self.clock = clock

    def authenticate(self, email: str, password: str) -> Optional[AdminIdentity]:
        if not email or email != self.admin_email:
            print("[WARN] Admin login rejected: unknown email")
            return None

        if not verify_password(password, self.password_hash):
            print("[WARN] Admin login rejected: bad password")
            return None

        return AdminIdentity.for_role(
            user_id='admin-1',
            email=self.admin_email,
            name=self.admin_name,
            role='super_admin',
            login_time=int(self.clock() * 1000),
        )

    def issue_token(self, identity: AdminIdentity, expires_in=None) -> str:
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        lifetime = parse_duration(expires_in) if expires_in is not None else self.expires_in
        payload = {
            'userId': identity.id,
            'email': identity.email,
            'role': identity.role,
            'iat': int(now.timestamp()),
            'exp': int((now + lifetime).timestamp()),
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=JWT_ALGORITHM)

    def verify_token(self, token: Optional[str]) -> Optional[dict]:
        if not token or not isinstance(token, str):
            return None
        try:
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[JWT_ALGORITHM],
                options={'require': ['exp', 'iat']},
            )
        except jwt.PyJWTError:
            return None
        if not all(payload.get(key) for key in ('userId', 'email', 'role')):
            return None
        return payload

    def is_session_valid(self, issued_at_ms: int) -> bool:
        now_ms = self.clock() * 1000
        return (now_ms - issued_at_ms) < self.session_timeout * 1000

    def verify_session(self, token: Optional[str]) -> Optional[AdminIdentity]:
        """Token signature/expiry check plus the session timeout check."""
        payload = self.verify_token(token)
        if payload is None:
            return None
        login_time = int(payload['iat']) * 1000
        if not self.is_session_valid(login_time):
            return None
        return AdminIdentity.for_role(
            user_id=payload['userId'],
            email=payload['email'],
            name=self.admin_name,
            role=payload['role'],
            login_time=login_time,
        )


def csrf_token_for(session_token: str, secret: str) -> str:
    return hmac.new(secret.encode('utf-8'), session_token.encode('utf-8'), hashlib.sha256).hexdigest()


def verify_csrf(session_token: str, candidate: Optional[str], secret: str) -> bool:
    if not candidate:
        return False
    return hmac.compare_digest(csrf_token_for(session_token, secret), candidate)


class LoginRateLimiter:
    """Fixed-window counter of failed logins per source IP.

    In-memory only: state is lost on restart and not shared between
    processes.
    """

    def __init__(self, max_attempts: int = 5, window_seconds: int = 15 * 60,
                 clock: Callable[[], float] = time.monotonic):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.clock = clock
        self._attempts: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def is_limited(self, ip: str) -> bool:
        with self._lock:
            attempt = self._attempts.get(ip)
            if not attempt:
                return False
            if self.clock() > attempt['reset_at']:
                del self._attempts[ip]
                return False
            return attempt['count'] >= self.max_attempts

    def record_failure(self, ip: str) -> None:
        now = self.clock()
        with self._lock:
            attempt = self._attempts.get(ip)
            if not attempt or now > attempt['reset_at']:
                self._attempts[ip] = {'count': 1, 'reset_at': now + self.window_seconds}
            else:
                attempt['count'] += 1

    def reset(self, ip: str) -> None:
        with self._lock:
            self._attempts.pop(ip, None)
