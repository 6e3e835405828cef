# middleware/security.py
"""
Security Middleware for Request Processing
"""

from dataclasses import dataclass
from functools import wraps
from typing import Optional
import logging

import jwt
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask import request, jsonify, g, current_app

from core.database_models import UserRole

logger = logging.getLogger(__name__)

# Bound to the app in create_app; public endpoints add their own limits
limiter = Limiter(key_func=get_remote_address)


@dataclass
class AuthenticatedUser:
    id: str
    email: Optional[str] = None


def security_headers(response):
    """Add security headers to all responses"""
    for header, value in current_app.config.get('SECURITY_HEADERS', {}).items():
        response.headers.setdefault(header, value)
    if response.mimetype == 'application/json':
        response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"
    return response


def _bearer_token() -> Optional[str]:
    header = request.headers.get('Authorization', '')
    if not header.lower().startswith('bearer '):
        return None
    token = header[7:].strip()
    return token or None


def decode_user(token: str) -> Optional[AuthenticatedUser]:
    """Verify a platform access token and return its subject"""
    try:
        claims = jwt.decode(
            token,
            current_app.config['AUTH_JWT_SECRET'],
            algorithms=current_app.config.get('AUTH_JWT_ALGORITHMS', ['HS256']),
            audience=current_app.config.get('AUTH_JWT_AUDIENCE'),
        )
    except jwt.PyJWTError as e:
        logger.warning(f"Rejected access token from {request.remote_addr}: {e}")
        return None

    if not claims.get('sub'):
        return None
    return AuthenticatedUser(id=claims['sub'], email=claims.get('email'))


def is_admin(user_id: str) -> bool:
    return UserRole.query.filter_by(user_id=user_id, role='admin').first() is not None


def require_auth(f):
    """Decorator to require a valid bearer token"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        user = decode_user(token) if token else None
        if user is None:
            logger.warning(f"Unauthorized access attempt to {request.endpoint} from {request.remote_addr}")
            return jsonify({'error': 'Unauthorized'}), 401

        g.current_user = user
        return f(*args, **kwargs)
    return decorated_function


def require_admin(f):
    """Decorator to require the admin role"""
    @wraps(f)
    @require_auth
    def decorated_function(*args, **kwargs):
        if not is_admin(g.current_user.id):
            logger.warning(f"Non-admin user {g.current_user.id} denied access to {request.endpoint}")
            return jsonify({'error': 'Admin access required'}), 403
        return f(*args, **kwargs)
    return decorated_function


def optional_auth(f):
    """Resolve the caller when a token is present, otherwise continue anonymously"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        g.current_user = decode_user(token) if token else None
        return f(*args, **kwargs)
    return decorated_function
