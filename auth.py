"""
Caller identity for the pipeline.

Tokens are issued by the external identity service; this module only
verifies them (HS256, shared JWT_SECRET) and resolves the caller's user id.
"""

import datetime
import logging
from functools import wraps

import jwt
from flask import current_app, jsonify, request

from models import db, User

logger = logging.getLogger(__name__)


def generate_token(user_id, expires_in=datetime.timedelta(days=30)):
    """Mint a token the way the identity service does (used by tests and tooling)."""
    payload = {
        'user_id': user_id,
        'exp': datetime.datetime.now(datetime.timezone.utc) + expires_in,
    }
    return jwt.encode(payload, current_app.config['JWT_SECRET'], algorithm='HS256')


def verify_token(token):
    """Verify JWT token and return user_id"""
    if not token:
        return None
    try:
        payload = jwt.decode(token, current_app.config['JWT_SECRET'], algorithms=['HS256'])
        return payload.get('user_id')
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def resolve_user_id(token):
    """Return the user id for a valid token whose user exists, else None."""
    user_id = verify_token(token)
    if not user_id:
        return None
    if not db.session.get(User, user_id):
        logger.warning("Token for unknown user %s rejected", user_id)
        return None
    return user_id


def require_auth(f):
    """Decorator to require authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = request.headers.get('Authorization', '').replace('Bearer ', '')
        user_id = resolve_user_id(token)
        if not user_id:
            return jsonify({'error': 'Unauthorized', 'code': 'unauthorized'}), 401
        return f(user_id=user_id, *args, **kwargs)
    return decorated_function
