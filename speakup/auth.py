import logging
from datetime import datetime, timedelta
from typing import Optional

import jwt
from flask import current_app, jsonify

from .extensions import login_manager
from .models import db, User

logger = logging.getLogger(__name__)


def issue_token(user: User) -> str:
    """Signed bearer token carrying the user id and role."""
    payload = {
        'id': str(user.id),
        'role': user.role,
        'exp': datetime.utcnow() + timedelta(days=current_app.config['JWT_EXPIRES_DAYS'])
    }
    return jwt.encode(
        payload,
        current_app.config['JWT_SECRET'],
        algorithm=current_app.config['JWT_ALGORITHM']
    )


def user_from_token(token: str) -> Optional[User]:
    """Resolve a bearer token to its user, or None if invalid or expired."""
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            current_app.config['JWT_SECRET'],
            algorithms=[current_app.config['JWT_ALGORITHM']]
        )
    except jwt.ExpiredSignatureError:
        logger.debug("Rejected expired token")
        return None
    except jwt.InvalidTokenError:
        logger.debug("Rejected invalid token")
        return None

    try:
        user_id = int(payload.get('id'))
    except (TypeError, ValueError):
        return None
    return db.session.get(User, user_id)


def bearer_token(header_value: str) -> Optional[str]:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) == 2 and parts[0].lower() == 'bearer':
        return parts[1]
    return None


@login_manager.request_loader
def load_user_from_request(request):
    # EventSource cannot set headers, so streams pass the token as ?token=
    token = bearer_token(request.headers.get('Authorization')) or request.args.get('token')
    return user_from_token(token)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'message': 'Unauthorized'}), 401
