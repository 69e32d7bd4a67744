import logging

from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user
from sqlalchemy.exc import IntegrityError

from speakup.auth import issue_token
from speakup.models import db, User
from shared.errors import ValidationError, AuthError, ConflictError

logger = logging.getLogger(__name__)

bp = Blueprint('auth', __name__)


@bp.route('/api/auth/signup', methods=['POST'])
def signup():
    data = request.get_json(silent=True) or {}
    full_name = str(data.get('fullName') or '').strip()
    email = str(data.get('email') or '').strip().lower()
    password = str(data.get('password') or '')

    if not full_name or not email or not password:
        raise ValidationError("Full Name, Email and Password are required")
    if User.query.filter_by(email=email).first():
        raise ConflictError("Email already registered")

    user = User(
        full_name=full_name,
        email=email,
        role='admin' if data.get('role') == 'admin' else 'user'
    )
    user.set_password(password)
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        # Lost a race with a concurrent signup for the same email
        db.session.rollback()
        raise ConflictError("Email already registered")

    logger.info("User %s signed up", user.id)
    return jsonify({'user': user.to_dict(), 'token': issue_token(user)}), 201


@bp.route('/api/auth/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    email = str(data.get('email') or '').strip().lower()
    password = str(data.get('password') or '')

    if not email or not password:
        raise ValidationError("Email and Password are required")

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        raise AuthError("Invalid credentials")

    return jsonify({'user': user.to_dict(), 'token': issue_token(user)})


@bp.route('/api/user/me', methods=['GET'])
@login_required
def me():
    return jsonify({'user': current_user.to_dict()})
