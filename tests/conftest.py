"""
Pytest configuration and fixtures for SpeakUp tests.
"""
import os
import sys
from datetime import datetime

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from speakup.app import create_app
from speakup.auth import issue_token
from speakup.extensions import socketio
from speakup.models import db, User

NOW = datetime(2025, 1, 6, 12, 0, 0)


def make_user(name: str, email: str, password: str = 'secret123') -> User:
    user = User(full_name=name, email=email)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app('testing')
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture(scope='function')
def clean_db(app):
    """Clear all tables and in-memory presence before each test."""
    with app.app_context():
        db.session.remove()
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

    app.presence.clear()
    for room_id in app.ticker.tracked():
        app.ticker.untrack(room_id)
    yield


@pytest.fixture(scope='function')
def db_session(app, clean_db):
    """Database session inside an app context, for service-level tests."""
    with app.app_context():
        yield db.session
        db.session.rollback()


@pytest.fixture
def users(db_session):
    """Six users named 'User 1'..'User 6'."""
    return [make_user(f'User {i}', f'user{i}@example.com') for i in range(1, 7)]


@pytest.fixture
def client(app, clean_db):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def accounts(app, clean_db):
    """
    Six users with bearer tokens for HTTP and socket tests.

    Created in a short-lived app context: requests must not share one, or
    the logged-in user cached on ``g`` would leak between them.
    """
    created = []
    with app.app_context():
        for i in range(1, 7):
            user = make_user(f'User {i}', f'user{i}@example.com')
            token = issue_token(user)
            created.append({
                'id': user.id,
                'name': user.full_name,
                'token': token,
                'headers': {'Authorization': f'Bearer {token}'}
            })
    return created


@pytest.fixture
def socket_client(app, accounts):
    """Factory for authenticated Socket.IO test clients; disconnects them afterwards."""
    clients = []

    def connect(account):
        sc = socketio.test_client(app, auth={'token': account['token']})
        clients.append(sc)
        return sc

    yield connect

    for sc in clients:
        if sc.is_connected():
            sc.disconnect()


@pytest.fixture
def mock_redis(mocker):
    """MagicMock standing in for a redis.Redis connection."""
    mock = mocker.MagicMock()
    mock.ping.return_value = True
    mock.lrange.return_value = []
    return mock
