import os
import logging

import redis
from flask import Flask, jsonify, Response
from flask_cors import CORS
from flask_login import login_required

from .config import config
from .extensions import socketio, login_manager
from .models import db
from .broadcast import Broadcaster, Presence
from .room_registry import RoomRegistry
from .matchmaker import Matchmaker
from .tournament_registry import TournamentRegistry
from .extempore import ExtemporeService
from .ticker import RoomTicker
from .name_generator import normalize_code
from shared.errors import ServiceError
from shared.pubsub import PubSubClient, room_channel, tournament_channel
from shared.state_machine import TransitionError

logger = logging.getLogger(__name__)

SSE_REPLAY_COUNT = 20


def create_app(config_name: str = None) -> Flask:
    """Application factory for the SpeakUp service."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)
    CORS(app, resources={r"/api/*": {"origins": app.config['CLIENT_ORIGIN']}})
    socketio.init_app(
        app,
        cors_allowed_origins=app.config['CLIENT_ORIGIN'],
        message_queue=app.config['REDIS_URL'] or None
    )

    # Create tables
    with app.app_context():
        db.create_all()

    # Store services on app for access in routes and socket handlers
    app.redis = redis.from_url(app.config['REDIS_URL'], decode_responses=True) if app.config['REDIS_URL'] else None
    app.pubsub = PubSubClient(redis_client=app.redis) if app.redis is not None else None
    app.presence = Presence()
    app.broadcaster = Broadcaster(socketio, app.presence, app.pubsub)
    app.rooms = RoomRegistry()
    app.matchmaker = Matchmaker(app.rooms)
    app.tournaments = TournamentRegistry(app.broadcaster)
    app.extempore = ExtemporeService()
    app.ticker = RoomTicker(app, socketio, app.rooms, app.broadcaster)

    register_error_handlers(app)
    register_routes(app)

    # Socket.IO handlers register themselves on import
    from . import sockets  # noqa: F401

    if app.config['ROOM_TICKER_ENABLED']:
        app.ticker.start()

    logger.info("SpeakUp app created (config=%s, redis=%s)", config_name, 'on' if app.redis else 'off')
    return app


def register_error_handlers(app: Flask):
    """Render service errors as {"message": ...} with their status code."""

    @app.errorhandler(ServiceError)
    def handle_service_error(error: ServiceError):
        db.session.rollback()
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(TransitionError)
    def handle_transition_error(error: TransitionError):
        db.session.rollback()
        return jsonify({'message': error.reason}), 400


def _event_stream(app: Flask, channel: str) -> Response:
    """Relay one Redis channel as server-sent events."""
    if not app.config['REDIS_URL']:
        return jsonify({'message': 'Event streaming requires Redis'}), 503

    def generate():
        # Dedicated connection with no read timeout for the long-lived stream
        sse_redis = redis.from_url(
            app.config['REDIS_URL'],
            decode_responses=True,
            socket_timeout=None,
            socket_connect_timeout=5
        )
        pubsub = sse_redis.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(channel)

        yield f"data: {{\"type\":\"connected\",\"channel\":\"{channel}\"}}\n\n"

        try:
            # Replay the capped log, oldest first, so late subscribers catch up
            for event in reversed(app.pubsub.get_recent_events(channel, SSE_REPLAY_COUNT)):
                yield f"data: {event.to_json()}\n\n"

            while True:
                message = pubsub.get_message(timeout=30)
                if message and message['type'] == 'message':
                    yield f"data: {message['data']}\n\n"
                else:
                    yield ": keepalive\n\n"
        finally:
            pubsub.close()

    return Response(generate(), mimetype='text/event-stream', headers={
        'Cache-Control': 'no-cache',
        'X-Accel-Buffering': 'no'
    })


def register_routes(app: Flask):
    """Register API blueprints, SSE streams and the health check."""
    from .routes import auth, gd, tournaments, extempore

    app.register_blueprint(auth.bp)
    app.register_blueprint(gd.bp)
    app.register_blueprint(tournaments.bp)
    app.register_blueprint(extempore.bp)

    # ==================== Real-time Events (SSE) ====================

    @app.route('/api/v1/events/rooms/<room_id>')
    @login_required
    def api_room_events(room_id: str):
        """SSE endpoint for one GD room."""
        return _event_stream(app, room_channel(normalize_code(room_id)))

    @app.route('/api/v1/events/tournaments/<tournament_id>')
    @login_required
    def api_tournament_events(tournament_id: str):
        """SSE endpoint for one tournament."""
        return _event_stream(app, tournament_channel(normalize_code(tournament_id)))

    # ==================== Health Check ====================

    @app.route('/health')
    def health_check():
        """Health check endpoint."""
        if app.pubsub is None:
            redis_state = 'disabled'
        else:
            redis_state = 'connected' if app.pubsub.ping() else 'disconnected'

        try:
            db.session.execute(db.text('SELECT 1'))
            db_ok = True
        except Exception as e:
            logger.warning("Database health check failed: %s", e)
            db_ok = False

        healthy = db_ok and redis_state != 'disconnected'
        return jsonify({
            'status': 'healthy' if healthy else 'unhealthy',
            'redis': redis_state,
            'database': 'connected' if db_ok else 'disconnected',
            'trackedRooms': len(app.ticker.tracked())
        }), 200 if healthy else 503
