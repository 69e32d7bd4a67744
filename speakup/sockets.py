import functools
import logging

from flask import current_app, request
from flask_socketio import join_room, leave_room

from .auth import user_from_token, bearer_token
from .broadcast import gd_channel, tournament_room, extempore_room, TOURNAMENTS_CHANNEL
from .extensions import socketio
from .models import db, User
from .name_generator import normalize_code
from shared.errors import ServiceError
from shared.events import EventType
from shared.state_machine import TransitionError, room_phase

logger = logging.getLogger(__name__)


def _socket_user():
    user_id = current_app.presence.user_of(request.sid)
    if user_id is None:
        return None
    return db.session.get(User, user_id)


def acknowledged(handler):
    """
    Run ``handler(user, payload)`` and turn its outcome into the ack
    ``{"ok": True, ...}`` or ``{"ok": False, "error": message}``.
    """
    @functools.wraps(handler)
    def wrapper(data=None):
        user = _socket_user()
        if user is None:
            return {'ok': False, 'error': 'Unauthorized'}
        payload = data if isinstance(data, dict) else {}
        try:
            result = handler(user, payload) or {}
        except ServiceError as e:
            db.session.rollback()
            return {'ok': False, 'error': e.message}
        except TransitionError as e:
            db.session.rollback()
            return {'ok': False, 'error': e.reason}
        except Exception:
            db.session.rollback()
            logger.exception("Socket handler %s failed", handler.__name__)
            return {'ok': False, 'error': 'Internal server error'}
        return dict(ok=True, **result)
    return wrapper


def _enter_room_channel(room_id: str):
    """Move this connection into the room's channel, leaving any previous one."""
    presence = current_app.presence
    previous = presence.room_of(request.sid)
    if previous and previous != room_id:
        leave_room(gd_channel(previous))
    join_room(gd_channel(room_id))
    presence.set_room(request.sid, room_id)


def _room_reply(room, with_remaining: bool = False) -> dict:
    reply = {'room': current_app.broadcaster.serialize_room(room)}
    if with_remaining:
        reply['remainingSeconds'] = current_app.rooms.remaining_seconds(room)
        reply['phase'] = room_phase(room).value
    return reply


# ==================== Connection ====================

@socketio.on('connect')
def on_connect(auth=None):
    token = auth.get('token') if isinstance(auth, dict) else None
    user = user_from_token(token or bearer_token(request.headers.get('Authorization')))
    if user is None:
        raise ConnectionRefusedError('Unauthorized')
    current_app.presence.connect(request.sid, user.id)
    logger.debug("Socket %s connected as user %s", request.sid, user.id)


@socketio.on('disconnect')
def on_disconnect(reason=None):
    # Navigating between room pages drops the socket; membership stays
    user_id, room_id = current_app.presence.drop(request.sid)
    logger.debug("Socket %s (user %s) disconnected", request.sid, user_id)
    if not room_id:
        return
    room = current_app.rooms.get_room(room_id)
    if room:
        current_app.broadcaster.room_state(room)


# ==================== Group Discussion ====================

@socketio.on('gd:create')
@acknowledged
def on_gd_create(user, data):
    room = current_app.rooms.create_room(
        user,
        room_name=data.get('roomName'),
        topic=data.get('topic'),
        max_participants=data.get('maxParticipants'),
        duration_seconds=data.get('durationSeconds')
    )
    _enter_room_channel(room.room_id)
    current_app.broadcaster.room_state(room, EventType.ROOM_CREATED)
    return _room_reply(room)


@socketio.on('gd:join')
@acknowledged
def on_gd_join(user, data):
    room = current_app.rooms.join_room(user, data.get('roomId'))
    _enter_room_channel(room.room_id)
    current_app.broadcaster.room_joined(room)
    current_app.ticker.watch(room)
    return _room_reply(room, with_remaining=True)


@socketio.on('gd:get')
@acknowledged
def on_gd_get(user, data):
    room = current_app.rooms.require_room(data.get('roomId'))
    current_app.ticker.watch(room)
    return _room_reply(room, with_remaining=True)


@socketio.on('gd:start')
@acknowledged
def on_gd_start(user, data):
    room = current_app.rooms.start_room(user, data.get('roomId'))
    current_app.ticker.track(room.room_id)
    current_app.broadcaster.room_started(room)
    return _room_reply(room)


@socketio.on('gd:prep:skip')
@acknowledged
def on_gd_prep_skip(user, data):
    room = current_app.rooms.skip_prep(user, data.get('roomId'))
    current_app.broadcaster.room_discussion(room)
    return _room_reply(room)


@socketio.on('gd:end')
@acknowledged
def on_gd_end(user, data):
    room = current_app.rooms.end_room(user, data.get('roomId'))
    current_app.ticker.untrack(room.room_id)
    current_app.broadcaster.room_ended(room)
    return _room_reply(room)


@socketio.on('gd:leave')
@acknowledged
def on_gd_leave(user, data):
    presence = current_app.presence
    room_id = normalize_code(data.get('roomId')) or presence.room_of(request.sid)
    if not room_id:
        return {}

    room = current_app.rooms.leave_room(user, room_id)
    leave_room(gd_channel(room_id))
    if presence.room_of(request.sid) == room_id:
        presence.set_room(request.sid, None)

    if room is not None and room.members:
        current_app.broadcaster.room_state(room, EventType.PARTICIPANT_LEFT)
    return {}


@socketio.on('gd:transcript:chunk')
@acknowledged
def on_gd_transcript_chunk(user, data):
    room_id = normalize_code(data.get('roomId')) or current_app.presence.room_of(request.sid)
    entry = current_app.rooms.add_transcript_chunk(user, room_id, data.get('text'))
    if entry is not None:
        current_app.broadcaster.transcript_chunk(room_id, entry)
    return {}


# ==================== Extempore ====================

@socketio.on('extempore:start')
@acknowledged
def on_extempore_start(user, data):
    session = current_app.extempore.start(
        user,
        data.get('topic'),
        data.get('category'),
        data.get('durationSeconds')
    )
    join_room(extempore_room(session.session_id))
    return {'sessionId': session.session_id}


@socketio.on('extempore:chunk')
@acknowledged
def on_extempore_chunk(user, data):
    session = current_app.extempore.append_chunk(user, data.get('sessionId'), data.get('text'))
    if session is not None:
        current_app.broadcaster.extempore_update(session.session_id, session.transcript)
    return {}


@socketio.on('extempore:stop')
@acknowledged
def on_extempore_stop(user, data):
    session = current_app.extempore.stop(
        user,
        data.get('sessionId'),
        data.get('finalTranscript'),
        data.get('durationSeconds')
    )
    current_app.broadcaster.extempore_update(session.session_id, session.transcript, completed=True)
    return {}


# ==================== Tournaments ====================

@socketio.on('tournaments:subscribe')
@acknowledged
def on_tournaments_subscribe(user, data):
    join_room(TOURNAMENTS_CHANNEL)
    return {}


@socketio.on('tournament:subscribe')
@acknowledged
def on_tournament_subscribe(user, data):
    tournament = current_app.tournaments.require_tournament(data.get('tournamentId'))
    join_room(tournament_room(tournament.tournament_id))
    return {'tournamentId': tournament.tournament_id}
