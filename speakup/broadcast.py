import logging
import threading
from typing import Optional, Set, Tuple

import redis

from .models import GdRoom, GdTranscriptEntry, to_millis
from shared.events import Event, EventType, room_event, tournament_event
from shared.pubsub import PubSubClient
from shared.state_machine import RoomPhase, room_phase

logger = logging.getLogger(__name__)

TOURNAMENTS_CHANNEL = 'tournaments'


def gd_channel(room_id: str) -> str:
    return f"gd:{room_id}"


def tournament_room(tournament_id: str) -> str:
    return f"tournament:{tournament_id}"


def extempore_room(session_id: str) -> str:
    return f"extempore:{session_id}"


class Presence:
    """In-process map of socket connections to users and the GD room each sits in."""

    def __init__(self):
        self._lock = threading.Lock()
        self._users = {}
        self._rooms = {}

    def connect(self, sid: str, user_id: int):
        with self._lock:
            self._users[sid] = user_id

    def set_room(self, sid: str, room_id: Optional[str]):
        with self._lock:
            if room_id:
                self._rooms[sid] = room_id
            else:
                self._rooms.pop(sid, None)

    def room_of(self, sid: str) -> Optional[str]:
        with self._lock:
            return self._rooms.get(sid)

    def user_of(self, sid: str) -> Optional[int]:
        with self._lock:
            return self._users.get(sid)

    def drop(self, sid: str) -> Tuple[Optional[int], Optional[str]]:
        with self._lock:
            return self._users.pop(sid, None), self._rooms.pop(sid, None)

    def online_users(self, room_id: str) -> Set[int]:
        with self._lock:
            return {self._users[sid] for sid, rid in self._rooms.items()
                    if rid == room_id and sid in self._users}

    def clear(self):
        with self._lock:
            self._users.clear()
            self._rooms.clear()


class Broadcaster:
    """
    Fans room and tournament changes out to Socket.IO channels, and mirrors
    them into Redis when a PubSubClient is configured.
    """

    def __init__(self, socketio, presence: Presence, pubsub: PubSubClient = None):
        self.socketio = socketio
        self.presence = presence
        self.pubsub = pubsub

    def serialize_room(self, room: GdRoom) -> dict:
        return room.to_dict(online=self.presence.online_users(room.room_id))

    def _mirror_room(self, room_id: str, event: Event):
        if self.pubsub is None:
            return
        try:
            self.pubsub.publish_room_event(room_id, event)
        except redis.exceptions.RedisError as e:
            logger.warning("Failed to mirror room event %s for %s: %s", event.type, room_id, e)

    def _mirror_tournament(self, tournament_id: str, event: Event):
        if self.pubsub is None:
            return
        try:
            self.pubsub.publish_tournament_event(tournament_id, event)
        except redis.exceptions.RedisError as e:
            logger.warning("Failed to mirror tournament event %s for %s: %s", event.type, tournament_id, e)

    # ==================== Rooms ====================

    def room_state(self, room: GdRoom, event_type: EventType = EventType.ROOM_UPDATED):
        payload = self.serialize_room(room)
        self.socketio.emit('gd:room', payload, to=gd_channel(room.room_id))
        self._mirror_room(room.room_id, room_event(event_type, room.room_id, room=payload))

    def room_joined(self, room: GdRoom):
        """A join that filled a global room also announces its countdown."""
        if room_phase(room) == RoomPhase.COUNTDOWN:
            self.room_state(room, EventType.ROOM_COUNTDOWN)
        else:
            self.room_state(room, EventType.PARTICIPANT_JOINED)

    def room_started(self, room: GdRoom):
        self.socketio.emit('gd:started', {
            'roomId': room.room_id,
            'prepStartedAt': to_millis(room.prep_started_at),
            'prepSeconds': room.prep_seconds,
            'startedAt': to_millis(room.started_at),
            'durationSeconds': room.duration_seconds,
        }, to=gd_channel(room.room_id))
        self.room_state(room, EventType.ROOM_STARTED)

    def room_discussion(self, room: GdRoom):
        self.room_state(room, EventType.ROOM_DISCUSSION)

    def room_ended(self, room: GdRoom):
        self.socketio.emit('gd:ended', {'roomId': room.room_id}, to=gd_channel(room.room_id))
        self.room_state(room, EventType.ROOM_ENDED)

    def room_timer(self, event_name: str, room_id: str, remaining_seconds: int):
        """gd:countdown, gd:prep or gd:timer; Socket.IO only."""
        self.socketio.emit(event_name, {
            'roomId': room_id,
            'remainingSeconds': remaining_seconds
        }, to=gd_channel(room_id))

    def transcript_chunk(self, room_id: str, entry: GdTranscriptEntry):
        payload = dict(entry.to_dict(), roomId=room_id)
        self.socketio.emit('gd:transcript:chunk', payload, to=gd_channel(room_id))
        self._mirror_room(room_id, room_event(EventType.TRANSCRIPT_CHUNK, room_id, **payload))

    # ==================== Tournaments ====================

    def tournament_changed(self, event_type: EventType, tournament_id: str, listed: bool = True):
        """
        Notify viewers of one tournament and, when ``listed``, the
        tournaments list page.
        """
        event = tournament_event(event_type, tournament_id)
        payload = {'action': event.data['action'], 'tournamentId': tournament_id}

        self.socketio.emit('tournament:update', payload, to=tournament_room(tournament_id))
        if listed:
            self.socketio.emit('tournaments:update', payload, to=TOURNAMENTS_CHANNEL)
        self._mirror_tournament(tournament_id, event)

    # ==================== Extempore ====================

    def extempore_update(self, session_id: str, transcript: str, completed: bool = False):
        name = 'extempore:completed' if completed else 'extempore:update'
        self.socketio.emit(name, {
            'sessionId': session_id,
            'transcript': transcript
        }, to=extempore_room(session_id))
