import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Callable

from flask import current_app
from sqlalchemy import or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from .models import db, GdRoom, GdParticipant, GdTranscriptEntry, User
from .name_generator import generate_room_code, normalize_code
from shared.errors import ValidationError, ForbiddenError, NotFoundError, ConflictError
from shared.state_machine import (
    RoomStateMachine, RoomState, RoomPhase, TransitionError, room_phase
)

logger = logging.getLogger(__name__)

ROOM_MODES = ('custom', 'global', 'tournament')
CODE_ATTEMPTS = 5


@dataclass
class TickResult:
    room: GdRoom
    phase: RoomPhase
    remaining_seconds: int
    transitions: List[str] = field(default_factory=list)


def _setting(name: str, default=None):
    return current_app.config.get(name, default)


def _to_int(value, default: int, label: str) -> int:
    if value is None or value == '':
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"{label} must be a number")


def _elapsed(since: datetime, now: datetime) -> int:
    return max(0, int((now - since).total_seconds()))


class RoomRegistry:
    """
    Owns the Group Discussion room lifecycle:
    - Create rooms and admit/release participants
    - Host actions: start, skip preparation, end
    - Timer-driven transitions (countdown -> prep -> discussion -> completed)
    - Transcript capture during the discussion

    Each mutation re-reads the room inside a retry loop; the room's version
    column turns concurrent writers into a StaleDataError for all but one.
    """

    # ==================== Lookup ====================

    def get_room(self, room_id: str) -> Optional[GdRoom]:
        """Get a room by its public code."""
        code = normalize_code(room_id)
        if not code:
            return None
        return GdRoom.query.filter_by(room_id=code).first()

    def require_room(self, room_id: str) -> GdRoom:
        room = self.get_room(room_id)
        if not room:
            raise NotFoundError("Room not found")
        return room

    def list_rooms(self, status: str = 'waiting', mode: str = 'custom') -> List[GdRoom]:
        """List rooms, newest first."""
        query = GdRoom.query
        if status:
            query = query.filter_by(status=status)
        if mode:
            query = query.filter_by(mode=mode)
        return query.order_by(GdRoom.created_at.desc(), GdRoom.id.desc()).all()

    def rooms_needing_ticks(self) -> List[str]:
        """Rooms with a timer running: active rooms and counting-down waiting rooms."""
        rooms = GdRoom.query.filter(or_(
            GdRoom.status == RoomState.ACTIVE.value,
            and_(GdRoom.status == RoomState.WAITING.value, GdRoom.countdown_started_at.isnot(None))
        )).all()
        return [r.room_id for r in rooms]

    # ==================== Concurrency ====================

    def run_with_retry(self, operation: Callable, *args, **kwargs):
        """
        Run ``operation`` and commit. On a version conflict (or a duplicate
        participant insert) roll back and run it again against fresh rows.
        """
        attempts = max(1, _setting('OPTIMISTIC_RETRIES', 3))
        for attempt in range(1, attempts + 1):
            try:
                result = operation(*args, **kwargs)
                db.session.commit()
                return result
            except (StaleDataError, IntegrityError) as e:
                db.session.rollback()
                logger.warning("Room write conflict (attempt %d/%d): %s", attempt, attempts, e)
            except Exception:
                db.session.rollback()
                raise
        raise ConflictError("Room was modified concurrently, please retry")

    @staticmethod
    def _touch(room: GdRoom, now: datetime):
        # Forces an UPDATE of the room row so the version check runs,
        # even when updated_at already holds this timestamp
        room.updated_at = now
        flag_modified(room, 'updated_at')

    # ==================== Creation ====================

    def _new_room_code(self) -> str:
        code = generate_room_code()
        for _ in range(CODE_ATTEMPTS):
            if not GdRoom.query.filter_by(room_id=code).first():
                break
            code = generate_room_code()
        return code

    def create_room(
        self,
        user: User,
        room_name: str = None,
        topic: str = None,
        max_participants=None,
        duration_seconds=None,
        mode: str = 'custom',
        countdown_seconds: int = None,
        now: datetime = None
    ) -> GdRoom:
        """Create a waiting room with the creator as host and first participant."""
        now = now or datetime.utcnow()
        if mode not in ROOM_MODES:
            raise ValidationError(f"Unknown room mode '{mode}'")

        low = _setting('GD_MIN_PARTICIPANTS', 2)
        high = _setting('GD_MAX_PARTICIPANTS', 10)
        capacity = _to_int(max_participants, _setting('GD_DEFAULT_PARTICIPANTS', 5), "maxParticipants")
        capacity = max(low, min(high, capacity))

        duration = _to_int(duration_seconds, _setting('GD_DEFAULT_DURATION_SECONDS', 600), "durationSeconds")
        duration = max(_setting('GD_MIN_DURATION_SECONDS', 60), duration)

        room = GdRoom(
            room_id=self._new_room_code(),
            room_name=str(room_name or '').strip() or 'Custom GD Room',
            topic=str(topic or '').strip(),
            mode=mode,
            max_participants=capacity,
            duration_seconds=duration,
            prep_seconds=_setting('GD_PREP_SECONDS', 60),
            countdown_seconds=countdown_seconds if countdown_seconds is not None else _setting('GD_COUNTDOWN_SECONDS', 10),
            host_user_id=user.id,
            status=RoomState.WAITING.value,
            created_at=now,
            updated_at=now,
        )
        room.participants.append(GdParticipant(
            user_id=user.id,
            name=user.full_name,
            joined_at=now,
            last_seen_at=now
        ))
        db.session.add(room)
        db.session.commit()

        logger.info("Room %s created by user %s (mode=%s, capacity=%d)", room.room_id, user.id, mode, capacity)
        return room

    # ==================== Membership ====================

    def admit(self, room: GdRoom, user: User, now: datetime) -> GdParticipant:
        """Add ``user`` to ``room`` (or refresh an existing member). Caller commits."""
        participant = room.find_participant(user.id)
        if participant and participant.left_at is None:
            participant.last_seen_at = now
            self._touch(room, now)
            return participant

        if len(room.members) >= room.max_participants:
            raise ValidationError("Room is full")

        if participant:
            # Returning participant goes to the back of the host succession
            participant.left_at = None
            participant.joined_at = now
            participant.last_seen_at = now
            participant.name = user.full_name
        else:
            participant = GdParticipant(
                user_id=user.id,
                name=user.full_name,
                joined_at=now,
                last_seen_at=now
            )
            room.participants.append(participant)

        if room.host_user_id is None:
            room.host_user_id = user.id

        self._maybe_start_countdown(room, now)
        self._touch(room, now)
        return participant

    def _maybe_start_countdown(self, room: GdRoom, now: datetime):
        if room.mode != 'global' or room.status != RoomState.WAITING.value:
            return
        if room.countdown_started_at is not None:
            return
        if len(room.members) < room.max_participants:
            return

        sm = RoomStateMachine.from_state_string(room.status)
        sm.transition('countdown')
        room.countdown_started_at = now
        logger.info("Room %s is full, countdown of %ds started", room.room_id, room.countdown_seconds)

    def join_room(self, user: User, room_id: str, now: datetime = None) -> GdRoom:
        """Join a room that has not ended. Members rejoining just refresh their presence."""
        now = now or datetime.utcnow()

        def operation():
            room = self.require_room(room_id)
            if room.status == RoomState.COMPLETED.value:
                raise ValidationError("Room ended")
            self.admit(room, user, now)
            return room

        return self.run_with_retry(operation)

    def leave_room(self, user: User, room_id: str, now: datetime = None) -> Optional[GdRoom]:
        """Leave a room. Unknown or finished rooms make this a no-op."""
        now = now or datetime.utcnow()

        def operation():
            room = self.get_room(room_id)
            if not room or room.status == RoomState.COMPLETED.value:
                return room

            participant = room.find_participant(user.id)
            if not participant or participant.left_at is not None:
                return room

            participant.left_at = now
            members = sorted(room.members, key=lambda p: (p.joined_at, p.id or 0))

            if room.host_user_id == user.id:
                room.host_user_id = members[0].user_id if members else None

            if room.countdown_started_at is not None and len(members) < room.max_participants:
                sm = RoomStateMachine.from_state_string(room.status)
                sm.transition('cancel_countdown')
                room.countdown_started_at = None
                logger.info("Room %s countdown cancelled, %d/%d members", room.room_id, len(members), room.max_participants)

            if room.status == RoomState.WAITING.value and not members:
                self._end(room, now)
                logger.info("Room %s abandoned", room.room_id)

            self._touch(room, now)
            return room

        return self.run_with_retry(operation)

    # ==================== Host actions ====================

    def _require_host(self, room: GdRoom, user: User, action: str):
        if room.host_user_id != user.id:
            raise ForbiddenError(f"Only host can {action}")

    def _start(self, room: GdRoom, at: datetime, required: int):
        sm = RoomStateMachine.from_state_string(room.status)
        try:
            sm.transition('start', {'members': len(room.members), 'required': required})
        except TransitionError:
            if sm.can_transition('start'):
                raise ValidationError(f"At least {required} participants are needed to start")
            raise

        room.status = sm.state.value
        room.countdown_started_at = None
        room.prep_started_at = at
        room.started_at = None
        if not room.prep_seconds or room.prep_seconds <= 0:
            room.started_at = at

    def _begin_discussion(self, room: GdRoom, at: datetime):
        sm = RoomStateMachine.from_state_string(room.status)
        sm.transition('begin')
        room.started_at = at

    def _end(self, room: GdRoom, at: datetime):
        sm = RoomStateMachine.from_state_string(room.status)
        sm.transition('end')
        room.status = sm.state.value
        room.countdown_started_at = None
        room.ended_at = at

    def start_room(self, user: User, room_id: str, now: datetime = None) -> GdRoom:
        """Host starts the room: status becomes active and preparation begins."""
        now = now or datetime.utcnow()

        def operation():
            room = self.require_room(room_id)
            self._require_host(room, user, "start")
            if room.status != RoomState.WAITING.value:
                raise ValidationError("Room already started")

            required = 1 if room.mode == 'custom' else _setting('GD_MIN_PARTICIPANTS', 2)
            self._start(room, now, required)
            self._touch(room, now)
            return room

        room = self.run_with_retry(operation)
        logger.info("Room %s started by host %s", room.room_id, user.id)
        return room

    def skip_prep(self, user: User, room_id: str, now: datetime = None) -> GdRoom:
        """Host cuts the preparation phase short; the discussion timer starts now."""
        now = now or datetime.utcnow()

        def operation():
            room = self.require_room(room_id)
            self._require_host(room, user, "skip preparation")
            if room_phase(room) != RoomPhase.PREP:
                raise ValidationError("Room is not in preparation")
            self._begin_discussion(room, now)
            self._touch(room, now)
            return room

        return self.run_with_retry(operation)

    def end_room(self, user: User, room_id: str, now: datetime = None) -> GdRoom:
        """Host ends a waiting or active room."""
        now = now or datetime.utcnow()

        def operation():
            room = self.require_room(room_id)
            self._require_host(room, user, "end")
            if room.status == RoomState.COMPLETED.value:
                raise ValidationError("Room already ended")
            self._end(room, now)
            self._touch(room, now)
            return room

        room = self.run_with_retry(operation)
        logger.info("Room %s ended by host %s", room.room_id, user.id)
        return room

    # ==================== Timers ====================

    @staticmethod
    def remaining_seconds(room: GdRoom, now: datetime = None) -> int:
        """Seconds left in the current timed phase; the full duration before start."""
        now = now or datetime.utcnow()
        phase = room_phase(room)
        if phase == RoomPhase.COUNTDOWN:
            return max(0, room.countdown_seconds - _elapsed(room.countdown_started_at, now))
        if phase == RoomPhase.PREP:
            return max(0, room.prep_seconds - _elapsed(room.prep_started_at, now))
        if phase == RoomPhase.DISCUSSION:
            return max(0, room.duration_seconds - _elapsed(room.started_at, now))
        if phase == RoomPhase.COMPLETED:
            return 0
        return room.duration_seconds

    def _apply_due_transitions(self, room: GdRoom, now: datetime) -> List[str]:
        fired = []

        if room_phase(room) == RoomPhase.COUNTDOWN:
            due = room.countdown_started_at + timedelta(seconds=room.countdown_seconds)
            if now >= due:
                self._start(room, due, 1)
                fired.append('started')

        if room_phase(room) == RoomPhase.PREP:
            due = room.prep_started_at + timedelta(seconds=room.prep_seconds)
            if now >= due:
                self._begin_discussion(room, due)
                fired.append('discussion')

        if room_phase(room) == RoomPhase.DISCUSSION:
            due = room.started_at + timedelta(seconds=room.duration_seconds)
            if now >= due:
                self._end(room, due)
                fired.append('ended')

        return fired

    def tick(self, room_id: str, now: datetime = None) -> Optional[TickResult]:
        """
        Apply every timer transition that is due for the room. Several can
        fire in one call when the ticker fell behind.
        """
        now = now or datetime.utcnow()

        def operation():
            room = self.get_room(room_id)
            if not room:
                return None
            fired = self._apply_due_transitions(room, now)
            if fired:
                self._touch(room, now)
            return room, fired

        outcome = self.run_with_retry(operation)
        if outcome is None:
            return None

        room, fired = outcome
        if fired:
            logger.info("Room %s timer transitions: %s", room.room_id, ", ".join(fired))
        return TickResult(
            room=room,
            phase=room_phase(room),
            remaining_seconds=self.remaining_seconds(room, now),
            transitions=fired
        )

    # ==================== Transcript ====================

    def add_transcript_chunk(self, user: User, room_id: str, text: str, now: datetime = None) -> Optional[GdTranscriptEntry]:
        """Append an utterance from a member of an active room. Blank text is ignored."""
        now = now or datetime.utcnow()
        text = str(text or '').strip()
        if not text:
            return None

        room = self.require_room(room_id)
        if room.status != RoomState.ACTIVE.value:
            raise ValidationError("Room is not active")
        if not room.is_member(user.id):
            raise ForbiddenError("Not a participant of this room")

        entry = GdTranscriptEntry(
            room_pk=room.id,
            user_id=user.id,
            name=user.full_name,
            text=text,
            created_at=now
        )
        db.session.add(entry)
        db.session.commit()
        return entry

    def get_transcript(self, room_id: str) -> dict:
        """Chronological transcript plus the same entries grouped per speaker."""
        room = self.require_room(room_id)
        entries = sorted(room.transcript, key=lambda e: (e.created_at, e.id))

        per_user = {}
        for e in entries:
            bucket = per_user.setdefault(e.user_id, {
                'userId': str(e.user_id),
                'name': e.name,
                'entries': []
            })
            item = e.to_dict()
            bucket['entries'].append({'text': item['text'], 'createdAt': item['createdAt']})

        return {
            'roomId': room.room_id,
            'roomName': room.room_name,
            'topic': room.topic,
            'entries': [e.to_dict() for e in entries],
            'perUser': list(per_user.values()),
        }
