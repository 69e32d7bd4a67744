import logging
import random
from datetime import datetime
from typing import Tuple

from flask import current_app

from .models import GdRoom, GdParticipant, User
from .name_generator import pick_global_topic
from .room_registry import RoomRegistry
from shared.state_machine import RoomState

logger = logging.getLogger(__name__)


class Matchmaker:
    """
    Places users into global rooms: the user's current waiting room if any,
    else the oldest open global room, else a fresh one.
    """

    def __init__(self, registry: RoomRegistry = None, rng: random.Random = None):
        self.registry = registry or RoomRegistry()
        self.rng = rng

    def _current_room(self, user: User):
        return (
            GdRoom.query
            .join(GdRoom.participants)
            .filter(
                GdParticipant.user_id == user.id,
                GdParticipant.left_at.is_(None),
                GdRoom.status == RoomState.WAITING.value,
                GdRoom.mode == 'global'
            )
            .order_by(GdRoom.created_at.asc(), GdRoom.id.asc())
            .first()
        )

    def _open_rooms(self):
        return (
            GdRoom.query
            .filter(
                GdRoom.status == RoomState.WAITING.value,
                GdRoom.mode == 'global',
                GdRoom.countdown_started_at.is_(None)
            )
            .order_by(GdRoom.created_at.asc(), GdRoom.id.asc())
            .all()
        )

    def join_global_queue(self, user: User, now: datetime = None) -> Tuple[GdRoom, bool]:
        """Returns (room, created)."""
        now = now or datetime.utcnow()
        capacity = current_app.config.get('GD_GLOBAL_CAPACITY', 6)

        def operation():
            room = self._current_room(user)
            if room:
                return room

            for candidate in self._open_rooms():
                if len(candidate.members) < min(capacity, candidate.max_participants):
                    self.registry.admit(candidate, user, now)
                    return candidate
            return None

        # A conflict on the chosen room re-runs the whole search
        room = self.registry.run_with_retry(operation)
        if room is not None:
            logger.info("User %s matched into global room %s (%d/%d)",
                        user.id, room.room_id, len(room.members), room.max_participants)
            return room, False

        room = self.registry.create_room(
            user,
            room_name='Global Match',
            topic=pick_global_topic(self.rng),
            max_participants=capacity,
            duration_seconds=current_app.config.get('GD_DEFAULT_DURATION_SECONDS', 600),
            mode='global',
            countdown_seconds=current_app.config.get('GD_COUNTDOWN_SECONDS', 10),
            now=now
        )
        logger.info("User %s opened global room %s", user.id, room.room_id)
        return room, True
