import logging
import threading
from datetime import datetime
from typing import List

from .broadcast import Broadcaster
from .models import db
from .room_registry import RoomRegistry, TickResult
from shared.state_machine import RoomPhase, room_phase

logger = logging.getLogger(__name__)

PHASE_TIMER_EVENTS = {
    RoomPhase.COUNTDOWN: 'gd:countdown',
    RoomPhase.PREP: 'gd:prep',
    RoomPhase.DISCUSSION: 'gd:timer',
}


class RoomTicker:
    """
    One background task drives every room timer. Rooms are tracked when
    joined or started and recovered from the database at start-up.
    """

    def __init__(self, app, socketio, registry: RoomRegistry, broadcaster: Broadcaster):
        self.app = app
        self.socketio = socketio
        self.registry = registry
        self.broadcaster = broadcaster
        self._lock = threading.Lock()
        self._tracked = set()
        self._running = False

    # ==================== Tracking ====================

    def track(self, room_id: str):
        with self._lock:
            self._tracked.add(room_id)

    def watch(self, room):
        """Track ``room`` if one of its timers is running."""
        if room_phase(room) in PHASE_TIMER_EVENTS:
            self.track(room.room_id)

    def untrack(self, room_id: str):
        with self._lock:
            self._tracked.discard(room_id)

    def tracked(self) -> List[str]:
        with self._lock:
            return sorted(self._tracked)

    def recover(self):
        """Re-track rooms whose timers were running before a restart."""
        room_ids = self.registry.rooms_needing_ticks()
        for room_id in room_ids:
            self.track(room_id)
        if room_ids:
            logger.info("Recovered timers for %d rooms", len(room_ids))

    # ==================== Ticking ====================

    def run_once(self, now: datetime = None):
        """Tick every tracked room once. Needs an app context."""
        now = now or datetime.utcnow()
        for room_id in self.tracked():
            try:
                result = self.registry.tick(room_id, now)
            except Exception:
                db.session.rollback()
                logger.exception("Tick failed for room %s", room_id)
                continue

            if result is None:
                self.untrack(room_id)
                continue
            self._publish(result)

    def _publish(self, result: TickResult):
        room = result.room
        logger.debug("Room %s phase=%s remaining=%ds", room.room_id, result.phase.value, result.remaining_seconds)

        if 'started' in result.transitions:
            self.broadcaster.room_started(room)
        if 'discussion' in result.transitions:
            self.broadcaster.room_discussion(room)

        event_name = PHASE_TIMER_EVENTS.get(result.phase)
        if event_name:
            self.broadcaster.room_timer(event_name, room.room_id, result.remaining_seconds)
            return

        if result.phase == RoomPhase.COMPLETED and 'ended' in result.transitions:
            self.broadcaster.room_timer('gd:timer', room.room_id, 0)
            self.broadcaster.room_ended(room)

        # Completed, or waiting again after a cancelled countdown
        self.untrack(room.room_id)

    # ==================== Background task ====================

    def start(self):
        if self._running:
            return
        self._running = True
        with self.app.app_context():
            self.recover()
        self.socketio.start_background_task(self._loop)
        logger.info("Room ticker started (period %.1fs)", self.app.config['ROOM_TICK_SECONDS'])

    def stop(self):
        self._running = False

    def _loop(self):
        period = self.app.config['ROOM_TICK_SECONDS']
        while self._running:
            with self.app.app_context():
                self.run_once()
            self.socketio.sleep(period)
