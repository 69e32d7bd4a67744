"""
Unit tests for RoomTicker.
Tests: tracking, per-phase timer events, transition broadcasts, recovery
"""
from datetime import datetime, timedelta

import pytest

from speakup.room_registry import RoomRegistry
from speakup.ticker import RoomTicker

NOW = datetime(2025, 1, 6, 12, 0, 0)


def seconds(n):
    return NOW + timedelta(seconds=n)


@pytest.fixture
def registry(db_session):
    return RoomRegistry()


@pytest.fixture
def broadcaster(mocker):
    return mocker.MagicMock()


@pytest.fixture
def fake_socketio(mocker):
    return mocker.MagicMock()


@pytest.fixture
def ticker(app, fake_socketio, registry, broadcaster):
    return RoomTicker(app, fake_socketio, registry, broadcaster)


@pytest.fixture
def started_room(registry, users):
    room = registry.create_room(users[0], now=NOW)
    return registry.start_room(users[0], room.room_id, now=NOW)


class TestTracking:
    """Tests for track/watch/untrack."""

    def test_watch_started_room(self, ticker, started_room):
        """Should track rooms once they start."""
        ticker.watch(started_room)
        assert ticker.tracked() == [started_room.room_id]

    def test_watch_ignores_waiting_room(self, ticker, registry, users):
        """Should not track waiting rooms."""
        room = registry.create_room(users[0], now=NOW)
        ticker.watch(room)
        assert ticker.tracked() == []

    def test_untrack(self, ticker):
        """Should stop tracking a room on request."""
        ticker.track('ABC123')
        ticker.untrack('ABC123')
        ticker.untrack('ABC123')
        assert ticker.tracked() == []

    def test_recover(self, ticker, started_room, registry, users):
        """Recover should pick up rooms that still need ticks."""
        registry.create_room(users[1], now=NOW)
        ticker.recover()
        assert ticker.tracked() == [started_room.room_id]


class TestRunOnce:
    """Tests for run_once."""

    def test_prep_countdown_emitted(self, ticker, started_room, broadcaster):
        """Should emit the prep timer while preparing."""
        ticker.track(started_room.room_id)
        ticker.run_once(seconds(10))
        broadcaster.room_timer.assert_called_once_with('gd:prep', started_room.room_id, 50)
        broadcaster.room_discussion.assert_not_called()

    def test_discussion_begins(self, ticker, started_room, broadcaster):
        """Should emit the discussion timer once prep ends."""
        ticker.track(started_room.room_id)
        ticker.run_once(seconds(60))
        broadcaster.room_discussion.assert_called_once()
        broadcaster.room_timer.assert_called_once_with('gd:timer', started_room.room_id, 600)
        assert ticker.tracked() == [started_room.room_id]

    def test_room_ends(self, ticker, started_room, broadcaster):
        """Should broadcast the end and untrack the room."""
        ticker.track(started_room.room_id)
        ticker.run_once(seconds(660))
        broadcaster.room_timer.assert_called_once_with('gd:timer', started_room.room_id, 0)
        broadcaster.room_ended.assert_called_once()
        assert ticker.tracked() == []

    def test_countdown_starts_room(self, ticker, registry, users, broadcaster):
        """An elapsed countdown should start the room."""
        room = registry.create_room(users[0], mode='global', max_participants=2, countdown_seconds=10, now=NOW)
        registry.join_room(users[1], room.room_id, now=NOW)
        ticker.watch(room)

        ticker.run_once(seconds(3))
        broadcaster.room_timer.assert_called_with('gd:countdown', room.room_id, 7)

        ticker.run_once(seconds(10))
        broadcaster.room_started.assert_called_once()
        broadcaster.room_timer.assert_called_with('gd:prep', room.room_id, 60)

    def test_cancelled_countdown_untracked(self, ticker, registry, users, broadcaster):
        """Should untrack a room whose countdown was cancelled."""
        room = registry.create_room(users[0], mode='global', max_participants=2, now=NOW)
        registry.join_room(users[1], room.room_id, now=NOW)
        ticker.watch(room)
        registry.leave_room(users[1], room.room_id, now=seconds(1))

        ticker.run_once(seconds(2))
        broadcaster.room_timer.assert_not_called()
        assert ticker.tracked() == []

    def test_missing_room_untracked(self, ticker, db_session):
        """Should untrack rooms that no longer exist."""
        ticker.track('GONE00')
        ticker.run_once(NOW)
        assert ticker.tracked() == []

    def test_failure_does_not_stop_other_rooms(self, ticker, registry, users, broadcaster, mocker):
        """One failing room is logged and skipped."""
        first = registry.start_room(users[0], registry.create_room(users[0], now=NOW).room_id, now=NOW)
        second = registry.start_room(users[1], registry.create_room(users[1], now=NOW).room_id, now=NOW)
        ticker.track(first.room_id)
        ticker.track(second.room_id)

        real_tick = registry.tick

        def flaky(room_id, now=None):
            if room_id == first.room_id:
                raise RuntimeError("boom")
            return real_tick(room_id, now)

        mocker.patch.object(registry, 'tick', side_effect=flaky)
        ticker.run_once(seconds(5))

        broadcaster.room_timer.assert_called_once_with('gd:prep', second.room_id, 55)
        assert first.room_id in ticker.tracked()


class TestBackgroundTask:
    """Tests for start/stop."""

    def test_start_recovers_and_spawns(self, ticker, fake_socketio, started_room):
        """Start should recover rooms and spawn one background task."""
        ticker.start()
        fake_socketio.start_background_task.assert_called_once_with(ticker._loop)
        assert ticker.tracked() == [started_room.room_id]

        ticker.start()
        assert fake_socketio.start_background_task.call_count == 1
        ticker.stop()
