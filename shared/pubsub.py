import os
import logging
import redis
from .events import Event

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "global:announcements"
EVENT_LOG_SIZE = 1000


def room_channel(room_id: str) -> str:
    return f"room:{room_id}:events"


def tournament_channel(tournament_id: str) -> str:
    return f"tournament:{tournament_id}:events"


class PubSubClient:
    """
    Mirrors room and tournament events into Redis channels so that other
    workers and SSE clients can follow them, and keeps a capped event log
    per subject.
    """

    def __init__(self, redis_url: str = None, redis_client: redis.Redis = None):
        self.redis_url = redis_url or os.getenv('REDIS_URL', 'redis://localhost:6379')
        self.redis = redis_client or redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )

    def publish(self, channel: str, event: Event):
        self.redis.publish(channel, event.to_json())

    def publish_room_event(self, room_id: str, event: Event):
        self.publish(room_channel(room_id), event)
        self.log_event(room_channel(room_id), event)

    def publish_tournament_event(self, tournament_id: str, event: Event):
        self.publish(tournament_channel(tournament_id), event)
        self.log_event(tournament_channel(tournament_id), event)

        self.redis.publish(GLOBAL_CHANNEL, event.to_json())

    def log_event(self, channel: str, event: Event):
        key = f"{channel}:log"
        self.redis.lpush(key, event.to_json())
        self.redis.ltrim(key, 0, EVENT_LOG_SIZE - 1)

    def get_recent_events(self, channel: str, count: int = 50) -> list:
        key = f"{channel}:log"
        events_json = self.redis.lrange(key, 0, count - 1)
        return [Event.from_json(e) for e in events_json]

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.exceptions.RedisError as e:
            logger.warning("Redis ping failed: %s", e)
            return False
