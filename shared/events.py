from enum import Enum
from dataclasses import dataclass
from datetime import datetime
import json


class EventType(str, Enum):
    # Room lifecycle
    ROOM_CREATED = "room.created"
    ROOM_UPDATED = "room.updated"
    ROOM_COUNTDOWN = "room.countdown"
    ROOM_STARTED = "room.started"
    ROOM_DISCUSSION = "room.discussion"
    ROOM_ENDED = "room.ended"

    # Room activity
    PARTICIPANT_JOINED = "participant.joined"
    PARTICIPANT_LEFT = "participant.left"
    TRANSCRIPT_CHUNK = "transcript.chunk"

    # Tournament events
    TOURNAMENT_CREATED = "tournament.created"
    TOURNAMENT_PARTICIPANTS = "tournament.participants"
    TOURNAMENT_GROUPS = "tournament.groups"
    TOURNAMENT_SCORES = "tournament.scores"
    TOURNAMENT_STATUS = "tournament.status"
    TOURNAMENT_DELETED = "tournament.deleted"


@dataclass
class Event:
    type: EventType
    subject_id: str
    timestamp: str = None
    data: dict = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow().isoformat() + "Z"
        if self.data is None:
            self.data = {}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "subject_id": self.subject_id,
            "timestamp": self.timestamp,
            "data": self.data
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            type=EventType(data["type"]) if data["type"] in [e.value for e in EventType] else data["type"],
            subject_id=data["subject_id"],
            timestamp=data.get("timestamp"),
            data=data.get("data", {})
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        return cls.from_dict(json.loads(json_str))


def room_event(event_type: EventType, room_id: str, **data) -> Event:
    return Event(type=event_type, subject_id=room_id, data=data)


# Socket.IO update actions used by the tournament channels
TOURNAMENT_ACTIONS = {
    EventType.TOURNAMENT_CREATED: "created",
    EventType.TOURNAMENT_PARTICIPANTS: "participants",
    EventType.TOURNAMENT_GROUPS: "groups",
    EventType.TOURNAMENT_SCORES: "scores",
    EventType.TOURNAMENT_STATUS: "status",
    EventType.TOURNAMENT_DELETED: "deleted",
}


def tournament_event(event_type: EventType, tournament_id: str, **data) -> Event:
    payload = {"action": TOURNAMENT_ACTIONS.get(event_type, "updated")}
    payload.update(data)
    return Event(type=event_type, subject_id=tournament_id, data=payload)
