import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy import case

from .models import db, User, ExtemporeSession
from .name_generator import generate_session_id
from shared.errors import ValidationError, NotFoundError

logger = logging.getLogger(__name__)


def _duration(value) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("durationSeconds must be a number")


def _appended(text: str):
    """SQL expression space-joining ``text`` onto the stored transcript."""
    column = ExtemporeSession.transcript
    return case((column == '', text), else_=column + ' ' + text)


class ExtemporeService:
    """Solo extempore sessions: a running transcript owned by one user."""

    def start(self, user: User, topic: str, category: str, duration_seconds=None, now: datetime = None) -> ExtemporeSession:
        topic = str(topic or '').strip()
        category = str(category or '').strip()
        if not topic or not category:
            raise ValidationError("Missing topic or category")

        session = ExtemporeSession(
            session_id=generate_session_id(),
            user_id=user.id,
            topic=topic,
            category=category,
            transcript='',
            duration_seconds=_duration(duration_seconds),
            status='active',
            started_at=now or datetime.utcnow()
        )
        db.session.add(session)
        db.session.commit()

        logger.info("Extempore session %s started by user %s", session.session_id, user.id)
        return session

    def get_session(self, user: User, session_id: str) -> ExtemporeSession:
        session = ExtemporeSession.query.filter_by(
            session_id=str(session_id or '').strip(),
            user_id=user.id
        ).first()
        if not session:
            raise NotFoundError("Session not found")
        return session

    def list_sessions(self, user: User) -> List[ExtemporeSession]:
        return (
            ExtemporeSession.query
            .filter_by(user_id=user.id)
            .order_by(ExtemporeSession.started_at.desc(), ExtemporeSession.id.desc())
            .all()
        )

    def append_chunk(self, user: User, session_id: str, text: str) -> Optional[ExtemporeSession]:
        """Space-join ``text`` onto the transcript. Blank chunks are ignored."""
        text = str(text or '').strip()
        if not text:
            return None

        session = self.get_session(user, session_id)
        if session.status == 'completed':
            raise ValidationError("Session already completed")

        # Concatenated in SQL: concurrent chunks must not overwrite each other
        updated = (
            ExtemporeSession.query
            .filter(ExtemporeSession.id == session.id, ExtemporeSession.status != 'completed')
            .update({ExtemporeSession.transcript: _appended(text)}, synchronize_session=False)
        )
        db.session.commit()
        if not updated:
            raise ValidationError("Session already completed")
        return session

    def stop(self, user: User, session_id: str, final_transcript: str = None, duration_seconds=None, now: datetime = None) -> ExtemporeSession:
        if not str(session_id or '').strip():
            raise ValidationError("Missing sessionId")
        session = self.get_session(user, session_id)

        final = str(final_transcript or '').strip()
        if final:
            ExtemporeSession.query.filter_by(id=session.id).update(
                {ExtemporeSession.transcript: _appended(final)}, synchronize_session=False
            )

        duration = _duration(duration_seconds)
        if duration:
            session.duration_seconds = duration
        session.status = 'completed'
        session.ended_at = now or datetime.utcnow()
        db.session.commit()

        logger.info("Extempore session %s completed (%s chars)", session.session_id, len(session.transcript))
        return session
