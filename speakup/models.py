from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
import calendar

db = SQLAlchemy()

SCORE_CRITERIA = ('clarity', 'confidence', 'participation', 'relevance', 'listening')


def to_millis(value: datetime):
    """Naive-UTC datetime to epoch milliseconds, the format the room pages use."""
    if value is None:
        return None
    return calendar.timegm(value.utctimetuple()) * 1000 + value.microsecond // 1000


def to_iso(value: datetime):
    return value.isoformat() + 'Z' if value else None


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    full_name = db.Column(db.String(120), nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='user')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': str(self.id),
            'fullName': self.full_name,
            'email': self.email,
            'role': self.role,
        }


class GdRoom(db.Model):
    __tablename__ = 'gd_rooms'

    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.String(12), unique=True, nullable=False, index=True)
    room_name = db.Column(db.String(120), nullable=False)
    topic = db.Column(db.String(500), default='')
    mode = db.Column(db.String(20), nullable=False, default='custom')  # custom, global, tournament
    max_participants = db.Column(db.Integer, nullable=False, default=5)
    duration_seconds = db.Column(db.Integer, nullable=False, default=600)

    # Preparation phase runs between start and the discussion timer
    prep_seconds = db.Column(db.Integer, nullable=False, default=60)
    prep_started_at = db.Column(db.DateTime, nullable=True)

    # Global rooms count down once full, then start themselves
    countdown_seconds = db.Column(db.Integer, nullable=False, default=10)
    countdown_started_at = db.Column(db.DateTime, nullable=True)

    host_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    status = db.Column(db.String(20), nullable=False, default='waiting', index=True)
    started_at = db.Column(db.DateTime, nullable=True)
    ended_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Optimistic lock: every UPDATE checks and bumps this
    version = db.Column(db.Integer, nullable=False)

    host = db.relationship('User', foreign_keys=[host_user_id])
    participants = db.relationship(
        'GdParticipant',
        back_populates='room',
        cascade='all, delete-orphan',
        order_by='[GdParticipant.joined_at, GdParticipant.id]'
    )
    transcript = db.relationship(
        'GdTranscriptEntry',
        back_populates='room',
        cascade='all, delete-orphan',
        order_by='[GdTranscriptEntry.created_at, GdTranscriptEntry.id]'
    )

    __mapper_args__ = {'version_id_col': version}

    @property
    def members(self):
        return [p for p in self.participants if p.left_at is None]

    def find_participant(self, user_id: int):
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def is_member(self, user_id: int) -> bool:
        p = self.find_participant(user_id)
        return p is not None and p.left_at is None

    def to_dict(self, online: set = None):
        return {
            'roomId': self.room_id,
            'roomName': self.room_name,
            'topic': self.topic,
            'mode': self.mode,
            'maxParticipants': self.max_participants,
            'hostUserId': str(self.host_user_id) if self.host_user_id else None,
            'status': self.status,
            'createdAt': to_millis(self.created_at),
            'startedAt': to_millis(self.started_at),
            'endedAt': to_millis(self.ended_at),
            'durationSeconds': self.duration_seconds,
            'prepSeconds': self.prep_seconds,
            'prepStartedAt': to_millis(self.prep_started_at),
            'countdownSeconds': self.countdown_seconds,
            'countdownStartedAt': to_millis(self.countdown_started_at),
            'participants': [p.to_dict(online) for p in self.members],
        }

    def to_summary(self):
        return {
            'roomId': self.room_id,
            'roomName': self.room_name,
            'topic': self.topic,
            'maxParticipants': self.max_participants,
            'status': self.status,
            'participantsCount': len(self.members),
            'hostName': self.host.full_name if self.host else None,
        }


class GdParticipant(db.Model):
    __tablename__ = 'gd_participants'

    id = db.Column(db.Integer, primary_key=True)
    room_pk = db.Column(db.Integer, db.ForeignKey('gd_rooms.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_seen_at = db.Column(db.DateTime, default=datetime.utcnow)
    left_at = db.Column(db.DateTime, nullable=True)

    room = db.relationship('GdRoom', back_populates='participants')

    __table_args__ = (
        db.UniqueConstraint('room_pk', 'user_id', name='unique_participant_per_room'),
    )

    def to_dict(self, online: set = None):
        data = {
            'userId': str(self.user_id),
            'name': self.name,
        }
        if online is not None:
            data['online'] = self.user_id in online
        return data


class GdTranscriptEntry(db.Model):
    __tablename__ = 'gd_transcript_entries'

    id = db.Column(db.Integer, primary_key=True)
    room_pk = db.Column(db.Integer, db.ForeignKey('gd_rooms.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    text = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    room = db.relationship('GdRoom', back_populates='transcript')

    def to_dict(self):
        return {
            'userId': str(self.user_id),
            'name': self.name,
            'text': self.text,
            'createdAt': to_iso(self.created_at),
        }


class ExtemporeSession(db.Model):
    __tablename__ = 'extempore_sessions'

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(32), unique=True, nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    topic = db.Column(db.String(500), nullable=False)
    category = db.Column(db.String(120), nullable=False)
    transcript = db.Column(db.Text, nullable=False, default='')
    duration_seconds = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='active')  # active, completed
    started_at = db.Column(db.DateTime, default=datetime.utcnow)
    ended_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            'sessionId': self.session_id,
            'topic': self.topic,
            'category': self.category,
            'transcript': self.transcript,
            'durationSeconds': self.duration_seconds,
            'status': self.status,
            'startedAt': to_iso(self.started_at),
            'endedAt': to_iso(self.ended_at),
        }


class Tournament(db.Model):
    __tablename__ = 'tournaments'

    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.String(16), unique=True, nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default='')
    organization = db.Column(db.String(200), default='')
    visibility = db.Column(db.String(20), nullable=False, default='public')
    status = db.Column(db.String(20), nullable=False, default='registering', index=True)
    mode = db.Column(db.String(50), default='Online GD')

    registration_start_date = db.Column(db.DateTime, nullable=True)
    registration_end_date = db.Column(db.DateTime, nullable=True)
    tournament_start_date = db.Column(db.DateTime, nullable=True)
    tournament_end_date = db.Column(db.DateTime, nullable=True)
    number_of_rounds = db.Column(db.Integer, default=1)
    round_duration_seconds = db.Column(db.Integer, default=600)

    eligibility_criteria = db.Column(db.Text, default='')
    max_participants = db.Column(db.Integer, default=0)  # 0 = unlimited
    group_size = db.Column(db.Integer, default=5)
    language = db.Column(db.String(50), default='English')
    topic_type = db.Column(db.String(50), default='Mixed')
    topic_name = db.Column(db.String(500), default='')

    rules = db.Column(db.JSON, default=dict)
    scoring_criteria = db.Column(db.JSON, default=dict)
    round_format = db.Column(db.String(50), default='Knockout')
    advancement_criteria = db.Column(db.String(100), default='Top 2')
    tie_breaking_rules = db.Column(db.String(100), default='Judge decision')
    moderation_type = db.Column(db.String(50), default='Hybrid')
    rewards = db.Column(db.JSON, default=dict)
    privacy = db.Column(db.JSON, default=dict)

    join_password_hash = db.Column(db.String(256), default='')
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    participants = db.relationship(
        'TournamentParticipant',
        back_populates='tournament',
        cascade='all, delete-orphan',
        order_by='[TournamentParticipant.registered_at, TournamentParticipant.id]'
    )
    groups = db.relationship(
        'TournamentGroup',
        back_populates='tournament',
        cascade='all, delete-orphan',
        order_by='[TournamentGroup.round_number, TournamentGroup.id]'
    )

    def set_join_password(self, plain: str):
        self.join_password_hash = generate_password_hash(plain) if plain else ''

    def check_join_password(self, candidate: str) -> bool:
        if not self.join_password_hash:
            return False
        return check_password_hash(self.join_password_hash, candidate or '')

    def find_participant(self, user_id: int):
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def find_group(self, group_id: str):
        for g in self.groups:
            if g.group_id == group_id:
                return g
        return None

    def to_summary(self, viewer_id: int = None):
        return {
            'tournamentId': self.tournament_id,
            'name': self.name,
            'description': self.description,
            'organization': self.organization,
            'visibility': self.visibility,
            'status': self.status,
            'mode': self.mode,
            'groupSize': self.group_size,
            'startDate': to_iso(self.tournament_start_date),
            'registrationStartDate': to_iso(self.registration_start_date),
            'registrationEndDate': to_iso(self.registration_end_date),
            'maxParticipants': self.max_participants or 0,
            'language': self.language,
            'topicType': self.topic_type,
            'participantsCount': len(self.participants),
            'isOrganizer': viewer_id is not None and self.created_by == viewer_id,
            'isRegistered': viewer_id is not None and self.find_participant(viewer_id) is not None,
        }

    def to_dict(self, viewer_id: int = None):
        is_organizer = viewer_id is not None and self.created_by == viewer_id
        me = self.find_participant(viewer_id) if viewer_id is not None else None
        return {
            'tournamentId': self.tournament_id,
            'name': self.name,
            'description': self.description,
            'organization': self.organization,
            'visibility': self.visibility,
            'status': self.status,
            'mode': self.mode,
            'groupSize': self.group_size,
            'registrationStartDate': to_iso(self.registration_start_date),
            'registrationEndDate': to_iso(self.registration_end_date),
            'tournamentStartDate': to_iso(self.tournament_start_date),
            'tournamentEndDate': to_iso(self.tournament_end_date),
            'numberOfRounds': self.number_of_rounds,
            'roundDurationSeconds': self.round_duration_seconds,
            'eligibilityCriteria': self.eligibility_criteria,
            'maxParticipants': self.max_participants or 0,
            'language': self.language,
            'topicType': self.topic_type,
            'topicName': self.topic_name,
            'rules': self.rules or {},
            'scoringCriteria': self.scoring_criteria or {},
            'roundFormat': self.round_format,
            'advancementCriteria': self.advancement_criteria,
            'tieBreakingRules': self.tie_breaking_rules,
            'moderationType': self.moderation_type,
            'rewards': self.rewards or {},
            'privacy': self.privacy or {},
            'createdByUserId': str(self.created_by),
            'isOrganizer': is_organizer,
            'myJoinCode': me.join_code if me and me.join_code else None,
            'participants': [p.to_dict() for p in self.participants],
            'groups': [g.to_dict() for g in self.groups] if is_organizer else [],
        }


class TournamentParticipant(db.Model):
    __tablename__ = 'tournament_participants'

    id = db.Column(db.Integer, primary_key=True)
    tournament_pk = db.Column(db.Integer, db.ForeignKey('tournaments.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    registered_at = db.Column(db.DateTime, default=datetime.utcnow)
    join_code = db.Column(db.String(12), nullable=True)
    join_code_issued_at = db.Column(db.DateTime, nullable=True)

    tournament = db.relationship('Tournament', back_populates='participants')

    __table_args__ = (
        db.UniqueConstraint('tournament_pk', 'user_id', name='unique_registration'),
    )

    def to_dict(self):
        return {
            'userId': str(self.user_id),
            'name': self.name,
            'registeredAt': to_iso(self.registered_at),
        }


class TournamentGroup(db.Model):
    __tablename__ = 'tournament_groups'

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.String(40), nullable=False, index=True)
    tournament_pk = db.Column(db.Integer, db.ForeignKey('tournaments.id'), nullable=False, index=True)
    round_number = db.Column(db.Integer, nullable=False, default=1)
    topic = db.Column(db.String(500), default='')
    judge_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    tournament = db.relationship('Tournament', back_populates='groups')
    members = db.relationship(
        'GroupMember',
        back_populates='group',
        cascade='all, delete-orphan',
        order_by='GroupMember.id'
    )

    __table_args__ = (
        db.UniqueConstraint('group_id', 'tournament_pk', name='unique_group_per_tournament'),
    )

    def find_member(self, user_id: int):
        for m in self.members:
            if m.user_id == user_id:
                return m
        return None

    def to_dict(self):
        return {
            'groupId': self.group_id,
            'roundNumber': self.round_number,
            'topic': self.topic,
            'judgeUserId': str(self.judge_user_id) if self.judge_user_id else None,
            'participants': [m.to_dict() for m in self.members],
        }


class GroupMember(db.Model):
    __tablename__ = 'tournament_group_members'

    id = db.Column(db.Integer, primary_key=True)
    group_pk = db.Column(db.Integer, db.ForeignKey('tournament_groups.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    name = db.Column(db.String(120), nullable=False)

    clarity = db.Column(db.Float, default=0)
    confidence = db.Column(db.Float, default=0)
    participation = db.Column(db.Float, default=0)
    relevance = db.Column(db.Float, default=0)
    listening = db.Column(db.Float, default=0)
    total = db.Column(db.Float, default=0)
    scored_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    scored_at = db.Column(db.DateTime, nullable=True)

    group = db.relationship('TournamentGroup', back_populates='members')

    def score_dict(self):
        score = {c: getattr(self, c) or 0 for c in SCORE_CRITERIA}
        score['total'] = self.total or 0
        if self.scored_by:
            score['scoredBy'] = str(self.scored_by)
            score['createdAt'] = to_iso(self.scored_at)
        return score

    def to_dict(self):
        return {
            'userId': str(self.user_id),
            'name': self.name,
            'score': self.score_dict(),
        }
