import logging
import math
import random
from datetime import datetime, timezone
from typing import Optional, List, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from .group_engine import make_groups, compute_leaderboard, clamp_group_size
from .models import (
    db, User, Tournament, TournamentParticipant, TournamentGroup, GroupMember, SCORE_CRITERIA
)
from .name_generator import (
    generate_tournament_code, generate_join_code, generate_group_id, normalize_code
)
from shared.errors import ValidationError, ForbiddenError, NotFoundError
from shared.events import EventType
from shared.state_machine import TournamentStateMachine, TournamentState

logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 5
MAX_SCORE = 10

RULE_FIELDS = ('speakingRules', 'timeLimits', 'codeOfConduct', 'disqualificationConditions')
SCORING_DEFAULTS = {c: True for c in SCORE_CRITERIA}
SCORING_DEFAULTS['aiAssistedEvaluation'] = True
REWARD_DEFAULTS = {
    'certificatesParticipation': True,
    'certificatesWinner': True,
    'badgesXp': True,
    'leaderboardRanking': True,
}
PRIVACY_DEFAULTS = {
    'anonymizedEvaluation': False,
    'recordingPermission': False,
    'aiExplainabilityEnabled': True,
    'antiDominanceChecks': True,
}


def parse_datetime(value, label: str) -> Optional[datetime]:
    """ISO-8601 string (or datetime) to naive UTC; blank gives None."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"{label} is not a valid date")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _number(value, default: float, label: str) -> float:
    if value is None or value == '':
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a number")
    if not math.isfinite(number):
        raise ValidationError(f"{label} must be a number")
    return number


def _text(value, default: str = '') -> str:
    return str(value if value is not None else '').strip() or default


def _flags(raw, defaults: dict) -> dict:
    raw = raw if isinstance(raw, dict) else {}
    return {k: d if raw.get(k) is None else bool(raw[k]) for k, d in defaults.items()}


def _within_window(now: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start and now < start:
        return False
    if end and now > end:
        return False
    return True


class TournamentRegistry:
    """
    Manages tournaments:
    - Create, list, search and delete tournament records
    - Registration with per-participant join codes
    - Status changes through the tournament state machine
    - Round grouping, judging and the leaderboard
    """

    def __init__(self, broadcaster=None, rng: random.Random = None):
        self.broadcaster = broadcaster
        self.rng = rng

    def _notify(self, event_type: EventType, tournament_id: str, listed: bool = True):
        if self.broadcaster is not None:
            self.broadcaster.tournament_changed(event_type, tournament_id, listed=listed)

    # ==================== Lookup ====================

    def get_tournament(self, tournament_id: str) -> Optional[Tournament]:
        """Get tournament by its public ID."""
        code = normalize_code(tournament_id)
        if not code:
            return None
        return Tournament.query.filter_by(tournament_id=code).first()

    def require_tournament(self, tournament_id: str) -> Tournament:
        tournament = self.get_tournament(tournament_id)
        if not tournament:
            raise NotFoundError("Tournament not found")
        return tournament

    def list_tournaments(self, user: User, status: str = None) -> List[Tournament]:
        """Public tournaments plus the caller's own, newest first."""
        query = Tournament.query.filter(or_(
            Tournament.visibility == 'public',
            Tournament.created_by == user.id
        ))
        if status:
            query = query.filter_by(status=status)
        return query.order_by(Tournament.created_at.desc(), Tournament.id.desc()).all()

    def search(self, user: User, tournament_id: str) -> Tournament:
        """Exact lookup by code; private tournaments are findable this way."""
        if not normalize_code(tournament_id):
            raise ValidationError("Missing tournamentId")
        return self.require_tournament(tournament_id)

    def _require_organizer(self, tournament: Tournament, user: User):
        if tournament.created_by != user.id:
            raise ForbiddenError("Forbidden")

    def _require_action(self, tournament: Tournament, action: str):
        sm = TournamentStateMachine.from_state_string(tournament.status)
        if not sm.can_perform(action):
            raise ValidationError(f"Cannot {action.replace('_', ' ')} while tournament is {tournament.status}")

    # ==================== Creation ====================

    def _new_tournament_code(self) -> str:
        code = generate_tournament_code()
        for _ in range(CODE_ATTEMPTS):
            if not Tournament.query.filter_by(tournament_id=code).first():
                break
            code = generate_tournament_code()
        return code

    def create_tournament(self, user: User, data: dict) -> Tournament:
        """Create a tournament in the registering state."""
        data = data or {}
        name = _text(data.get('name'))
        if not name:
            raise ValidationError("Name is required")

        visibility = 'private' if _text(data.get('visibility'), 'public') == 'private' else 'public'
        join_password = str(data.get('joinPassword') or '')
        if visibility == 'private' and not join_password.strip():
            raise ValidationError("Organizer password is required for private tournament")

        rules = data.get('rules') if isinstance(data.get('rules'), dict) else {}
        rewards = _flags(data.get('rewards'), REWARD_DEFAULTS)
        raw_rewards = data.get('rewards') if isinstance(data.get('rewards'), dict) else {}
        rewards['prizes'] = str(raw_rewards.get('prizes') or '')

        tournament = Tournament(
            tournament_id=self._new_tournament_code(),
            name=name,
            description=_text(data.get('description')),
            organization=_text(data.get('organization')),
            visibility=visibility,
            status=TournamentState.REGISTERING.value,
            mode=_text(data.get('mode'), 'Online GD'),
            registration_start_date=parse_datetime(data.get('registrationStartDate'), "registrationStartDate"),
            registration_end_date=parse_datetime(data.get('registrationEndDate'), "registrationEndDate"),
            tournament_start_date=parse_datetime(data.get('tournamentStartDate'), "tournamentStartDate"),
            tournament_end_date=parse_datetime(data.get('tournamentEndDate'), "tournamentEndDate"),
            number_of_rounds=max(1, int(_number(data.get('numberOfRounds'), 1, "numberOfRounds"))),
            round_duration_seconds=max(60, int(_number(data.get('roundDurationSeconds'), 600, "roundDurationSeconds"))),
            eligibility_criteria=str(data.get('eligibilityCriteria') or ''),
            max_participants=max(0, int(_number(data.get('maxParticipants'), 0, "maxParticipants"))),
            group_size=clamp_group_size(_number(data.get('groupSize'), 5, "groupSize")),
            language=_text(data.get('language'), 'English'),
            topic_type=_text(data.get('topicType'), 'Mixed'),
            topic_name=str(data.get('topicName') or ''),
            rules={k: str(rules.get(k) or '') for k in RULE_FIELDS},
            scoring_criteria=_flags(data.get('scoringCriteria'), SCORING_DEFAULTS),
            round_format=_text(data.get('roundFormat'), 'Knockout'),
            advancement_criteria=_text(data.get('advancementCriteria'), 'Top 2'),
            tie_breaking_rules=_text(data.get('tieBreakingRules'), 'Judge decision'),
            moderation_type=_text(data.get('moderationType'), 'Hybrid'),
            rewards=rewards,
            privacy=_flags(data.get('privacy'), PRIVACY_DEFAULTS),
            created_by=user.id
        )
        if join_password.strip():
            tournament.set_join_password(join_password)

        db.session.add(tournament)
        db.session.commit()

        logger.info("Tournament %s created by user %s (%s)", tournament.tournament_id, user.id, visibility)
        self._notify(EventType.TOURNAMENT_CREATED, tournament.tournament_id)
        return tournament

    def delete_tournament(self, user: User, tournament_id: str):
        """Organizer may delete while registering and before any group exists."""
        tournament = self.require_tournament(tournament_id)
        self._require_organizer(tournament, user)
        self._require_action(tournament, 'delete')
        if tournament.groups:
            raise ValidationError("Cannot delete a tournament that already has groups")

        code = tournament.tournament_id
        db.session.delete(tournament)
        db.session.commit()

        logger.info("Tournament %s deleted by user %s", code, user.id)
        self._notify(EventType.TOURNAMENT_DELETED, code)

    # ==================== Registration ====================

    def register(self, user: User, tournament_id: str, organizer_password: str = None, now: datetime = None) -> str:
        """Register the caller and return their join code (issued once)."""
        now = now or datetime.utcnow()
        tournament = self.require_tournament(tournament_id)

        if tournament.status == TournamentState.COMPLETED.value:
            raise ValidationError("Tournament ended")
        if tournament.status != TournamentState.REGISTERING.value:
            raise ValidationError("Registration is closed")
        if not _within_window(now, tournament.registration_start_date, tournament.registration_end_date):
            raise ValidationError("Registration window is closed")
        if tournament.visibility == 'private' and not tournament.check_join_password(organizer_password):
            raise ValidationError("Invalid organizer password")

        participant = tournament.find_participant(user.id)
        limit = tournament.max_participants or 0
        if participant is None and limit > 0 and len(tournament.participants) >= limit:
            raise ValidationError("Tournament is full")

        if participant is None:
            participant = TournamentParticipant(user_id=user.id, name=user.full_name, registered_at=now)
            tournament.participants.append(participant)

        if not participant.join_code:
            participant.join_code = generate_join_code()
            participant.join_code_issued_at = now

        try:
            db.session.commit()
        except IntegrityError:
            # Concurrent registration by the same user won the insert
            db.session.rollback()
            participant = self.require_tournament(tournament_id).find_participant(user.id)
            return participant.join_code

        logger.info("User %s registered for tournament %s", user.id, tournament.tournament_id)
        self._notify(EventType.TOURNAMENT_PARTICIPANTS, tournament.tournament_id)
        return participant.join_code

    def verify_join(self, user: User, tournament_id: str, join_code: str, now: datetime = None) -> bool:
        """Check the caller may enter the live tournament with ``join_code``."""
        now = now or datetime.utcnow()
        tournament = self.require_tournament(tournament_id)

        if tournament.status != TournamentState.ONGOING.value:
            raise ValidationError("Tournament is not live")
        if tournament.tournament_start_date and now < tournament.tournament_start_date:
            raise ValidationError("Tournament has not started yet")

        participant = tournament.find_participant(user.id)
        if not participant:
            raise ValidationError("You are not registered")
        if not participant.join_code:
            raise ValidationError("Join code not issued")

        code = normalize_code(join_code)
        if not code:
            raise ValidationError("Join code is required")
        if participant.join_code.upper() != code:
            raise ValidationError("Invalid join code")
        return True

    # ==================== Status ====================

    def set_status(self, user: User, tournament_id: str, status: str, now: datetime = None) -> Tournament:
        now = now or datetime.utcnow()
        status = _text(status)
        if not status:
            raise ValidationError("Missing status")
        try:
            target = TournamentState(status)
        except ValueError:
            raise ValidationError("Invalid status")

        tournament = self.require_tournament(tournament_id)
        self._require_organizer(tournament, user)

        sm = TournamentStateMachine.from_state_string(tournament.status)
        if sm.state == target:
            return tournament

        action = sm.action_to(target)
        if action is None:
            raise ValidationError(f"Cannot move tournament from {tournament.status} to {status}")

        old_state = sm.state.value
        sm.transition(action)
        tournament.status = sm.state.value
        if target == TournamentState.ONGOING and not tournament.tournament_start_date:
            tournament.tournament_start_date = now
        if target == TournamentState.COMPLETED:
            tournament.tournament_end_date = now
        db.session.commit()

        logger.info("Tournament %s: %s -> %s", tournament.tournament_id, old_state, tournament.status)
        self._notify(EventType.TOURNAMENT_STATUS, tournament.tournament_id)
        return tournament

    # ==================== Groups ====================

    def generate_groups(self, user: User, tournament_id: str, round_number=None) -> List[TournamentGroup]:
        """Shuffle registered participants into the round's groups, replacing any previous draw."""
        tournament = self.require_tournament(tournament_id)
        self._require_organizer(tournament, user)
        self._require_action(tournament, 'generate_groups')

        round_number = int(_number(round_number, 1, "roundNumber"))
        rounds = tournament.number_of_rounds or 1
        if round_number < 1 or round_number > rounds:
            raise ValidationError(f"roundNumber must be between 1 and {rounds}")

        participants = list(tournament.participants)
        if len(participants) < 2:
            raise ValidationError("At least 2 registered participants are needed to form groups")

        for group in [g for g in tournament.groups if g.round_number == round_number]:
            tournament.groups.remove(group)
        db.session.flush()

        created = []
        for number, chunk in enumerate(make_groups(participants, tournament.group_size, self.rng), start=1):
            group = TournamentGroup(
                group_id=generate_group_id(round_number, number),
                round_number=round_number,
                topic='',
                members=[GroupMember(user_id=p.user_id, name=p.name, total=0) for p in chunk]
            )
            tournament.groups.append(group)
            created.append(group)

        db.session.commit()

        logger.info("Tournament %s round %d: %d participants in %d groups",
                    tournament.tournament_id, round_number, len(participants), len(created))
        self._notify(EventType.TOURNAMENT_GROUPS, tournament.tournament_id, listed=False)
        return created

    def _require_group(self, tournament: Tournament, group_id: str) -> TournamentGroup:
        group = tournament.find_group(str(group_id or '').strip())
        if not group:
            raise NotFoundError("Group not found")
        return group

    def update_group(self, user: User, tournament_id: str, group_id: str, topic: str = None, judge_user_id=None) -> TournamentGroup:
        """Set a group's topic and/or judge. An empty judge id clears the judge."""
        tournament = self.require_tournament(tournament_id)
        self._require_organizer(tournament, user)
        self._require_action(tournament, 'edit_group')
        group = self._require_group(tournament, group_id)

        if topic is not None:
            group.topic = str(topic)

        if judge_user_id is not None:
            if judge_user_id == '':
                group.judge_user_id = None
            else:
                try:
                    judge_id = int(judge_user_id)
                except (TypeError, ValueError):
                    raise ValidationError("Invalid judgeUserId")
                if db.session.get(User, judge_id) is None:
                    raise NotFoundError("Judge not found")
                group.judge_user_id = judge_id

        db.session.commit()
        self._notify(EventType.TOURNAMENT_GROUPS, tournament.tournament_id, listed=False)
        return group

    def submit_score(self, user: User, tournament_id: str, group_id: str, user_id, criteria: dict, now: datetime = None) -> GroupMember:
        """Organizer or the group's judge scores one participant."""
        now = now or datetime.utcnow()
        tournament = self.require_tournament(tournament_id)
        group = self._require_group(tournament, group_id)

        is_organizer = tournament.created_by == user.id
        is_judge = group.judge_user_id is not None and group.judge_user_id == user.id
        if not (is_organizer or is_judge):
            raise ForbiddenError("Forbidden")
        self._require_action(tournament, 'score')

        try:
            member = group.find_member(int(user_id))
        except (TypeError, ValueError):
            member = None
        if not member:
            raise NotFoundError("Participant not found")

        criteria = criteria or {}
        enabled = tournament.scoring_criteria or SCORING_DEFAULTS
        total = 0.0
        for name in SCORE_CRITERIA:
            value = _number(criteria.get(name), 0, name)
            if value < 0 or value > MAX_SCORE:
                raise ValidationError(f"{name} must be between 0 and {MAX_SCORE}")
            if not enabled.get(name, True):
                value = 0.0
            setattr(member, name, value)
            total += value

        member.total = total
        member.scored_by = user.id
        member.scored_at = now
        db.session.commit()

        logger.info("Tournament %s group %s: user %s scored %.1f by %s",
                    tournament.tournament_id, group.group_id, member.user_id, total, user.id)
        self._notify(EventType.TOURNAMENT_SCORES, tournament.tournament_id, listed=False)
        return member

    def leaderboard(self, tournament_id: str) -> List[dict]:
        tournament = self.require_tournament(tournament_id)
        members = [m for g in tournament.groups for m in g.members]
        return compute_leaderboard(members)

    def my_groups(self, user: User, tournament_id: str) -> Tuple[Tournament, List[TournamentGroup]]:
        tournament = self.require_tournament(tournament_id)
        groups = [g for g in tournament.groups if g.find_member(user.id)]
        return tournament, groups
