from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user

from speakup.models import SCORE_CRITERIA

bp = Blueprint('tournaments', __name__, url_prefix='/api/tournaments')


def _body() -> dict:
    return request.get_json(silent=True) or {}


# ==================== Tournament CRUD ====================

@bp.route('', methods=['GET'])
@login_required
def list_tournaments():
    """Public tournaments and the caller's own, optionally filtered by status."""
    status = request.args.get('status', '').strip() or None
    tournaments = current_app.tournaments.list_tournaments(current_user, status=status)
    return jsonify({'tournaments': [t.to_summary(current_user.id) for t in tournaments]})


@bp.route('', methods=['POST'])
@login_required
def create_tournament():
    tournament = current_app.tournaments.create_tournament(current_user, _body())
    return jsonify({'tournamentId': tournament.tournament_id}), 201


@bp.route('/search', methods=['GET'])
@login_required
def search_tournament():
    tournament = current_app.tournaments.search(current_user, request.args.get('tournamentId'))
    return jsonify({'tournament': tournament.to_summary(current_user.id)})


@bp.route('/<tournament_id>', methods=['GET'])
@login_required
def get_tournament(tournament_id: str):
    tournament = current_app.tournaments.require_tournament(tournament_id)
    return jsonify({'tournament': tournament.to_dict(current_user.id)})


@bp.route('/<tournament_id>', methods=['DELETE'])
@login_required
def delete_tournament(tournament_id: str):
    current_app.tournaments.delete_tournament(current_user, tournament_id)
    return jsonify({'ok': True})


# ==================== Registration and Lifecycle ====================

@bp.route('/<tournament_id>/register', methods=['POST'])
@login_required
def register(tournament_id: str):
    join_code = current_app.tournaments.register(
        current_user,
        tournament_id,
        organizer_password=str(_body().get('organizerPassword') or '')
    )
    return jsonify({'ok': True, 'joinCode': join_code})


@bp.route('/<tournament_id>/join', methods=['POST'])
@login_required
def join(tournament_id: str):
    current_app.tournaments.verify_join(current_user, tournament_id, _body().get('joinCode'))
    return jsonify({'ok': True})


@bp.route('/<tournament_id>/status', methods=['PATCH'])
@login_required
def set_status(tournament_id: str):
    tournament = current_app.tournaments.set_status(current_user, tournament_id, _body().get('status'))
    return jsonify({'ok': True, 'status': tournament.status})


# ==================== Groups and Scoring ====================

@bp.route('/<tournament_id>/groups/generate', methods=['POST'])
@login_required
def generate_groups(tournament_id: str):
    groups = current_app.tournaments.generate_groups(
        current_user,
        tournament_id,
        _body().get('roundNumber')
    )
    return jsonify({
        'ok': True,
        'groupsCount': len(groups),
        'groups': [g.to_dict() for g in groups]
    })


@bp.route('/<tournament_id>/groups/<group_id>', methods=['PATCH'])
@login_required
def update_group(tournament_id: str, group_id: str):
    data = _body()
    topic = data.get('topic') if isinstance(data.get('topic'), str) else None
    judge = data.get('judgeUserId')
    group = current_app.tournaments.update_group(
        current_user,
        tournament_id,
        group_id,
        topic=topic,
        judge_user_id=None if judge is None else str(judge).strip()
    )
    return jsonify({'ok': True, 'group': group.to_dict()})


@bp.route('/<tournament_id>/groups/<group_id>/score', methods=['POST'])
@login_required
def submit_score(tournament_id: str, group_id: str):
    data = _body()
    member = current_app.tournaments.submit_score(
        current_user,
        tournament_id,
        group_id,
        data.get('userId'),
        {c: data.get(c) for c in SCORE_CRITERIA}
    )
    return jsonify({'ok': True, 'score': member.score_dict()})


@bp.route('/<tournament_id>/leaderboard', methods=['GET'])
@login_required
def leaderboard(tournament_id: str):
    tournament = current_app.tournaments.require_tournament(tournament_id)
    return jsonify({
        'tournamentId': tournament.tournament_id,
        'leaderboard': current_app.tournaments.leaderboard(tournament_id)
    })


@bp.route('/<tournament_id>/my-group', methods=['GET'])
@login_required
def my_group(tournament_id: str):
    tournament, groups = current_app.tournaments.my_groups(current_user, tournament_id)
    return jsonify({
        'tournamentId': tournament.tournament_id,
        'status': tournament.status,
        'groups': [g.to_dict() for g in groups]
    })
