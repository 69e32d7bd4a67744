from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user

bp = Blueprint('extempore', __name__, url_prefix='/api/extempore')


@bp.route('/sessions', methods=['GET'])
@login_required
def list_sessions():
    sessions = current_app.extempore.list_sessions(current_user)
    return jsonify({'sessions': [s.to_dict() for s in sessions]})


@bp.route('/sessions', methods=['POST'])
@login_required
def start_session():
    data = request.get_json(silent=True) or {}
    session = current_app.extempore.start(
        current_user,
        data.get('topic'),
        data.get('category'),
        data.get('durationSeconds')
    )
    return jsonify({'sessionId': session.session_id, 'session': session.to_dict()}), 201


@bp.route('/sessions/<session_id>', methods=['GET'])
@login_required
def get_session(session_id: str):
    session = current_app.extempore.get_session(current_user, session_id)
    return jsonify({'session': session.to_dict()})


@bp.route('/sessions/<session_id>/chunks', methods=['POST'])
@login_required
def append_chunk(session_id: str):
    data = request.get_json(silent=True) or {}
    session = current_app.extempore.append_chunk(current_user, session_id, data.get('text'))
    if session is None:
        session = current_app.extempore.get_session(current_user, session_id)
    else:
        current_app.broadcaster.extempore_update(session.session_id, session.transcript)
    return jsonify({'ok': True, 'transcript': session.transcript})


@bp.route('/sessions/<session_id>/stop', methods=['POST'])
@login_required
def stop_session(session_id: str):
    data = request.get_json(silent=True) or {}
    session = current_app.extempore.stop(
        current_user,
        session_id,
        data.get('finalTranscript'),
        data.get('durationSeconds')
    )
    current_app.broadcaster.extempore_update(session.session_id, session.transcript, completed=True)
    return jsonify({'ok': True, 'session': session.to_dict()})
