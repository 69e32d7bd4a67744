from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user

from shared.events import EventType
from shared.state_machine import room_phase

bp = Blueprint('gd', __name__, url_prefix='/api/gd')


def _room_payload(room) -> dict:
    return current_app.broadcaster.serialize_room(room)


@bp.route('/rooms', methods=['POST'])
@login_required
def create_room():
    data = request.get_json(silent=True) or {}
    room = current_app.rooms.create_room(
        current_user,
        room_name=data.get('roomName'),
        topic=data.get('topic'),
        max_participants=data.get('maxParticipants'),
        duration_seconds=data.get('durationSeconds')
    )
    return jsonify({'roomId': room.room_id, 'room': _room_payload(room)}), 201


@bp.route('/rooms', methods=['GET'])
@login_required
def list_rooms():
    """Open rooms; defaults to waiting custom rooms."""
    rooms = current_app.rooms.list_rooms(
        status=request.args.get('status', 'waiting').strip(),
        mode=request.args.get('mode', 'custom').strip()
    )
    return jsonify({'rooms': [r.to_summary() for r in rooms]})


@bp.route('/rooms/<room_id>', methods=['GET'])
@login_required
def get_room(room_id: str):
    room = current_app.rooms.require_room(room_id)
    return jsonify({
        'room': _room_payload(room),
        'remainingSeconds': current_app.rooms.remaining_seconds(room),
        'phase': room_phase(room).value
    })


@bp.route('/rooms/<room_id>/join', methods=['POST'])
@login_required
def join_room(room_id: str):
    room = current_app.rooms.join_room(current_user, room_id)
    current_app.broadcaster.room_joined(room)
    current_app.ticker.watch(room)
    return jsonify({'ok': True, 'room': _room_payload(room)})


@bp.route('/rooms/<room_id>/leave', methods=['POST'])
@login_required
def leave_room(room_id: str):
    room = current_app.rooms.leave_room(current_user, room_id)
    if room is not None and room.members:
        current_app.broadcaster.room_state(room, EventType.PARTICIPANT_LEFT)
    return jsonify({'ok': True})


@bp.route('/rooms/<room_id>/start', methods=['POST'])
@login_required
def start_room(room_id: str):
    room = current_app.rooms.start_room(current_user, room_id)
    current_app.ticker.track(room.room_id)
    current_app.broadcaster.room_started(room)
    return jsonify({'ok': True, 'room': _room_payload(room)})


@bp.route('/rooms/<room_id>/end', methods=['POST'])
@login_required
def end_room(room_id: str):
    room = current_app.rooms.end_room(current_user, room_id)
    current_app.ticker.untrack(room.room_id)
    current_app.broadcaster.room_ended(room)
    return jsonify({'ok': True, 'room': _room_payload(room)})


@bp.route('/rooms/<room_id>/transcript', methods=['GET'])
@login_required
def get_transcript(room_id: str):
    return jsonify(current_app.rooms.get_transcript(room_id))


@bp.route('/global/join', methods=['POST'])
@login_required
def join_global():
    """Place the caller in a global room, creating one if none is open."""
    room, created = current_app.matchmaker.join_global_queue(current_user)
    if not created:
        current_app.broadcaster.room_joined(room)
    current_app.ticker.watch(room)
    return jsonify({
        'roomId': room.room_id,
        'created': created,
        'room': _room_payload(room)
    }), 201 if created else 200
