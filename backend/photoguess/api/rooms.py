from flask import Blueprint, current_app, jsonify, request, send_from_directory
import time

from photoguess import db
from photoguess.models import DEFAULT_TOPICS, Topic
from photoguess.services.identity import session_identity
from photoguess.services.rooms.actions import RoomActions
from photoguess.services.rooms.errors import ActionRejected, RoomError, RoomNotFound
from photoguess.services.rooms.projector import read_snapshot
from photoguess.services.rooms.reveal import build_results_view
from photoguess.services.rooms.stages import GUESS, JOIN, RESULTS, UPLOAD, StageController
from photoguess.services.rooms.store import RoomStore
from photoguess.services.rooms.views import can_remove_photo, snapshot_payload
from photoguess.socketio_events import host_client


rooms = Blueprint('rooms', __name__)
topics = Blueprint('topics', __name__)

PROFILE_FIELDS = ('name', 'avatar_seed', 'photo_url')


@rooms.errorhandler(RoomError)
def handle_room_error(exc):
    if exc.status_code >= 500:
        current_app.logger.error(f"[room-error] {exc.code}: {exc.message}")
    return jsonify({'error': exc.message, 'code': exc.code}), exc.status_code


def _identity_uid():
    identity = session_identity()
    return identity.uid if identity else None


def _acting_member(store, room_id, data):
    """The room user this request acts for.

    A signed-in session acts as its own uid. Otherwise the request names a
    ``user_id`` and proves it with the ``token`` issued when that user was
    seated (body field or ``X-Room-Token`` header).
    """
    data = data or {}
    uid = _identity_uid()
    if uid:
        return _require_member(store, room_id, uid)
    token = data.get('token') or request.headers.get('X-Room-Token')
    return RoomActions(store, room_id).verify_member(data.get('user_id'), token)


def _int_or_none(value):
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _state(store, room_id, viewer_id=None):
    snapshot = read_snapshot(store, room_id)
    if snapshot.room is None:
        raise RoomNotFound()
    return snapshot, snapshot_payload(snapshot, viewer_id=viewer_id, now=time.time())


def _require_member(store, room_id, user_id):
    if not user_id:
        raise ActionRejected('user_id is required')
    user = store.get_user(room_id, user_id)
    if user is None:
        raise RoomNotFound('user_not_found')
    return user


@rooms.route('', methods=['POST'])
def create_room():
    data = request.get_json(silent=True) or {}
    host_uid = _identity_uid() or data.get('user_id')
    host_name = (data.get('host_name') or '').strip()
    game_name = (data.get('game_name') or '').strip() or DEFAULT_TOPICS[0]
    if not host_uid or not host_name:
        return jsonify({'error': 'user_id and host_name are required'}), 400

    max_photos = _int_or_none(data.get('max_photos'))
    if max_photos is None:
        max_photos = current_app.config.get('DEFAULT_MAX_PHOTOS', 1)
    per_user = _int_or_none(data.get('timer_per_user_seconds')) or current_app.config.get('TIMER_PER_USER_SEC', 30)

    store = RoomStore()
    actions = RoomActions(store)
    room_id = actions.create_room(
        host_uid, host_name, game_name,
        countdown_enabled=bool(data.get('countdown_enabled')),
        max_photos=max_photos or None,
        timer_per_user_seconds=per_user,
        host_avatar=data.get('photo_url'),
        host_avatar_seed=data.get('avatar_seed'),
    )

    topic = Topic.query.filter_by(name=game_name).first()
    if topic:
        topic.used_count = (topic.used_count or 0) + 1
        db.session.commit()

    _, payload = _state(store, room_id, host_uid)
    return jsonify({'room_id': room_id, 'token': actions.user_token(host_uid), 'state': payload}), 201


@rooms.route('/<room_id>/state', methods=['GET'])
def get_state(room_id):
    _, payload = _state(RoomStore(), room_id, request.args.get('user_id') or _identity_uid())
    return jsonify(payload)


@rooms.route('/<room_id>/join', methods=['POST'])
def join(room_id):
    data = request.get_json(silent=True) or {}
    user_id = _identity_uid() or data.get('user_id')
    name = (data.get('name') or '').strip()
    if not user_id or not name:
        return jsonify({'error': 'user_id and name are required'}), 400
    store = RoomStore()
    actions = RoomActions(store, room_id)
    store.require_room(room_id)
    # Rejoining as someone already seated needs their session or token
    if store.get_user(room_id, user_id) is not None:
        _acting_member(store, room_id, data)
    created = actions.join_room(
        user_id, name,
        avatar_seed=data.get('avatar_seed'),
        photo_url=data.get('photo_url'),
        role=data.get('role') or 'guest',
    )
    _, payload = _state(store, room_id, user_id)
    return jsonify({'token': actions.user_token(user_id), 'state': payload}), 201 if created else 200


@rooms.route('/<room_id>/ready', methods=['POST'])
def ready(room_id):
    data = request.get_json(silent=True) or {}
    store = RoomStore()
    user = _acting_member(store, room_id, data)
    RoomActions(store, room_id).toggle_ready(user['id'], bool(data.get('ready')))
    _, payload = _state(store, room_id, user['id'])
    return jsonify(payload)


@rooms.route('/<room_id>/profile', methods=['POST'])
def update_profile(room_id):
    data = request.get_json(silent=True) or {}
    store = RoomStore()
    user = _acting_member(store, room_id, data)
    fields = {k: data[k] for k in PROFILE_FIELDS if k in data}
    if not fields:
        return jsonify({'error': 'No profile fields given'}), 400
    RoomActions(store, room_id).update_user(user['id'], **fields)
    _, payload = _state(store, room_id, user['id'])
    return jsonify(payload)


@rooms.route('/<room_id>/messages', methods=['POST'])
def send_message(room_id):
    data = request.get_json(silent=True) or {}
    text = (data.get('text') or '').strip()
    if not text:
        return jsonify({'error': 'Message text is required'}), 400
    store = RoomStore()
    user = _acting_member(store, room_id, data)
    message = RoomActions(store, room_id).send_message(user['name'], text, user_photo=user.get('photo_url'))
    return jsonify(message), 201


@rooms.route('/<room_id>/photos', methods=['POST'])
def upload_photo(room_id):
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        return jsonify({'error': 'file is required'}), 400
    store = RoomStore()
    user = _acting_member(store, room_id, request.form)
    url = RoomActions(store, room_id).upload_room_photo(upload.stream, upload.filename, user['id'], user['name'])
    return jsonify({'url': url}), 201


@rooms.route('/<room_id>/photos/<photo_id>', methods=['DELETE'])
def remove_photo(room_id, photo_id):
    data = request.get_json(silent=True) or {}
    store = RoomStore()
    room = store.require_room(room_id)
    user = _acting_member(store, room_id, data)
    photo = store.get_photo(room_id, photo_id)
    if photo is None:
        raise RoomNotFound('photo_not_found')
    if not can_remove_photo(room['status'], photo, user['id']):
        return jsonify({'error': 'cannot_remove_photo'}), 403
    RoomActions(store, room_id).remove_photo(photo_id, photo.get('storage_path'))
    return jsonify({'removed': photo_id})


@rooms.route('/<room_id>/photos/<photo_id>/guess', methods=['POST'])
def assign_guess(room_id, photo_id):
    data = request.get_json(silent=True) or {}
    target_id = data.get('target_user_id')
    if not target_id:
        return jsonify({'error': 'target_user_id is required'}), 400
    store = RoomStore()
    user = _acting_member(store, room_id, data)
    _require_member(store, room_id, target_id)
    RoomActions(store, room_id).assign_photo_to_user(photo_id, target_id, user['id'])
    _, payload = _state(store, room_id, user['id'])
    return jsonify(payload)


def _host_step(room_id, step, intent):
    """Run a host command.

    When the host's own socket has a live ``RoomClient`` for the room the
    command goes through it, so results wait on its reveal. Otherwise a
    one-off controller runs ``step`` against a fresh snapshot.
    """
    data = request.get_json(silent=True) or {}
    store = RoomStore()
    user = _acting_member(store, room_id, data)
    client = host_client(room_id)
    if client is not None and client.user_id == user['id']:
        changed = intent(client)
    else:
        snapshot, _ = _state(store, room_id)
        controller = StageController(RoomActions(store, room_id), user['id'])
        changed = step(controller, snapshot)
    _, payload = _state(store, room_id, user['id'])
    if changed is None:
        current_app.logger.info(f"[host-step] room={room_id} queued behind the host client")
        return jsonify({'changed': None, 'queued': True, 'state': payload}), 202
    return jsonify({'changed': changed, 'state': payload})


def _results_step(controller, snapshot):
    return controller.step_results(snapshot, build_results_view(snapshot))


def _results_intent(client):
    view = client.results_view()
    if view.photo is not None and not client.sequencer.is_done_for(view.photo['id']):
        raise ActionRejected('reveal_in_progress')
    return client.advance_results()


@rooms.route('/<room_id>/start', methods=['POST'])
def start(room_id):
    return _host_step(
        room_id,
        lambda controller, snapshot: controller.start_upload_stage(snapshot),
        lambda client: client.start_game(),
    )


@rooms.route('/<room_id>/advance', methods=['POST'])
def advance(room_id):
    def step(controller, snapshot):
        status = snapshot.status
        if status == JOIN:
            return controller.start_upload_stage(snapshot)
        if status == UPLOAD:
            return controller.start_guess_stage(snapshot)
        if status == GUESS:
            return controller.show_results_stage(snapshot)
        if status == RESULTS:
            return _results_step(controller, snapshot)
        raise ActionRejected('room_complete')

    def intent(client):
        if client.snapshot.status == RESULTS:
            return _results_intent(client)
        return client.advance_stage()

    return _host_step(room_id, step, intent)


@rooms.route('/<room_id>/results/next', methods=['POST'])
def next_result(room_id):
    return _host_step(room_id, _results_step, _results_intent)


@topics.route('/topics', methods=['GET'])
def list_topics():
    rows = Topic.query.order_by(Topic.used_count.desc(), Topic.id.asc()).all()
    if not rows:
        return jsonify([{'name': name, 'used_count': 0} for name in DEFAULT_TOPICS])
    return jsonify([t.to_dict() for t in rows])


@topics.route('/blobs/<path:path>', methods=['GET'])
def serve_blob(path):
    blobs = current_app.extensions['photoguess.blobs']
    return send_from_directory(blobs.root, path)
