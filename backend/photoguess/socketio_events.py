from flask_socketio import join_room, leave_room, emit
from flask import current_app, request
from photoguess import socketio
from photoguess.services.identity import session_identity
from photoguess.services.rooms.actions import RoomActions
from photoguess.services.rooms.client import RoomClient
from photoguess.services.rooms.errors import RoomError
from photoguess.services.rooms.scheduler import SocketIOTimerQueue
from photoguess.services.rooms.store import RoomStore
from typing import Dict, Any


_sid_to_ctx: Dict[str, Dict[str, Any]] = {}
# room_id -> (sid, client) for the host socket driving that room
_host_clients: Dict[str, Any] = {}


def _get_sid() -> str:
    return request.sid  # type: ignore


def host_client(room_id: str):
    """The RoomClient driving ``room_id`` from its host's socket, if one is attached."""
    entry = _host_clients.get(room_id)
    return entry[1] if entry else None


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_join_room(data):
    room_id = (data or {}).get('room_id')
    user_id = (data or {}).get('user_id')
    if not room_id:
        emit('error', {'message': 'room_id is required'})
        return
    store = RoomStore()
    room = store.get_room(room_id)
    if room is None:
        emit('error', {'message': 'room_not_found'})
        return
    identity = session_identity()
    if identity is not None and not user_id:
        user_id = identity.uid
    member = bool(user_id) and store.get_user(room_id, user_id) is not None
    if member and not (identity is not None and identity.uid == user_id):
        # Acting as a seated user needs the token issued when they joined
        try:
            RoomActions(store, room_id).verify_member(user_id, data.get('token'))
        except RoomError as exc:
            emit('error', {'message': exc.code})
            return
    channel = f"room:{room_id}"
    join_room(channel)
    sid = _get_sid()
    _sid_to_ctx[sid] = {'room_id': room_id, 'user_id': user_id if member else None}
    is_host = member and user_id == room.get('host_uid')

    if member:
        _set_connected(store, room_id, user_id, True)
    if is_host:
        _attach_host_client(store, room_id, user_id, sid)
    emit('joined', {'room': channel, 'is_host': is_host})


def handle_leave_room(data):
    room_id = (data or {}).get('room_id')
    if not room_id:
        emit('error', {'message': 'room_id is required'})
        return
    channel = f"room:{room_id}"
    leave_room(channel)
    emit('left', {'room': channel})
    ctx = _sid_to_ctx.get(_get_sid())
    if ctx and ctx.get('room_id') == room_id:
        _sid_to_ctx.pop(_get_sid(), None)
        _detach_host_client(room_id, _get_sid())


def handle_disconnect(reason=None):
    sid = _get_sid()
    ctx = _sid_to_ctx.pop(sid, None)
    if not ctx:
        return
    room_id, user_id = ctx.get('room_id'), ctx.get('user_id')
    _detach_host_client(room_id, sid)
    if user_id:
        store = RoomStore()
        if store.get_user(room_id, user_id):
            _set_connected(store, room_id, user_id, False)


def handle_ping(data):
    emit('pong', data or {})


# ---- Host client lifecycle helpers ----

def _set_connected(store: RoomStore, room_id: str, user_id: str, connected: bool) -> None:
    # Presence is best effort
    try:
        store.update_user(room_id, user_id, {'connected': connected})
    except RoomError as exc:
        current_app.logger.warning(f"[presence] room={room_id} user={user_id} connected={connected} failed: {exc}")


def _attach_host_client(store: RoomStore, room_id: str, user_id: str, sid: str) -> None:
    existing = _host_clients.get(room_id)
    if existing:
        existing[1].stop()
        existing[1].timers.stop()
    app = current_app._get_current_object()
    timers = SocketIOTimerQueue(app, tick=app.config.get('HOST_TICK_SEC', 0.25))
    client = RoomClient(store, room_id, user_id, timers)
    _host_clients[room_id] = (sid, client)
    client.start()
    # Timers stay manual in tests; snapshots still drive transitions
    if not app.config.get('TESTING'):
        timers.start()
    current_app.logger.info(f"[host-attach] room={room_id} host={user_id} sid={sid}")


def _detach_host_client(room_id: str, sid: str) -> None:
    entry = _host_clients.get(room_id)
    if not entry or entry[0] != sid:
        return
    _host_clients.pop(room_id, None)
    _, client = entry
    client.stop()
    client.timers.stop()
    current_app.logger.info(f"[host-detach] room={room_id} sid={sid}")


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    handlers = {
        'connect': handle_connect,
        'disconnect': handle_disconnect,
        'join_room': handle_join_room,
        'leave_room': handle_leave_room,
        'ping': handle_ping,
    }
    for event, handler in handlers.items():
        socketio.on_event(event, handler, namespace='/ws')
    if testing:
        # Test-only mirror on default namespace
        for event, handler in handlers.items():
            socketio.on_event(event, handler, namespace='/')
