import io

from photoguess import socketio
from photoguess.services.rooms.actions import RoomActions
from photoguess.socketio_events import _host_clients, host_client


def _events(sio_client):
    return sio_client.get_received('/ws')


def _join(sio, store, room_id, user_id, token=None):
    token = token if token is not None else store.user_token(room_id, user_id)
    sio.emit('join_room', {'room_id': room_id, 'user_id': user_id, 'token': token}, namespace='/ws')


def _as(store, room_id, user_id):
    return {'user_id': user_id, 'token': store.user_token(room_id, user_id)}


def test_socket_connect_and_ping(sio_client):
    if not sio_client.is_connected('/ws'):
        sio_client.connect(namespace='/ws')
    assert sio_client.is_connected('/ws')
    assert any(pkt['name'] == 'connected' for pkt in _events(sio_client))

    sio_client.emit('ping', {'n': 1}, namespace='/ws')
    pongs = [pkt for pkt in _events(sio_client) if pkt['name'] == 'pong']
    assert pongs and pongs[0]['args'][0] == {'n': 1}


def test_join_unknown_room_errors(sio_client):
    _events(sio_client)
    sio_client.emit('join_room', {'room_id': 'missing'}, namespace='/ws')
    assert any(pkt['name'] == 'error' for pkt in _events(sio_client))


def test_guest_join_receives_state_updates(store, make_room, sio_client):
    actions = make_room(guests=1)
    _events(sio_client)
    _join(sio_client, store, actions.room_id, 'guest1')
    joined = [pkt for pkt in _events(sio_client) if pkt['name'] == 'joined']
    assert joined and joined[0]['args'][0]['is_host'] is False

    actions.send_message('Guest 1', 'hello')
    updates = [pkt['args'][0] for pkt in _events(sio_client) if pkt['name'] == 'state_update']
    assert {'room_id': actions.room_id, 'stream': 'messages'} in updates


def test_disconnect_marks_user_offline(flask_app, store, make_room):
    actions = make_room(guests=1)
    guest = socketio.test_client(flask_app, namespace='/ws')
    _join(guest, store, actions.room_id, 'guest1')
    assert store.get_user(actions.room_id, 'guest1')['connected'] is True

    guest.disconnect(namespace='/ws')
    assert store.get_user(actions.room_id, 'guest1')['connected'] is False


def test_host_socket_drives_automatic_transitions(flask_app, store, make_room):
    actions = make_room(guests=1)
    host = socketio.test_client(flask_app, namespace='/ws')
    _join(host, store, actions.room_id, 'host')
    assert actions.room_id in _host_clients

    store.update_room(actions.room_id, {'status': 'upload'})
    RoomActions(store, actions.room_id).upload_room_photo(io.BytesIO(b'x'), 'a.png', 'guest1', 'Guest 1')
    actions.toggle_ready('host', True)
    actions.toggle_ready('guest1', True)
    assert store.get_room(actions.room_id)['status'] == 'guess'

    host.disconnect(namespace='/ws')
    assert actions.room_id not in _host_clients


def test_forged_host_join_does_not_replace_host_client(flask_app, store, make_room):
    actions = make_room(guests=1)
    host = socketio.test_client(flask_app, namespace='/ws')
    _join(host, store, actions.room_id, 'host')
    original = host_client(actions.room_id)

    mallory = socketio.test_client(flask_app, namespace='/ws')
    mallory.get_received('/ws')
    _join(mallory, store, actions.room_id, 'host', token=store.user_token(actions.room_id, 'guest1'))
    errors = [pkt['args'][0] for pkt in mallory.get_received('/ws') if pkt['name'] == 'error']
    assert errors == [{'message': 'invalid_token'}]
    assert host_client(actions.room_id) is original

    mallory.disconnect(namespace='/ws')
    host.disconnect(namespace='/ws')


def test_results_next_goes_through_the_host_reveal(flask_app, client, store, make_room):
    actions = make_room(guests=1)
    room_id = actions.room_id
    host = socketio.test_client(flask_app, namespace='/ws')
    _join(host, store, room_id, 'host')
    driver = host_client(room_id)

    store.update_room(room_id, {'status': 'upload'})
    gateway = RoomActions(store, room_id)
    gateway.upload_room_photo(io.BytesIO(b'h'), 'h.png', 'host', 'Hana')
    gateway.upload_room_photo(io.BytesIO(b'g'), 'g.png', 'guest1', 'Guest 1')
    actions.toggle_ready('host', True)
    actions.toggle_ready('guest1', True)
    assert store.get_room(room_id)['status'] == 'guess'
    actions.toggle_ready('host', True)
    actions.toggle_ready('guest1', True)
    assert store.get_room(room_id)['status'] == 'results'

    res = client.post(f'/api/rooms/{room_id}/results/next', json=_as(store, room_id, 'host'))
    assert res.status_code == 409
    assert res.get_json()['error'] == 'reveal_in_progress'
    assert store.get_room(room_id)['results_index'] == 0

    # Fire the host's reveal timers without waiting for the background loop
    driver.timers.run_due(driver.timers.now() + 10)
    res = client.post(f'/api/rooms/{room_id}/results/next', json=_as(store, room_id, 'host'))
    assert res.status_code == 200
    assert res.get_json()['changed'] is True
    assert store.get_room(room_id)['results_index'] == 1

    host.disconnect(namespace='/ws')
