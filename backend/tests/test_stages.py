import io

import pytest

from photoguess.services.rooms.errors import ActionRejected, NotHost
from photoguess.services.rooms.projector import build_snapshot, read_snapshot
from photoguess.services.rooms.stages import (
    SHOW_RESULTS,
    START_GUESS,
    ReadyMeaning,
    StageController,
    compute_stage_duration,
    decide,
    ready_meaning,
)


def _snapshot(status, users=None, photos=None, **room):
    room.setdefault('countdown_enabled', False)
    room['status'] = status
    users = users if users is not None else [
        {'id': 'host', 'role': 'host', 'ready': False, 'joined_at': 1.0},
        {'id': 'guest', 'role': 'guest', 'ready': False, 'joined_at': 2.0},
    ]
    return build_snapshot(room, users, photos or [], [])


def _all_ready(users=('host', 'guest')):
    return [
        {'id': uid, 'role': 'host' if i == 0 else 'guest', 'ready': True, 'joined_at': float(i)}
        for i, uid in enumerate(users)
    ]


def test_stage_duration():
    assert compute_stage_duration(3) == 120 + 3 * 30
    assert compute_stage_duration(2, per_player_seconds=10, base_seconds=60) == 80


def test_ready_meaning_per_status():
    assert ready_meaning('join') is ReadyMeaning.READY_TO_START
    assert ready_meaning('upload') is ReadyMeaning.DONE_UPLOADING
    assert ready_meaning('guess') is ReadyMeaning.DONE_GUESSING
    assert ready_meaning('results') is ReadyMeaning.UNUSED


def test_upload_never_advances_without_photos():
    snapshot = _snapshot('upload', users=_all_ready(), countdown_enabled=True, timer_ends_at=10.0)
    assert decide(snapshot, now=100.0) is None


def test_upload_advances_when_everyone_is_done():
    snapshot = _snapshot('upload', users=_all_ready(), photos=[{'id': 'p1', 'uploaded_by': 'host'}])
    transition = decide(snapshot, now=0.0)
    assert transition.action == START_GUESS
    assert transition.reason == 'all_ready'


def test_upload_advances_when_timer_runs_out():
    snapshot = _snapshot('upload', photos=[{'id': 'p1', 'uploaded_by': 'host'}],
                         countdown_enabled=True, timer_ends_at=50.0)
    assert decide(snapshot, now=49.0) is None
    transition = decide(snapshot, now=50.0)
    assert transition.action == START_GUESS
    assert transition.reason == 'timer'


def test_timer_ignored_when_countdown_disabled():
    snapshot = _snapshot('guess', countdown_enabled=False, timer_ends_at=5.0)
    assert decide(snapshot, now=500.0) is None


def test_guess_advances_on_timer_or_ready():
    assert decide(_snapshot('guess', countdown_enabled=True, timer_ends_at=5.0), now=6.0).action == SHOW_RESULTS
    assert decide(_snapshot('guess', users=_all_ready()), now=0.0).action == SHOW_RESULTS


def test_auto_trigger_fires_once_per_stage():
    snapshot = _snapshot('guess', users=_all_ready())
    assert decide(snapshot, now=0.0, fired_for='guess') is None


def test_no_decision_while_loading():
    snapshot = _snapshot('guess', users=_all_ready())
    snapshot.loading = True
    assert decide(snapshot, now=0.0) is None


def test_join_and_results_never_auto_advance():
    assert decide(_snapshot('join', users=_all_ready()), now=0.0) is None
    assert decide(_snapshot('results', users=_all_ready()), now=0.0) is None


# ---- controller against the store ----

def _ready_everyone(actions, store):
    for user in store.list_users(actions.room_id):
        actions.toggle_ready(user['id'], True)


def test_only_host_can_start(store, make_room, timers):
    actions = make_room(guests=1)
    _ready_everyone(actions, store)
    controller = StageController(actions, 'guest1', clock=timers.now)
    with pytest.raises(NotHost):
        controller.start_upload_stage(read_snapshot(store, actions.room_id))


def test_start_requires_everyone_ready_and_enough_players(store, make_room, timers):
    actions = make_room(guests=0)
    actions.toggle_ready('host', True)
    controller = StageController(actions, 'host', clock=timers.now)
    with pytest.raises(ActionRejected):
        controller.start_upload_stage(read_snapshot(store, actions.room_id))

    actions.join_room('guest1', 'Guest 1')
    with pytest.raises(ActionRejected):
        controller.start_upload_stage(read_snapshot(store, actions.room_id))


def test_start_upload_sets_timer_and_clears_ready(store, make_room, timers):
    actions = make_room(guests=1, countdown_enabled=True)
    _ready_everyone(actions, store)
    controller = StageController(actions, 'host', clock=timers.now)

    assert controller.start_upload_stage(read_snapshot(store, actions.room_id)) is True

    room = store.get_room(actions.room_id)
    assert room['status'] == 'upload'
    assert room['timer_ends_at'] == pytest.approx(timers.now() + 120 + 2 * 30)
    assert not any(u['ready'] for u in store.list_users(actions.room_id))


def test_no_timer_without_countdown(store, make_room, timers):
    actions = make_room(guests=1, countdown_enabled=False)
    _ready_everyone(actions, store)
    StageController(actions, 'host', clock=timers.now).start_upload_stage(read_snapshot(store, actions.room_id))
    assert store.get_room(actions.room_id)['timer_ends_at'] is None


def test_stale_snapshot_cannot_advance_twice(store, make_room, timers):
    actions = make_room(guests=1)
    _ready_everyone(actions, store)
    stale = read_snapshot(store, actions.room_id)
    first = StageController(actions, 'host', clock=timers.now)
    second = StageController(actions, 'host', clock=timers.now)

    assert first.start_upload_stage(stale) is True
    actions.upload_room_photo(io.BytesIO(b'img'), 'a.png', 'host', 'Hana')
    guess_snapshot = read_snapshot(store, actions.room_id)
    assert first.start_guess_stage(guess_snapshot) is True
    # A second host acting on the old join snapshot loses the swap
    assert second.start_upload_stage(stale) is False
    assert store.get_room(actions.room_id)['status'] == 'guess'


def _play_to_guess(store, actions, timers):
    _ready_everyone(actions, store)
    controller = StageController(actions, 'host', clock=timers.now)
    controller.start_upload_stage(read_snapshot(store, actions.room_id))
    actions.upload_room_photo(io.BytesIO(b'host'), 'host.png', 'host', 'Hana')
    actions.upload_room_photo(io.BytesIO(b'guest'), 'guest.png', 'guest1', 'Guest 1')
    controller.start_guess_stage(read_snapshot(store, actions.room_id))
    photos = {p['uploaded_by']: p for p in store.list_photos(actions.room_id)}
    return controller, photos


def test_results_score_exactly_once(store, make_room, timers):
    actions = make_room(guests=1)
    controller, photos = _play_to_guess(store, actions, timers)
    actions.assign_photo_to_user(photos['host']['id'], 'host', 'guest1')
    actions.assign_photo_to_user(photos['guest1']['id'], 'host', 'host')

    stale = read_snapshot(store, actions.room_id)
    other = StageController(actions, 'host', clock=timers.now)
    assert controller.show_results_stage(stale) is True
    assert other.show_results_stage(stale) is False

    scores = {u['id']: u['score'] for u in store.list_users(actions.room_id)}
    assert scores == {'host': 0, 'guest1': 100}
    room = store.get_room(actions.room_id)
    assert room['status'] == 'results'
    assert room['results_index'] == 0
    assert room['results_applied_at'] is not None


def test_auto_transition_single_shot(store, make_room, timers):
    actions = make_room(guests=1)
    controller, _ = _play_to_guess(store, actions, timers)
    _ready_everyone(actions, store)
    snapshot = read_snapshot(store, actions.room_id)

    transition = controller.on_snapshot(snapshot)
    assert transition.action == SHOW_RESULTS
    # Same stage again: the guard holds even though the snapshot is stale
    assert controller.on_snapshot(snapshot) is None
    assert store.get_room(actions.room_id)['status'] == 'results'


def test_guest_controller_never_auto_advances(store, make_room, timers):
    actions = make_room(guests=1)
    _play_to_guess(store, actions, timers)
    _ready_everyone(actions, store)
    guest = StageController(actions, 'guest1', clock=timers.now)
    assert guest.on_snapshot(read_snapshot(store, actions.room_id)) is None
    assert store.get_room(actions.room_id)['status'] == 'guess'
