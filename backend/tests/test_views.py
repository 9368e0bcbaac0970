from photoguess.services.rooms.countdown import format_countdown, seconds_left, timer_expired
from photoguess.services.rooms.projector import build_snapshot
from photoguess.services.rooms.views import (
    assignments,
    avatar_url,
    can_remove_photo,
    can_upload,
    guess_completion_map,
    guessable_photos,
    interaction_locked,
    player_details,
    scoreboard,
    snapshot_payload,
    unassigned_photos,
)

USERS = [
    {'id': 'alice', 'name': 'Alice', 'role': 'host', 'ready': False, 'score': 100, 'joined_at': 1.0},
    {'id': 'bob', 'name': 'Bob', 'role': 'guest', 'ready': True, 'score': 200, 'joined_at': 2.0},
    {'id': 'carol', 'name': 'Carol', 'role': 'guest', 'ready': False, 'score': 100, 'joined_at': 3.0},
]
PHOTOS = [
    {'id': 'p1', 'uploaded_by': 'alice', 'created_at': 1.0, 'guesses': {'bob': 'alice'}},
    {'id': 'p2', 'uploaded_by': 'bob', 'created_at': 2.0, 'guesses': {'alice': 'carol', 'carol': 'bob'}},
    {'id': 'p3', 'uploaded_by': 'bob', 'created_at': 3.0, 'guesses': {}},
]


def test_guessable_photos_exclude_own():
    assert [p['id'] for p in guessable_photos(PHOTOS, 'bob')] == ['p1']
    assert [p['id'] for p in guessable_photos(PHOTOS, 'carol')] == ['p1', 'p2', 'p3']


def test_unassigned_and_assignments():
    assert [p['id'] for p in unassigned_photos(PHOTOS, 'alice')] == ['p3']
    assert {k: [p['id'] for p in v] for k, v in assignments(PHOTOS, 'alice').items()} == {'carol': ['p2']}
    assert assignments(PHOTOS, None) == {}


def test_guess_completion():
    completion = guess_completion_map(USERS, PHOTOS)
    assert completion == {'alice': False, 'bob': True, 'carol': False}


def test_upload_limits():
    assert can_upload(None, 10) is True
    assert can_upload(0, 10) is True
    assert can_upload(2, 1) is True
    assert can_upload(2, 2) is False


def test_player_details_requirement():
    capped = {d['player']['id']: d for d in player_details(USERS, PHOTOS, 2)}
    assert capped['bob']['uploads'] == 2
    assert capped['bob']['meets_upload_requirement'] is True
    assert capped['alice']['meets_upload_requirement'] is False

    unbounded = {d['player']['id']: d for d in player_details(USERS, PHOTOS, None)}
    assert unbounded['alice']['meets_upload_requirement'] is True
    assert unbounded['carol']['meets_upload_requirement'] is False


def test_only_uploader_removes_during_upload():
    assert can_remove_photo('upload', PHOTOS[0], 'alice') is True
    assert can_remove_photo('upload', PHOTOS[0], 'bob') is False
    assert can_remove_photo('guess', PHOTOS[0], 'alice') is False


def test_scoreboard_ties_keep_join_order():
    assert [u['id'] for u in scoreboard(USERS)] == ['bob', 'alice', 'carol']


def test_ready_user_is_locked_in_lobby():
    assert interaction_locked('join', USERS[1]) is True
    assert interaction_locked('upload', USERS[1]) is False
    assert interaction_locked('join', USERS[0]) is False


def test_countdown_helpers():
    assert seconds_left(None, 10.0) is None
    assert seconds_left(100.0, 10.5) == 89
    assert seconds_left(100.0, 200.0) == 0
    assert format_countdown(None) == '--:--'
    assert format_countdown(125) == '02:05'
    assert timer_expired({'countdown_enabled': True, 'timer_ends_at': 10.0}, 10.0) is True
    assert timer_expired({'countdown_enabled': False, 'timer_ends_at': 10.0}, 50.0) is False
    assert timer_expired({'countdown_enabled': True, 'timer_ends_at': None}, 50.0) is False


def test_avatar_url():
    assert avatar_url(None) is None
    assert 'seed=abc' in avatar_url('abc')


def test_snapshot_payload_for_viewer():
    room = {'id': 'r', 'status': 'upload', 'max_photos': 2, 'countdown_enabled': True, 'timer_ends_at': 130.0}
    snapshot = build_snapshot(room, USERS, PHOTOS, [])

    payload = snapshot_payload(snapshot, viewer_id='alice', now=5.0)

    assert payload['stage_title'] == 'Round 1: Upload'
    assert payload['ready_meaning'] == 'done_uploading'
    assert payload['seconds_left'] == 125
    assert payload['timer_label'] == '02:05'
    assert payload['is_host'] is True
    assert payload['can_upload'] is True
    assert [p['id'] for p in payload['my_photos']] == ['p1']
    assert payload['guessable_photo_ids'] == ['p2', 'p3']
    assert payload['host']['id'] == 'alice'
    assert payload['ready_count'] == 1
    assert payload['all_ready'] is False

    anonymous = snapshot_payload(snapshot)
    assert 'me' not in anonymous
    assert 'seconds_left' not in anonymous
