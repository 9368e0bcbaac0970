from photoguess.services.rooms.scoring import POINTS_PER_CORRECT_GUESS, build_score_map


def test_correct_guesses_score_per_photo():
    photos = [
        {'id': 'p1', 'uploaded_by': 'alice', 'guesses': {'bob': 'alice', 'carol': 'alice'}},
        {'id': 'p2', 'uploaded_by': 'bob', 'guesses': {'alice': 'bob', 'carol': 'alice'}},
    ]
    scores = build_score_map(photos)
    assert scores == {
        'bob': POINTS_PER_CORRECT_GUESS,
        'carol': POINTS_PER_CORRECT_GUESS,
        'alice': POINTS_PER_CORRECT_GUESS,
    }


def test_wrong_and_missing_guesses_earn_nothing():
    photos = [
        {'id': 'p1', 'uploaded_by': 'alice', 'guesses': {'bob': 'carol'}},
        {'id': 'p2', 'uploaded_by': 'bob', 'guesses': None},
        {'id': 'p3', 'uploaded_by': 'carol'},
    ]
    assert build_score_map(photos) == {}


def test_points_accumulate_across_photos():
    photos = [
        {'id': 'p1', 'uploaded_by': 'alice', 'guesses': {'bob': 'alice'}},
        {'id': 'p2', 'uploaded_by': 'alice', 'guesses': {'bob': 'alice'}},
    ]
    assert build_score_map(photos) == {'bob': 2 * POINTS_PER_CORRECT_GUESS}


def test_no_photos_no_scores():
    assert build_score_map([]) == {}
