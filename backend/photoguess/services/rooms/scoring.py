from typing import Dict, Iterable

POINTS_PER_CORRECT_GUESS = 100


def build_score_map(photos: Iterable[dict]) -> Dict[str, int]:
    """Score deltas for a finished guessing round.

    +100 to a guesser for every photo whose uploader they picked. Wrong
    guesses and missing guesses earn nothing. Not idempotent: applying the
    result twice scores the round twice.
    """
    scores: Dict[str, int] = {}
    for photo in photos:
        uploader = photo.get('uploaded_by')
        for guesser_id, target_id in (photo.get('guesses') or {}).items():
            if target_id == uploader:
                scores[guesser_id] = scores.get(guesser_id, 0) + POINTS_PER_CORRECT_GUESS
    return scores
