"""Derived views over a room snapshot.

Plain functions the API and clients share to answer questions such as
"which photos may this player still guess" or "who is winning".
"""

from typing import Dict, List, Optional

from .countdown import format_countdown, seconds_left
from .stages import JOIN, STAGE_TITLES, UPLOAD, ready_meaning

AVATAR_URL = 'https://api.dicebear.com/7.x/croodles/svg?seed={seed}&size=96&backgroundType=gradientLinear,solid'


def avatar_url(seed: Optional[str]) -> Optional[str]:
    if not seed:
        return None
    return AVATAR_URL.format(seed=seed)


def user_map(users: List[dict]) -> Dict[str, dict]:
    return {u['id']: u for u in users}


def photos_by(photos: List[dict], user_id: Optional[str]) -> List[dict]:
    return [p for p in photos if p.get('uploaded_by') == user_id]


def player_upload_counts(users: List[dict], photos: List[dict]) -> Dict[str, int]:
    counts = {u['id']: 0 for u in users}
    for photo in photos:
        uploader = photo.get('uploaded_by')
        if uploader in counts:
            counts[uploader] += 1
    return counts


def player_details(users: List[dict], photos: List[dict], max_photos: Optional[int]) -> List[dict]:
    counts = player_upload_counts(users, photos)
    details = []
    for user in users:
        uploads = counts.get(user['id'], 0)
        required = max_photos if max_photos else 1
        details.append({
            'player': user,
            'uploads': uploads,
            'meets_upload_requirement': uploads >= required,
        })
    return details


def can_upload(max_photos: Optional[int], uploaded: int) -> bool:
    """A missing or zero cap never blocks an upload."""
    if not max_photos:
        return True
    return uploaded < max_photos


def can_remove_photo(status: Optional[str], photo: dict, user_id: Optional[str]) -> bool:
    return status == UPLOAD and user_id is not None and photo.get('uploaded_by') == user_id


def guessable_photos(photos: List[dict], user_id: Optional[str]) -> List[dict]:
    """Photos ``user_id`` may guess on: everything except their own."""
    return [p for p in photos if p.get('uploaded_by') != user_id]


def unassigned_photos(photos: List[dict], user_id: Optional[str]) -> List[dict]:
    """Guessable photos this user has not placed yet."""
    return [p for p in guessable_photos(photos, user_id) if not (p.get('guesses') or {}).get(user_id)]


def assignments(photos: List[dict], user_id: Optional[str]) -> Dict[str, List[dict]]:
    """Target user id -> photos ``user_id`` attributed to them."""
    result: Dict[str, List[dict]] = {}
    if not user_id:
        return result
    for photo in photos:
        target = (photo.get('guesses') or {}).get(user_id)
        if target:
            result.setdefault(target, []).append(photo)
    return result


def guess_completion_map(users: List[dict], photos: List[dict]) -> Dict[str, bool]:
    """Whether each user has guessed every photo that is not theirs."""
    completion = {}
    for user in users:
        mine = guessable_photos(photos, user['id'])
        done = sum(1 for p in mine if (p.get('guesses') or {}).get(user['id']))
        completion[user['id']] = len(mine) > 0 and done >= len(mine)
    return completion


def scoreboard(users: List[dict]) -> List[dict]:
    """Users by score, highest first; equal scores keep join order."""
    return sorted((dict(u) for u in users), key=lambda u: -(u.get('score') or 0))


def stage_title(status: Optional[str]) -> str:
    return STAGE_TITLES.get(status, 'Room')


def interaction_locked(status: Optional[str], user: Optional[dict]) -> bool:
    return status == JOIN and bool(user and user.get('ready'))


def snapshot_payload(snapshot, viewer_id: Optional[str] = None, now: Optional[float] = None) -> dict:
    """JSON-ready room state, with per-viewer fields when ``viewer_id`` is given."""
    room = snapshot.room or {}
    status = room.get('status')
    payload = {
        'room': room or None,
        'users': snapshot.users,
        'photos': snapshot.photos,
        'messages': snapshot.messages,
        'host': snapshot.host,
        'ready_count': snapshot.ready_count,
        'all_ready': snapshot.all_ready,
        'ready_meaning': ready_meaning(status).value,
        'stage_title': stage_title(status),
        'scoreboard': scoreboard(snapshot.users),
        'player_details': [
            {'id': d['player']['id'], 'uploads': d['uploads'], 'meets_upload_requirement': d['meets_upload_requirement']}
            for d in player_details(snapshot.users, snapshot.photos, room.get('max_photos'))
        ],
        'guess_completion': guess_completion_map(snapshot.users, snapshot.photos),
    }
    if now is not None:
        secs = seconds_left(room.get('timer_ends_at'), now)
        payload['seconds_left'] = secs
        payload['timer_label'] = format_countdown(secs)
    if viewer_id:
        me = snapshot.user(viewer_id)
        payload['me'] = me
        payload['is_host'] = snapshot.is_host(viewer_id)
        payload['interaction_locked'] = interaction_locked(status, me)
        payload['my_photos'] = photos_by(snapshot.photos, viewer_id)
        payload['can_upload'] = status == UPLOAD and can_upload(
            room.get('max_photos'), len(payload['my_photos'])
        )
        payload['guessable_photo_ids'] = [p['id'] for p in guessable_photos(snapshot.photos, viewer_id)]
        payload['unassigned_photo_ids'] = [p['id'] for p in unassigned_photos(snapshot.photos, viewer_id)]
    return payload
