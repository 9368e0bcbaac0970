"""Room actions: the only code that writes room state.

One method per player or host intent. Each performs its store writes in
order and lets the first failure propagate; earlier writes are not rolled
back because every write is safe to repeat. Composite stage changes are
wrapped in :meth:`RoomActions.batch` by the stage controller.
"""

import hmac
import re
import secrets
from typing import BinaryIO, Callable, Optional

from flask import current_app

from .blobs import build_storage_path
from .errors import ActionRejected, NotAuthorized, RoomNotFound
from .stages import COMPLETE, GUESS, JOIN, RESULTS, UPLOAD
from .store import RoomStore, server_timestamp


SYSTEM_USER = 'system'


def new_user_token() -> str:
    return secrets.token_urlsafe(24)


def base_room_data(game_name, countdown_enabled, max_photos, host_uid, timer_per_user_seconds):
    return {
        'status': JOIN,
        'game_name': game_name,
        'countdown_enabled': bool(countdown_enabled),
        'max_photos': max_photos,
        'host_uid': host_uid,
        'timer_per_user_seconds': timer_per_user_seconds,
        'round': 1,
        'results_index': 0,
    }


class RoomActions:
    def __init__(self, store: RoomStore, room_id: Optional[str] = None, blobs=None):
        self.store = store
        self.room_id = room_id
        self._blobs = blobs

    @property
    def blobs(self):
        if self._blobs is None:
            self._blobs = current_app.extensions['photoguess.blobs']
        return self._blobs

    def _require_room_id(self) -> str:
        if not self.room_id:
            raise RoomNotFound('room_id required')
        return self.room_id

    def batch(self):
        return self.store.batch()

    # ---- lobby ----

    def create_room(self, host_uid, host_name, game_name, countdown_enabled=False, max_photos=1,
                    timer_per_user_seconds=30, host_avatar=None, host_avatar_seed=None) -> str:
        """Create a room in the ``join`` stage with its host already seated.

        Writes are not deduplicated: a failure part way leaves a partial room
        behind and the caller retries by creating a fresh one.
        """
        room_id = self.store.create_room(base_room_data(
            game_name, countdown_enabled, max_photos, host_uid, timer_per_user_seconds,
        ))
        self.store.upsert_user(room_id, host_uid, {
            'name': host_name,
            'avatar_seed': host_avatar_seed,
            'photo_url': host_avatar,
            'role': 'host',
            'ready': False,
            'score': 0,
            'connected': True,
            'token': new_user_token(),
        })
        self.store.add_message(room_id, {
            'text': re.sub(r'\s+', ' ', f"{host_name} created the room"),
            'user_name': SYSTEM_USER,
        })
        self.room_id = room_id
        current_app.logger.info(f"[room-create] room={room_id} host={host_uid} max_photos={max_photos}")
        return room_id

    def join_room(self, user_id, name, avatar_seed=None, photo_url=None, role='guest') -> bool:
        """Seat a user, or refresh their profile if they are already seated.

        Rejoining merges: score, join time and role of an existing user are
        kept. The host role is only ever granted when the room was created,
        so a ``role='host'`` join from anyone but the room's host lands as a
        guest.
        """
        room_id = self._require_room_id()
        room = self.store.require_room(room_id)
        if role == 'host' and user_id != room.get('host_uid'):
            role = 'guest'
        created = self.store.upsert_user(
            room_id, user_id,
            {'name': name, 'avatar_seed': avatar_seed, 'photo_url': photo_url, 'connected': True},
            defaults={'role': role, 'ready': False, 'score': 0, 'token': new_user_token()},
        )
        self.store.add_message(room_id, {'text': f"{name} joined the room", 'user_name': SYSTEM_USER})
        return created

    def verify_member(self, user_id: Optional[str], token: Optional[str]) -> dict:
        """The seated user ``user_id``, provided ``token`` is the one issued when they joined."""
        room_id = self._require_room_id()
        if not user_id:
            raise ActionRejected('user_id is required')
        user = self.store.get_user(room_id, user_id)
        if user is None:
            raise RoomNotFound('user_not_found')
        expected = self.store.user_token(room_id, user_id)
        if not token or not expected or not hmac.compare_digest(str(token), expected):
            current_app.logger.warning(f"[room-auth] room={room_id} user={user_id} bad token")
            raise NotAuthorized()
        return user

    def user_token(self, user_id: str) -> Optional[str]:
        return self.store.user_token(self._require_room_id(), user_id)

    def update_user(self, user_id, **payload) -> None:
        payload['updated_at'] = server_timestamp()
        self.store.update_user(self._require_room_id(), user_id, payload)

    def toggle_ready(self, user_id, value: bool) -> None:
        self.store.update_user(self._require_room_id(), user_id, {
            'ready': bool(value),
            'ready_at': server_timestamp() if value else None,
        })

    def send_message(self, user_name, text, user_photo=None) -> dict:
        return self.store.add_message(self._require_room_id(), {
            'text': text,
            'user_name': user_name,
            'user_photo': user_photo,
        })

    # ---- photos ----

    def upload_room_photo(self, stream: BinaryIO, filename: str, owner_id: str, owner_name: str,
                          room_id: Optional[str] = None,
                          on_progress: Optional[Callable[[int], None]] = None) -> str:
        """Store the image, then create the photo record pointing at it.

        The record is only written after the upload completed, so a failed
        upload never leaves a photo without an image. Returns the image URL.
        """
        active_room_id = room_id or self._require_room_id()
        room = self.store.require_room(active_room_id)
        if room['status'] != UPLOAD:
            raise ActionRejected('uploads_closed')
        max_photos = room.get('max_photos')
        if max_photos:
            mine = [p for p in self.store.list_photos(active_room_id) if p.get('uploaded_by') == owner_id]
            if len(mine) >= max_photos:
                raise ActionRejected('upload_limit_reached')

        storage_path = build_storage_path(active_room_id, filename)
        self.blobs.upload(storage_path, stream, on_progress)
        url = self.blobs.url_for(storage_path)
        try:
            # Re-counted inside the insert: a concurrent upload may have filled the cap
            self.store.add_photo(active_room_id, {
                'url': url,
                'storage_path': storage_path,
                'uploaded_by': owner_id,
                'uploaded_by_name': owner_name,
            }, max_per_uploader=max_photos)
        except ActionRejected:
            try:
                self.blobs.delete(storage_path)
            except OSError as exc:
                current_app.logger.info(f"[photo-upload] room={active_room_id} blob {storage_path} left behind: {exc}")
            raise
        current_app.logger.info(f"[photo-upload] room={active_room_id} owner={owner_id} path={storage_path}")
        return url

    def remove_photo(self, photo_id: str, storage_path: Optional[str] = None) -> None:
        """Best-effort removal: neither step raises.

        A leftover image file is acceptable; a failed record delete is
        logged and not retried.
        """
        room_id = self._require_room_id()
        try:
            self.store.delete_photo(room_id, photo_id)
        except Exception as exc:
            current_app.logger.warning(f"[photo-remove] room={room_id} photo={photo_id} record delete failed: {exc}")
        if storage_path:
            try:
                self.blobs.delete(storage_path)
            except Exception as exc:
                current_app.logger.info(f"[photo-remove] room={room_id} blob {storage_path} left behind: {exc}")

    def assign_photo_to_user(self, photo_id: str, target_user_id: str, acting_user_id: str) -> None:
        room_id = self._require_room_id()
        if self.store.require_room(room_id)['status'] != GUESS:
            raise ActionRejected('guessing_closed')
        photo = self.store.get_photo(room_id, photo_id)
        if photo is None:
            raise RoomNotFound('photo_not_found')
        if photo.get('uploaded_by') == acting_user_id:
            raise ActionRejected('cannot_guess_own_photo')
        self.store.set_guess(room_id, photo_id, acting_user_id, target_user_id)

    # ---- stage control ----

    def change_status(self, next_status: str, expected_status: Optional[str] = None, **extra) -> bool:
        """Move the room to ``next_status``.

        With ``expected_status`` the change only happens if the room is
        still in that status, so two hosts racing the same transition
        produce one change. Returns whether this call changed it.
        """
        fields = dict(extra)
        fields['status'] = next_status
        return self.store.update_room(self._require_room_id(), fields, expected_status=expected_status)

    def reset_ready_for_all(self) -> int:
        """Clear every user's ready flag; returns how many were reset.

        Users are read once up front; someone joining after the read keeps
        the ready flag they joined with (which is always False).
        """
        room_id = self._require_room_id()
        users = self.store.list_users(room_id)
        with self.store.batch():
            for user in users:
                self.store.update_user(room_id, user['id'], {'ready': False, 'ready_at': None})
        return len(users)

    def set_timer(self, ends_at: Optional[float]) -> None:
        self.store.update_room(self._require_room_id(), {
            'timer_ends_at': ends_at,
            'timer_started_at': server_timestamp(),
        })

    def record_score(self, user_id: str, delta: int) -> None:
        if delta < 0:
            raise ActionRejected('negative_score_delta')
        self.store.increment_score(self._require_room_id(), user_id, delta)

    def set_results_index(self, index: int, expected_index: Optional[int] = None,
                          at: Optional[float] = None) -> bool:
        return self.store.update_room(
            self._require_room_id(), {'results_index': index, 'results_step_at': at or server_timestamp()},
            expected_status=RESULTS, expected_results_index=expected_index,
        )

    def complete_room(self) -> bool:
        return self.store.update_room(
            self._require_room_id(),
            {'status': COMPLETE, 'completed_at': server_timestamp()},
            expected_status=RESULTS,
        )

    def current_photos(self):
        return self.store.list_photos(self._require_room_id())

    def current_users(self):
        return self.store.list_users(self._require_room_id())
