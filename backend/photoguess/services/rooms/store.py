"""Shared room store.

The durable record for every room: one room row plus the ``users``,
``photos`` and ``messages`` collections. Clients never talk to the tables
directly; they read through watches and write through the store's
field-level operations, which is all the coordination between players
there is.

Every committed write is pushed to in-process watchers of the touched
stream and broadcast as a ``state_update`` Socket.IO event so browsers
can refetch.
"""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from photoguess import db, socketio
from photoguess.models import Guess, Message, Photo, Room, RoomUser, gen_id
from .errors import ActionRejected, RoomNotFound, StoreError


STREAMS = ('room', 'users', 'photos', 'messages')

_clock_lock = threading.Lock()
_last_timestamp = 0.0


def server_timestamp() -> float:
    """Wall-clock seconds, strictly increasing within the process."""
    global _last_timestamp
    with _clock_lock:
        now = time.time()
        if now <= _last_timestamp:
            now = _last_timestamp + 1e-6
        _last_timestamp = now
        return now


_watch_lock = threading.RLock()
_watchers: Dict[Tuple[str, str], List['Watch']] = {}


class Watch:
    """A live subscription to one stream of one room."""

    def __init__(self, room_id: str, stream: str, fetch: Callable, on_next: Callable, on_error: Optional[Callable]):
        self.key = (room_id, stream)
        self.fetch = fetch
        self.on_next = on_next
        self.on_error = on_error
        self.active = True

    def deliver(self) -> None:
        if not self.active:
            return
        try:
            value = self.fetch()
        except StoreError as exc:
            # A failed stream stays failed; a new watch is needed to recover
            self.cancel()
            if self.on_error:
                self.on_error(exc)
            return
        if self.active:
            self.on_next(value)

    def cancel(self) -> None:
        self.active = False
        with _watch_lock:
            watchers = _watchers.get(self.key)
            if watchers and self in watchers:
                watchers.remove(self)
                if not watchers:
                    _watchers.pop(self.key, None)


def publish(room_id: str, stream: str) -> None:
    with _watch_lock:
        watchers = list(_watchers.get((room_id, stream), ()))
    for watch in watchers:
        watch.deliver()
    socketio.emit('state_update', {'room_id': room_id, 'stream': stream}, to=f"room:{room_id}", namespace='/ws')


def _columns(model) -> set:
    return {c.name for c in model.__table__.columns}


class RoomStore:
    """Field-level reads, writes and watches over the room tables.

    Writes commit immediately unless they run inside :meth:`batch`, in
    which case they commit together when the outermost batch exits.
    """

    def __init__(self):
        self._batch_depth = 0
        self._batch_cancelled = False
        self._touched: List[Tuple[str, str]] = []

    # ---- transactions ----

    @contextmanager
    def _guard(self):
        try:
            yield
        except SQLAlchemyError as exc:
            db.session.rollback()
            self._touched = []
            current_app.logger.error(f"[store-error] {exc.__class__.__name__}: {exc}")
            raise StoreError(str(exc)) from exc

    def _written(self, room_id: str, stream: str) -> None:
        self._touched.append((room_id, stream))
        if not self._batch_depth:
            self._flush()

    def _flush(self) -> None:
        with self._guard():
            db.session.commit()
        touched, self._touched = self._touched, []
        seen = set()
        for key in touched:
            if key in seen:
                continue
            seen.add(key)
            publish(*key)

    @contextmanager
    def batch(self):
        """Group writes into one transaction.

        Calling ``cancel()`` on the yielded store discards the batch when the
        block exits; an exception discards it and propagates.
        """
        if not self._batch_depth:
            self._batch_cancelled = False
        self._batch_depth += 1
        try:
            yield self
        except BaseException:
            self._batch_depth -= 1
            if not self._batch_depth:
                db.session.rollback()
                self._touched = []
            raise
        self._batch_depth -= 1
        if self._batch_depth:
            return
        if self._batch_cancelled:
            db.session.rollback()
            self._touched = []
        else:
            self._flush()

    def cancel(self) -> None:
        self._batch_cancelled = True

    # ---- reads ----

    def get_room(self, room_id: str) -> Optional[dict]:
        with self._guard():
            room = db.session.get(Room, room_id)
            return room.to_dict() if room else None

    def require_room(self, room_id: str) -> dict:
        room = self.get_room(room_id)
        if room is None:
            raise RoomNotFound()
        return room

    def user_token(self, room_id: str, user_id: str) -> Optional[str]:
        with self._guard():
            user = db.session.get(RoomUser, (room_id, user_id))
            return user.token if user else None

    def list_users(self, room_id: str) -> List[dict]:
        with self._guard():
            users = RoomUser.query.filter_by(room_id=room_id).order_by(RoomUser.joined_at.asc()).all()
            return [u.to_dict() for u in users]

    def get_user(self, room_id: str, user_id: str) -> Optional[dict]:
        with self._guard():
            user = db.session.get(RoomUser, (room_id, user_id))
            return user.to_dict() if user else None

    def list_photos(self, room_id: str) -> List[dict]:
        with self._guard():
            photos = Photo.query.filter_by(room_id=room_id).order_by(Photo.created_at.asc()).all()
            return [p.to_dict() for p in photos]

    def get_photo(self, room_id: str, photo_id: str) -> Optional[dict]:
        with self._guard():
            photo = db.session.get(Photo, photo_id)
            if not photo or photo.room_id != room_id:
                return None
            return photo.to_dict()

    def list_messages(self, room_id: str) -> List[dict]:
        with self._guard():
            messages = Message.query.filter_by(room_id=room_id).order_by(Message.created_at.asc()).all()
            return [m.to_dict() for m in messages]

    # ---- watches ----

    def _watch(self, room_id, stream, fetch, on_next, on_error) -> Callable[[], None]:
        watch = Watch(room_id, stream, fetch, on_next, on_error)
        with _watch_lock:
            _watchers.setdefault(watch.key, []).append(watch)
        watch.deliver()
        return watch.cancel

    def watch_room(self, room_id: str, on_next, on_error=None) -> Callable[[], None]:
        return self._watch(room_id, 'room', lambda: self.get_room(room_id), on_next, on_error)

    def watch_collection(self, room_id: str, name: str, on_next, on_error=None) -> Callable[[], None]:
        fetchers = {
            'users': self.list_users,
            'photos': self.list_photos,
            'messages': self.list_messages,
        }
        if name not in fetchers:
            raise ValueError(f"Unknown collection '{name}'")
        fetch = fetchers[name]
        return self._watch(room_id, name, lambda: fetch(room_id), on_next, on_error)

    # ---- room writes ----

    def create_room(self, fields: dict) -> str:
        room_id = fields.get('id') or gen_id()
        now = server_timestamp()
        values = {k: v for k, v in fields.items() if k != 'id'}
        with self._guard():
            db.session.add(Room(id=room_id, created_at=now, updated_at=now, **values))
        self._written(room_id, 'room')
        return room_id

    def update_room(self, room_id: str, fields: dict, expected_status: Optional[str] = None,
                    expected_results_index: Optional[int] = None) -> bool:
        """Update room fields; with an ``expected_*`` guard this is compare-and-swap.

        Returns False when a guard did not match. Without guards a missing
        room raises RoomNotFound.
        """
        unknown = set(fields) - _columns(Room)
        if unknown:
            raise ValueError(f"Unknown room fields: {', '.join(sorted(unknown))}")
        values = dict(fields)
        values.setdefault('updated_at', server_timestamp())
        with self._guard():
            query = Room.query.filter_by(id=room_id)
            if expected_status is not None:
                query = query.filter_by(status=expected_status)
            if expected_results_index is not None:
                query = query.filter_by(results_index=expected_results_index)
            changed = query.update(values, synchronize_session=False)
            db.session.expire_all()
        if not changed:
            if expected_status is None and expected_results_index is None:
                db.session.rollback()
                raise RoomNotFound()
            return False
        self._written(room_id, 'room')
        return True

    # ---- user writes ----

    def upsert_user(self, room_id: str, user_id: str, fields: dict, defaults: Optional[dict] = None) -> bool:
        """Merge ``fields`` into the user record, creating it with ``defaults`` first.

        Returns True when the record was created.
        """
        with self._guard():
            user = db.session.get(RoomUser, (room_id, user_id))
            created = user is None
            if created:
                values = dict(defaults or {})
                values.update(fields)
                values.setdefault('joined_at', server_timestamp())
                user = RoomUser(room_id=room_id, id=user_id, **values)
                db.session.add(user)
            else:
                for key, value in fields.items():
                    setattr(user, key, value)
                user.updated_at = server_timestamp()
        self._written(room_id, 'users')
        return created

    def update_user(self, room_id: str, user_id: str, fields: dict) -> None:
        unknown = set(fields) - _columns(RoomUser)
        if unknown:
            raise ValueError(f"Unknown user fields: {', '.join(sorted(unknown))}")
        with self._guard():
            changed = RoomUser.query.filter_by(room_id=room_id, id=user_id).update(fields, synchronize_session=False)
            db.session.expire_all()
        if not changed:
            raise RoomNotFound('user_not_found')
        self._written(room_id, 'users')

    def increment_score(self, room_id: str, user_id: str, delta: int) -> None:
        with self._guard():
            changed = RoomUser.query.filter_by(room_id=room_id, id=user_id).update(
                {RoomUser.score: RoomUser.score + delta, RoomUser.score_updated_at: server_timestamp()},
                synchronize_session=False,
            )
            db.session.expire_all()
        if not changed:
            raise RoomNotFound('user_not_found')
        self._written(room_id, 'users')

    # ---- photo writes ----

    def add_photo(self, room_id: str, fields: dict, max_per_uploader: Optional[int] = None) -> dict:
        """Insert a photo; with ``max_per_uploader`` the cap is counted in the same transaction."""
        with self._guard():
            if max_per_uploader:
                owned = Photo.query.filter_by(room_id=room_id, uploaded_by=fields.get('uploaded_by')).count()
                if owned >= max_per_uploader:
                    raise ActionRejected('upload_limit_reached')
            photo = Photo(id=gen_id(), room_id=room_id, created_at=server_timestamp(), **fields)
            db.session.add(photo)
            db.session.flush()
            data = photo.to_dict()
        self._written(room_id, 'photos')
        return data

    def delete_photo(self, room_id: str, photo_id: str) -> bool:
        with self._guard():
            photo = db.session.get(Photo, photo_id)
            if not photo or photo.room_id != room_id:
                return False
            db.session.delete(photo)
        self._written(room_id, 'photos')
        return True

    def set_guess(self, room_id: str, photo_id: str, guesser_id: str, target_id: str) -> None:
        """Write one key of a photo's guess map; the last write wins."""
        with self._guard():
            photo = db.session.get(Photo, photo_id)
            if not photo or photo.room_id != room_id:
                raise RoomNotFound('photo_not_found')
            photo.updated_at = server_timestamp()
            existing = Guess.query.filter_by(photo_id=photo_id, guesser_id=guesser_id).first()
            if existing:
                existing.target_id = target_id
            else:
                db.session.add(Guess(photo_id=photo_id, guesser_id=guesser_id, target_id=target_id))
            try:
                db.session.flush()
            except IntegrityError:
                # Same guesser raced us to the insert; overwrite their row
                if self._batch_depth:
                    raise
                db.session.rollback()
                Guess.query.filter_by(photo_id=photo_id, guesser_id=guesser_id).update(
                    {'target_id': target_id}, synchronize_session=False
                )
        self._written(room_id, 'photos')

    # ---- messages ----

    def add_message(self, room_id: str, fields: dict) -> dict:
        with self._guard():
            message = Message(id=gen_id(), room_id=room_id, created_at=server_timestamp(), **fields)
            db.session.add(message)
            db.session.flush()
            data = message.to_dict()
        self._written(room_id, 'messages')
        return data
