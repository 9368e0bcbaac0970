"""Live projection of one room.

The projector holds four watches (room, users, photos, messages) and
folds whatever they last delivered into a :class:`RoomSnapshot`. The
streams are independent: a snapshot may pair a newer photos list with an
older users list, so every derived fact is computed from the lists held
at that moment and nothing assumes cross-stream ordering.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional

from flask import current_app

from .store import RoomStore


def timestamp_value(value) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if hasattr(value, 'timestamp'):
        return value.timestamp()
    return 0.0


def sort_users(users: List[dict]) -> List[dict]:
    return sorted(users, key=lambda u: timestamp_value(u.get('joined_at')))


@dataclass
class RoomSnapshot:
    room: Optional[dict] = None
    users: List[dict] = field(default_factory=list)
    photos: List[dict] = field(default_factory=list)
    messages: List[dict] = field(default_factory=list)
    loading: bool = True
    error: Optional[Exception] = None
    host: Optional[dict] = None
    ready_count: int = 0
    all_ready: bool = False

    @property
    def status(self) -> Optional[str]:
        return self.room.get('status') if self.room else None

    def user(self, user_id: Optional[str]) -> Optional[dict]:
        if not user_id:
            return None
        return next((u for u in self.users if u.get('id') == user_id), None)

    def is_host(self, user_id: Optional[str]) -> bool:
        user = self.user(user_id)
        return bool(user and user.get('role') == 'host')


def build_snapshot(room, users, photos, messages, loading=False, error=None) -> RoomSnapshot:
    ordered = sort_users(users or [])
    host = next((u for u in ordered if u.get('role') == 'host'), None)
    ready_count = sum(1 for u in ordered if u.get('ready'))
    return RoomSnapshot(
        room=room,
        users=ordered,
        photos=list(photos or []),
        messages=list(messages or []),
        loading=loading,
        error=error,
        host=host,
        ready_count=ready_count,
        all_ready=len(ordered) > 0 and ready_count == len(ordered),
    )


def read_snapshot(store: RoomStore, room_id: str) -> RoomSnapshot:
    """One-off snapshot straight from the store, for request handlers."""
    return build_snapshot(
        store.get_room(room_id),
        store.list_users(room_id),
        store.list_photos(room_id),
        store.list_messages(room_id),
    )


class RoomStateProjector:
    """Keeps a combined snapshot of a room up to date from four watches.

    ``bind(room_id, enabled)`` (re)subscribes only when either argument
    changed; anything else tears the old watches down first so a late
    delivery from a previous room can never land in the new snapshot.
    Errors are terminal for the current binding and are not retried.
    """

    STREAMS = ('room', 'users', 'photos', 'messages')

    def __init__(self, store: RoomStore, on_change: Optional[Callable[[RoomSnapshot], None]] = None):
        self.store = store
        self.on_change = on_change
        self.room_id: Optional[str] = None
        self.enabled = False
        self._generation = 0
        self._unsubscribers: List[Callable[[], None]] = []
        self._reset_state()

    def _reset_state(self) -> None:
        self._room = None
        self._users: List[dict] = []
        self._photos: List[dict] = []
        self._messages: List[dict] = []
        self._delivered = set()
        self._loading = True
        self._error = None

    @property
    def snapshot(self) -> RoomSnapshot:
        return build_snapshot(self._room, self._users, self._photos, self._messages,
                              loading=self._loading, error=self._error)

    def bind(self, room_id: Optional[str], enabled: bool = True) -> None:
        if room_id == self.room_id and enabled == self.enabled and (self._unsubscribers or not room_id or not enabled):
            return
        self.close()
        self.room_id = room_id
        self.enabled = enabled
        if not room_id or not enabled:
            return

        self._generation += 1
        generation = self._generation
        self._reset_state()

        def on_next(stream):
            def handler(value):
                if generation != self._generation:
                    return
                self._apply(stream, value)
            return handler

        def on_error(exc):
            if generation != self._generation:
                return
            current_app.logger.error(f"[projector-error] room={room_id} error={exc}")
            self._error = exc
            self._loading = False
            self._changed()

        self._unsubscribers.append(self.store.watch_room(room_id, on_next('room'), on_error))
        for name in ('users', 'photos', 'messages'):
            self._unsubscribers.append(self.store.watch_collection(room_id, name, on_next(name), on_error))

    def close(self) -> None:
        self._generation += 1
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()
        self._reset_state()

    def _apply(self, stream: str, value) -> None:
        if stream == 'room':
            self._room = value
        elif stream == 'users':
            self._users = sort_users(value)
        elif stream == 'photos':
            self._photos = list(value)
        else:
            self._messages = list(value)
        self._delivered.add(stream)
        if self._loading and self._delivered.issuperset(self.STREAMS):
            self._loading = False
        self._changed()

    def _changed(self) -> None:
        if self.on_change:
            self.on_change(self.snapshot)
