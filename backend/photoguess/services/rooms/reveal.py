"""Results reveal.

Every client orders the room's photos the same way (creation time, then
id) so the room's ``results_index`` means the same photo everywhere. The
:class:`RevealSequencer` then plays the reveal for the current photo
locally: photo, uploader, correct guessers one by one, done. Its steps are
timer events posted to the client's event queue; moving to another photo
cancels whatever was still pending.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .projector import timestamp_value
from .stages import RESULTS


IDLE = 'idle'
PHOTO = 'photo'
UPLOADER = 'uploader'
GUESSES = 'guesses'
DONE = 'done'

PHASE_ORDER = (IDLE, PHOTO, UPLOADER, GUESSES, DONE)

# Seconds after a photo appears
REVEAL_UPLOADER_AT = 1.2
REVEAL_GUESSES_AT = 2.4
GUESSER_STAGGER = 0.4
DONE_AFTER_GUESSERS = 0.6
DONE_WITHOUT_GUESSERS = 0.8


def order_results_photos(photos: List[dict]) -> List[dict]:
    return sorted(photos, key=lambda p: (timestamp_value(p.get('created_at')), p.get('id') or ''))


def clamp_results_index(raw, total: int) -> int:
    if total <= 0:
        return 0
    index = raw if isinstance(raw, int) else 0
    return min(max(index, 0), total - 1)


def correct_guessers(photo: Optional[dict], users: List[dict]) -> List[dict]:
    """Users who picked the uploader of ``photo``, in join order."""
    if not photo:
        return []
    guesses = photo.get('guesses') or {}
    uploader = photo.get('uploaded_by')
    return [u for u in users if guesses.get(u.get('id')) == uploader]


def reveal_schedule(guesser_count: int):
    """(delay, event) pairs for one photo's reveal."""
    events = [
        (REVEAL_UPLOADER_AT, ('phase', UPLOADER)),
        (REVEAL_GUESSES_AT, ('phase', GUESSES)),
    ]
    for index in range(guesser_count):
        events.append((REVEAL_GUESSES_AT + (index + 1) * GUESSER_STAGGER, ('guessers', index + 1)))
    if guesser_count:
        done_at = REVEAL_GUESSES_AT + guesser_count * GUESSER_STAGGER + DONE_AFTER_GUESSERS
    else:
        done_at = REVEAL_GUESSES_AT + DONE_WITHOUT_GUESSERS
    events.append((done_at, ('phase', DONE)))
    return events


def reveal_duration(guesser_count: int) -> float:
    """Seconds from a photo coming up to its reveal reaching ``done``."""
    return reveal_schedule(guesser_count)[-1][0]


def reveal_finished_at(room: Optional[dict], view: 'ResultsView') -> Optional[float]:
    """When every client's reveal of ``view``'s photo is done, or None if unknown."""
    room = room or {}
    started = room.get('results_step_at')
    if started is None:
        started = room.get('results_applied_at')
    if started is None:
        return None
    return started + reveal_duration(len(view.correct_guessers))


@dataclass
class ResultsView:
    photos: List[dict] = field(default_factory=list)
    index: int = 0
    raw_index: int = 0
    photo: Optional[dict] = None
    uploader: Optional[dict] = None
    correct_guessers: List[dict] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.photos)

    @property
    def is_final(self) -> bool:
        return self.total > 0 and self.index >= self.total - 1

    def guessed_correctly(self, user_id: Optional[str]) -> bool:
        if not user_id or not self.photo:
            return False
        return (self.photo.get('guesses') or {}).get(user_id) == self.photo.get('uploaded_by')


def build_results_view(snapshot) -> ResultsView:
    photos = order_results_photos(snapshot.photos)
    raw = (snapshot.room or {}).get('results_index')
    raw_index = raw if isinstance(raw, int) else 0
    index = clamp_results_index(raw_index, len(photos))
    photo = photos[index] if photos else None
    uploader = snapshot.user(photo.get('uploaded_by')) if photo else None
    return ResultsView(
        photos=photos,
        index=index,
        raw_index=raw_index,
        photo=photo,
        uploader=uploader,
        correct_guessers=correct_guessers(photo, snapshot.users),
    )


class RevealSequencer:
    """Local reveal state for the photo the room points at.

    ``post`` is how timer events get back onto the owner's event queue;
    by default they run directly in the timer callback.
    """

    def __init__(self, timers, post: Optional[Callable] = None):
        self.timers = timers
        self._post = post or (lambda handler, *args: handler(*args))
        self._generation = 0
        self._handles = []
        self.phase = IDLE
        self.photo_id: Optional[str] = None
        self.visible_guessers = 0

    def sync(self, status: Optional[str], photo_id: Optional[str], guesser_count: int) -> None:
        if status != RESULTS or photo_id is None:
            if self.phase != IDLE or self.photo_id is not None:
                self.reset()
            return
        if photo_id == self.photo_id:
            return
        self._start(photo_id, guesser_count)

    def sync_view(self, status: Optional[str], view: ResultsView) -> None:
        photo_id = view.photo.get('id') if view.photo else None
        self.sync(status, photo_id, len(view.correct_guessers))

    def _start(self, photo_id: str, guesser_count: int) -> None:
        self._cancel_timers()
        self._generation += 1
        generation = self._generation
        self.photo_id = photo_id
        self.phase = PHOTO
        self.visible_guessers = 0
        for delay, event in reveal_schedule(guesser_count):
            self._handles.append(self.timers.call_later(delay, self._post, self._on_timer, generation, event))

    def _on_timer(self, generation: int, event) -> None:
        if generation != self._generation:
            return
        kind, value = event
        if kind == 'guessers':
            self.visible_guessers = max(self.visible_guessers, value)
        elif PHASE_ORDER.index(value) > PHASE_ORDER.index(self.phase):
            self.phase = value

    def _cancel_timers(self) -> None:
        handles, self._handles = self._handles, []
        for handle in handles:
            handle.cancel()

    def reset(self) -> None:
        self._cancel_timers()
        self._generation += 1
        self.phase = IDLE
        self.photo_id = None
        self.visible_guessers = 0

    def is_done_for(self, photo_id: Optional[str]) -> bool:
        return self.phase == DONE and photo_id is not None and self.photo_id == photo_id

    def displayed_guessers(self, view: ResultsView) -> List[dict]:
        return view.correct_guessers[:max(0, self.visible_guessers)]

    def can_advance(self, view: ResultsView, is_host: bool) -> bool:
        return bool(is_host and view.photo and self.is_done_for(view.photo.get('id')))

    def waiting_for_host(self, view: ResultsView, is_host: bool) -> bool:
        return bool(not is_host and view.photo and self.is_done_for(view.photo.get('id')))
