"""A participant's live connection to a room.

:class:`RoomClient` wires the pieces one player runs: the projector
feeding snapshots, the stage controller (which only acts when the player
is the host), the results reveal and the countdown expiry timer. All of
them go through one event queue, so they never run concurrently.
"""

from typing import Callable, Optional

from .actions import RoomActions
from .errors import ActionRejected, RoomError
from .projector import RoomSnapshot, RoomStateProjector
from .reveal import RevealSequencer, ResultsView, build_results_view
from .scheduler import EventQueue, TimerHandle
from .stages import GUESS, JOIN, RESULTS, UPLOAD, StageController
from .store import RoomStore


class RoomClient:
    def __init__(self, store: RoomStore, room_id: str, user_id: str, timers, actions: Optional[RoomActions] = None):
        self.store = store
        self.room_id = room_id
        self.user_id = user_id
        self.timers = timers
        self.actions = actions or RoomActions(store, room_id)
        self.queue = EventQueue()
        self.controller = StageController(self.actions, user_id, clock=timers.now)
        self.sequencer = RevealSequencer(timers, post=self.queue.post)
        self.projector = RoomStateProjector(store, on_change=lambda _snapshot: self.queue.post(self._on_snapshot))
        self._expiry: Optional[TimerHandle] = None
        self._expiry_at: Optional[float] = None

    # ---- lifecycle ----

    def start(self) -> None:
        self.queue.post(self.projector.bind, self.room_id, True)

    def stop(self) -> None:
        self.queue.post(self._teardown)

    def _teardown(self) -> None:
        self.projector.close()
        self.sequencer.reset()
        self._cancel_expiry()

    # ---- views ----

    @property
    def snapshot(self) -> RoomSnapshot:
        return self.projector.snapshot

    @property
    def is_host(self) -> bool:
        return self.snapshot.is_host(self.user_id)

    def results_view(self) -> ResultsView:
        return build_results_view(self.snapshot)

    # ---- reactions ----

    def _on_snapshot(self) -> None:
        # Handlers queue up behind each other, so always act on the newest state
        snapshot = self.projector.snapshot
        self.controller.on_snapshot(snapshot)
        snapshot = self.projector.snapshot
        self.sequencer.sync_view(snapshot.status, build_results_view(snapshot))
        self._schedule_expiry(snapshot.room)

    def _schedule_expiry(self, room: Optional[dict]) -> None:
        ends_at = None
        if room and room.get('countdown_enabled'):
            ends_at = room.get('timer_ends_at')
        if ends_at == self._expiry_at:
            return
        self._cancel_expiry()
        if ends_at is None:
            return
        self._expiry_at = ends_at
        delay = max(0.0, ends_at - self.timers.now())
        self._expiry = self.timers.call_later(delay, self.queue.post, self._on_expiry, ends_at)

    def _on_expiry(self, ends_at: float) -> None:
        if ends_at != self._expiry_at:
            return
        self._on_snapshot()

    def _cancel_expiry(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
        self._expiry = None
        self._expiry_at = None

    # ---- intents ----

    def _intent(self, work: Callable[[], bool]) -> Optional[bool]:
        """Run ``work`` on the queue and hand back its result or RoomError.

        Returns None when the queue was already draining (on this thread or
        another) and the intent was only queued: it still runs, but its
        outcome is not known yet. Callers must not read None as "no change".
        """
        outcome = {}

        def run():
            try:
                outcome['value'] = work()
            except RoomError as exc:
                outcome['error'] = exc

        self.queue.post(run)
        if 'error' in outcome:
            raise outcome['error']
        if 'value' not in outcome:
            return None
        return bool(outcome['value'])

    def start_game(self) -> Optional[bool]:
        return self._intent(lambda: self.controller.start_upload_stage(self.snapshot))

    def advance_stage(self) -> Optional[bool]:
        """The host's "next" button for whatever stage the room is in."""
        def work():
            snapshot = self.snapshot
            status = snapshot.status
            if status == JOIN:
                return self.controller.start_upload_stage(snapshot)
            if status == UPLOAD:
                return self.controller.start_guess_stage(snapshot)
            if status == GUESS:
                return self.controller.show_results_stage(snapshot)
            if status == RESULTS:
                return self.controller.advance_results(snapshot, build_results_view(snapshot), self.sequencer)
            raise ActionRejected('room_complete')
        return self._intent(work)

    def advance_results(self) -> Optional[bool]:
        return self._intent(lambda: self.controller.advance_results(
            self.snapshot, build_results_view(self.snapshot), self.sequencer,
        ))
