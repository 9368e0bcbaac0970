"""Stage machine for a room.

    join -> upload -> guess -> results -> complete

Only the host moves a room forward. :func:`decide` is the pure part: given
a snapshot and the time it says whether an automatic transition is due.
:class:`StageController` wraps it with the host's local state (the
"transitioning" flag and the once-per-stage auto flag) and performs the
writes through :class:`~photoguess.services.rooms.actions.RoomActions`.
Every status change is a compare-and-swap on the prior status, so running
the controller on more than one client cannot advance a room twice.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from flask import current_app

from .countdown import timer_expired
from .errors import ActionRejected, NotHost, RoomError
from .scoring import build_score_map


JOIN = 'join'
UPLOAD = 'upload'
GUESS = 'guess'
RESULTS = 'results'
COMPLETE = 'complete'

STATUSES = (JOIN, UPLOAD, GUESS, RESULTS, COMPLETE)
NEXT_STATUS = {JOIN: UPLOAD, UPLOAD: GUESS, GUESS: RESULTS, RESULTS: COMPLETE}

STAGE_TITLES = {
    JOIN: 'Lobby',
    UPLOAD: 'Round 1: Upload',
    GUESS: 'Round 2: Guess',
    RESULTS: 'Round 3: Results',
    COMPLETE: 'Complete',
}

BASE_STAGE_SECONDS = 120
DEFAULT_TIMER_PER_USER = 30
MIN_PLAYERS = 2


class ReadyMeaning(str, Enum):
    """What a user's ``ready`` flag says, depending on the room status."""
    READY_TO_START = 'ready_to_start'
    DONE_UPLOADING = 'done_uploading'
    DONE_GUESSING = 'done_guessing'
    UNUSED = 'unused'


READY_MEANINGS = {
    JOIN: ReadyMeaning.READY_TO_START,
    UPLOAD: ReadyMeaning.DONE_UPLOADING,
    GUESS: ReadyMeaning.DONE_GUESSING,
}


def ready_meaning(status: Optional[str]) -> ReadyMeaning:
    return READY_MEANINGS.get(status, ReadyMeaning.UNUSED)


def compute_stage_duration(player_count: int, per_player_seconds: int = DEFAULT_TIMER_PER_USER,
                           base_seconds: int = BASE_STAGE_SECONDS) -> int:
    return base_seconds + player_count * per_player_seconds


# Transition actions
START_UPLOAD = 'start_upload'
START_GUESS = 'start_guess'
SHOW_RESULTS = 'show_results'


@dataclass(frozen=True)
class Transition:
    action: str
    from_status: str
    reason: str  # manual, timer, all_ready


def can_start_game(snapshot, min_players: int = MIN_PLAYERS) -> bool:
    return snapshot.status == JOIN and snapshot.all_ready and len(snapshot.users) >= min_players


def decide(snapshot, now: float, fired_for: Optional[str] = None) -> Optional[Transition]:
    """The automatic transition due for ``snapshot``, if any.

    ``fired_for`` is the status an automatic transition already fired in;
    no second one fires until the status changes.

    - upload -> guess once there is at least one photo and the timer ran
      out or everyone is done uploading.
    - guess -> results once the timer ran out or everyone is done guessing.
    """
    room = snapshot.room
    if room is None or snapshot.loading or snapshot.error is not None:
        return None
    status = room.get('status')
    if status == fired_for:
        return None
    expired = timer_expired(room, now)
    reason = 'timer' if expired else 'all_ready'
    if status == UPLOAD:
        if snapshot.photos and (expired or snapshot.all_ready):
            return Transition(START_GUESS, UPLOAD, reason)
    elif status == GUESS:
        if expired or snapshot.all_ready:
            return Transition(SHOW_RESULTS, GUESS, reason)
    return None


def _setting(name, default):
    try:
        return current_app.config.get(name, default)
    except RuntimeError:
        return default


class StageController:
    """Host-side driver of the stage machine for one room.

    Manual operations raise when the acting user is not the host or the
    room is not in the right stage, and propagate store errors to the
    caller. Automatic transitions fire at most once per stage; if one fails
    the room stays where it was and the host can retry by hand.
    """

    def __init__(self, actions, user_id: str, clock: Callable[[], float] = time.time):
        self.actions = actions
        self.user_id = user_id
        self.clock = clock
        self.transitioning = False
        self.auto_fired_for: Optional[str] = None
        self._last_status: Optional[str] = None

    @property
    def room_id(self):
        return self.actions.room_id

    def _require_host(self, snapshot) -> None:
        if not snapshot.is_host(self.user_id):
            raise NotHost()

    def _require_status(self, snapshot, status: str) -> None:
        if snapshot.status != status:
            raise ActionRejected(f"room_not_in_{status}")

    def _timer_ends_at(self, snapshot) -> Optional[float]:
        room = snapshot.room or {}
        if not room.get('countdown_enabled'):
            return None
        per_player = room.get('timer_per_user_seconds')
        if per_player is None:
            per_player = _setting('TIMER_PER_USER_SEC', DEFAULT_TIMER_PER_USER)
        base = _setting('BASE_STAGE_SECONDS', BASE_STAGE_SECONDS)
        players = len(snapshot.users) or 1
        return self.clock() + compute_stage_duration(players, per_player, base)

    def _run(self, label: str, work: Callable[[], bool]) -> bool:
        if self.transitioning:
            return False
        self.transitioning = True
        try:
            changed = work()
        finally:
            self.transitioning = False
        current_app.logger.info(f"[stage-advance] room={self.room_id} step={label} changed={changed}")
        return changed

    # ---- reacting to snapshots ----

    def observe(self, snapshot) -> None:
        """Track status changes; a new stage re-arms the automatic trigger."""
        status = snapshot.status
        if status != self._last_status:
            self._last_status = status
            self.auto_fired_for = None

    def on_snapshot(self, snapshot) -> Optional[Transition]:
        self.observe(snapshot)
        if self.transitioning or not snapshot.is_host(self.user_id):
            return None
        transition = decide(snapshot, self.clock(), self.auto_fired_for)
        if transition is None:
            return None
        self.auto_fired_for = transition.from_status
        current_app.logger.info(
            f"[stage-auto] room={self.room_id} from={transition.from_status} reason={transition.reason}"
        )
        try:
            if transition.action == START_GUESS:
                self.start_guess_stage(snapshot)
            elif transition.action == SHOW_RESULTS:
                self.show_results_stage(snapshot)
        except RoomError as exc:
            current_app.logger.warning(f"[stage-auto-failed] room={self.room_id} from={transition.from_status} error={exc}")
        return transition

    # ---- host operations ----

    def _enter_stage(self, snapshot, next_status: str, expected_status: str) -> bool:
        ends_at = self._timer_ends_at(snapshot)
        with self.actions.batch() as batch:
            if not self.actions.change_status(next_status, expected_status=expected_status):
                batch.cancel()
                return False
            self.actions.set_timer(ends_at)
            self.actions.reset_ready_for_all()
        return True

    def start_upload_stage(self, snapshot) -> bool:
        self._require_host(snapshot)
        self._require_status(snapshot, JOIN)
        if not can_start_game(snapshot, _setting('MIN_PLAYERS', MIN_PLAYERS)):
            raise ActionRejected('players_not_ready')
        return self._run(START_UPLOAD, lambda: self._enter_stage(snapshot, UPLOAD, JOIN))

    def start_guess_stage(self, snapshot) -> bool:
        self._require_host(snapshot)
        self._require_status(snapshot, UPLOAD)
        return self._run(START_GUESS, lambda: self._enter_stage(snapshot, GUESS, UPLOAD))

    def show_results_stage(self, snapshot) -> bool:
        """Score the round and open the results.

        Scores and the status change commit together, guarded by the room
        still being in ``guess``; a second trigger finds the status moved on
        and scores nothing.
        """
        self._require_host(snapshot)
        self._require_status(snapshot, GUESS)

        def work():
            known = {u['id'] for u in self.actions.current_users()}
            deltas = build_score_map(self.actions.current_photos())
            with self.actions.batch() as batch:
                changed = self.actions.change_status(
                    RESULTS, expected_status=GUESS,
                    results_index=0, results_applied_at=self.clock(), results_step_at=self.clock(),
                )
                if not changed:
                    batch.cancel()
                    return False
                for user_id, delta in deltas.items():
                    if user_id not in known:
                        current_app.logger.warning(f"[score-skip] room={self.room_id} unknown guesser={user_id}")
                        continue
                    self.actions.record_score(user_id, delta)
                self.actions.set_timer(None)
            return True

        return self._run(SHOW_RESULTS, work)

    def advance_results(self, snapshot, view, sequencer) -> bool:
        """Next photo, or finish the game after the last one.

        Only allowed once the local reveal has finished for the photo the
        room currently points at.
        """
        self._require_host(snapshot)
        self._require_status(snapshot, RESULTS)
        if view.photo is None or not sequencer.is_done_for(view.photo['id']):
            return False
        sequencer.reset()
        return self._step_results(view)

    def step_results(self, snapshot, view) -> bool:
        """Advance for a host with no local reveal running.

        The reveal is timed from when the current photo came up; stepping
        before it has had time to finish is refused.
        """
        from .reveal import reveal_finished_at

        self._require_host(snapshot)
        self._require_status(snapshot, RESULTS)
        finished_at = reveal_finished_at(snapshot.room, view)
        if view.photo is not None and finished_at is not None and self.clock() < finished_at:
            raise ActionRejected('reveal_in_progress')
        return self._step_results(view)

    def _step_results(self, view) -> bool:
        if view.is_final or view.photo is None:
            return self._run('complete', self.actions.complete_room)
        return self._run(
            'next_photo',
            lambda: self.actions.set_results_index(view.index + 1, expected_index=view.raw_index, at=self.clock()),
        )

    def complete_room(self, snapshot) -> bool:
        self._require_host(snapshot)
        self._require_status(snapshot, RESULTS)
        return self._run('complete', self.actions.complete_room)
