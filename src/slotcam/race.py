"""Race control: lane run states, termination rules and winner selection.

Classes:
    TerminationCause - Why a race ended
    RaceEnded        - Notification emitted once when a race stops
    Standing         - One leaderboard row
    RaceController   - Owns every lane's run state and trigger for a race
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from slotcam.config import RaceMode, TimerConfig
from slotcam.ledger import LaneRunState, LapAdded, LapLedger
from slotcam.trigger import CrossingEvent, LaneTrigger

log = logging.getLogger(__name__)


class TerminationCause(Enum):
    NONE = "none"
    LAPS_REACHED = "laps-reached"
    TIME_ELAPSED = "time-elapsed"
    MANUAL_STOP = "manual-stop"


@dataclass(frozen=True)
class RaceEnded:
    cause: TerminationCause
    winner: Optional[int]  # lane id, None if nobody qualified
    elapsed_ms: float


@dataclass(frozen=True)
class Standing:
    position: int
    lane_id: int
    laps_completed: int
    best_lap: Optional[float]
    last_lap: Optional[float]
    delta: Optional[float]  # last lap minus best lap (positive = slower)


class RaceController:
    """Aggregates all lanes of the active race.

    Run states and triggers are keyed by lane id, so any number of lanes
    can take part.  The controller is the only writer of lane run states.

    Args:
        config: Timer settings; ``race_mode``, targets and detection
            parameters are read live from it.
    """

    def __init__(self, config: Optional[TimerConfig] = None):
        self.config = config or TimerConfig()
        self.states: Dict[int, LaneRunState] = {}
        self._triggers: Dict[int, LaneTrigger] = {}
        self.start_time: Optional[float] = None
        self.is_running = False
        self.termination_cause = TerminationCause.NONE
        self.winner: Optional[int] = None
        # Elapsed race time frozen when the race stops (or is restored)
        self._stopped_elapsed: float = 0.0

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self, now: float, lane_ids: Iterable[int], idle_lane_ids: Iterable[int] = ()) -> bool:
        """Start a race at *now* for *lane_ids*.

        Every listed lane is reset and armed with lap 1 measured from *now*.
        *idle_lane_ids* (configured but disabled lanes) get empty, non-running
        states.  Returns ``False`` if a race is already running.
        """
        if self.is_running:
            return False
        self.states = {}
        self._triggers = {}
        for lane_id in lane_ids:
            state = LaneRunState(lane_id=lane_id)
            LapLedger(state).start(now)
            trigger = LaneTrigger(lane_id)
            trigger.arm()
            self.states[lane_id] = state
            self._triggers[lane_id] = trigger
        for lane_id in idle_lane_ids:
            if lane_id not in self.states:
                self.states[lane_id] = LaneRunState(lane_id=lane_id)
                self._triggers[lane_id] = LaneTrigger(lane_id)
        self.start_time = now
        self.is_running = True
        self.termination_cause = TerminationCause.NONE
        self.winner = None
        self._stopped_elapsed = 0.0
        log.info("Race started at %.0f with lanes %s", now, sorted(self.states))
        return True

    def stop(
        self, now: float, cause: TerminationCause = TerminationCause.MANUAL_STOP
    ) -> Optional[RaceEnded]:
        """Stop the race, keeping lap history.  No-op if already stopped."""
        if not self.is_running:
            return None
        self.is_running = False
        for lane_id, state in self.states.items():
            LapLedger(state).stop()
            self._triggers[lane_id].disarm()
        self._stopped_elapsed = now - self.start_time if self.start_time is not None else 0.0
        self.termination_cause = cause
        log.info(
            "Race stopped (%s) after %.0f ms, winner=%s",
            cause.value,
            self._stopped_elapsed,
            self.winner,
        )
        return RaceEnded(cause=cause, winner=self.winner, elapsed_ms=self._stopped_elapsed)

    def reset(self) -> None:
        """Discard every run state.  No-op when already empty."""
        if not self.states and not self.is_running and self.start_time is None:
            return
        self.states = {}
        self._triggers = {}
        self.start_time = None
        self.is_running = False
        self.termination_cause = TerminationCause.NONE
        self.winner = None
        self._stopped_elapsed = 0.0
        log.info("Race reset")

    def restore(
        self, states: Dict[int, LaneRunState], start_time: Optional[float], elapsed_ms: float
    ) -> None:
        """Load recovered run states.  Every lane comes back not running."""
        self.states = {}
        self._triggers = {}
        for lane_id, state in states.items():
            state.is_running = False
            self.states[lane_id] = state
            self._triggers[lane_id] = LaneTrigger(lane_id)
        self.start_time = start_time
        self.is_running = False
        self.termination_cause = TerminationCause.NONE
        self.winner = None
        self._stopped_elapsed = elapsed_ms

    def resume(self, now: float, lane_ids: Optional[Iterable[int]] = None) -> bool:
        """Continue a recovered or manually stopped race.

        The start time is shifted so elapsed time carries on from where it
        stopped.  The first crossing after resuming only re-arms the lap
        interval, so the pause never counts as lap time.
        """
        if self.is_running or not self.states:
            return False
        if self.termination_cause not in (TerminationCause.NONE, TerminationCause.MANUAL_STOP):
            return False
        ids = set(self.states) if lane_ids is None else set(lane_ids) & set(self.states)
        self.start_time = now - self._stopped_elapsed
        for lane_id in ids:
            state = self.states[lane_id]
            state.is_running = True
            state.last_lap_time = None
            self._triggers[lane_id].arm()
        self.is_running = True
        self.termination_cause = TerminationCause.NONE
        log.info("Race resumed at %.0f (elapsed %.0f ms)", now, self._stopped_elapsed)
        return True

    # ------------------------------------------------------------------
    # Frame path
    # ------------------------------------------------------------------

    def evaluate(self, lane_id: int, score: float, now: float) -> Optional[CrossingEvent]:
        """Run one lane's trigger on this frame's smoothed score."""
        state = self.states.get(lane_id)
        trigger = self._triggers.get(lane_id)
        if state is None or trigger is None:
            return None
        state.diff_score = score
        if not (self.is_running and state.is_running):
            return None
        detection = self.config.detection
        return trigger.evaluate(score, now, detection.threshold, detection.cooldown_ms)

    def apply_crossings(
        self, events: List[CrossingEvent], now: float
    ) -> Tuple[List[LapAdded], Optional[RaceEnded]]:
        """Record one frame batch of crossings, then apply the laps rule.

        All events of the batch are recorded before the race can end, so a
        lane finishing in the same frame as the winner still gets its lap;
        only the first lane (in batch order) to reach the target wins.
        """
        added: List[LapAdded] = []
        if self.start_time is None:
            return added, None
        for event in events:
            state = self.states.get(event.lane_id)
            if state is None or not state.is_running:
                continue
            state.last_trigger_time = event.timestamp
            result = LapLedger(state).record(event, self.start_time)
            if result is not None:
                added.append(result)

        ended = None
        if self.is_running and self.config.race_mode is RaceMode.LAPS:
            for lap_added in added:
                lane_id = lap_added.lap.lane_id
                if self.winner is None and self.states[lane_id].lap_count >= self.config.target_laps:
                    self.winner = lane_id
            if self.winner is not None:
                ended = self.stop(now, TerminationCause.LAPS_REACHED)
        return added, ended

    def check_time_expired(self, now: float) -> Optional[RaceEnded]:
        """In time mode, stop the race once the target duration has elapsed."""
        if not self.is_running or self.config.race_mode is not RaceMode.TIME:
            return None
        if self.elapsed(now) < self.config.target_time_ms:
            return None
        self.winner = self._most_laps_winner()
        return self.stop(now, TerminationCause.TIME_ELAPSED)

    def _most_laps_winner(self) -> Optional[int]:
        """Most laps; ties go to the lower best lap, then the lower lane id."""
        candidates = [s for s in self.states.values() if s.lap_count > 0]
        if not candidates:
            return None
        def rank(state: LaneRunState):
            best_lap = state.best_lap if state.best_lap is not None else float("inf")
            return (-state.lap_count, best_lap, state.lane_id)

        return min(candidates, key=rank).lane_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def elapsed(self, now: float) -> float:
        if self.is_running and self.start_time is not None:
            return now - self.start_time
        return self._stopped_elapsed

    def trigger_state(self, lane_id: int):
        trigger = self._triggers.get(lane_id)
        return trigger.state if trigger is not None else None

    def standings(self, lane_ids: Optional[Iterable[int]] = None) -> List[Standing]:
        """Leaderboard: laps completed (desc), then best lap (asc), then lane id."""
        ids = list(self.states) if lane_ids is None else [i for i in lane_ids if i in self.states]
        rows = []
        for lane_id in ids:
            state = self.states[lane_id]
            last = state.last_lap
            delta = last - state.best_lap if last is not None and state.best_lap is not None else None
            rows.append((lane_id, state.lap_count, state.best_lap, last, delta))
        rows.sort(key=lambda r: (-r[1], r[2] if r[2] is not None else float("inf"), r[0]))
        return [
            Standing(
                position=i + 1,
                lane_id=lane_id,
                laps_completed=laps,
                best_lap=best,
                last_lap=last,
                delta=delta,
            )
            for i, (lane_id, laps, best, last, delta) in enumerate(rows)
        ]
