"""Lap timer engine: frame pipeline plus the control and query surface.

Per accepted frame and enabled lane::

    RegionSampler -> compute_diff_score -> TemporalSmoother
        -> Calibrator            (while calibrating)
        -> RaceController.evaluate -> LapLedger (while racing)

Lanes are processed synchronously in id order.  All state changes happen
under one re-entrant lock so a snapshot timer thread can read a consistent
copy at any time.

Classes:
    LaneFrameResult - Per-lane outcome of one processed frame
    LapTimerEngine  - The engine facade
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from slotcam.calibration import Calibrator
from slotcam.config import DEFAULT_MAX_FPS, TimerConfig, load_config, save_config
from slotcam.lanes import MAX_LANES, MIN_LANES, Lane, Region, create_default_lanes
from slotcam.ledger import LaneRunState, LapAdded, LapRecord
from slotcam.race import RaceController, RaceEnded, Standing, TerminationCause
from slotcam.sampling import RegionSampler, TemporalSmoother, as_frame, compute_diff_score
from slotcam.snapshot import SessionSnapshot, SnapshotRecorder
from slotcam.storage import KeyValueStore
from slotcam.trigger import CrossingEvent

log = logging.getLogger(__name__)


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class LaneFrameResult:
    lane_id: int
    smoothed_score: float
    crossing_occurred: bool


class LapTimerEngine:
    """Optical lap timer for 1-4 lanes.

    Args:
        lanes: Lane configuration.  Loaded from *store* (or defaulted) if
            omitted.
        config: Timer settings.  Loaded from *store* (or defaulted) if
            omitted.
        store: Optional key-value store; settings changes are saved to it.
        clock: Monotonic clock in milliseconds, used when ``now`` is not
            passed explicitly.
        sampler: Region sampler (default: downscale 4, RGB(A) frames).
        max_fps: Frames arriving faster than this are dropped.  ``None``
            or 0 processes every frame.
        recorder: Optional recovery recorder, cleared when a race stops or
            resets.
    """

    def __init__(
        self,
        lanes: Optional[Sequence[Lane]] = None,
        config: Optional[TimerConfig] = None,
        store: Optional[KeyValueStore] = None,
        clock: Callable[[], float] = monotonic_ms,
        sampler: Optional[RegionSampler] = None,
        max_fps: Optional[float] = DEFAULT_MAX_FPS,
        recorder: Optional[SnapshotRecorder] = None,
    ):
        self.store = store
        if lanes is None or config is None:
            loaded_lanes, loaded_config = load_config(store)
            lanes = loaded_lanes if lanes is None else lanes
            config = loaded_config if config is None else config
        self._lock = threading.RLock()
        self._lanes: Dict[int, Lane] = {}
        self._set_lanes(lanes)
        self.config = config
        self.clock = clock
        self.sampler = sampler or RegionSampler()
        self.min_frame_interval_ms = 1000.0 / max_fps if max_fps else 0.0
        self.recorder = recorder

        self.calibrator = Calibrator()
        self.race = RaceController(config)

        self._prev_grids: Dict[int, np.ndarray] = {}
        self._smoothers: Dict[int, TemporalSmoother] = {}
        self._scores: Dict[int, float] = {}
        self._last_frame_time: Optional[float] = None

        self.on_lap_added: List[Callable[[LapAdded], None]] = []
        self.on_race_ended: List[Callable[[RaceEnded], None]] = []
        self.on_calibrated: List[Callable[[float], None]] = []

    # ------------------------------------------------------------------
    # Frame pipeline
    # ------------------------------------------------------------------

    def process_frame(
        self,
        frame: np.ndarray,
        now: Optional[float] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> List[LaneFrameResult]:
        """Process one video frame.

        Args:
            frame: ``(H, W, 3|4)`` uint8 array, or a flat RGBA buffer with
                *width* and *height*.
            now: Frame time in ms (defaults to the engine clock).

        Returns:
            One :class:`LaneFrameResult` per enabled lane, or an empty list
            if the frame arrived too soon after the previous one.
        """
        pending: List[Any] = []
        with self._lock:
            now = self.clock() if now is None else now
            if (
                self._last_frame_time is not None
                and now - self._last_frame_time < self.min_frame_interval_ms
            ):
                return []
            self._last_frame_time = now
            pixels = as_frame(frame, width, height)

            ended = self.race.check_time_expired(now)
            if ended is not None:
                pending.append(ended)

            calibrating = self.calibrator.active
            events: List[CrossingEvent] = []
            results: List[LaneFrameResult] = []
            for lane_id in sorted(self._lanes):
                lane = self._lanes[lane_id]
                if not lane.enabled:
                    self._prev_grids.pop(lane_id, None)
                    continue

                grid = self.sampler.sample(pixels, lane.region)
                raw = compute_diff_score(grid, self._prev_grids.get(lane_id))
                self._prev_grids[lane_id] = grid
                smoothed = self._smoother(lane_id).push(raw, self.config.detection.smoothing)
                self._scores[lane_id] = smoothed

                event = None
                if calibrating:
                    self.calibrator.add_sample(lane_id, smoothed)
                else:
                    event = self.race.evaluate(lane_id, smoothed, now)
                    if event is not None:
                        events.append(event)
                results.append(LaneFrameResult(lane_id, smoothed, event is not None))

            if calibrating and self.calibrator.is_complete(now):
                threshold = self.calibrator.finish(self.config.detection.threshold)
                self._apply_config(self.config.updated(threshold=threshold))
                pending.append(threshold)

            if events:
                added, ended = self.race.apply_crossings(events, now)
                pending.extend(added)
                if ended is not None:
                    pending.append(ended)

        self._dispatch(pending)
        return results

    def _smoother(self, lane_id: int) -> TemporalSmoother:
        smoother = self._smoothers.get(lane_id)
        if smoother is None:
            smoother = self._smoothers[lane_id] = TemporalSmoother()
        return smoother

    def _reset_lane_signal(self, lane_id: int) -> None:
        self._prev_grids.pop(lane_id, None)
        self._smoothers.pop(lane_id, None)
        self._scores.pop(lane_id, None)

    def _dispatch(self, pending: List[Any]) -> None:
        for item in pending:
            if isinstance(item, LapAdded):
                callbacks: List[Callable[[Any], None]] = self.on_lap_added
            elif isinstance(item, RaceEnded):
                callbacks = self.on_race_ended
                if self.recorder is not None:
                    self.recorder.clear()
            else:
                callbacks = self.on_calibrated
            for callback in list(callbacks):
                try:
                    callback(item)
                except Exception:
                    log.exception("Listener %r failed", callback)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start_race(self, now: Optional[float] = None) -> bool:
        """Start a race on every enabled lane.  No-op while already racing."""
        with self._lock:
            now = self.clock() if now is None else now
            if self.calibrator.active:
                self.calibrator.cancel()
            enabled = [i for i, lane in sorted(self._lanes.items()) if lane.enabled]
            idle = [i for i, lane in sorted(self._lanes.items()) if not lane.enabled]
            started = self.race.start(now, enabled, idle)
            if started:
                for smoother in self._smoothers.values():
                    smoother.reset()
            return started

    def stop_race(self, now: Optional[float] = None) -> Optional[RaceEnded]:
        """Stop the race, keeping laps.  No-op when not racing."""
        with self._lock:
            now = self.clock() if now is None else now
            ended = self.race.stop(now, TerminationCause.MANUAL_STOP)
        if ended is not None:
            self._dispatch([ended])
        return ended

    def reset_race(self) -> None:
        """Discard all race state and return to the pre-race baseline."""
        with self._lock:
            self.race.reset()
            for smoother in self._smoothers.values():
                smoother.reset()
        if self.recorder is not None:
            self.recorder.clear()

    def resume_race(self, now: Optional[float] = None) -> bool:
        """Resume a recovered or manually stopped race on the enabled lanes."""
        with self._lock:
            now = self.clock() if now is None else now
            enabled = [i for i, lane in self._lanes.items() if lane.enabled]
            resumed = self.race.resume(now, enabled)
            if resumed:
                for smoother in self._smoothers.values():
                    smoother.reset()
            return resumed

    def check_time_expired(self, now: Optional[float] = None) -> Optional[RaceEnded]:
        """Tick for time-mode races; frames also run this check."""
        with self._lock:
            ended = self.race.check_time_expired(self.clock() if now is None else now)
        if ended is not None:
            self._dispatch([ended])
        return ended

    def start_calibration(self, now: Optional[float] = None) -> bool:
        """Begin a calibration window.  Refused while a race is running."""
        with self._lock:
            if self.race.is_running:
                log.warning("Cannot calibrate while a race is running")
                return False
            self.calibrator.begin(self.clock() if now is None else now)
            return True

    def cancel_calibration(self) -> None:
        with self._lock:
            self.calibrator.cancel()

    # ------------------------------------------------------------------
    # Lane and config mutators
    # ------------------------------------------------------------------

    def _set_lanes(self, lanes: Sequence[Lane]) -> None:
        if not MIN_LANES <= len(lanes) <= MAX_LANES:
            raise ValueError(f"Lane count must be {MIN_LANES}-{MAX_LANES}, got {len(lanes)}")
        ids = [lane.id for lane in lanes]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate lane ids: {ids}")
        self._lanes = {lane.id: lane for lane in lanes}

    def set_lanes(self, lanes: Sequence[Lane]) -> None:
        with self._lock:
            old = self._lanes
            self._set_lanes(lanes)
            for lane_id in set(old) | set(self._lanes):
                if old.get(lane_id) != self._lanes.get(lane_id):
                    self._reset_lane_signal(lane_id)
            if self.config.lane_count != len(self._lanes):
                self.config = self.config.updated(lane_count=len(self._lanes))
                self.race.config = self.config
            self._persist()

    def update_lane(self, lane_id: int, **changes: Any) -> Lane:
        """Change one lane's name, colour, enabled flag or region.

        Region edits and enable toggles reset the lane's baseline grid so the
        next frame cannot produce a false trigger.
        """
        with self._lock:
            if lane_id not in self._lanes:
                raise KeyError(f"Unknown lane id: {lane_id}")
            old = self._lanes[lane_id]
            if "region" in changes:
                changes["region"] = changes["region"].clamped()
            lane = old.with_changes(**changes)
            self._lanes[lane_id] = lane
            if lane.region != old.region or lane.enabled != old.enabled:
                self._reset_lane_signal(lane_id)
            self._persist()
            return lane

    def set_region(self, lane_id: int, region: Region) -> Lane:
        return self.update_lane(lane_id, region=region)

    def set_lane_count(self, count: int) -> None:
        """Replace the lanes with *count* default lanes (if the count changes)."""
        with self._lock:
            if count == len(self._lanes):
                return
            self.set_lanes(create_default_lanes(count))

    def update_config(self, **changes: Any) -> TimerConfig:
        """Update settings, e.g. ``update_config(threshold=20, race_mode="laps")``."""
        with self._lock:
            lane_count = changes.get("lane_count")
            self._apply_config(self.config.updated(**changes))
            if lane_count is not None and self.config.lane_count != len(self._lanes):
                self.set_lanes(create_default_lanes(self.config.lane_count))
            return self.config

    def _apply_config(self, config: TimerConfig) -> None:
        self.config = config
        self.race.config = config
        self._persist()

    def _persist(self) -> None:
        if self.store is not None:
            save_config(self.store, self.lanes, self.config)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def lanes(self) -> List[Lane]:
        with self._lock:
            return [self._lanes[i] for i in sorted(self._lanes)]

    def lane(self, lane_id: int) -> Lane:
        with self._lock:
            return self._lanes[lane_id]

    @property
    def is_running(self) -> bool:
        return self.race.is_running

    @property
    def is_calibrating(self) -> bool:
        return self.calibrator.active

    @property
    def start_time(self) -> Optional[float]:
        return self.race.start_time

    @property
    def winner(self) -> Optional[int]:
        return self.race.winner

    @property
    def termination_cause(self) -> TerminationCause:
        return self.race.termination_cause

    def elapsed(self, now: Optional[float] = None) -> float:
        with self._lock:
            return self.race.elapsed(self.clock() if now is None else now)

    def score(self, lane_id: int) -> float:
        """Latest smoothed score for a lane (0 before its first frame)."""
        with self._lock:
            return self._scores.get(lane_id, 0.0)

    def lane_state(self, lane_id: int) -> LaneRunState:
        """Copy of a lane's run state (empty if the lane has not raced)."""
        with self._lock:
            state = self.race.states.get(lane_id)
            if state is None:
                state = LaneRunState(lane_id=lane_id, diff_score=self._scores.get(lane_id, 0.0))
            return state.copy()

    def lane_states(self) -> Dict[int, LaneRunState]:
        with self._lock:
            return {lane_id: self.lane_state(lane_id) for lane_id in sorted(self._lanes)}

    def all_laps(self) -> List[LapRecord]:
        """Every lap across lanes, ordered by race time.

        Race time stays continuous across a resume, unlike clock timestamps
        after a restart.
        """
        with self._lock:
            laps = [lap for state in self.race.states.values() for lap in state.laps]
        return sorted(laps, key=lambda lap: (lap.relative_time, lap.lane_id))

    def standings(self) -> List[Standing]:
        with self._lock:
            enabled = [i for i, lane in sorted(self._lanes.items()) if lane.enabled]
            return self.race.standings(enabled)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def snapshot(self, now_wall: float, now: Optional[float] = None) -> Optional[SessionSnapshot]:
        """Copy-on-read snapshot of the running race, or ``None`` when no race runs."""
        with self._lock:
            if not self.race.is_running or self.race.start_time is None:
                return None
            now = self.clock() if now is None else now
            return SessionSnapshot(
                timestamp=now_wall,
                start_time=self.race.start_time,
                elapsed_time=self.race.elapsed(now),
                lane_states={i: s.copy() for i, s in self.race.states.items()},
                lanes=self.lanes,
                config=self.config,
            )

    def restore(self, snapshot: SessionSnapshot) -> None:
        """Re-hydrate a recovered race.  Lanes stay stopped until resumed."""
        with self._lock:
            self.calibrator.cancel()
            if snapshot.lanes:
                self._set_lanes(snapshot.lanes)
            self.config = snapshot.config
            for lane_id in list(self._smoothers):
                self._reset_lane_signal(lane_id)
            self._prev_grids.clear()
            self.race.config = self.config
            self.race.restore(
                {i: s.copy() for i, s in snapshot.lane_states.items()},
                snapshot.start_time,
                snapshot.elapsed_time,
            )
            self._persist()
        log.info("Restored race with %d laps", snapshot.lap_count)
