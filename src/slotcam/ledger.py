"""Lap bookkeeping: crossing events to immutable lap records and stats.

Classes:
    LapRecord    - One completed lap (immutable)
    LaneRunState - Mutable per-lane race state
    LapAdded     - Notification for a newly recorded lap
    LapLedger    - Append view over one LaneRunState
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from slotcam.trigger import CrossingEvent

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LapRecord:
    """A completed lap.  All times in milliseconds."""

    lane_id: int
    lap_number: int  # 1-based, sequential per lane
    lap_time: float  # since previous crossing (or race start for lap 1)
    timestamp: float  # absolute clock time of the crossing
    relative_time: float  # since race start

    def to_dict(self) -> Dict[str, Any]:
        return {
            "laneId": self.lane_id,
            "lapNumber": self.lap_number,
            "lapTime": self.lap_time,
            "timestamp": self.timestamp,
            "relativeTime": self.relative_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LapRecord":
        return cls(
            lane_id=int(data["laneId"]),
            lap_number=int(data["lapNumber"]),
            lap_time=float(data["lapTime"]),
            timestamp=float(data["timestamp"]),
            relative_time=float(data["relativeTime"]),
        )


@dataclass
class LaneRunState:
    """Race state for one lane.

    ``best_lap`` and ``avg_lap`` are maintained incrementally from a running
    minimum and sum; ``laps`` is append-only during a race.
    """

    lane_id: int
    is_running: bool = False
    start_time: Optional[float] = None
    last_lap_time: Optional[float] = None
    last_trigger_time: Optional[float] = None
    laps: List[LapRecord] = field(default_factory=list)
    best_lap: Optional[float] = None
    avg_lap: Optional[float] = None
    diff_score: float = 0.0
    _lap_sum: float = field(default=0.0, repr=False)

    @property
    def lap_count(self) -> int:
        return len(self.laps)

    @property
    def last_lap(self) -> Optional[float]:
        return self.laps[-1].lap_time if self.laps else None

    def copy(self) -> "LaneRunState":
        """Copy with its own lap list (records themselves are immutable)."""
        return LaneRunState(
            lane_id=self.lane_id,
            is_running=self.is_running,
            start_time=self.start_time,
            last_lap_time=self.last_lap_time,
            last_trigger_time=self.last_trigger_time,
            laps=list(self.laps),
            best_lap=self.best_lap,
            avg_lap=self.avg_lap,
            diff_score=self.diff_score,
            _lap_sum=self._lap_sum,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view: laps and derived stats only."""
        return {
            "laneId": self.lane_id,
            "isRunning": self.is_running,
            "startTime": self.start_time,
            "lastLapTime": self.last_lap_time,
            "lastTriggerTime": self.last_trigger_time,
            "laps": [lap.to_dict() for lap in self.laps],
            "bestLap": self.best_lap,
            "avgLap": self.avg_lap,
            "diffScore": self.diff_score,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LaneRunState":
        state = cls(
            lane_id=int(data["laneId"]),
            is_running=bool(data.get("isRunning", False)),
            start_time=data.get("startTime"),
            last_lap_time=data.get("lastLapTime"),
            last_trigger_time=data.get("lastTriggerTime"),
            diff_score=float(data.get("diffScore") or 0.0),
        )
        LapLedger(state).restore([LapRecord.from_dict(d) for d in data.get("laps", [])])
        return state


@dataclass(frozen=True)
class LapAdded:
    """Emitted when a lap is recorded."""

    lap: LapRecord
    is_best: bool  # new personal best for the lane


class LapLedger:
    """Records laps for one lane.

    Args:
        state: The lane's run state; the ledger mutates it in place.
    """

    def __init__(self, state: LaneRunState):
        self.state = state

    def start(self, now: float, arm: bool = True) -> None:
        """Reset the lane for a new race starting at *now*.

        With *arm*, lap 1 is measured from *now*; otherwise the first
        crossing only arms the interval.
        """
        s = self.state
        s.is_running = True
        s.start_time = now
        s.last_lap_time = now if arm else None
        s.last_trigger_time = None
        s.laps = []
        s.best_lap = None
        s.avg_lap = None
        s.diff_score = 0.0
        s._lap_sum = 0.0

    def stop(self) -> None:
        self.state.is_running = False

    def record(self, event: CrossingEvent, race_start: float) -> Optional[LapAdded]:
        """Turn a crossing into a lap.

        Returns:
            :class:`LapAdded` for a new lap, ``None`` when the lane is not
            running, the event only armed the first interval, or the event
            does not advance past the previous crossing.
        """
        s = self.state
        if not s.is_running:
            return None
        now = event.timestamp

        if s.last_lap_time is None:
            s.last_lap_time = now
            return None

        relative_time = now - race_start
        if now <= s.last_lap_time:
            log.debug("Lane %d: dropping non-advancing crossing at %.1f", s.lane_id, now)
            return None

        lap_time = now - s.last_lap_time
        lap = LapRecord(
            lane_id=s.lane_id,
            lap_number=len(s.laps) + 1,
            lap_time=lap_time,
            timestamp=now,
            relative_time=relative_time,
        )
        previous_best = s.best_lap
        self._append(lap)
        s.last_lap_time = now
        is_best = previous_best is None or lap_time < previous_best
        return LapAdded(lap=lap, is_best=is_best)

    def restore(self, laps: List[LapRecord]) -> None:
        """Replace the lap list and rebuild the running stats."""
        s = self.state
        s.laps = []
        s.best_lap = None
        s.avg_lap = None
        s._lap_sum = 0.0
        for lap in laps:
            self._append(lap)

    def _append(self, lap: LapRecord) -> None:
        s = self.state
        s.laps.append(lap)
        s._lap_sum += lap.lap_time
        if s.best_lap is None or lap.lap_time < s.best_lap:
            s.best_lap = lap.lap_time
        s.avg_lap = s._lap_sum / len(s.laps)
