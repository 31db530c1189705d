"""Crash-recovery snapshots of a running race.

While a race runs, its lane run states (laps and derived stats only, never
grids or smoother buffers), lanes and config are written to storage every
two seconds.  After a restart a recent snapshot with at least one lap can be
offered for recovery; restoring it leaves every lane stopped until the user
resumes.

Classes:
    SessionSnapshot  - Serializable race state
    SnapshotRecorder - Periodic saver and recovery loader
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from slotcam.config import RECOVERY_MAX_AGE_MS, SNAPSHOT_INTERVAL_MS, TimerConfig
from slotcam.lanes import Lane
from slotcam.ledger import LaneRunState
from slotcam.storage import KeyValueStore

if TYPE_CHECKING:
    from slotcam.engine import LapTimerEngine

log = logging.getLogger(__name__)

RECOVERY_KEY = "slotcam-recovery-v1"


def wall_clock_ms() -> float:
    return time.time() * 1000.0


@dataclass
class SessionSnapshot:
    """Race state at one instant.

    ``timestamp`` is wall-clock milliseconds (used for the recovery age
    check); ``start_time`` and lane times use the engine's monotonic clock.
    """

    timestamp: float
    start_time: float
    elapsed_time: float
    lane_states: Dict[int, LaneRunState]
    lanes: List[Lane] = field(default_factory=list)
    config: TimerConfig = field(default_factory=TimerConfig)

    @property
    def lap_count(self) -> int:
        return sum(state.lap_count for state in self.lane_states.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "startTime": self.start_time,
            "elapsedTime": self.elapsed_time,
            "laneStates": [state.to_dict() for _, state in sorted(self.lane_states.items())],
            "lanes": [lane.to_dict() for lane in self.lanes],
            "config": self.config.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSnapshot":
        states = [LaneRunState.from_dict(d) for d in data.get("laneStates", [])]
        return cls(
            timestamp=float(data["timestamp"]),
            start_time=float(data["startTime"]),
            elapsed_time=float(data["elapsedTime"]),
            lane_states={s.lane_id: s for s in states},
            lanes=[Lane.from_dict(d) for d in data.get("lanes", [])],
            config=TimerConfig.from_dict(data.get("config") or {}),
        )

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "SessionSnapshot":
        return cls.from_dict(json.loads(raw.decode("utf-8")))


class SnapshotRecorder:
    """Saves snapshots of a running race and loads them back for recovery.

    Args:
        store: Durable key-value store.
        interval_ms: Minimum time between saves.
        wall_clock: Wall-clock source in milliseconds (for the age check).
    """

    def __init__(
        self,
        store: KeyValueStore,
        interval_ms: float = SNAPSHOT_INTERVAL_MS,
        wall_clock: Callable[[], float] = wall_clock_ms,
    ):
        self.store = store
        self.interval_ms = interval_ms
        self.wall_clock = wall_clock
        self._last_save: Optional[float] = None
        # Serializes save and clear so a stopped race is never written back
        self._save_lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._engine: Optional["LapTimerEngine"] = None

    def save(self, snapshot: SessionSnapshot) -> bool:
        try:
            self.store.save(RECOVERY_KEY, snapshot.to_bytes())
        except Exception as e:
            log.warning("Failed to save recovery snapshot: %s", e)
            return False
        return True

    def clear(self) -> None:
        with self._save_lock:
            self._last_save = None
            try:
                self.store.delete(RECOVERY_KEY)
            except Exception as e:
                log.warning("Failed to clear recovery snapshot: %s", e)

    def maybe_save(self, engine: "LapTimerEngine", now: float) -> bool:
        """Save if a race is running and *interval_ms* has passed since the last save.

        When no race is running the stored snapshot is cleared.  The running
        check and the copy happen together under the engine lock, and the
        write cannot interleave with :meth:`clear`.
        """
        with self._save_lock:
            recent = self._last_save is not None and now - self._last_save < self.interval_ms
            if recent and engine.is_running:
                return False
            snapshot = engine.snapshot(self.wall_clock(), now)
            if snapshot is None:
                if self._last_save is not None:
                    self.clear()
                return False
            self._last_save = now
            return self.save(snapshot)

    def load_recoverable(self, now_wall: Optional[float] = None) -> Optional[SessionSnapshot]:
        """Return a stored snapshot worth offering for recovery, or ``None``.

        Snapshots older than an hour, without any lap, or that cannot be read
        are ignored.
        """
        now_wall = self.wall_clock() if now_wall is None else now_wall
        try:
            raw = self.store.load(RECOVERY_KEY)
            if raw is None:
                return None
            snapshot = SessionSnapshot.from_bytes(raw)
        except Exception as e:
            log.warning("Ignoring unreadable recovery snapshot: %s", e)
            return None
        if now_wall - snapshot.timestamp >= RECOVERY_MAX_AGE_MS:
            log.info("Recovery snapshot is older than an hour, ignoring")
            return None
        if snapshot.lap_count == 0:
            return None
        return snapshot

    # ------------------------------------------------------------------
    # Background timer
    # ------------------------------------------------------------------

    def start(self, engine: "LapTimerEngine") -> None:
        """Save *engine* snapshots on a background timer until :meth:`stop`."""
        with self._timer_lock:
            self._engine = engine
            self._schedule()

    def stop(self) -> None:
        """Stop the timer and clear the stored snapshot."""
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._engine = None
        self.clear()

    def _schedule(self) -> None:
        self._timer = threading.Timer(self.interval_ms / 1000.0, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self) -> None:
        with self._timer_lock:
            engine = self._engine
            if engine is None:
                return
            try:
                self.maybe_save(engine, engine.clock())
            except Exception:
                log.exception("Recovery snapshot tick failed")
            self._schedule()
