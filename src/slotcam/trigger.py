"""Per-lane crossing trigger: threshold plus cooldown debounce.

Classes:
    TriggerState  - IDLE (not racing) / ARMED (racing, awaiting a rise)
    CrossingEvent - Dataclass for a single accepted crossing
    LaneTrigger   - Two-state machine gating the smoothed score stream
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TriggerState(Enum):
    IDLE = "idle"
    ARMED = "armed"


@dataclass(frozen=True)
class CrossingEvent:
    """A car crossed a lane's finish line at *timestamp* (ms)."""

    lane_id: int
    timestamp: float


class LaneTrigger:
    """Turns a lane's smoothed score stream into debounced crossing events.

    Cooldown is a timestamp guard, not a state: measurement continues while
    a lane is cooling down, only triggering is gated.  It is measured from
    the previous *accepted trigger*, so a score that stays above threshold
    yields exactly one event per cooldown interval.

    Args:
        lane_id: Lane this trigger belongs to.
    """

    def __init__(self, lane_id: int):
        self.lane_id = lane_id
        self.state = TriggerState.IDLE
        self.last_trigger_time: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self.state is TriggerState.ARMED

    def arm(self, reset_cooldown: bool = True) -> None:
        """Enter ARMED.  *reset_cooldown* forgets the previous trigger time."""
        self.state = TriggerState.ARMED
        if reset_cooldown:
            self.last_trigger_time = None

    def disarm(self) -> None:
        """Enter IDLE; no further events until re-armed."""
        self.state = TriggerState.IDLE

    def evaluate(
        self,
        score: float,
        now: float,
        threshold: float,
        cooldown_ms: float,
    ) -> Optional[CrossingEvent]:
        """Evaluate one frame's smoothed *score*.

        Call at most once per lane per frame.

        Returns:
            A :class:`CrossingEvent` if the trigger fired, else ``None``.
        """
        if self.state is not TriggerState.ARMED:
            return None
        if score < threshold:
            return None
        if self.last_trigger_time is not None and now - self.last_trigger_time < cooldown_ms:
            return None
        self.last_trigger_time = now
        return CrossingEvent(lane_id=self.lane_id, timestamp=now)
