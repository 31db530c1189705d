"""Timer configuration: defaults, validated settings and persistence."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from slotcam.lanes import MAX_LANES, MIN_LANES, Lane, create_default_lanes
from slotcam.storage import KeyValueStore

log = logging.getLogger(__name__)

CONFIG_KEY = "slotcam-config-v2"

# Detection
DEFAULT_THRESHOLD = 12.0  # score units
MIN_THRESHOLD = 1.0
MAX_THRESHOLD = 100.0
DEFAULT_COOLDOWN_MS = 400.0
MIN_COOLDOWN_MS = 100.0
MAX_COOLDOWN_MS = 2000.0
DEFAULT_SMOOTHING = 2  # frames
MIN_SMOOTHING = 1
MAX_SMOOTHING = 10

# Calibration
CALIBRATION_DURATION_MS = 3000.0
CALIBRATION_SIGMA = 3.0
CALIBRATED_MIN_THRESHOLD = 5.0
CALIBRATED_MAX_THRESHOLD = 100.0

# Race
DEFAULT_LANE_COUNT = 2
DEFAULT_TARGET_LAPS = 10
DEFAULT_TARGET_TIME_S = 300.0
MIN_TARGET_TIME_S = 60.0
DEFAULT_TRACK_LENGTH_M = 5.5  # typical home layout

# Frame pacing
DEFAULT_MAX_FPS = 30.0

# Recovery
SNAPSHOT_INTERVAL_MS = 2000.0
RECOVERY_MAX_AGE_MS = 3600 * 1000.0


class RaceMode(Enum):
    """Race termination policy."""

    FREE = "free"  # never ends on its own
    LAPS = "laps"  # first lane to target_laps wins
    TIME = "time"  # ends after target_time_s


def _clip(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


# ---------------------------------------------------------------------------
# DetectionConfig
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DetectionConfig:
    """Process-wide trigger parameters shared by every lane.

    Out-of-range values are clamped rather than rejected.

    Args:
        threshold: Smoothed score at or above which a lane triggers (1-100).
        cooldown_ms: Minimum time between accepted triggers (100-2000 ms).
        smoothing: Moving-average window in frames (1-10).
    """

    threshold: float = DEFAULT_THRESHOLD
    cooldown_ms: float = DEFAULT_COOLDOWN_MS
    smoothing: int = DEFAULT_SMOOTHING

    def __post_init__(self):
        object.__setattr__(
            self, "threshold", _clip(float(self.threshold), MIN_THRESHOLD, MAX_THRESHOLD)
        )
        object.__setattr__(
            self, "cooldown_ms", _clip(float(self.cooldown_ms), MIN_COOLDOWN_MS, MAX_COOLDOWN_MS)
        )
        object.__setattr__(
            self, "smoothing", int(_clip(int(self.smoothing), MIN_SMOOTHING, MAX_SMOOTHING))
        )


# ---------------------------------------------------------------------------
# TimerConfig
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimerConfig:
    """All persisted timer settings: detection plus race and display options."""

    detection: DetectionConfig = field(default_factory=DetectionConfig)
    lane_count: int = DEFAULT_LANE_COUNT
    race_mode: RaceMode = RaceMode.FREE
    target_laps: int = DEFAULT_TARGET_LAPS
    target_time_s: float = DEFAULT_TARGET_TIME_S
    track_length_m: float = DEFAULT_TRACK_LENGTH_M
    debug_mode: bool = False
    voice_enabled: bool = False

    def __post_init__(self):
        object.__setattr__(self, "lane_count", int(_clip(int(self.lane_count), MIN_LANES, MAX_LANES)))
        object.__setattr__(self, "race_mode", RaceMode(self.race_mode))
        object.__setattr__(self, "target_laps", max(1, int(self.target_laps)))
        object.__setattr__(self, "target_time_s", max(MIN_TARGET_TIME_S, float(self.target_time_s)))
        object.__setattr__(self, "track_length_m", max(0.0, float(self.track_length_m)))

    @property
    def target_time_ms(self) -> float:
        return self.target_time_s * 1000.0

    def updated(self, **changes: Any) -> "TimerConfig":
        """Return a copy with *changes*; detection fields may be passed flat.

        ``config.updated(threshold=20, race_mode="laps")`` updates the nested
        :class:`DetectionConfig` and the race mode together.
        """
        detection_names = {f.name for f in fields(DetectionConfig)}
        detection_changes = {k: changes.pop(k) for k in list(changes) if k in detection_names}
        unknown = set(changes) - {f.name for f in fields(TimerConfig)}
        if unknown:
            raise ValueError(f"Unknown config fields: {sorted(unknown)}")
        detection = changes.pop("detection", self.detection)
        if detection_changes:
            detection = replace(detection, **detection_changes)
        return replace(self, detection=detection, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["race_mode"] = self.race_mode.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimerConfig":
        """Build from a (possibly partial) dict; missing fields take defaults."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known and k != "detection"}
        detection_data = data.get("detection") or {}
        detection_known = {f.name for f in fields(DetectionConfig)}
        detection = DetectionConfig(
            **{k: v for k, v in detection_data.items() if k in detection_known}
        )
        return cls(detection=detection, **kwargs)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def load_config(store: Optional[KeyValueStore]) -> Tuple[List[Lane], TimerConfig]:
    """Load lanes and config from *store*, falling back to defaults.

    A missing, unreadable or corrupt entry is logged and replaced by
    defaults; it never raises.
    """
    default = TimerConfig()
    if store is None:
        return create_default_lanes(default.lane_count), default
    try:
        raw = store.load(CONFIG_KEY)
        if raw is None:
            return create_default_lanes(default.lane_count), default
        parsed = json.loads(raw.decode("utf-8"))
        config = TimerConfig.from_dict(parsed.get("timer") or {})
        lanes_data = parsed.get("lanes")
        if lanes_data:
            lanes = [Lane.from_dict(item) for item in lanes_data]
        else:
            lanes = create_default_lanes(config.lane_count)
        return lanes, config
    except Exception as e:
        log.warning("Failed to load config, using defaults: %s", e)
        return create_default_lanes(default.lane_count), default


def save_config(store: Optional[KeyValueStore], lanes: List[Lane], config: TimerConfig) -> bool:
    """Persist lanes and config. Returns ``False`` (and logs) on failure."""
    if store is None:
        return False
    payload = {"lanes": [lane.to_dict() for lane in lanes], "timer": config.to_dict()}
    try:
        store.save(CONFIG_KEY, json.dumps(payload).encode("utf-8"))
    except Exception as e:
        log.warning("Failed to save config: %s", e)
        return False
    return True
