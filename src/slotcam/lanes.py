"""Lane and finish-line region model.

Classes:
    Region - Normalized finish-line rectangle with joint clamping
    Lane   - One timed slot: id, display name, colour, enabled flag, region

Functions:
    create_default_lanes - Stacked horizontal bands for 1-4 lanes
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Tuple

# Smallest normalized width/height a region may shrink to
MIN_REGION_SIZE = 0.05

MIN_LANES = 1
MAX_LANES = 4
MAX_NAME_LENGTH = 12

LANE_COLORS: List[str] = [
    "#ef4444",  # red
    "#3b82f6",  # blue
    "#22c55e",  # green
    "#f59e0b",  # amber
]
LANE_NAMES: List[str] = ["Lane 1", "Lane 2", "Lane 3", "Lane 4"]

# Default band layout
_DEFAULT_BAND_HEIGHT = 0.15
_DEFAULT_BAND_GAP = 0.02
_DEFAULT_BAND_X = 0.25
_DEFAULT_BAND_WIDTH = 0.5

_HANDLES = ("nw", "ne", "sw", "se")


def _clip(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


# ---------------------------------------------------------------------------
# Region
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Region:
    """Finish-line rectangle in normalized [0,1] frame coordinates.

    Regions are immutable; every edit returns a new, jointly clamped region
    so that the rectangle never inverts, never leaves the frame and never
    shrinks below :data:`MIN_REGION_SIZE`.
    """

    x: float
    y: float
    width: float
    height: float

    def clamped(self) -> "Region":
        """Return this region clamped into the frame, all four fields at once."""
        width = _clip(self.width, MIN_REGION_SIZE, 1.0)
        height = _clip(self.height, MIN_REGION_SIZE, 1.0)
        x = _clip(self.x, 0.0, 1.0 - width)
        y = _clip(self.y, 0.0, 1.0 - height)
        return Region(x, y, width, height)

    def moved(self, dx: float, dy: float) -> "Region":
        """Translate by *dx, dy* keeping the size."""
        base = self.clamped()
        return Region(
            _clip(base.x + dx, 0.0, 1.0 - base.width),
            _clip(base.y + dy, 0.0, 1.0 - base.height),
            base.width,
            base.height,
        )

    def resized(self, handle: str, dx: float, dy: float) -> "Region":
        """Drag one corner handle by *dx, dy*; the opposite corner stays put.

        Args:
            handle: ``"nw"``, ``"ne"``, ``"sw"`` or ``"se"``.
            dx, dy: Normalized drag offset.
        """
        if handle not in _HANDLES:
            raise ValueError(f"Unknown resize handle: {handle!r}")
        base = self.clamped()
        x, y, w, h = base.x, base.y, base.width, base.height
        right = x + w
        bottom = y + h

        if "w" in handle:
            x = _clip(x + dx, 0.0, right - MIN_REGION_SIZE)
            w = right - x
        else:
            w = _clip(w + dx, MIN_REGION_SIZE, 1.0 - x)

        if "n" in handle:
            y = _clip(y + dy, 0.0, bottom - MIN_REGION_SIZE)
            h = bottom - y
        else:
            h = _clip(h + dy, MIN_REGION_SIZE, 1.0 - y)

        return Region(x, y, w, h)

    def to_pixel_bounds(self, frame_width: int, frame_height: int) -> Tuple[int, int, int, int]:
        """Convert to integer pixel ``(x, y, w, h)`` inside a frame.

        Origin is floored, extent is floored with a minimum of 1 pixel, and
        the extent is cut back so the rectangle stays inside the frame.
        """
        px = min(int(math.floor(self.x * frame_width)), max(0, frame_width - 1))
        py = min(int(math.floor(self.y * frame_height)), max(0, frame_height - 1))
        pw = max(1, int(math.floor(self.width * frame_width)))
        ph = max(1, int(math.floor(self.height * frame_height)))
        pw = max(1, min(pw, frame_width - px))
        ph = max(1, min(ph, frame_height - py))
        return px, py, pw, ph

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Region":
        return cls(
            float(data["x"]), float(data["y"]), float(data["width"]), float(data["height"])
        ).clamped()


# ---------------------------------------------------------------------------
# Lane
# ---------------------------------------------------------------------------


@dataclass
class Lane:
    """One independently timed slot.

    Args:
        id: Stable lane index (0..N-1).
        name: Display name, truncated to :data:`MAX_NAME_LENGTH` characters.
        color: Display token, not interpreted by the timer.
        enabled: Whether new frames are processed for this lane.
        region: Finish-line sensor area.
    """

    id: int
    name: str
    color: str = "#ffffff"
    enabled: bool = True
    region: Region = field(default_factory=lambda: Region(0.25, 0.4, 0.5, 0.15))

    def __post_init__(self):
        self.name = (self.name or f"Lane {self.id + 1}")[:MAX_NAME_LENGTH]
        self.region = self.region.clamped()

    def with_changes(self, **changes: Any) -> "Lane":
        """Return a copy with *changes* applied (name and region re-validated)."""
        if "id" in changes and changes["id"] != self.id:
            raise ValueError("Lane id cannot be changed")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "enabled": self.enabled,
            "roi": self.region.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lane":
        return cls(
            id=int(data["id"]),
            name=str(data.get("name", "")),
            color=str(data.get("color", "#ffffff")),
            enabled=bool(data.get("enabled", True)),
            region=Region.from_dict(data["roi"]),
        )


def default_region(lane_index: int, total_lanes: int) -> Region:
    """Band *lane_index* of *total_lanes* stacked bands centred vertically."""
    total_height = total_lanes * _DEFAULT_BAND_HEIGHT + (total_lanes - 1) * _DEFAULT_BAND_GAP
    start_y = (1.0 - total_height) / 2.0
    return Region(
        _DEFAULT_BAND_X,
        start_y + lane_index * (_DEFAULT_BAND_HEIGHT + _DEFAULT_BAND_GAP),
        _DEFAULT_BAND_WIDTH,
        _DEFAULT_BAND_HEIGHT,
    )


def create_default_lanes(count: int) -> List[Lane]:
    """Create *count* lanes (1-4) with default names, colours and regions."""
    if not MIN_LANES <= count <= MAX_LANES:
        raise ValueError(f"Lane count must be {MIN_LANES}-{MAX_LANES}, got {count}")
    return [
        Lane(
            id=i,
            name=LANE_NAMES[i],
            color=LANE_COLORS[i],
            enabled=True,
            region=default_region(i, count),
        )
        for i in range(count)
    ]
