"""Lap export and display formatting.

Classes:
    LapCsvWriter - Writes lap records to CSV

Functions:
    format_time, format_time_short - ``MM:SS.mmm`` / ``SS.mmm``
    calculate_speed, format_speed  - Average speed over a lap in km/h
    export_laps_csv                - One-shot CSV export of a race
    results_summary                - Plain-text per-lane results
"""

from __future__ import annotations

import csv
import math
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, TextIO, Union

from slotcam.lanes import Lane
from slotcam.ledger import LapRecord


def format_time(ms: float) -> str:
    """``MM:SS.mmm``; ``--:--.---`` for negative or non-finite input."""
    if not math.isfinite(ms) or ms < 0:
        return "--:--.---"
    minutes = int(ms // 60000)
    seconds = int((ms % 60000) // 1000)
    millis = int(ms % 1000)
    return f"{minutes:02d}:{seconds:02d}.{millis:03d}"


def format_time_short(ms: float) -> str:
    """``SS.mmm``; ``--.---`` for negative or non-finite input."""
    if not math.isfinite(ms) or ms < 0:
        return "--.---"
    seconds = int(ms // 1000)
    millis = int(ms % 1000)
    return f"{seconds:02d}.{millis:03d}"


def calculate_speed(lap_time_ms: float, track_length_m: float) -> float:
    """Average speed in km/h over one lap of *track_length_m*."""
    if lap_time_ms <= 0 or track_length_m <= 0:
        return 0.0
    hours = lap_time_ms / 1000.0 / 3600.0
    return (track_length_m / 1000.0) / hours


def format_speed(speed: float) -> str:
    if speed <= 0 or not math.isfinite(speed):
        return "--"
    return f"{speed:.1f}"


def _lane_name(lane_id: int, lanes_by_id: Dict[int, Lane]) -> str:
    lane = lanes_by_id.get(lane_id)
    return lane.name if lane is not None else f"Lane {lane_id + 1}"


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------


class LapCsvWriter:
    """Writes lap records to a CSV file, one row per lap.

    Args:
        path: Output CSV file path, or an open text stream.
        lanes: Lane list used to resolve lane names.
    """

    HEADER = ["Lap #", "Lane", "Lap Time (s)", "Lap Time", "Total Time (s)"]

    def __init__(self, path: Union[str, Path, TextIO], lanes: Sequence[Lane] = ()):
        if isinstance(path, (str, Path)):
            self._file = open(path, "w", newline="")
            self._owns_file = True
        else:
            self._file = path
            self._owns_file = False
        self._lanes = {lane.id: lane for lane in lanes}
        self._writer = csv.writer(self._file)
        self._writer.writerow(self.HEADER)

    def write(self, lap: LapRecord):
        """Write a single lap row."""
        self._writer.writerow(
            [
                lap.lap_number,
                _lane_name(lap.lane_id, self._lanes),
                f"{lap.lap_time / 1000.0:.3f}",
                format_time_short(lap.lap_time),
                f"{lap.relative_time / 1000.0:.3f}",
            ]
        )

    def close(self):
        """Flush and close the file (streams passed in are only flushed)."""
        if self._owns_file:
            self._file.close()
        else:
            self._file.flush()

    def __enter__(self) -> "LapCsvWriter":
        return self

    def __exit__(self, *exc):
        self.close()


def export_laps_csv(
    laps: Iterable[LapRecord], lanes: Sequence[Lane], path: Union[str, Path, TextIO]
) -> int:
    """Write *laps* ordered by race time.  Returns the number of rows."""
    ordered = sorted(laps, key=lambda lap: (lap.relative_time, lap.lane_id))
    with LapCsvWriter(path, lanes) as writer:
        for lap in ordered:
            writer.write(lap)
    return len(ordered)


# ---------------------------------------------------------------------------
# Text summary
# ---------------------------------------------------------------------------


def results_summary(
    laps: Iterable[LapRecord], lanes: Sequence[Lane], duration_ms: Optional[float] = None
) -> str:
    """Plain-text race results: per lane laps, best and average.

    Lanes are ordered by laps completed, then best lap.
    """
    lanes_by_id = {lane.id: lane for lane in lanes}
    by_lane: Dict[int, List[LapRecord]] = {}
    for lap in laps:
        by_lane.setdefault(lap.lane_id, []).append(lap)
    if not by_lane:
        return ""

    ranked = sorted(
        by_lane.items(),
        key=lambda item: (-len(item[1]), min(lap.lap_time for lap in item[1]), item[0]),
    )
    lines = ["Lap Timer Results", ""]
    for position, (lane_id, lane_laps) in enumerate(ranked, start=1):
        best = min(lap.lap_time for lap in lane_laps)
        avg = sum(lap.lap_time for lap in lane_laps) / len(lane_laps)
        lines.append(f"{position}. {_lane_name(lane_id, lanes_by_id)}")
        lines.append(f"   Laps: {len(lane_laps)}")
        lines.append(f"   Best: {format_time_short(best)}")
        lines.append(f"   Avg:  {format_time_short(avg)}")
        lines.append("")
    if duration_ms is not None:
        lines.append(f"Duration: {format_time(duration_ms)}")
    return "\n".join(lines).rstrip() + "\n"
