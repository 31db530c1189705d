"""Automatic trigger-threshold calibration from observed noise.

While calibrating, the operator keeps every finish-line region clear, so the
smoothed scores collected are sensor and lighting noise.  The threshold is
set three standard deviations above the pooled noise mean.

Classes:
    Calibrator - Timed per-lane sample collection

Functions:
    calibrate_threshold - Pure threshold derivation from a sample set
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, List, Optional

import numpy as np

from slotcam.config import (
    CALIBRATED_MAX_THRESHOLD,
    CALIBRATED_MIN_THRESHOLD,
    CALIBRATION_DURATION_MS,
    CALIBRATION_SIGMA,
)

log = logging.getLogger(__name__)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calibrate_threshold(samples: Iterable[float], fallback: float) -> float:
    """Derive a trigger threshold from noise *samples*.

    ``round(clamp(mean + 3 * stddev, 5, 100))`` using the population
    standard deviation.  An empty sample set returns *fallback* unchanged.
    """
    values = np.asarray(list(samples), dtype=np.float64)
    if values.size == 0:
        return fallback
    mean = float(values.mean())
    std = float(values.std())
    raw = mean + CALIBRATION_SIGMA * std
    clamped = max(CALIBRATED_MIN_THRESHOLD, min(CALIBRATED_MAX_THRESHOLD, raw))
    return float(_round_half_up(clamped))


class Calibrator:
    """Collects smoothed scores per lane for a fixed window of clear track.

    Args:
        duration_ms: Length of the sampling window (default 3000 ms).
    """

    def __init__(self, duration_ms: float = CALIBRATION_DURATION_MS):
        self.duration_ms = duration_ms
        self._start: Optional[float] = None
        self._samples: Dict[int, List[float]] = {}

    @property
    def active(self) -> bool:
        return self._start is not None

    def begin(self, now: float) -> None:
        """Start a new window at *now*, discarding earlier samples."""
        self._start = now
        self._samples = {}
        log.info("Calibration started (%.0f ms window)", self.duration_ms)

    def add_sample(self, lane_id: int, score: float) -> None:
        if self._start is None:
            return
        self._samples.setdefault(lane_id, []).append(float(score))

    def is_complete(self, now: float) -> bool:
        return self._start is not None and now - self._start >= self.duration_ms

    def samples(self, lane_id: int) -> List[float]:
        return list(self._samples.get(lane_id, []))

    def finish(self, current_threshold: float) -> float:
        """End the window and return the new threshold.

        Only positive samples from all lanes are pooled; with none (every
        lane disabled, or a perfectly static image) *current_threshold* is
        returned unchanged.
        """
        pooled = [s for lane_samples in self._samples.values() for s in lane_samples if s > 0]
        threshold = calibrate_threshold(pooled, current_threshold)
        if pooled:
            log.info(
                "Calibration finished: %d samples -> threshold %.0f", len(pooled), threshold
            )
        else:
            log.warning("Calibration collected no samples; threshold unchanged")
        self._start = None
        self._samples = {}
        return threshold

    def cancel(self) -> None:
        if self._start is not None:
            log.info("Calibration cancelled")
        self._start = None
        self._samples = {}
