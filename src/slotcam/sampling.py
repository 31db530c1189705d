"""Per-lane motion signal: region sampling, frame differencing, smoothing.

Classes:
    RegionSampler    - Downsamples a lane region to a small luma grid
    TemporalSmoother - Bounded moving average over raw change scores

Functions:
    compute_diff_score - Mean absolute luma change between two grids
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Optional, Tuple

import cv2
import numpy as np

from slotcam.lanes import Region

DEFAULT_DOWNSCALE = 4

# Fixed-point luma weights (sum to 256)
_LUMA_R = 77
_LUMA_G = 150
_LUMA_B = 29


# ---------------------------------------------------------------------------
# RegionSampler
# ---------------------------------------------------------------------------


class RegionSampler:
    """Reduces a normalized region of a frame to a small grayscale grid.

    The region's pixel rectangle is area-resampled down by *downscale* into a
    scratch buffer owned by this sampler (reallocated only when the target
    size changes), then converted to 8-bit luma with integer weights.

    Grid shape is ``(max(1, h // downscale), max(1, w // downscale))`` where
    ``w, h`` are the region's pixel bounds, so it depends only on the region
    and the frame size.

    Args:
        downscale: Integer downscale factor (default 4).
        bgr: ``True`` if frames arrive in OpenCV BGR(A) channel order,
            ``False`` for RGB(A).
    """

    def __init__(self, downscale: int = DEFAULT_DOWNSCALE, bgr: bool = False):
        if downscale < 1:
            raise ValueError(f"downscale must be >= 1, got {downscale}")
        self.downscale = downscale
        self.bgr = bgr
        self._scratch: Optional[np.ndarray] = None

    def grid_shape(
        self, region: Region, frame_width: int, frame_height: int
    ) -> Tuple[int, int]:
        """Return the ``(rows, cols)`` of the grid :meth:`sample` will produce."""
        _, _, w, h = region.to_pixel_bounds(frame_width, frame_height)
        return max(1, h // self.downscale), max(1, w // self.downscale)

    def sample(
        self,
        frame: np.ndarray,
        region: Region,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> np.ndarray:
        """Sample *region* of *frame* into a ``uint8`` luma grid.

        Args:
            frame: ``(H, W, 3|4)`` uint8 array, or a flat RGBA buffer when
                *width* and *height* are given.
            region: Normalized finish-line region.
            width, height: Frame size, required for flat buffers.

        Returns:
            2-D ``uint8`` array of luma samples.
        """
        pixels = as_frame(frame, width, height)
        frame_h, frame_w = pixels.shape[:2]
        x, y, w, h = region.to_pixel_bounds(frame_w, frame_h)
        rows, cols = self.grid_shape(region, frame_w, frame_h)

        crop = np.ascontiguousarray(pixels[y : y + h, x : x + w, :3])
        scratch = self._scratch_for(rows, cols)
        if crop.shape[0] == rows and crop.shape[1] == cols:
            np.copyto(scratch, crop)
            resized = scratch
        else:
            resized = cv2.resize(
                crop, (cols, rows), dst=scratch, interpolation=cv2.INTER_AREA
            )

        return _luma(resized, self.bgr)

    def _scratch_for(self, rows: int, cols: int) -> np.ndarray:
        if self._scratch is None or self._scratch.shape[:2] != (rows, cols):
            self._scratch = np.empty((rows, cols, 3), dtype=np.uint8)
        return self._scratch


def as_frame(
    frame: np.ndarray, width: Optional[int] = None, height: Optional[int] = None
) -> np.ndarray:
    """Return *frame* as an ``(H, W, C)`` uint8 array.

    Flat buffers (e.g. canvas RGBA bytes) are reshaped using *width* and
    *height*.
    """
    pixels = np.asarray(frame, dtype=np.uint8)
    if pixels.ndim == 1:
        if width is None or height is None:
            raise ValueError("width and height are required for a flat pixel buffer")
        channels = pixels.size // (width * height) if width * height else 0
        if channels not in (3, 4) or channels * width * height != pixels.size:
            raise ValueError(
                f"Buffer of {pixels.size} bytes does not match a {width}x{height} "
                "RGB or RGBA frame"
            )
        pixels = pixels.reshape(height, width, channels)
    if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
        raise ValueError(f"Expected an (H, W, 3|4) frame, got shape {pixels.shape}")
    return pixels


def _luma(rgb: np.ndarray, bgr: bool = False) -> np.ndarray:
    """``(77 R + 150 G + 29 B) >> 8`` over a 3-channel uint8 image."""
    pixels = rgb.astype(np.uint16)
    if bgr:
        b, g, r = pixels[..., 0], pixels[..., 1], pixels[..., 2]
    else:
        r, g, b = pixels[..., 0], pixels[..., 1], pixels[..., 2]
    return ((_LUMA_R * r + _LUMA_G * g + _LUMA_B * b) >> 8).astype(np.uint8)


# ---------------------------------------------------------------------------
# Difference scoring
# ---------------------------------------------------------------------------


def compute_diff_score(current: np.ndarray, previous: Optional[np.ndarray]) -> float:
    """Mean absolute luma difference between two grids.

    Returns 0.0 when there is no previous grid or the shapes differ (the
    region was resized), so a fresh baseline never triggers.
    """
    if previous is None or previous.shape != current.shape:
        return 0.0
    if current.size == 0:
        return 0.0
    diff = np.abs(current.astype(np.int16) - previous.astype(np.int16))
    return float(diff.mean())


# ---------------------------------------------------------------------------
# TemporalSmoother
# ---------------------------------------------------------------------------


class TemporalSmoother:
    """Moving average over the last *window* raw change scores.

    The window size is passed on every push so a settings change applies
    from the next frame on; older entries are trimmed then, never
    re-averaged retroactively.
    """

    def __init__(self):
        self._buffer: Deque[float] = deque()

    def push(self, score: float, window: int) -> float:
        """Add *score* and return the mean of the current window."""
        window = max(1, int(window))
        self._buffer.append(float(score))
        while len(self._buffer) > window:
            self._buffer.popleft()
        return sum(self._buffer) / len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()

    def __len__(self) -> int:
        return len(self._buffer)
