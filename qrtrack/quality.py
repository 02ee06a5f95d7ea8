"""Image quality scoring for generated rasters, and geometric confidence for decoded ones."""

import io
import math
from dataclasses import dataclass

import numpy as np
from PIL import Image

from qrtrack.logging import degraded, get_logger, trace

log = get_logger("quality")

DEFAULT_QUALITY = 0.8
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0

# Normalizers for the three sub-scores
_STDEV_SCALE = 50.0
_RANGE_SCALE = 255.0
_NOISE_GAIN = 2.0


@dataclass
class QualityBreakdown:
    sharpness: float
    contrast: float
    noise: float

    @property
    def score(self) -> float:
        combined = (self.sharpness + self.contrast + (1.0 - self.noise)) / 3.0
        return round(min(1.0, max(0.0, combined)), 2)


def measure(image: Image.Image) -> QualityBreakdown:
    """Per-channel statistics reduced to sharpness, contrast and noise in [0, 1].

    Raises ValueError for images whose statistics are undefined
    (e.g. an all-black raster has no mean to normalize noise against).
    """
    if image.mode not in ("L", "RGB"):
        image = image.convert("RGB")
    arr = np.asarray(image, dtype=np.float64)
    if arr.ndim == 2:
        arr = arr[..., np.newaxis]
    channels = arr.reshape(-1, arr.shape[-1])
    if channels.shape[0] == 0:
        raise ValueError("empty image")

    stdev = float(channels.std(axis=0).mean())
    spread = float((channels.max(axis=0) - channels.min(axis=0)).mean())
    mean = float(channels.mean(axis=0).mean())
    if mean <= 0.0 or not math.isfinite(mean):
        raise ValueError(f"mean intensity {mean} cannot normalize noise")

    return QualityBreakdown(
        sharpness=min(1.0, stdev / _STDEV_SCALE),
        contrast=min(1.0, spread / _RANGE_SCALE),
        noise=min(1.0, (stdev / mean) * _NOISE_GAIN),
    )


@trace
def score_quality(image: Image.Image | bytes, fallback: float = DEFAULT_QUALITY) -> float:
    """Quality score in [0, 1], rounded to 2 decimals. Never raises.

    Any failure during measurement is logged as degraded and `fallback` is returned.
    """
    try:
        if isinstance(image, (bytes, bytearray)):
            image = Image.open(io.BytesIO(image))
            image.load()
        return measure(image).score
    except Exception as e:
        degraded("quality.fallback", logger=log, error=str(e), fallback=fallback)
        return fallback


def _distance(a, b) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


@trace
def geometric_confidence(corners) -> float:
    """Confidence in [0.1, 1.0] from how close four corner points are to a square.

    Corners must be given in perimeter order (either winding). Deviation combines
    the spread of the side lengths, the mismatch between the two diagonals and
    the diagonal-to-side ratio against sqrt(2). A missing location yields 1.0.
    """
    if corners is None:
        return MAX_CONFIDENCE
    points = [(float(x), float(y)) for x, y in corners]
    if len(points) != 4:
        raise ValueError(f"expected 4 corner points, got {len(points)}")

    sides = np.array([_distance(points[i], points[(i + 1) % 4]) for i in range(4)])
    diagonals = np.array([_distance(points[0], points[2]), _distance(points[1], points[3])])
    mean_side = float(sides.mean())
    mean_diag = float(diagonals.mean())
    if mean_side <= 0.0 or mean_diag <= 0.0:
        return MIN_CONFIDENCE

    side_dev = float(sides.std()) / mean_side
    diag_dev = abs(float(diagonals[0] - diagonals[1])) / mean_diag
    ratio_dev = abs(mean_diag / (mean_side * math.sqrt(2.0)) - 1.0)

    confidence = 1.0 - (side_dev + diag_dev + ratio_dev)
    return round(min(MAX_CONFIDENCE, max(MIN_CONFIDENCE, confidence)), 2)
