"""
Chroma keying against a background color.

Tolerance is a 0-100 percentage mapped linearly onto a distance
threshold: per-channel distance (the largest absolute difference over
B, G and R) is compared against tolerance% of 255, Euclidean distance
against tolerance% of the largest possible RGB distance.
"""

import math
import string
from dataclasses import dataclass
from typing import Any, Dict, Sequence, Tuple, Union

import numpy as np

from ..imaging import to_bgra


# Named key colors (RGB)
NAMED_KEY_COLORS: Dict[str, Tuple[int, int, int]] = {
    "white": (255, 255, 255),
    "black": (0, 0, 0),
    "red": (255, 0, 0),
    "green": (0, 255, 0),
    "blue": (0, 0, 255),
}

CHANNEL_METRIC = "channel"
EUCLIDEAN_METRIC = "euclidean"

# Pixels this transparent already count as background
ALPHA_KEY_THRESHOLD = 10

_MAX_EUCLIDEAN = math.sqrt(3 * 255 ** 2)

ColorLike = Union[str, Sequence[int]]


def parse_color(color: ColorLike) -> Tuple[int, int, int]:
    """
    Resolve a color name, ``#RRGGBB``/``#RGB`` string or RGB triple.

    Raises:
        ValueError: If the color is not recognized
    """
    if isinstance(color, str):
        value = color.strip().lower()
        if value in NAMED_KEY_COLORS:
            return NAMED_KEY_COLORS[value]
        if value.startswith("#"):
            digits = value[1:]
            if len(digits) == 3:
                digits = "".join(c * 2 for c in digits)
            if len(digits) == 6 and all(c in string.hexdigits for c in digits):
                return tuple(int(digits[i:i + 2], 16) for i in (0, 2, 4))
        raise ValueError(f"Unknown key color: {color!r}")

    rgb = tuple(int(c) for c in color)
    if len(rgb) != 3 or any(c < 0 or c > 255 for c in rgb):
        raise ValueError(f"Key color must be three 0-255 values, got {color!r}")
    return rgb


@dataclass(frozen=True)
class KeyColorSpec:
    """
    Background color and tolerance for keying.

    Attributes:
        color: Color name, hex string or RGB triple
        tolerance: 0-100 percentage
        metric: "channel" or "euclidean" distance
    """
    color: ColorLike = "green"
    tolerance: float = 10.0
    metric: str = CHANNEL_METRIC

    def __post_init__(self):
        """Validate the spec."""
        parse_color(self.color)
        if not (0.0 <= self.tolerance <= 100.0):
            raise ValueError(f"tolerance must be between 0 and 100, got {self.tolerance}")
        if self.metric not in (CHANNEL_METRIC, EUCLIDEAN_METRIC):
            raise ValueError(f"metric must be 'channel' or 'euclidean', got {self.metric!r}")

    @property
    def rgb(self) -> Tuple[int, int, int]:
        return parse_color(self.color)

    @property
    def bgr(self) -> Tuple[int, int, int]:
        r, g, b = self.rgb
        return (b, g, r)

    @property
    def threshold(self) -> float:
        """Distance threshold derived from the tolerance percentage."""
        scale = 255.0 if self.metric == CHANNEL_METRIC else _MAX_EUCLIDEAN
        return self.tolerance / 100.0 * scale

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "color": self.color if isinstance(self.color, str) else list(self.rgb),
            "tolerance": self.tolerance,
            "metric": self.metric,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyColorSpec":
        """Create from dictionary."""
        color = data.get("color", "green")
        if isinstance(color, list):
            color = tuple(color)
        return cls(
            color=color,
            tolerance=float(data.get("tolerance", 10.0)),
            metric=data.get("metric", CHANNEL_METRIC),
        )


def key_mask(image: np.ndarray, spec: KeyColorSpec) -> np.ndarray:
    """
    Classify pixels as background.

    Args:
        image: BGR or BGRA image
        spec: Key color and tolerance

    Returns:
        Boolean (H, W) mask, True where the pixel is background
    """
    bgra = image if image.ndim == 3 and image.shape[2] == 4 else to_bgra(image)
    diff = np.abs(bgra[:, :, :3].astype(np.int16) - np.array(spec.bgr, dtype=np.int16))

    if spec.metric == CHANNEL_METRIC:
        distance = diff.max(axis=2)
    else:
        distance = np.sqrt((diff.astype(np.float32) ** 2).sum(axis=2))

    return (distance <= spec.threshold) | (bgra[:, :, 3] < ALPHA_KEY_THRESHOLD)


def apply_chroma_key(image: np.ndarray, spec: KeyColorSpec) -> np.ndarray:
    """
    Make background pixels transparent.

    Pixels within tolerance of the key color become (0, 0, 0, 0); all
    other pixels are fully opaque.

    Returns:
        New BGRA image
    """
    keyed = to_bgra(image)
    mask = key_mask(keyed, spec)
    keyed[:, :, 3] = 255
    keyed[mask] = 0
    return keyed
