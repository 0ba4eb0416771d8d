"""
Offline stand-in for a generation backend.
"""

import itertools
import logging
import threading
import time
from typing import Optional

import cv2
import numpy as np

from ..imaging import to_bgra

logger = logging.getLogger(__name__)


class MockGenerator:
    """
    Returns a noise tile with a red border and a call-number label.

    The output has the input tile's dimensions, so runs with a mock
    generator merge cleanly.

    Example:
        >>> generate = MockGenerator(seed=0)
        >>> out = generate(tile, None, "prompt")
        >>> out.shape == tile.shape
        True
    """

    BORDER_COLOR = (0, 0, 255, 255)  # BGRA red

    def __init__(self, seed: Optional[int] = None, delay: float = 0.0):
        self.rng = np.random.default_rng(seed)
        self.delay = delay
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def __call__(self, tile: np.ndarray, reference: Optional[np.ndarray], prompt: str) -> np.ndarray:
        with self._lock:
            number = next(self._counter)
            noise = self.rng.integers(96, 224, size=tile.shape[:2], dtype=np.uint8)

        if self.delay:
            time.sleep(self.delay)

        height, width = tile.shape[:2]
        out = to_bgra(noise)

        border = max(1, min(width, height) // 50)
        cv2.rectangle(out, (0, 0), (width - 1, height - 1), self.BORDER_COLOR, border)

        label = f"#{number}"
        scale = max(0.5, min(width, height) / 300)
        thickness = max(1, int(scale * 2))
        (text_w, text_h), _ = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, scale, thickness)
        origin = ((width - text_w) // 2, (height + text_h) // 2)
        cv2.putText(out, label, origin, cv2.FONT_HERSHEY_SIMPLEX, scale, (0, 0, 0, 255), thickness)

        logger.debug(f"Mock generated tile {label} ({width}x{height})")
        return out
