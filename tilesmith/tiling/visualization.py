"""
Debug overlays for tile grids.
"""

from typing import List, Optional, Tuple

import cv2
import numpy as np

from ..imaging import flatten_on_white
from .models import TileGeometry


# Color palette for tiles (BGR)
TILE_COLORS = [
    (255, 0, 0),    # Blue
    (0, 255, 0),    # Green
    (0, 0, 255),    # Red
    (255, 255, 0),  # Cyan
    (255, 0, 255),  # Magenta
    (0, 255, 255),  # Yellow
    (128, 0, 255),  # Purple
    (255, 128, 0),  # Orange-ish
]


def overlap_rectangles(geometries: List[TileGeometry]) -> List[Tuple[int, int, int, int]]:
    """
    Intersections between horizontally or vertically adjacent tiles.

    Returns:
        List of (x1, y1, x2, y2) in original image coordinates
    """
    by_key = {g.key: g for g in geometries}
    regions = []
    for g in geometries:
        for neighbor_key in ((g.row, g.col + 1), (g.row + 1, g.col)):
            other = by_key.get(neighbor_key)
            if other is None:
                continue
            x1, y1 = max(g.x, other.x), max(g.y, other.y)
            x2, y2 = min(g.x2, other.x2), min(g.y2, other.y2)
            if x1 < x2 and y1 < y2:
                regions.append((x1, y1, x2, y2))
    return regions


def visualize_grid(
    image: np.ndarray,
    geometries: List[TileGeometry],
    output_path: Optional[str] = None,
    show_labels: bool = True,
    show_overlaps: bool = True,
    alpha: float = 0.2,
) -> np.ndarray:
    """
    Draw tile boundaries, overlap bands and labels over an image.

    Args:
        image: Original image (BGR or BGRA)
        geometries: Planned tiles
        output_path: Optional path to save the visualization
        show_labels: Whether to show tile (row, col) and dimensions
        show_overlaps: Whether to highlight overlap bands
        alpha: Transparency for tile fill

    Returns:
        BGR visualization
    """
    vis = flatten_on_white(image) if image.ndim == 3 and image.shape[2] == 4 else image.copy()
    overlay = vis.copy()

    for i, g in enumerate(geometries):
        color = TILE_COLORS[i % len(TILE_COLORS)]
        cv2.rectangle(overlay, (g.x, g.y), (g.x2 - 1, g.y2 - 1), color, -1)
        cv2.rectangle(vis, (g.x, g.y), (g.x2 - 1, g.y2 - 1), color, 2)

        if show_labels:
            label = f"r{g.row} c{g.col}"
            label_x, label_y = g.x + 5, g.y + 20
            (text_w, text_h), _ = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, 0.5, 1)
            cv2.rectangle(vis, (label_x - 2, label_y - text_h - 2),
                          (label_x + text_w + 2, label_y + 2), (0, 0, 0), -1)
            cv2.putText(vis, label, (label_x, label_y),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.5, color, 1)
            cv2.putText(vis, f"{g.width}x{g.height}", (label_x, label_y + 15),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.4, (255, 255, 255), 1)

    if show_overlaps:
        for x1, y1, x2, y2 in overlap_rectangles(geometries):
            cv2.rectangle(overlay, (x1, y1), (x2 - 1, y2 - 1), (128, 128, 128), -1)

    cv2.addWeighted(overlay, alpha, vis, 1 - alpha, 0, vis)

    if output_path is not None:
        cv2.imwrite(output_path, vis)
    return vis
