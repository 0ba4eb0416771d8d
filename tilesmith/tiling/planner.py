"""
Grid planning: pure geometry, no I/O.

For an axis of size S, a tile count n and overlap ratio r, every tile is
S / (n - (n - 1) * r) pixels long and tiles start every
tile * (1 - r) pixels. The planner picks the smallest n whose tile
length does not exceed the maximum tile dimension.

Example:
    >>> plan = plan_grid(4000, 3000, max_tile_dimension=1024, overlap_ratio=0.1)
    >>> (plan.rows, plan.cols)
    (4, 5)
    >>> tiles = tile_geometries(plan)
"""

import logging
import math
from typing import List

from .models import GridPlan, TileGeometry

logger = logging.getLogger(__name__)

# Hard ceiling on tiles per axis
MAX_GRID_COUNT = 64

# Overlap used for geometry when a degenerate ratio (>= 1) is supplied
MAX_OVERLAP_RATIO = 0.9

# Absorbs float error so an exact fit does not round up to an extra tile
_COUNT_EPSILON = 1e-9


def clamp_overlap_ratio(overlap_ratio: float) -> float:
    """Clamp an overlap ratio into [0, MAX_OVERLAP_RATIO] for geometry."""
    if overlap_ratio is None or math.isnan(overlap_ratio) or overlap_ratio < 0:
        return 0.0
    if overlap_ratio >= 1.0:
        return MAX_OVERLAP_RATIO
    return float(overlap_ratio)


def _clamp_count(count: int, size: int) -> int:
    # Never more tiles than pixels on the axis, so every tile is >= 1px
    return max(1, min(int(count), MAX_GRID_COUNT, max(1, size)))


def compute_tile_count(size: int, max_tile_dimension: int, overlap_ratio: float) -> int:
    """
    Smallest tile count along one axis such that each tile fits.

    Solves S / (n - (n - 1) * r) <= M for n:
        n = ceil((S / M - r) / (1 - r))
    clamped to [1, MAX_GRID_COUNT].

    Args:
        size: Axis length in pixels
        max_tile_dimension: Largest acceptable tile edge
        overlap_ratio: Overlap fraction (0 <= r < 1)

    Returns:
        Tile count for this axis
    """
    size = max(1, int(size))
    max_tile_dimension = max(1, int(max_tile_dimension))

    if overlap_ratio is not None and not math.isnan(overlap_ratio) and overlap_ratio >= 1.0:
        return _clamp_count(MAX_GRID_COUNT, size)

    r = clamp_overlap_ratio(overlap_ratio)
    raw = (size / max_tile_dimension - r) / (1.0 - r)
    return _clamp_count(math.ceil(raw - _COUNT_EPSILON), size)


def plan_grid(
    image_width: int,
    image_height: int,
    max_tile_dimension: int = 1024,
    overlap_ratio: float = 0.1,
) -> GridPlan:
    """
    Compute the smallest grid whose tiles fit within max_tile_dimension.

    Invalid inputs are clamped, never raised: dimensions below 1 become 1,
    negative overlap becomes 0, and an overlap >= 1 yields MAX_GRID_COUNT
    tiles per axis with the overlap clamped to MAX_OVERLAP_RATIO.

    Args:
        image_width: Source image width
        image_height: Source image height
        max_tile_dimension: Largest acceptable tile edge length
        overlap_ratio: Overlap fraction shared with each adjacent tile

    Returns:
        GridPlan with rows and cols chosen independently per axis
    """
    width = max(1, int(image_width))
    height = max(1, int(image_height))
    max_dim = max(1, int(max_tile_dimension))

    cols = compute_tile_count(width, max_dim, overlap_ratio)
    rows = compute_tile_count(height, max_dim, overlap_ratio)

    plan = GridPlan(
        rows=rows,
        cols=cols,
        overlap_ratio=clamp_overlap_ratio(overlap_ratio),
        max_tile_dimension=max_dim,
        image_width=width,
        image_height=height,
    )
    logger.debug(
        f"Planned {rows}x{cols} grid for {width}x{height} "
        f"(max tile {max_dim}, overlap {plan.overlap_ratio:.2f})"
    )
    return plan


def plan_grid_with_counts(
    image_width: int,
    image_height: int,
    rows: int,
    cols: int,
    overlap_ratio: float = 0.1,
) -> GridPlan:
    """
    Build a plan for caller-chosen row and column counts.

    Counts are clamped to [1, MAX_GRID_COUNT]; the tile size follows from
    the counts, so max_tile_dimension is recorded as 0.
    """
    width = max(1, int(image_width))
    height = max(1, int(image_height))

    return GridPlan(
        rows=_clamp_count(rows, height),
        cols=_clamp_count(cols, width),
        overlap_ratio=clamp_overlap_ratio(overlap_ratio),
        max_tile_dimension=0,
        image_width=width,
        image_height=height,
    )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _axis_spans(size: int, count: int, tile: float, stride: float) -> List[tuple]:
    """Integer (start, end) spans along one axis; the last span ends at size."""
    spans = []
    for i in range(count):
        start = min(_round_half_up(i * stride), size - 1)
        if i == count - 1:
            end = size
        else:
            end = min(_round_half_up(i * stride + tile), size)
        spans.append((start, max(end, start + 1)))
    return spans


def tile_geometries(plan: GridPlan) -> List[TileGeometry]:
    """
    Materialize integer tile rectangles for a plan, row-major.

    Origins are col * (Tw - Tw * r) and row * (Th - Th * r), rounded to
    whole pixels; edge tiles are clipped to the image extent so the union
    of all rectangles is exactly the image bounds.
    """
    x_spans = _axis_spans(plan.image_width, plan.cols, plan.tile_width, plan.stride_x)
    y_spans = _axis_spans(plan.image_height, plan.rows, plan.tile_height, plan.stride_y)

    geometries = []
    for row, (y1, y2) in enumerate(y_spans):
        for col, (x1, x2) in enumerate(x_spans):
            geometries.append(TileGeometry(
                row=row,
                col=col,
                x=x1,
                y=y1,
                width=x2 - x1,
                height=y2 - y1,
            ))
    return geometries
