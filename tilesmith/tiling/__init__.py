"""
Tile-grid planning and splitting.

Computes an overlapping rows x cols grid for an image and crops each
tile into its own buffer, optionally persisted to a scoped workspace.
"""

from .models import GridPlan, TileArena, TileGeometry, TileJob, TileStatus
from .planner import (
    MAX_GRID_COUNT,
    compute_tile_count,
    plan_grid,
    plan_grid_with_counts,
    tile_geometries,
)
from .splitter import (
    SplitResult,
    TileWorkspace,
    center_square_crop,
    crop_region,
    read_source,
    split_image,
)
from .visualization import overlap_rectangles, visualize_grid

__all__ = [
    # Models
    "GridPlan",
    "TileArena",
    "TileGeometry",
    "TileJob",
    "TileStatus",
    # Planner
    "MAX_GRID_COUNT",
    "compute_tile_count",
    "plan_grid",
    "plan_grid_with_counts",
    "tile_geometries",
    # Splitter
    "SplitResult",
    "TileWorkspace",
    "center_square_crop",
    "crop_region",
    "read_source",
    "split_image",
    # Visualization
    "overlap_rectangles",
    "visualize_grid",
]
