"""
tilesmith

Splits a large image into overlapping tiles, regenerates each tile
through an external image-generation call and merges the results back
into one seamless image, optionally keyed against a background color.
"""

from .compositing import CompositeEngine, KeyColorSpec, apply_chroma_key, merge_tiles
from .config import RunConfig
from .errors import (
    ExportError,
    GenerationError,
    IncompleteTileSetError,
    SourceImageError,
    TilesmithError,
)
from .export import BundleResult, export_bundle
from .regeneration import (
    CancelToken,
    MockGenerator,
    RegenerationPool,
    RunSummary,
    TileStatusUpdate,
    run_regeneration,
)
from .session import TileSession
from .tiling import (
    GridPlan,
    TileGeometry,
    TileJob,
    TileStatus,
    plan_grid,
    plan_grid_with_counts,
    split_image,
    tile_geometries,
)

__version__ = "0.1.0"

__all__ = [
    "plan_grid",
    "plan_grid_with_counts",
    "tile_geometries",
    "split_image",
    "GridPlan",
    "TileGeometry",
    "TileJob",
    "TileStatus",
    "RegenerationPool",
    "run_regeneration",
    "CancelToken",
    "RunSummary",
    "TileStatusUpdate",
    "MockGenerator",
    "merge_tiles",
    "CompositeEngine",
    "KeyColorSpec",
    "apply_chroma_key",
    "export_bundle",
    "BundleResult",
    "RunConfig",
    "TileSession",
    "TilesmithError",
    "SourceImageError",
    "GenerationError",
    "IncompleteTileSetError",
    "ExportError",
]
