"""
Merge/composite engine: feathered tile blending and chroma keying.
"""

from .chroma import (
    NAMED_KEY_COLORS,
    KeyColorSpec,
    apply_chroma_key,
    key_mask,
    parse_color,
)
from .merge import (
    CompositeEngine,
    TileLayer,
    check_tile_set,
    feather_weights,
    merge_tiles,
    resolve_tile_image,
)

__all__ = [
    # Chroma key
    "NAMED_KEY_COLORS",
    "KeyColorSpec",
    "apply_chroma_key",
    "key_mask",
    "parse_color",
    # Merge
    "CompositeEngine",
    "TileLayer",
    "check_tile_set",
    "feather_weights",
    "merge_tiles",
    "resolve_tile_image",
]
