"""
Error taxonomy for tile regeneration runs.

Whole-run errors (bad source image) abort before any worker starts.
Per-tile errors are recorded on the tile and never abort sibling tiles.
"""

from typing import List, Optional, Tuple


class TilesmithError(Exception):
    """Base class for all tilesmith errors."""


class SourceImageError(TilesmithError):
    """The source image is missing or cannot be decoded."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class GenerationError(TilesmithError):
    """A single tile's generation call failed or returned no image."""

    def __init__(self, message: str, row: Optional[int] = None, col: Optional[int] = None):
        super().__init__(message)
        self.row = row
        self.col = col


class IncompleteTileSetError(TilesmithError):
    """A merge was attempted while some tiles have no buffer at all."""

    def __init__(self, message: str, missing: Optional[List[Tuple[int, int]]] = None):
        super().__init__(message)
        self.missing = missing or []


class ExportError(TilesmithError):
    """Writing one export artifact failed."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
