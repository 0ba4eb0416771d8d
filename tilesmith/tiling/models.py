"""
Data structures for tile-grid planning and per-tile regeneration jobs.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class TileGeometry:
    """
    Placement of one tile in original-image pixel space.

    Attributes:
        row: Zero-based grid row
        col: Zero-based grid column
        x: Left edge in original image
        y: Top edge in original image
        width: Tile width in pixels
        height: Tile height in pixels
    """
    row: int
    col: int
    x: int
    y: int
    width: int
    height: int

    @property
    def key(self) -> Tuple[int, int]:
        """(row, col) index of this tile."""
        return (self.row, self.col)

    @property
    def x2(self) -> int:
        """Right edge (exclusive) in original image."""
        return self.x + self.width

    @property
    def y2(self) -> int:
        """Bottom edge (exclusive) in original image."""
        return self.y + self.height

    @property
    def bounds(self) -> Tuple[int, int, int, int]:
        """(x1, y1, x2, y2) in original image coordinates."""
        return (self.x, self.y, self.x2, self.y2)

    @property
    def name(self) -> str:
        return f"tile_{self.row}_{self.col}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "row": self.row,
            "col": self.col,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TileGeometry":
        """Create from dictionary."""
        return cls(
            row=int(data["row"]),
            col=int(data["col"]),
            x=int(data["x"]),
            y=int(data["y"]),
            width=int(data["width"]),
            height=int(data["height"]),
        )


@dataclass(frozen=True)
class GridPlan:
    """
    Parameters that produced a set of tile geometries.

    Recomputed whenever image dimensions, overlap or target tile size change.

    Attributes:
        rows: Number of tile rows
        cols: Number of tile columns
        overlap_ratio: Fraction of a tile shared with each adjacent tile
        max_tile_dimension: Largest acceptable tile edge (0 when counts were given explicitly)
        image_width: Source image width
        image_height: Source image height
    """
    rows: int
    cols: int
    overlap_ratio: float
    max_tile_dimension: int
    image_width: int
    image_height: int

    @property
    def tile_count(self) -> int:
        return self.rows * self.cols

    @property
    def tile_width(self) -> float:
        """Exact (unrounded) tile width: W / (cols - (cols - 1) * r)."""
        return self.image_width / (self.cols - (self.cols - 1) * self.overlap_ratio)

    @property
    def tile_height(self) -> float:
        """Exact (unrounded) tile height: H / (rows - (rows - 1) * r)."""
        return self.image_height / (self.rows - (self.rows - 1) * self.overlap_ratio)

    @property
    def stride_x(self) -> float:
        """Horizontal distance between adjacent tile origins."""
        return self.tile_width - self.tile_width * self.overlap_ratio

    @property
    def stride_y(self) -> float:
        """Vertical distance between adjacent tile origins."""
        return self.tile_height - self.tile_height * self.overlap_ratio

    def origin(self, row: int, col: int) -> Tuple[float, float]:
        """Exact (x, y) origin of tile (row, col)."""
        return (col * self.stride_x, row * self.stride_y)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "rows": self.rows,
            "cols": self.cols,
            "overlap_ratio": self.overlap_ratio,
            "max_tile_dimension": self.max_tile_dimension,
            "image_width": self.image_width,
            "image_height": self.image_height,
            "tile_width": self.tile_width,
            "tile_height": self.tile_height,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GridPlan":
        """Create from dictionary."""
        return cls(
            rows=int(data["rows"]),
            cols=int(data["cols"]),
            overlap_ratio=float(data.get("overlap_ratio", 0.0)),
            max_tile_dimension=int(data.get("max_tile_dimension", 0)),
            image_width=int(data["image_width"]),
            image_height=int(data["image_height"]),
        )


class TileStatus(Enum):
    """Per-tile regeneration state: pending -> processing -> {done, error}."""
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (TileStatus.DONE, TileStatus.ERROR)


@dataclass(eq=False)
class TileJob:
    """
    One tile's regeneration job.

    Mutated only by the worker that dequeued it.

    Attributes:
        geometry: Placement in the original image
        source: Unprocessed crop of the original image (BGRA)
        status: Current state
        result: Regenerated buffer (BGRA), if any
        error: Last failure message, if any
        source_path: Persisted unprocessed crop
        result_path: Slot where a regenerated result is persisted
    """
    geometry: TileGeometry
    source: Optional[np.ndarray] = None
    status: TileStatus = TileStatus.PENDING
    result: Optional[np.ndarray] = None
    error: Optional[str] = None
    source_path: Optional[str] = None
    result_path: Optional[str] = None

    @property
    def key(self) -> Tuple[int, int]:
        return self.geometry.key

    @property
    def row(self) -> int:
        return self.geometry.row

    @property
    def col(self) -> int:
        return self.geometry.col

    @property
    def has_buffer(self) -> bool:
        """True when merge has at least a fallback buffer for this tile."""
        return self.result is not None or self.source is not None

    @property
    def merge_image(self) -> Optional[np.ndarray]:
        """The regenerated result, or the original crop when there is none."""
        return self.result if self.result is not None else self.source

    def begin(self) -> None:
        """Move pending -> processing."""
        if self.status is not TileStatus.PENDING:
            raise ValueError(f"{self.geometry.name} is {self.status.value}, not pending")
        self.status = TileStatus.PROCESSING
        self.error = None

    def _require_processing(self) -> None:
        if self.status is not TileStatus.PROCESSING:
            raise ValueError(f"{self.geometry.name} is {self.status.value}, not processing")

    def complete(self, result: np.ndarray) -> None:
        """Record a result and move processing -> done."""
        self._require_processing()
        self.result = result
        self.error = None
        self.status = TileStatus.DONE

    def fail(self, message: str) -> None:
        """Record a failure and move processing -> error. Any earlier result is kept."""
        self._require_processing()
        self.error = message
        self.status = TileStatus.ERROR

    def reset(self) -> None:
        """Force reprocessing on the next run."""
        self.status = TileStatus.PENDING
        self.error = None

    def revert(self) -> None:
        """Drop the result so merge falls back to the original crop."""
        self.result = None
        self.reset()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (without image data)."""
        return {
            **self.geometry.to_dict(),
            "status": self.status.value,
            "error": self.error,
            "has_result": self.result is not None,
            "source_path": self.source_path,
            "result_path": self.result_path,
        }


class TileArena:
    """
    Tile jobs indexed by (row, col), iterated in row-major order.

    Example:
        >>> arena = TileArena(jobs)
        >>> arena[(1, 1)].status
        <TileStatus.PENDING: 'pending'>
    """

    def __init__(self, jobs: Iterable[TileJob]):
        self._jobs: Dict[Tuple[int, int], TileJob] = {}
        for job in jobs:
            if job.key in self._jobs:
                raise ValueError(f"Duplicate tile {job.key}")
            self._jobs[job.key] = job
        self._order = sorted(self._jobs)

    def __getitem__(self, key: Tuple[int, int]) -> TileJob:
        return self._jobs[key]

    def __contains__(self, key: object) -> bool:
        return key in self._jobs

    def __iter__(self) -> Iterator[TileJob]:
        return (self._jobs[key] for key in self._order)

    def __len__(self) -> int:
        return len(self._jobs)

    def get(self, row: int, col: int) -> Optional[TileJob]:
        return self._jobs.get((row, col))

    def keys(self) -> List[Tuple[int, int]]:
        return list(self._order)

    def with_status(self, status: TileStatus) -> List[TileJob]:
        """Jobs currently in the given status."""
        return [job for job in self if job.status is status]

    def status_counts(self) -> Dict[str, int]:
        """Number of jobs per status value."""
        counts = {status.value: 0 for status in TileStatus}
        for job in self:
            counts[job.status.value] += 1
        return counts
