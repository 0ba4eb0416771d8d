"""
Tile splitting: materialize each planned tile as an independent buffer.

The source is fully decoded before anything touches the workspace, so a
bad source never leaves a partial split behind.
"""

import json
import logging
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np

from ..errors import SourceImageError
from ..imaging import (
    JPEG_FORMAT,
    PNG_FORMAT,
    decode_image,
    file_extension,
    save_image,
    to_bgra,
)
from .models import GridPlan, TileGeometry, TileJob, TileStatus
from .planner import plan_grid, tile_geometries

logger = logging.getLogger(__name__)

SourceLike = Union[str, Path, bytes, bytearray, np.ndarray]

MANIFEST_VERSION = 1


class TileWorkspace:
    """
    Scoped storage for one split.

    Without an explicit root a temporary directory is created and removed
    on cleanup(). Layout:
        original_source.<ext>   decoded copy of the source
        orig_tile_<r>_<c>.<ext> unprocessed crop
        tile_<r>_<c>.<ext>      regenerated result slot
        manifest.json           plan and tile list

    Example:
        >>> with TileWorkspace() as workspace:
        ...     result = split_image("photo.png", plan, workspace=workspace)
    """

    MANIFEST_NAME = "manifest.json"

    def __init__(self, root: Optional[Union[str, Path]] = None, prefer_jpeg: bool = False):
        """
        Args:
            root: Directory to use; a temporary one is created when omitted
            prefer_jpeg: Persist tiles as JPEG instead of PNG
        """
        if root is None:
            self._tempdir = tempfile.TemporaryDirectory(prefix="tilesmith_")
            self.root = Path(self._tempdir.name)
        else:
            self._tempdir = None
            self.root = Path(root)
            self.root.mkdir(parents=True, exist_ok=True)
        self.image_format = JPEG_FORMAT if prefer_jpeg else PNG_FORMAT

    @property
    def extension(self) -> str:
        return file_extension(self.image_format)

    @property
    def source_copy_path(self) -> Path:
        return self.root / f"original_source.{self.extension}"

    @property
    def manifest_path(self) -> Path:
        return self.root / self.MANIFEST_NAME

    def original_tile_path(self, row: int, col: int) -> Path:
        return self.root / f"orig_tile_{row}_{col}.{self.extension}"

    def result_tile_path(self, row: int, col: int) -> Path:
        return self.root / f"tile_{row}_{col}.{self.extension}"

    def cleanup(self) -> None:
        """Remove the directory if this workspace created it."""
        if self._tempdir is not None:
            self._tempdir.cleanup()
            self._tempdir = None

    def __enter__(self) -> "TileWorkspace":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def write_manifest(self, plan: GridPlan, jobs: List[TileJob]) -> Path:
        """Persist the plan and tile list so a later process can merge."""
        manifest = {
            "version": MANIFEST_VERSION,
            "format": self.image_format,
            "source_path": str(self.source_copy_path),
            "plan": plan.to_dict(),
            "tiles": [job.to_dict() for job in jobs],
        }
        self.manifest_path.write_text(json.dumps(manifest, indent=2))
        return self.manifest_path

    @classmethod
    def load_manifest(cls, root: Union[str, Path]) -> Tuple["TileWorkspace", GridPlan, List[TileJob]]:
        """
        Reopen a workspace written by write_manifest().

        Buffers are not loaded; jobs carry their file paths. A tile whose
        result file exists is marked done.
        """
        root = Path(root)
        manifest_path = root / cls.MANIFEST_NAME
        if not manifest_path.is_file():
            raise FileNotFoundError(f"No tile manifest in {root}")

        data = json.loads(manifest_path.read_text())
        workspace = cls(root, prefer_jpeg=data.get("format") == JPEG_FORMAT)
        plan = GridPlan.from_dict(data["plan"])

        jobs = []
        for tile in data["tiles"]:
            geometry = TileGeometry.from_dict(tile)
            result_path = tile.get("result_path") or str(
                workspace.result_tile_path(geometry.row, geometry.col)
            )
            job = TileJob(
                geometry=geometry,
                source_path=tile.get("source_path"),
                result_path=result_path,
                error=tile.get("error"),
            )
            if Path(result_path).is_file():
                job.status = TileStatus.DONE
            elif tile.get("status") == TileStatus.ERROR.value:
                job.status = TileStatus.ERROR
            jobs.append(job)

        return workspace, plan, jobs


@dataclass
class SplitResult:
    """Output of a split: one pending job per planned tile."""
    plan: GridPlan
    jobs: List[TileJob]
    source: np.ndarray
    source_path: Optional[str] = None
    geometries: List[TileGeometry] = field(default_factory=list)

    @property
    def image_width(self) -> int:
        return self.source.shape[1]

    @property
    def image_height(self) -> int:
        return self.source.shape[0]


def read_source(source: SourceLike) -> np.ndarray:
    """
    Load a source image from a path, encoded bytes or an array.

    Raises:
        SourceImageError: If the source is missing or cannot be decoded
    """
    if isinstance(source, np.ndarray):
        if source.size == 0:
            raise SourceImageError("Source image is empty")
        try:
            return to_bgra(source)
        except ValueError as e:
            raise SourceImageError(str(e)) from e

    path = None
    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
    else:
        path = Path(source)
        if not path.is_file():
            raise SourceImageError(f"Source image not found: {path}", path=str(path))
        data = path.read_bytes()

    try:
        return decode_image(data)
    except ValueError as e:
        raise SourceImageError(
            f"Could not decode source image: {e}",
            path=str(path) if path else None,
        ) from e


def crop_region(image: np.ndarray, x: int, y: int, width: int, height: int) -> np.ndarray:
    """
    Copy a rectangle out of an image, clipped to the image bounds.

    Raises:
        ValueError: If the clipped rectangle is empty
    """
    img_h, img_w = image.shape[:2]
    x1 = max(0, min(int(x), img_w))
    y1 = max(0, min(int(y), img_h))
    x2 = max(x1, min(int(x) + int(width), img_w))
    y2 = max(y1, min(int(y) + int(height), img_h))
    if x2 == x1 or y2 == y1:
        raise ValueError(f"Crop ({x}, {y}, {width}, {height}) is outside the image")
    return image[y1:y2, x1:x2].copy()


def center_square_crop(image: np.ndarray) -> np.ndarray:
    """Largest centered 1:1 crop."""
    img_h, img_w = image.shape[:2]
    side = min(img_w, img_h)
    return crop_region(image, (img_w - side) // 2, (img_h - side) // 2, side, side)


def _persist_tiles(workspace: TileWorkspace, source: np.ndarray, jobs: List[TileJob]) -> None:
    written: List[Path] = []

    def save(job: TileJob) -> Path:
        path = workspace.original_tile_path(job.row, job.col)
        save_image(path, job.source, workspace.image_format)
        return path

    try:
        written.append(save_image(workspace.source_copy_path, source, workspace.image_format))
        # Encoding releases the GIL, so tiles are written concurrently
        with ThreadPoolExecutor(max_workers=4) as executor:
            for path in executor.map(save, jobs):
                written.append(path)
    except OSError:
        for path in written:
            path.unlink(missing_ok=True)
        raise


def split_image(
    source: SourceLike,
    plan: Optional[GridPlan] = None,
    workspace: Optional[TileWorkspace] = None,
    max_tile_dimension: int = 1024,
    overlap_ratio: float = 0.1,
) -> SplitResult:
    """
    Crop the source into one buffer per planned tile.

    Args:
        source: Image path, encoded bytes or array
        plan: Grid plan; computed with plan_grid() when omitted
        workspace: Where to persist the source copy and original crops
        max_tile_dimension: Used only when plan is omitted
        overlap_ratio: Used only when plan is omitted

    Returns:
        SplitResult with one pending TileJob per tile, row-major

    Raises:
        SourceImageError: Before any workspace I/O if the source is bad
        ValueError: If the plan was computed for different dimensions
    """
    image = read_source(source)
    height, width = image.shape[:2]

    if plan is None:
        plan = plan_grid(width, height, max_tile_dimension, overlap_ratio)
    elif (plan.image_width, plan.image_height) != (width, height):
        raise ValueError(
            f"Plan is for {plan.image_width}x{plan.image_height} "
            f"but the image is {width}x{height}"
        )

    geometries = tile_geometries(plan)
    jobs = []
    for geometry in geometries:
        x1, y1, x2, y2 = geometry.bounds
        job = TileJob(geometry=geometry, source=image[y1:y2, x1:x2].copy())
        if workspace is not None:
            job.source_path = str(workspace.original_tile_path(geometry.row, geometry.col))
            job.result_path = str(workspace.result_tile_path(geometry.row, geometry.col))
        jobs.append(job)

    source_path = None
    if workspace is not None:
        _persist_tiles(workspace, image, jobs)
        workspace.write_manifest(plan, jobs)
        source_path = str(workspace.source_copy_path)

    logger.info(f"Split {width}x{height} image into {plan.rows}x{plan.cols} tiles")
    return SplitResult(
        plan=plan,
        jobs=jobs,
        source=image,
        source_path=source_path,
        geometries=geometries,
    )
