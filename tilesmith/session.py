"""
One image's split -> regenerate -> merge -> export lifecycle.

Example:
    >>> with TileSession("photo.png", RunConfig(concurrency=4)) as session:
    ...     session.split()
    ...     summary = session.run(MockGenerator())
    ...     if summary.should_merge:
    ...         session.export("photo_out.png")
"""

import logging
from pathlib import Path
from typing import Callable, Optional, Union

import numpy as np

from .compositing.chroma import KeyColorSpec
from .compositing.merge import CompositeEngine
from .config.run_config import RunConfig
from .errors import SourceImageError
from .export.bundler import BundleResult, export_bundle
from .imaging import load_image
from .regeneration.pool import CancelToken, GenerateFn, RegenerationPool, RunSummary, TileStatusUpdate
from .tiling.models import GridPlan, TileArena, TileJob
from .tiling.planner import plan_grid, plan_grid_with_counts
from .tiling.splitter import SourceLike, TileWorkspace, read_source, split_image

logger = logging.getLogger(__name__)


class TileSession:
    """
    Holds the source, grid plan, tile jobs and workspace for one image.

    Re-planning or re-splitting discards every prior job and result.
    """

    def __init__(
        self,
        source: SourceLike,
        config: Optional[RunConfig] = None,
        workspace_dir: Optional[Union[str, Path]] = None,
    ):
        """
        Args:
            source: Image path, encoded bytes or array
            config: Run settings
            workspace_dir: Where tiles are persisted; a temporary directory when omitted

        Raises:
            SourceImageError: If the source cannot be loaded
        """
        self.config = config or RunConfig()
        self.source = read_source(source)
        self.workspace = TileWorkspace(workspace_dir, prefer_jpeg=self.config.prefer_jpeg)
        self.grid: Optional[GridPlan] = None
        self.arena: Optional[TileArena] = None
        self._engine: Optional[CompositeEngine] = None
        self.canvas: Optional[np.ndarray] = None

    @classmethod
    def from_workspace(
        cls,
        workspace_dir: Union[str, Path],
        config: Optional[RunConfig] = None,
    ) -> "TileSession":
        """Reopen a workspace written by an earlier split."""
        workspace, plan, jobs = TileWorkspace.load_manifest(workspace_dir)
        if not workspace.source_copy_path.is_file():
            raise SourceImageError(
                f"Workspace has no source copy: {workspace.source_copy_path}",
                path=str(workspace.source_copy_path),
            )

        session = cls.__new__(cls)
        session.config = config or RunConfig()
        session.source = load_image(workspace.source_copy_path)
        session.workspace = workspace
        session.grid = plan
        session.arena = TileArena(jobs)
        session._engine = None
        session.canvas = None
        logger.info(f"Opened workspace {workspace.root} ({plan.rows}x{plan.cols} tiles)")
        return session

    @property
    def image_width(self) -> int:
        return self.source.shape[1]

    @property
    def image_height(self) -> int:
        return self.source.shape[0]

    @property
    def canvas_size(self):
        return (self.image_width, self.image_height)

    def _invalidate(self) -> None:
        if self._engine is not None:
            self._engine.invalidate()
        self.canvas = None

    def plan(self) -> GridPlan:
        """Compute the grid from the config, discarding any prior split."""
        cfg = self.config
        if cfg.explicit_grid:
            grid = plan_grid_with_counts(
                self.image_width, self.image_height, cfg.rows, cfg.cols, cfg.overlap_ratio
            )
        else:
            grid = plan_grid(
                self.image_width, self.image_height, cfg.max_tile_dimension, cfg.overlap_ratio
            )
        self.grid = grid
        self.arena = None
        self._engine = None
        self.canvas = None
        return grid

    def split(self) -> TileArena:
        """Crop the source into pending tile jobs (plans first if needed)."""
        if self.grid is None:
            self.plan()

        result = split_image(self.source, self.grid, workspace=self.workspace)
        for job in result.jobs:
            # Result slots from an earlier split are stale
            if job.result_path:
                Path(job.result_path).unlink(missing_ok=True)

        self.arena = TileArena(result.jobs)
        self._engine = None
        self.canvas = None
        return self.arena

    @property
    def tiles(self) -> TileArena:
        if self.arena is None:
            raise RuntimeError("Image has not been split yet")
        return self.arena

    def _pool(
        self,
        generate: GenerateFn,
        progress_callback: Optional[Callable[[TileStatusUpdate], None]] = None,
    ) -> RegenerationPool:
        return RegenerationPool(
            generate,
            config=self.config,
            plan=self.grid,
            reference_image=self.source,
            status_callback=progress_callback,
        )

    def run(
        self,
        generate: GenerateFn,
        cancel_token: Optional[CancelToken] = None,
        progress_callback: Optional[Callable[[TileStatusUpdate], None]] = None,
    ) -> RunSummary:
        """
        Regenerate every pending tile.

        Returns:
            RunSummary; merge only when ``summary.should_merge``
        """
        if self.arena is None:
            self.split()

        summary = self._pool(generate, progress_callback).run_all(
            list(self.arena), cancel_token=cancel_token
        )
        self._invalidate()
        self.workspace.write_manifest(self.grid, list(self.arena))
        return summary

    def regenerate(self, row: int, col: int, generate: GenerateFn) -> TileJob:
        """Re-run one tile regardless of its current status."""
        job = self._job(row, col)
        self._pool(generate).regenerate(job, list(self.tiles))
        self._invalidate()
        self.workspace.write_manifest(self.grid, list(self.tiles))
        return job

    def revert(self, row: int, col: int) -> TileJob:
        """Drop one tile's result so merge uses its original crop."""
        job = self._job(row, col)
        job.revert()
        if job.result_path:
            Path(job.result_path).unlink(missing_ok=True)
        self._invalidate()
        self.workspace.write_manifest(self.grid, list(self.tiles))
        logger.info(f"Reverted {job.geometry.name}")
        return job

    def _job(self, row: int, col: int) -> TileJob:
        job = self.tiles.get(row, col)
        if job is None:
            raise KeyError(f"No tile at row {row}, col {col}")
        return job

    def merge(
        self,
        key_spec: Optional[KeyColorSpec] = None,
        remove_background: Optional[bool] = None,
    ) -> np.ndarray:
        """
        Composite the current tile set.

        Re-entrant: calling again with another key color or tolerance
        reuses the prepared tile buffers.
        """
        if remove_background is None:
            remove_background = self.config.remove_background
        if key_spec is None and remove_background:
            key_spec = self.config.key_spec()

        if self._engine is None:
            self._engine = CompositeEngine(list(self.tiles), self.canvas_size)
        self.canvas = self._engine.compose(key_spec, remove_background)
        return self.canvas

    def export(self, output_path: Union[str, Path], layered: bool = True) -> BundleResult:
        """Write the merged canvas (merging first if needed) and its layers."""
        canvas = self.canvas if self.canvas is not None else self.merge()
        key_spec = self.config.key_spec() if self.config.remove_background else None
        return export_bundle(
            canvas,
            list(self.tiles),
            output_path,
            source_image=self.source,
            layered=layered,
            key_spec=key_spec,
        )

    def close(self) -> None:
        self.workspace.cleanup()

    def __enter__(self) -> "TileSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
