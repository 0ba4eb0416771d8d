"""
Seam-aware reassembly of tile buffers into one canvas.

Each tile contributes with a weight that is 1.0 in its interior and
ramps linearly toward every edge it shares with a neighbor. Ramps of
two neighbors across the same overlap band are complementary, so a
flat band blends without a visible seam. Pixels are accumulated and
normalized by total weight.

When a key color is given, a pixel that is background in one tile but
content in another takes the content color outright instead of being
smeared with the background.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..errors import IncompleteTileSetError
from ..imaging import load_image, resize_exact, to_bgra
from ..tiling.models import TileGeometry, TileJob
from .chroma import KeyColorSpec, apply_chroma_key, key_mask

logger = logging.getLogger(__name__)

# Fill for pixels no tile covers (BGRA); replaced by the key color when keying
BACKGROUND_FILL = (255, 255, 255, 255)


@dataclass
class TileLayer:
    """A tile buffer prepared for compositing (BGRA, sized to its geometry)."""
    geometry: TileGeometry
    image: np.ndarray
    is_fallback: bool = False


def resolve_tile_image(job: TileJob) -> Tuple[np.ndarray, bool]:
    """
    Find the buffer merge should use for a tile.

    Preference: in-memory result, persisted result, in-memory original
    crop, persisted original crop.

    Returns:
        (image, is_fallback)

    Raises:
        IncompleteTileSetError: If the tile has no buffer at all
    """
    if job.result is not None:
        return job.result, False
    if job.result_path and Path(job.result_path).is_file():
        return load_image(job.result_path), False
    if job.source is not None:
        return job.source, True
    if job.source_path and Path(job.source_path).is_file():
        return load_image(job.source_path), True

    raise IncompleteTileSetError(
        f"Tile result and original both missing for {job.row},{job.col}",
        missing=[job.key],
    )


def _ramp_up(length: int) -> np.ndarray:
    # Strictly positive and complementary with the mirrored ramp
    return (np.arange(length, dtype=np.float32) + 1.0) / (length + 1.0)


def _axis_profile(size: int, lead_band: int, trail_band: int) -> np.ndarray:
    profile = np.ones(size, dtype=np.float32)
    lead_band = min(max(lead_band, 0), size)
    trail_band = min(max(trail_band, 0), size)
    if lead_band:
        profile[:lead_band] = np.minimum(profile[:lead_band], _ramp_up(lead_band))
    if trail_band:
        profile[size - trail_band:] = np.minimum(
            profile[size - trail_band:], _ramp_up(trail_band)[::-1]
        )
    return profile


def feather_weights(
    geometry: TileGeometry,
    neighbors: Dict[Tuple[int, int], TileGeometry],
) -> np.ndarray:
    """
    Blend weights for one tile.

    The feather on each side spans exactly the overlap with the neighbor
    on that side. Sides on the image border are not feathered.

    Args:
        geometry: The tile
        neighbors: All tile geometries keyed by (row, col)

    Returns:
        Float32 (height, width) weights in (0, 1]
    """
    row, col = geometry.row, geometry.col
    left = neighbors.get((row, col - 1))
    right = neighbors.get((row, col + 1))
    top = neighbors.get((row - 1, col))
    bottom = neighbors.get((row + 1, col))

    wx = _axis_profile(
        geometry.width,
        left.x2 - geometry.x if left else 0,
        geometry.x2 - right.x if right else 0,
    )
    wy = _axis_profile(
        geometry.height,
        top.y2 - geometry.y if top else 0,
        geometry.y2 - bottom.y if bottom else 0,
    )
    return np.outer(wy, wx)


def check_tile_set(jobs: Sequence[TileJob]) -> None:
    """
    Verify every grid cell is present and has at least a fallback buffer.

    Raises:
        IncompleteTileSetError: Listing the missing (row, col) cells
    """
    if not jobs:
        raise IncompleteTileSetError("No tiles to merge")

    present = {job.key for job in jobs}
    rows = max(r for r, _ in present) + 1
    cols = max(c for _, c in present) + 1
    missing = [(r, c) for r in range(rows) for c in range(cols) if (r, c) not in present]
    missing += [
        job.key for job in jobs
        if not job.has_buffer
        and not (job.result_path and Path(job.result_path).is_file())
        and not (job.source_path and Path(job.source_path).is_file())
    ]
    if missing:
        raise IncompleteTileSetError(
            f"{len(missing)} tile(s) have no buffer to merge: {sorted(set(missing))}",
            missing=sorted(set(missing)),
        )


class CompositeEngine:
    """
    Recomposes a tile set into one canvas.

    Prepared tile buffers are cached, so compose() can be called again
    with a different key color or tolerance without reloading or
    regenerating anything.

    Example:
        >>> engine = CompositeEngine(jobs, canvas_size=(2000, 1000))
        >>> keyed = engine.compose(KeyColorSpec("green", 10), remove_background=True)
        >>> looser = engine.compose(KeyColorSpec("green", 25), remove_background=True)
    """

    def __init__(
        self,
        jobs: Sequence[TileJob],
        canvas_size: Tuple[int, int],
        max_workers: int = 4,
    ):
        """
        Args:
            jobs: Tile jobs (results or fallbacks)
            canvas_size: (width, height) of the original image
            max_workers: Threads used to load and resize tile buffers
        """
        width, height = canvas_size
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid canvas size {width}x{height}")
        self.jobs = list(jobs)
        self.canvas_size = (int(width), int(height))
        self.max_workers = max_workers
        self._layers: Optional[List[TileLayer]] = None

    def invalidate(self) -> None:
        """Drop cached tile buffers after a tile result changes."""
        self._layers = None

    def _prepare_layer(self, job: TileJob) -> TileLayer:
        image, is_fallback = resolve_tile_image(job)
        g = job.geometry
        image = resize_exact(to_bgra(image), g.width, g.height)
        return TileLayer(geometry=g, image=image, is_fallback=is_fallback)

    def prepare(self) -> List[TileLayer]:
        """Resolve and size every tile buffer (cached)."""
        if self._layers is None:
            check_tile_set(self.jobs)
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                layers = list(executor.map(self._prepare_layer, self.jobs))
            layers.sort(key=lambda layer: layer.geometry.key)
            self._layers = layers
        return self._layers

    def compose(
        self,
        key_spec: Optional[KeyColorSpec] = None,
        remove_background: bool = False,
    ) -> np.ndarray:
        """
        Blend all tiles into a canvas.

        Args:
            key_spec: Background color; enables the content-wins seam rule
            remove_background: Make key-colored pixels transparent

        Returns:
            BGRA canvas of canvas_size; opaque unless background is removed
        """
        if remove_background and key_spec is None:
            raise ValueError("remove_background requires a key color")

        layers = self.prepare()
        width, height = self.canvas_size
        neighbors = {layer.geometry.key: layer.geometry for layer in layers}

        content_sum = np.zeros((height, width, 4), dtype=np.float32)
        content_weight = np.zeros((height, width), dtype=np.float32)
        background_sum = np.zeros((height, width, 4), dtype=np.float32)
        background_weight = np.zeros((height, width), dtype=np.float32)

        # Sequential accumulation: overlap bands alias between tiles
        for layer in layers:
            g = layer.geometry
            x2, y2 = min(g.x2, width), min(g.y2, height)
            if x2 <= g.x or y2 <= g.y:
                continue
            h, w = y2 - g.y, x2 - g.x

            weights = feather_weights(g, neighbors)[:h, :w]
            pixels = layer.image[:h, :w].astype(np.float32)

            if key_spec is not None:
                is_background = key_mask(layer.image[:h, :w], key_spec)
                bg_weights = np.where(is_background, weights, 0.0).astype(np.float32)
                weights = np.where(is_background, 0.0, weights).astype(np.float32)
                background_sum[g.y:y2, g.x:x2] += pixels * bg_weights[:, :, np.newaxis]
                background_weight[g.y:y2, g.x:x2] += bg_weights

            content_sum[g.y:y2, g.x:x2] += pixels * weights[:, :, np.newaxis]
            content_weight[g.y:y2, g.x:x2] += weights

        fill = BACKGROUND_FILL
        if key_spec is not None:
            fill = key_spec.bgr + (255,)
        canvas = np.empty((height, width, 4), dtype=np.float32)
        canvas[:] = fill

        has_content = content_weight > 0
        canvas[has_content] = content_sum[has_content] / content_weight[has_content][:, np.newaxis]
        only_background = ~has_content & (background_weight > 0)
        canvas[only_background] = (
            background_sum[only_background] / background_weight[only_background][:, np.newaxis]
        )

        result = np.clip(np.rint(canvas), 0, 255).astype(np.uint8)

        if remove_background:
            result = apply_chroma_key(result, key_spec)
        else:
            result[:, :, 3] = 255

        fallbacks = sum(1 for layer in layers if layer.is_fallback)
        logger.info(
            f"Merged {len(layers)} tiles into {width}x{height} canvas "
            f"({fallbacks} fallback, background {'removed' if remove_background else 'kept'})"
        )
        return result


def merge_tiles(
    jobs: Sequence[TileJob],
    canvas_size: Tuple[int, int],
    key_spec: Optional[KeyColorSpec] = None,
    remove_background: bool = False,
) -> np.ndarray:
    """
    Reassemble tile outputs into one canvas.

    Tiles without a result fall back to their original crop.

    Args:
        jobs: Tile jobs
        canvas_size: (width, height) of the original image
        key_spec: Key color and tolerance
        remove_background: Apply the chroma-key pass

    Returns:
        BGRA canvas

    Raises:
        IncompleteTileSetError: If any tile lacks even a fallback buffer
    """
    return CompositeEngine(jobs, canvas_size).compose(key_spec, remove_background)
