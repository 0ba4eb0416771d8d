"""
Export of a merged canvas and its tile set.

The flattened raster is written first. A layered bundle then goes into
a ``<stem>_layers/`` directory next to it:
    00_source.png        the input image, sized to the canvas
    01_merged.png        the merged canvas
    tile_r<r>_c<c>.png   one positioned layer per tile, row-major
    manifest.json        layer order, names and (x, y) offsets

A layer that fails to write is reported in the result and does not
undo the flattened raster or any other layer.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from ..compositing.chroma import KeyColorSpec, apply_chroma_key
from ..compositing.merge import resolve_tile_image
from ..errors import ExportError, IncompleteTileSetError
from ..imaging import PNG_FORMAT, format_from_path, resize_exact, save_image, to_bgra
from ..tiling.models import TileJob

logger = logging.getLogger(__name__)

BUNDLE_VERSION = 1


@dataclass
class BundleLayer:
    """One layer of a layered bundle."""
    name: str
    file: str
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0
    row: Optional[int] = None
    col: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = {
            "name": self.name,
            "file": self.file,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }
        if self.row is not None:
            data["row"] = self.row
            data["col"] = self.col
        return data


@dataclass
class BundleResult:
    """Artifacts written by export_bundle()."""
    merged_path: Path
    layers_dir: Optional[Path] = None
    manifest_path: Optional[Path] = None
    layers: List[BundleLayer] = field(default_factory=list)
    errors: List[ExportError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "merged_path": str(self.merged_path),
            "layers_dir": str(self.layers_dir) if self.layers_dir else None,
            "manifest_path": str(self.manifest_path) if self.manifest_path else None,
            "layer_count": len(self.layers),
            "errors": [{"path": e.path, "message": str(e)} for e in self.errors],
        }


def layers_dir_for(output_path: Union[str, Path]) -> Path:
    """Bundle directory that accompanies a flattened raster."""
    output_path = Path(output_path)
    return output_path.parent / f"{output_path.stem}_layers"


def export_flattened(canvas: np.ndarray, output_path: Union[str, Path]) -> Path:
    """
    Write the merged canvas in the format implied by the file suffix.

    Raises:
        ExportError: If the raster cannot be encoded or written
    """
    output_path = Path(output_path)
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        return save_image(output_path, canvas, format_from_path(output_path))
    except (OSError, ValueError) as e:
        raise ExportError(f"Could not write {output_path}: {e}", path=str(output_path)) from e


def _write_layer(
    layers_dir: Path,
    layer: BundleLayer,
    image: np.ndarray,
    result: BundleResult,
) -> None:
    path = layers_dir / layer.file
    try:
        save_image(path, image, PNG_FORMAT)
    except (OSError, ValueError) as e:
        logger.warning(f"Layer {layer.name} failed: {e}")
        result.errors.append(ExportError(f"Could not write layer {layer.name}: {e}", path=str(path)))
        return
    result.layers.append(layer)


def export_bundle(
    canvas: np.ndarray,
    jobs: Sequence[TileJob],
    output_path: Union[str, Path],
    source_image: Optional[np.ndarray] = None,
    layered: bool = True,
    key_spec: Optional[KeyColorSpec] = None,
) -> BundleResult:
    """
    Write the flattened raster and, optionally, a layered bundle.

    Args:
        canvas: Merged canvas (BGRA)
        jobs: Tile set the canvas was merged from
        output_path: Flattened raster path; suffix selects PNG or JPEG
        source_image: Original input, added as the bottom layer
        layered: Also write the per-tile bundle
        key_spec: When given, tile layers are keyed against this color

    Returns:
        BundleResult listing written layers and per-layer errors

    Raises:
        ExportError: If the flattened raster cannot be written
    """
    merged_path = export_flattened(canvas, output_path)
    result = BundleResult(merged_path=merged_path)
    logger.info(f"Wrote merged image {merged_path}")

    if not layered:
        return result

    height, width = canvas.shape[:2]
    layers_dir = layers_dir_for(merged_path)
    try:
        layers_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        result.errors.append(
            ExportError(f"Could not create bundle directory: {e}", path=str(layers_dir))
        )
        return result
    result.layers_dir = layers_dir

    if source_image is not None:
        source = to_bgra(source_image)
        if source.shape[:2] != (height, width):
            source = resize_exact(source, width, height)
        _write_layer(
            layers_dir,
            BundleLayer(name="Original", file="00_source.png", width=width, height=height),
            source,
            result,
        )

    _write_layer(
        layers_dir,
        BundleLayer(name="Merged", file="01_merged.png", width=width, height=height),
        canvas,
        result,
    )

    for job in sorted(jobs, key=lambda j: j.key):
        g = job.geometry
        layer = BundleLayer(
            name=f"Tile {g.row},{g.col}",
            file=f"tile_r{g.row}_c{g.col}.png",
            x=g.x,
            y=g.y,
            width=g.width,
            height=g.height,
            row=g.row,
            col=g.col,
        )
        try:
            image, _ = resolve_tile_image(job)
        except (IncompleteTileSetError, OSError, ValueError) as e:
            logger.warning(f"Layer {layer.name} has no image: {e}")
            result.errors.append(
                ExportError(f"No image for layer {layer.name}: {e}", path=str(layers_dir / layer.file))
            )
            continue
        image = resize_exact(to_bgra(image), g.width, g.height)
        if key_spec is not None:
            image = apply_chroma_key(image, key_spec)
        _write_layer(layers_dir, layer, image, result)

    manifest_path = layers_dir / "manifest.json"
    manifest = {
        "version": BUNDLE_VERSION,
        "width": width,
        "height": height,
        "flattened": merged_path.name,
        "layers": [layer.to_dict() for layer in result.layers],
    }
    try:
        with open(manifest_path, "w") as f:
            json.dump(manifest, f, indent=2)
    except OSError as e:
        result.errors.append(ExportError(f"Could not write bundle manifest: {e}", path=str(manifest_path)))
    else:
        result.manifest_path = manifest_path

    logger.info(
        f"Wrote {len(result.layers)} layers to {layers_dir}"
        + (f" ({len(result.errors)} failed)" if result.errors else "")
    )
    return result
