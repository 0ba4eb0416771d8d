"""
Export of merged canvases and layered tile bundles.
"""

from .bundler import (
    BundleLayer,
    BundleResult,
    export_bundle,
    export_flattened,
    layers_dir_for,
)

__all__ = [
    "BundleLayer",
    "BundleResult",
    "export_bundle",
    "export_flattened",
    "layers_dir_for",
]
