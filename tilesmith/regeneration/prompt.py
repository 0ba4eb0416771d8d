"""
Per-tile prompt construction.

Templates use ``{name}`` placeholders. Recognized names:
    subject, background, row, col, rows, cols,
    tile_width, tile_height, image_width, image_height
Row and column are 1-based. Unrecognized placeholders are left as-is.
"""

import re
from typing import Dict, Optional

from ..compositing.chroma import NAMED_KEY_COLORS, KeyColorSpec
from ..tiling.models import GridPlan, TileGeometry

PLACEHOLDERS = (
    "subject",
    "background",
    "row",
    "col",
    "rows",
    "cols",
    "tile_width",
    "tile_height",
    "image_width",
    "image_height",
)

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def substitute(template: str, values: Dict[str, object]) -> str:
    """Replace recognized {placeholders}; leave any other braces untouched."""

    def replace(match: "re.Match") -> str:
        name = match.group(1)
        if name in values:
            return str(values[name])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(replace, template)


def background_instruction(key_spec: Optional[KeyColorSpec], remove_background: bool) -> str:
    """Sentence telling the model what to do with the background."""
    if key_spec is None or not remove_background:
        return "Keep the background consistent with the rest of the image."

    r, g, b = key_spec.rgb
    hex_code = f"#{r:02X}{g:02X}{b:02X}"
    name = next(
        (n for n, rgb in NAMED_KEY_COLORS.items() if rgb == (r, g, b)),
        "key",
    )
    return (
        f"Replace the entire background with a flat, solid {name} ({hex_code}) color "
        f"with no shadows, gradients or texture."
    )


class PromptBuilder:
    """
    Builds the prompt for each tile of one grid.

    Example:
        >>> builder = PromptBuilder("{row}/{rows}", subject="a cat", background="", plan=plan)
        >>> builder.build(geometry)
        '1/2'
    """

    def __init__(self, template: str, subject: str, background: str, plan: GridPlan):
        self.template = template
        self.subject = subject
        self.background = background
        self.plan = plan

    def values(self, geometry: TileGeometry) -> Dict[str, object]:
        """Placeholder values for one tile."""
        return {
            "subject": self.subject,
            "background": self.background,
            "row": geometry.row + 1,
            "col": geometry.col + 1,
            "rows": self.plan.rows,
            "cols": self.plan.cols,
            "tile_width": geometry.width,
            "tile_height": geometry.height,
            "image_width": self.plan.image_width,
            "image_height": self.plan.image_height,
        }

    def build(self, geometry: TileGeometry) -> str:
        return substitute(self.template, self.values(geometry))
