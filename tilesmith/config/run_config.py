"""
Per-run configuration handed to the core at the start of each run.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..compositing.chroma import KeyColorSpec, parse_color


DEFAULT_PROMPT_TEMPLATE = (
    "This image is tile {row} of {rows} rows and column {col} of {cols} columns, "
    "cut from a {image_width}x{image_height} image; the tile is "
    "{tile_width}x{tile_height} pixels. Regenerate this tile at higher detail "
    "without changing its composition. Subject: {subject}. {background} "
    "Return only the image."
)

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 8


@dataclass
class RunConfig:
    """
    Settings for one split/regenerate/merge run.

    Attributes:
        key_color: Background key color (name, #RRGGBB or RGB triple)
        tolerance: Key tolerance, 0-100
        remove_background: Make key-colored pixels transparent on merge
        concurrency: Number of generation workers (1-8)
        prompt_template: Template with {placeholder} fields
        subject: Subject description substituted into the prompt
        reference_mode: Send the full image alongside each tile
        match_output_size: Resize generated tiles back to their geometry
        input_resolution: Longest edge a tile is resized to before generation
        max_tile_dimension: Largest tile edge for automatic grids
        overlap_ratio: Overlap fraction between adjacent tiles (0 <= r < 1)
        rows: Explicit row count (with cols), overrides automatic grids
        cols: Explicit column count (with rows)
        generation_timeout: Seconds allowed per generation call
        prefer_jpeg: Persist tiles as JPEG instead of PNG
    """
    key_color: Any = "green"
    tolerance: float = 10.0
    remove_background: bool = True
    concurrency: int = 4
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE
    subject: str = "the main subject"
    reference_mode: bool = False
    match_output_size: bool = True
    input_resolution: Optional[int] = None
    max_tile_dimension: int = 1024
    overlap_ratio: float = 0.1
    rows: Optional[int] = None
    cols: Optional[int] = None
    generation_timeout: float = 120.0
    prefer_jpeg: bool = False

    def __post_init__(self):
        """Validate configuration values."""
        self._validate()

    def _validate(self):
        """Validate all configuration values."""
        parse_color(self.key_color)

        if not (0.0 <= self.tolerance <= 100.0):
            raise ValueError(f"tolerance must be between 0 and 100, got {self.tolerance}")

        if not (MIN_CONCURRENCY <= self.concurrency <= MAX_CONCURRENCY):
            raise ValueError(
                f"concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}, "
                f"got {self.concurrency}"
            )

        if not (0.0 <= self.overlap_ratio < 1.0):
            raise ValueError(f"overlap_ratio must be in [0, 1), got {self.overlap_ratio}")

        if self.max_tile_dimension < 1:
            raise ValueError(f"max_tile_dimension must be >= 1, got {self.max_tile_dimension}")

        if (self.rows is None) != (self.cols is None):
            raise ValueError("rows and cols must be given together")
        if self.rows is not None and (self.rows < 1 or self.cols < 1):
            raise ValueError(f"rows and cols must be >= 1, got {self.rows}x{self.cols}")

        if self.input_resolution is not None and self.input_resolution < 1:
            raise ValueError(f"input_resolution must be >= 1, got {self.input_resolution}")

        if self.generation_timeout <= 0:
            raise ValueError(f"generation_timeout must be > 0, got {self.generation_timeout}")

    @property
    def explicit_grid(self) -> bool:
        return self.rows is not None and self.cols is not None

    def key_spec(self) -> KeyColorSpec:
        """Key color and tolerance for the merge engine."""
        return KeyColorSpec(color=self.key_color, tolerance=self.tolerance)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        key_color = self.key_color if isinstance(self.key_color, str) else list(self.key_color)
        return {
            "key_color": key_color,
            "tolerance": self.tolerance,
            "remove_background": self.remove_background,
            "concurrency": self.concurrency,
            "prompt_template": self.prompt_template,
            "subject": self.subject,
            "reference_mode": self.reference_mode,
            "match_output_size": self.match_output_size,
            "input_resolution": self.input_resolution,
            "max_tile_dimension": self.max_tile_dimension,
            "overlap_ratio": self.overlap_ratio,
            "rows": self.rows,
            "cols": self.cols,
            "generation_timeout": self.generation_timeout,
            "prefer_jpeg": self.prefer_jpeg,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunConfig":
        """Create from dictionary; missing keys take their defaults."""
        defaults = cls.__dataclass_fields__
        unknown = set(data) - set(defaults)
        if unknown:
            raise ValueError(f"Unknown run config keys: {sorted(unknown)}")

        values = dict(data)
        if isinstance(values.get("key_color"), list):
            values["key_color"] = tuple(values["key_color"])
        return cls(**values)

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "RunConfig":
        """Load configuration from YAML file (top level or a ``run:`` section)."""
        import yaml

        with open(yaml_path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data.get("run", data))

    @classmethod
    def default(cls) -> "RunConfig":
        """Create default configuration."""
        return cls()
