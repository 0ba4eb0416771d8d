"""
Tile regeneration: prompt building and the bounded worker pool.
"""

from .mock import MockGenerator
from .pool import (
    CancelToken,
    GenerateFn,
    RegenerationPool,
    RegenerationRun,
    RunSummary,
    TileStatusUpdate,
    call_with_timeout,
    run_regeneration,
)
from .prompt import PLACEHOLDERS, PromptBuilder, background_instruction, substitute

__all__ = [
    # Pool
    "CancelToken",
    "GenerateFn",
    "RegenerationPool",
    "RegenerationRun",
    "RunSummary",
    "TileStatusUpdate",
    "call_with_timeout",
    "run_regeneration",
    # Prompts
    "PLACEHOLDERS",
    "PromptBuilder",
    "background_instruction",
    "substitute",
    # Mock
    "MockGenerator",
]
