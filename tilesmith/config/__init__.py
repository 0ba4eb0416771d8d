"""
Run configuration.
"""

from .run_config import DEFAULT_PROMPT_TEMPLATE, MAX_CONCURRENCY, MIN_CONCURRENCY, RunConfig

__all__ = [
    "DEFAULT_PROMPT_TEMPLATE",
    "MAX_CONCURRENCY",
    "MIN_CONCURRENCY",
    "RunConfig",
]
