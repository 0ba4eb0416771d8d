"""
Command-line interface for tilesmith.

Usage:
    python -m tilesmith plan <width> <height> [--max-tile 1024] [--overlap 0.1]
    python -m tilesmith split <image> <output_dir> [--rows R --cols C] [--jpeg] [--visualize]
    python -m tilesmith merge <workspace> <output> [--key-color green] [--keep-background] [--layers]
    python -m tilesmith run <image> <output> (--generator module:attr | --mock) [--workers 4]
    python -m tilesmith --help
"""

import argparse
import importlib
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config.run_config import MAX_CONCURRENCY, MIN_CONCURRENCY, RunConfig
from .errors import TilesmithError


def _add_grid_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--max-tile",
        type=int,
        default=None,
        help="Largest tile edge in pixels (default: 1024)",
    )
    parser.add_argument(
        "--overlap",
        type=float,
        default=None,
        help="Overlap fraction between adjacent tiles (default: 0.1)",
    )
    parser.add_argument(
        "--rows",
        type=int,
        help="Explicit row count (requires --cols)",
    )
    parser.add_argument(
        "--cols",
        type=int,
        help="Explicit column count (requires --rows)",
    )


def _add_key_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--key-color",
        type=str,
        default=None,
        help="Background key color: name or #RRGGBB (default: green)",
    )
    parser.add_argument(
        "--tolerance",
        type=float,
        default=None,
        help="Key tolerance 0-100 (default: 10)",
    )
    parser.add_argument(
        "--keep-background",
        action="store_true",
        help="Do not make key-colored pixels transparent",
    )
    parser.add_argument(
        "--layers",
        action="store_true",
        help="Also write a layered bundle next to the output",
    )


def setup_argparse() -> argparse.ArgumentParser:
    """Set up argument parser."""
    parser = argparse.ArgumentParser(
        prog="tilesmith",
        description="Split images into overlapping tiles, regenerate them and merge the results",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # plan
    plan_parser = subparsers.add_parser("plan", help="Print the tile grid for an image size")
    plan_parser.add_argument("width", type=int, help="Image width in pixels")
    plan_parser.add_argument("height", type=int, help="Image height in pixels")
    _add_grid_arguments(plan_parser)

    # split
    split_parser = subparsers.add_parser("split", help="Split an image into a tile workspace")
    split_parser.add_argument("image_path", type=str, help="Path to the input image")
    split_parser.add_argument("output_dir", type=str, help="Workspace directory")
    _add_grid_arguments(split_parser)
    split_parser.add_argument(
        "--jpeg",
        action="store_true",
        help="Persist tiles as JPEG instead of PNG",
    )
    split_parser.add_argument(
        "--visualize",
        action="store_true",
        help="Also write grid.png showing the tile layout",
    )

    # merge
    merge_parser = subparsers.add_parser("merge", help="Merge a tile workspace into one image")
    merge_parser.add_argument("workspace", type=str, help="Workspace directory written by split")
    merge_parser.add_argument("output_path", type=str, help="Output image (.png or .jpg)")
    _add_key_arguments(merge_parser)

    # run
    run_parser = subparsers.add_parser("run", help="Split, regenerate and merge in one go")
    run_parser.add_argument("image_path", type=str, help="Path to the input image")
    run_parser.add_argument("output_path", type=str, help="Output image (.png or .jpg)")
    run_parser.add_argument("--config", type=str, help="YAML run configuration")
    generator = run_parser.add_mutually_exclusive_group(required=True)
    generator.add_argument(
        "--generator",
        type=str,
        help="Generation callable as module:attribute",
    )
    generator.add_argument(
        "--mock",
        action="store_true",
        help="Use the offline mock generator",
    )
    run_parser.add_argument(
        "-w", "--workers",
        type=int,
        help=f"Concurrent generation calls ({MIN_CONCURRENCY}-{MAX_CONCURRENCY})",
    )
    run_parser.add_argument(
        "--workspace",
        type=str,
        help="Keep tiles in this directory instead of a temporary one",
    )
    run_parser.add_argument("--subject", type=str, help="Subject description for the prompt")
    _add_grid_arguments(run_parser)
    _add_key_arguments(run_parser)

    return parser


def build_config(args, base: Optional[RunConfig] = None) -> RunConfig:
    """Overlay command-line options onto a base configuration."""
    values = (base or RunConfig()).to_dict()
    overrides = {
        "max_tile_dimension": getattr(args, "max_tile", None),
        "overlap_ratio": getattr(args, "overlap", None),
        "rows": getattr(args, "rows", None),
        "cols": getattr(args, "cols", None),
        "key_color": getattr(args, "key_color", None),
        "tolerance": getattr(args, "tolerance", None),
        "concurrency": getattr(args, "workers", None),
        "subject": getattr(args, "subject", None),
    }
    for key, value in overrides.items():
        if value is not None:
            values[key] = value
    if getattr(args, "keep_background", False):
        values["remove_background"] = False
    if getattr(args, "jpeg", False):
        values["prefer_jpeg"] = True
    return RunConfig.from_dict(values)


def load_generator(spec: str):
    """Resolve 'module:attribute' to a generation callable; classes are instantiated."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Generator must be given as module:attribute, got {spec!r}")

    target = importlib.import_module(module_name)
    for part in attr.split("."):
        target = getattr(target, part)

    if isinstance(target, type):
        target = target()
    if not callable(target):
        raise ValueError(f"{spec} is not callable")
    return target


def cmd_plan(args) -> int:
    """Handle plan command."""
    from .tiling.planner import plan_grid, plan_grid_with_counts, tile_geometries

    config = build_config(args)
    if config.explicit_grid:
        plan = plan_grid_with_counts(args.width, args.height, config.rows, config.cols, config.overlap_ratio)
    else:
        plan = plan_grid(args.width, args.height, config.max_tile_dimension, config.overlap_ratio)

    output = {
        "plan": plan.to_dict(),
        "tiles": [g.to_dict() for g in tile_geometries(plan)],
    }
    print(json.dumps(output, indent=2))
    return 0


def cmd_split(args) -> int:
    """Handle split command."""
    from .session import TileSession
    from .tiling.visualization import visualize_grid

    config = build_config(args)
    session = TileSession(args.image_path, config, workspace_dir=args.output_dir)
    arena = session.split()

    if args.visualize:
        vis_path = session.workspace.root / "grid.png"
        visualize_grid(session.source, [job.geometry for job in arena], str(vis_path))
        print(f"Grid visualization saved to: {vis_path}")

    print(f"Split into {session.grid.rows}x{session.grid.cols} tiles: {session.workspace.root}")
    return 0


def cmd_merge(args) -> int:
    """Handle merge command."""
    from .session import TileSession

    config = build_config(args)
    session = TileSession.from_workspace(args.workspace, config)
    session.merge()
    result = session.export(args.output_path, layered=args.layers)

    print(f"Merged image saved to: {result.merged_path}")
    for error in result.errors:
        print(f"Warning: {error}", file=sys.stderr)
    return 0


def cmd_run(args) -> int:
    """Handle run command."""
    from .regeneration.mock import MockGenerator
    from .session import TileSession

    base = RunConfig.from_yaml(args.config) if args.config else None
    config = build_config(args, base)
    generate = MockGenerator() if args.mock else load_generator(args.generator)

    def progress(update):
        print(f"[{update.completed}/{update.total}] tile {update.row},{update.col}: {update.status.value}")

    with TileSession(args.image_path, config, workspace_dir=args.workspace) as session:
        session.split()
        summary = session.run(generate, progress_callback=progress if args.verbose else None)

        print(f"\nResults:")
        print(f"  Total: {summary.total}")
        print(f"  Done: {summary.done}")
        print(f"  Failed: {summary.failed}")
        for name, message in summary.errors.items():
            print(f"  {name}: {message}", file=sys.stderr)

        if not summary.should_merge:
            print("Run cancelled before any tile finished; nothing merged", file=sys.stderr)
            return 1

        session.merge()
        result = session.export(args.output_path, layered=args.layers)
        print(f"Merged image saved to: {result.merged_path}")
        for error in result.errors:
            print(f"Warning: {error}", file=sys.stderr)

    return 1 if summary.failed else 0


COMMANDS = {
    "plan": cmd_plan,
    "split": cmd_split,
    "merge": cmd_merge,
    "run": cmd_run,
}


def main(args: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        args: Command line arguments (uses sys.argv if not provided)

    Returns:
        Exit code (0 for success)
    """
    parser = setup_argparse()
    parsed = parser.parse_args(args)

    logging.basicConfig(
        level=logging.DEBUG if parsed.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    if parsed.command is None:
        parser.print_help()
        return 0

    try:
        return COMMANDS[parsed.command](parsed)
    except (TilesmithError, ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
