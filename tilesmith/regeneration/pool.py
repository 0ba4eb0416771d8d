"""
Bounded-concurrency tile regeneration.

A run enqueues every pending tile on one FIFO queue and starts exactly
``concurrency`` workers that drain it. Dequeue is exclusive, so each
tile is processed at most once per run. A failing tile is marked
``error`` and its worker moves on; siblings are never aborted.

Cancellation is cooperative: once the token is set no new tile is
dequeued, but calls already in flight finish and their results are
recorded.

Example:
    >>> pool = RegenerationPool(generate, config=config, plan=plan)
    >>> summary = pool.run_all(jobs, concurrency=4)
    >>> summary.should_merge
    True
"""

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..config.run_config import MAX_CONCURRENCY, MIN_CONCURRENCY, RunConfig
from ..errors import GenerationError
from ..imaging import decode_image, load_image, resize_exact, resize_longest_edge, save_image, to_bgra
from ..tiling.models import GridPlan, TileJob, TileStatus
from .prompt import PromptBuilder, background_instruction

logger = logging.getLogger(__name__)

# generate(tile, reference, prompt) -> image array or encoded bytes
GenerateFn = Callable[[np.ndarray, Optional[np.ndarray], str], Union[np.ndarray, bytes]]


class CancelToken:
    """Run-level cooperative cancel flag."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class TileStatusUpdate:
    """Status change of one tile during a run."""
    row: int
    col: int
    status: TileStatus
    completed: int
    total: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "row": self.row,
            "col": self.col,
            "status": self.status.value,
            "completed": self.completed,
            "total": self.total,
            "error": self.error,
        }


@dataclass
class RunSummary:
    """Outcome of one regeneration run."""
    total: int
    done: int = 0
    failed: int = 0
    cancelled: bool = False
    elapsed_ms: float = 0.0
    processed: List[Tuple[int, int]] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def finished(self) -> int:
        return self.done + self.failed

    @property
    def skipped(self) -> int:
        """Tiles left pending because the run was cancelled."""
        return self.total - self.finished

    @property
    def should_merge(self) -> bool:
        """False only when the run was cancelled before any tile finished."""
        return not (self.cancelled and self.finished == 0)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total": self.total,
            "done": self.done,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "elapsed_ms": self.elapsed_ms,
            "should_merge": self.should_merge,
            "errors": self.errors,
        }


def call_with_timeout(fn: Callable, args: tuple, timeout: Optional[float]) -> Any:
    """
    Run fn(*args) and wait at most ``timeout`` seconds for it.

    The call runs on a daemon thread; a call that overruns is abandoned,
    not interrupted.

    Raises:
        GenerationError: On timeout
        Exception: Whatever fn raised
    """
    outcome: Dict[str, Any] = {}

    def target():
        try:
            outcome["value"] = fn(*args)
        except Exception as e:
            outcome["error"] = e

    thread = threading.Thread(target=target, name="tile-generate", daemon=True)
    thread.start()
    thread.join(timeout)

    if thread.is_alive():
        raise GenerationError(f"Generation timed out after {timeout:g}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


class _RunTracker:
    """Counters shared by the workers of one run."""

    def __init__(self, total: int, callback: Optional[Callable[[TileStatusUpdate], None]]):
        self.summary = RunSummary(total=total)
        self._callback = callback
        self._lock = threading.Lock()

    def started(self, job: TileJob) -> None:
        with self._lock:
            self.summary.processed.append(job.key)
            update = self._update(job)
        self._emit(update)

    def finished(self, job: TileJob) -> None:
        with self._lock:
            if job.status is TileStatus.DONE:
                self.summary.done += 1
            else:
                self.summary.failed += 1
                self.summary.errors[job.geometry.name] = job.error or "unknown error"
            update = self._update(job)
        self._emit(update)

    def _update(self, job: TileJob) -> TileStatusUpdate:
        return TileStatusUpdate(
            row=job.row,
            col=job.col,
            status=job.status,
            completed=self.summary.finished,
            total=self.summary.total,
            error=job.error,
        )

    def _emit(self, update: TileStatusUpdate) -> None:
        if self._callback is None:
            return
        try:
            self._callback(update)
        except Exception as e:
            # A broken listener must not strand the tile in processing
            logger.warning(f"Status callback failed for tile {update.row},{update.col}: {e}")


class RegenerationPool:
    """
    Regenerates tiles through an external generation call.

    Handles:
    - Prompt building per tile
    - Optional full-image reference and input resizing
    - Timeouts and per-tile failure isolation
    - Persisting results to each job's result slot
    """

    def __init__(
        self,
        generate: GenerateFn,
        config: Optional[RunConfig] = None,
        plan: Optional[GridPlan] = None,
        reference_image: Optional[np.ndarray] = None,
        status_callback: Optional[Callable[[TileStatusUpdate], None]] = None,
    ):
        """
        Args:
            generate: External generation call
            config: Run settings
            plan: Grid the jobs belong to (for prompt placeholders)
            reference_image: Full source image, sent when reference_mode is on
            status_callback: Receives every per-tile status change
        """
        self.generate = generate
        self.config = config or RunConfig()
        self.plan = plan
        self.reference_image = reference_image
        self.status_callback = status_callback

    def _prompt_builder(self, jobs: Sequence[TileJob]) -> PromptBuilder:
        plan = self.plan
        if plan is None:
            # Derive grid extents from the jobs themselves
            plan = GridPlan(
                rows=max(job.row for job in jobs) + 1,
                cols=max(job.col for job in jobs) + 1,
                overlap_ratio=self.config.overlap_ratio,
                max_tile_dimension=self.config.max_tile_dimension,
                image_width=max(job.geometry.x2 for job in jobs),
                image_height=max(job.geometry.y2 for job in jobs),
            )
        background = background_instruction(
            self.config.key_spec(), self.config.remove_background
        )
        return PromptBuilder(
            self.config.prompt_template, self.config.subject, background, plan
        )

    def run_all(
        self,
        jobs: Sequence[TileJob],
        concurrency: Optional[int] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> RunSummary:
        """
        Process every pending job with a fixed number of workers.

        Args:
            jobs: Tile jobs; only those in ``pending`` are queued
            concurrency: Worker count (1-8), defaults to config.concurrency
            cancel_token: Cooperative cancel flag

        Returns:
            RunSummary for this run
        """
        concurrency = self.config.concurrency if concurrency is None else int(concurrency)
        concurrency = max(MIN_CONCURRENCY, min(concurrency, MAX_CONCURRENCY))
        cancel_token = cancel_token or CancelToken()

        pending = [job for job in jobs if job.status is TileStatus.PENDING]
        tracker = _RunTracker(len(pending), self.status_callback)
        if not pending:
            return tracker.summary

        builder = self._prompt_builder(jobs)
        work: "queue.Queue[TileJob]" = queue.Queue()
        for job in pending:
            work.put(job)

        logger.info(f"Regenerating {len(pending)} tiles with {concurrency} workers")
        start_time = time.time()

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="tile-worker") as executor:
            workers = [
                executor.submit(self._worker_loop, work, builder, tracker, cancel_token)
                for _ in range(concurrency)
            ]
            for worker in workers:
                worker.result()

        summary = tracker.summary
        summary.cancelled = cancel_token.cancelled
        summary.elapsed_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Regeneration finished: {summary.done} done, {summary.failed} failed, "
            f"{summary.skipped} skipped{' (cancelled)' if summary.cancelled else ''}"
        )
        return summary

    def regenerate(self, job: TileJob, jobs: Optional[Sequence[TileJob]] = None) -> TileJob:
        """
        Reset one tile to pending and process it immediately.

        Args:
            job: Tile to regenerate
            jobs: Full tile set, used to size prompt placeholders without a plan
        """
        job.reset()
        tracker = _RunTracker(1, self.status_callback)
        self._process(job, self._prompt_builder(jobs or [job]), tracker)
        return job

    def _worker_loop(
        self,
        work: "queue.Queue[TileJob]",
        builder: PromptBuilder,
        tracker: _RunTracker,
        cancel_token: CancelToken,
    ) -> None:
        while not cancel_token.cancelled:
            try:
                job = work.get_nowait()
            except queue.Empty:
                return
            self._process(job, builder, tracker)

    def _process(self, job: TileJob, builder: PromptBuilder, tracker: _RunTracker) -> None:
        try:
            job.begin()
        except ValueError as e:
            logger.debug(f"Skipping tile: {e}")
            return
        tracker.started(job)

        name = job.geometry.name
        try:
            result = self._generate_tile(job, builder.build(job.geometry))
            if job.result_path:
                save_image(job.result_path, result)
        except Exception as e:
            job.fail(str(e) or e.__class__.__name__)
            logger.warning(f"{name} failed: {job.error}")
        else:
            job.complete(result)
            logger.debug(f"{name} done")

        tracker.finished(job)

    def _generate_tile(self, job: TileJob, prompt: str) -> np.ndarray:
        tile = job.source
        if tile is None and job.source_path and Path(job.source_path).is_file():
            tile = load_image(job.source_path)
        if tile is None:
            raise GenerationError("Tile has no source buffer", row=job.row, col=job.col)

        if self.config.input_resolution:
            tile = resize_longest_edge(tile, self.config.input_resolution)

        reference = self.reference_image if self.config.reference_mode else None

        output = call_with_timeout(
            self.generate, (tile, reference, prompt), self.config.generation_timeout
        )
        if output is None:
            raise GenerationError("Generator returned no image", row=job.row, col=job.col)

        if isinstance(output, (bytes, bytearray)):
            try:
                output = decode_image(bytes(output))
            except ValueError as e:
                raise GenerationError(
                    f"No image payload in generation response: {e}", row=job.row, col=job.col
                ) from e

        result = to_bgra(np.asarray(output))
        if self.config.match_output_size:
            result = resize_exact(result, job.geometry.width, job.geometry.height)
        return result


class RegenerationRun:
    """
    A pool run on a background thread, iterated as a stream of updates.

    Example:
        >>> run = run_regeneration(jobs, generate, config=config, plan=plan)
        >>> for update in run:
        ...     print(update.row, update.col, update.status.value)
        >>> run.summary.done
    """

    _DONE = object()

    def __init__(
        self,
        pool: RegenerationPool,
        jobs: Sequence[TileJob],
        concurrency: Optional[int] = None,
        cancel_token: Optional[CancelToken] = None,
    ):
        self.pool = pool
        self.jobs = jobs
        self.concurrency = concurrency
        self.cancel_token = cancel_token or CancelToken()
        self.summary: Optional[RunSummary] = None
        self.error: Optional[BaseException] = None
        self._updates: "queue.Queue[Any]" = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="tile-run", daemon=True)

    def start(self) -> "RegenerationRun":
        self._thread.start()
        return self

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def join(self, timeout: Optional[float] = None) -> Optional[RunSummary]:
        self._thread.join(timeout)
        return self.summary

    def _run(self) -> None:
        downstream = self.pool.status_callback

        def forward(update: TileStatusUpdate) -> None:
            self._updates.put(update)
            if downstream is not None:
                downstream(update)

        self.pool.status_callback = forward
        try:
            self.summary = self.pool.run_all(self.jobs, self.concurrency, self.cancel_token)
        except Exception as e:
            self.error = e
        finally:
            self.pool.status_callback = downstream
            self._updates.put(self._DONE)

    def __iter__(self) -> Iterator[TileStatusUpdate]:
        while True:
            item = self._updates.get()
            if item is self._DONE:
                # Keep the sentinel so later iterations end too
                self._updates.put(self._DONE)
                break
            yield item
        if self.error is not None:
            raise self.error


def run_regeneration(
    jobs: Sequence[TileJob],
    generate: GenerateFn,
    config: Optional[RunConfig] = None,
    plan: Optional[GridPlan] = None,
    concurrency: Optional[int] = None,
    cancel_token: Optional[CancelToken] = None,
    reference_image: Optional[np.ndarray] = None,
) -> RegenerationRun:
    """
    Start a regeneration run and return its stream of status updates.

    The returned run is already started; iterate it for per-tile
    updates and read ``run.summary`` once iteration ends.
    """
    pool = RegenerationPool(generate, config=config, plan=plan, reference_image=reference_image)
    return RegenerationRun(pool, jobs, concurrency, cancel_token).start()
