"""Tests for the regeneration worker pool."""

import threading
import time

import numpy as np
import pytest

from tests.fixtures.image_fixtures import create_gradient, create_solid
from tilesmith.config.run_config import RunConfig
from tilesmith.errors import GenerationError
from tilesmith.imaging import encode_image, load_image
from tilesmith.regeneration.pool import (
    CancelToken,
    RegenerationPool,
    RegenerationRun,
    RunSummary,
    call_with_timeout,
    run_regeneration,
)
from tilesmith.tiling.models import TileStatus
from tilesmith.tiling.planner import plan_grid_with_counts
from tilesmith.tiling.splitter import TileWorkspace, split_image

KEY_TEMPLATE = "{row},{col}"


def make_split(rows=2, cols=3, size=(60, 90)):
    image = create_gradient(size)
    plan = plan_grid_with_counts(size[1], size[0], rows, cols, 0.1)
    return split_image(image, plan)


def config(**overrides):
    values = {"prompt_template": KEY_TEMPLATE, "concurrency": 4}
    values.update(overrides)
    return RunConfig(**values)


def invert(tile, reference, prompt):
    out = tile.copy()
    out[:, :, :3] = 255 - out[:, :, :3]
    return out


class TestRunAll:
    """Tests for RegenerationPool.run_all."""

    def test_all_tiles_done(self):
        """Test every pending tile ends done with its result."""
        split = make_split()
        pool = RegenerationPool(invert, config=config(), plan=split.plan)
        summary = pool.run_all(split.jobs)

        assert summary.total == 6
        assert summary.done == 6
        assert summary.failed == 0
        for job in split.jobs:
            assert job.status is TileStatus.DONE
            assert np.array_equal(job.result[:, :, :3], 255 - job.source[:, :, :3])

    def test_each_tile_processed_once(self):
        """Test no tile is dequeued twice within a run."""
        split = make_split(rows=4, cols=4, size=(80, 80))
        calls = []
        lock = threading.Lock()

        def generate(tile, reference, prompt):
            with lock:
                calls.append(prompt)
            time.sleep(0.01)
            return tile

        summary = RegenerationPool(generate, config=config(concurrency=8), plan=split.plan).run_all(split.jobs)

        assert sorted(calls) == sorted(f"{r},{c}" for r in range(1, 5) for c in range(1, 5))
        assert len(summary.processed) == len(set(summary.processed)) == 16

    def test_concurrency_bound(self):
        """Test no more than `concurrency` generate calls run at once."""
        split = make_split(rows=3, cols=4, size=(60, 80))
        active = 0
        peak = 0
        lock = threading.Lock()

        def generate(tile, reference, prompt):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return tile

        RegenerationPool(generate, config=config(), plan=split.plan).run_all(split.jobs, concurrency=3)
        assert 1 <= peak <= 3

    def test_failure_isolated(self):
        """Test one failing tile does not stop its siblings."""
        split = make_split()

        def generate(tile, reference, prompt):
            if prompt == "1,2":
                raise RuntimeError("upstream 500")
            return tile

        summary = RegenerationPool(generate, config=config(), plan=split.plan).run_all(split.jobs)

        failed = [job for job in split.jobs if job.status is TileStatus.ERROR]
        assert [job.key for job in failed] == [(0, 1)]
        assert failed[0].error == "upstream 500"
        assert summary.done == 5
        assert summary.failed == 1
        assert summary.errors == {"tile_0_1": "upstream 500"}
        assert summary.should_merge

    def test_none_result_is_error(self):
        """Test a generator returning nothing marks the tile as error."""
        split = make_split(rows=1, cols=1)
        RegenerationPool(lambda t, r, p: None, config=config(), plan=split.plan).run_all(split.jobs)
        assert split.jobs[0].status is TileStatus.ERROR
        assert "no image" in split.jobs[0].error

    def test_only_pending_processed(self):
        """Test done and error tiles are left alone."""
        split = make_split(rows=1, cols=3)
        split.jobs[0].begin()
        split.jobs[0].complete(split.jobs[0].source)
        split.jobs[1].begin()
        split.jobs[1].fail("old")

        summary = RegenerationPool(invert, config=config(), plan=split.plan).run_all(split.jobs)
        assert summary.total == 1
        assert summary.processed == [(0, 2)]
        assert split.jobs[1].error == "old"

    def test_nothing_pending(self):
        split = make_split(rows=1, cols=1)
        split.jobs[0].begin()
        split.jobs[0].fail("x")
        summary = RegenerationPool(invert, config=config()).run_all(split.jobs)
        assert summary.total == 0
        assert summary.should_merge

    def test_status_updates(self):
        """Test each tile reports processing then a terminal status."""
        split = make_split(rows=1, cols=2)
        updates = []
        lock = threading.Lock()

        def record(update):
            with lock:
                updates.append(update)

        RegenerationPool(invert, config=config(), plan=split.plan, status_callback=record).run_all(split.jobs)

        assert len(updates) == 4
        for key in [(0, 0), (0, 1)]:
            statuses = [u.status for u in updates if (u.row, u.col) == key]
            assert statuses == [TileStatus.PROCESSING, TileStatus.DONE]
        assert max(u.completed for u in updates) == 2
        assert updates[-1].to_dict()["total"] == 2

    def test_prompt_derived_without_plan(self):
        """Test prompt placeholders are filled when no plan is given."""
        split = make_split(rows=1, cols=2)
        prompts = []
        pool = RegenerationPool(
            lambda t, r, p: prompts.append(p) or t,
            config=config(prompt_template="{col}/{cols}", concurrency=1),
        )
        pool.run_all(split.jobs)
        assert prompts == ["1/2", "2/2"]

    def test_raising_status_callback(self):
        """Test a failing status listener does not strand tiles."""
        split = make_split(rows=2, cols=2)

        def explode(update):
            raise RuntimeError("listener broke")

        pool = RegenerationPool(invert, config=config(), plan=split.plan, status_callback=explode)
        summary = pool.run_all(split.jobs, concurrency=2)

        assert summary.done == 4
        assert [job.status for job in split.jobs] == [TileStatus.DONE] * 4


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_before_start(self):
        """Test a run cancelled up front processes nothing and should not merge."""
        split = make_split()
        token = CancelToken()
        token.cancel()

        summary = RegenerationPool(invert, config=config(), plan=split.plan).run_all(
            split.jobs, cancel_token=token
        )
        assert summary.finished == 0
        assert summary.cancelled
        assert not summary.should_merge
        assert all(job.status is TileStatus.PENDING for job in split.jobs)

    def test_cancel_mid_run(self):
        """Test in-flight calls finish and the rest stay pending."""
        split = make_split()
        token = CancelToken()

        def generate(tile, reference, prompt):
            token.cancel()
            return tile

        summary = RegenerationPool(generate, config=config(), plan=split.plan).run_all(
            split.jobs, concurrency=1, cancel_token=token
        )

        assert summary.cancelled
        assert summary.done == 1
        assert summary.skipped == 5
        assert summary.should_merge
        assert [job.status for job in split.jobs].count(TileStatus.PENDING) == 5


class TestTimeout:
    """Tests for per-call timeouts."""

    def test_call_with_timeout_value(self):
        assert call_with_timeout(lambda a, b: a + b, (1, 2), 1.0) == 3

    def test_call_with_timeout_error(self):
        with pytest.raises(KeyError):
            call_with_timeout(lambda: {}["x"], (), 1.0)

    def test_call_with_timeout_expires(self):
        with pytest.raises(GenerationError, match="timed out"):
            call_with_timeout(time.sleep, (2.0,), 0.05)

    def test_timeout_marks_tile_error(self):
        """Test a slow tile is marked error while the others complete."""
        split = make_split(rows=1, cols=3)

        def generate(tile, reference, prompt):
            if prompt == "1,2":
                time.sleep(2.0)
            return tile

        summary = RegenerationPool(
            generate, config=config(generation_timeout=0.1), plan=split.plan
        ).run_all(split.jobs)

        assert split.jobs[1].status is TileStatus.ERROR
        assert "timed out" in split.jobs[1].error
        assert summary.done == 2


class TestResultHandling:
    """Tests for generator output normalization."""

    def test_bytes_result_decoded(self):
        """Test encoded bytes from the generator are decoded."""
        split = make_split(rows=1, cols=1, size=(20, 30))
        red = create_solid((20, 30), (0, 0, 255))
        RegenerationPool(lambda t, r, p: encode_image(red), config=config()).run_all(split.jobs)
        assert np.array_equal(split.jobs[0].result, red)

    def test_undecodable_bytes(self):
        split = make_split(rows=1, cols=1)
        RegenerationPool(lambda t, r, p: b"<html>", config=config()).run_all(split.jobs)
        assert split.jobs[0].status is TileStatus.ERROR
        assert "No image payload" in split.jobs[0].error

    def test_match_output_size(self):
        """Test oversized output is resized to the tile geometry."""
        split = make_split(rows=1, cols=1, size=(20, 30))
        big = lambda t, r, p: create_solid((80, 120), (1, 2, 3))
        RegenerationPool(big, config=config()).run_all(split.jobs)
        assert split.jobs[0].result.shape == (20, 30, 4)

    def test_keep_output_size(self):
        """Test output size is kept when matching is off."""
        split = make_split(rows=1, cols=1, size=(20, 30))
        big = lambda t, r, p: create_solid((80, 120), (1, 2, 3))
        RegenerationPool(big, config=config(match_output_size=False)).run_all(split.jobs)
        assert split.jobs[0].result.shape == (80, 120, 4)

    def test_input_resolution(self):
        """Test tiles are resized to the input resolution before generation."""
        split = make_split(rows=1, cols=1, size=(20, 40))
        seen = []
        pool = RegenerationPool(
            lambda t, r, p: seen.append(t.shape) or t,
            config=config(input_resolution=100),
        )
        pool.run_all(split.jobs)
        assert seen == [(50, 100, 4)]
        assert split.jobs[0].result.shape == (20, 40, 4)

    def test_reference_mode(self):
        """Test the full image is passed only in reference mode."""
        split = make_split(rows=1, cols=2)
        references = []

        def generate(tile, reference, prompt):
            references.append(reference)
            return tile

        RegenerationPool(generate, config=config(), reference_image=split.source).run_all(split.jobs)
        assert references == [None, None]

        references.clear()
        for job in split.jobs:
            job.reset()
        RegenerationPool(
            generate, config=config(reference_mode=True), reference_image=split.source
        ).run_all(split.jobs)
        assert all(ref is split.source for ref in references)

    def test_result_persisted(self, tmp_path):
        """Test results are written to each job's result slot."""
        image = create_gradient((30, 60))
        workspace = TileWorkspace(tmp_path / "ws")
        split = split_image(image, plan_grid_with_counts(60, 30, 1, 2, 0.1), workspace=workspace)

        RegenerationPool(invert, config=config()).run_all(split.jobs)

        for job in split.jobs:
            assert np.array_equal(load_image(job.result_path), job.result)

    def test_source_loaded_from_disk(self, tmp_path):
        """Test a job without an in-memory crop is fed its persisted original."""
        image = create_gradient((30, 60))
        workspace = TileWorkspace(tmp_path / "ws")
        split = split_image(image, plan_grid_with_counts(60, 30, 1, 2, 0.1), workspace=workspace)
        expected = split.jobs[0].source
        split.jobs[0].source = None

        RegenerationPool(invert, config=config()).run_all(split.jobs[:1])
        assert np.array_equal(split.jobs[0].result[:, :, :3], 255 - expected[:, :, :3])


class TestRegenerateSingle:
    """Tests for single-tile regeneration."""

    def test_regenerate_done_tile(self):
        """Test a finished tile can be re-run on its own."""
        split = make_split(rows=1, cols=2)
        pool = RegenerationPool(invert, config=config(), plan=split.plan)
        pool.run_all(split.jobs)
        first = split.jobs[1].result

        pool.generate = lambda t, r, p: create_solid(t.shape[:2], (9, 9, 9))
        job = pool.regenerate(split.jobs[1])

        assert job.status is TileStatus.DONE
        assert job.result is not first
        assert tuple(job.result[0, 0]) == (9, 9, 9, 255)
        assert split.jobs[0].result is not None


class TestRunRegeneration:
    """Tests for the streaming interface."""

    def test_stream_and_summary(self):
        """Test iterating yields every update and exposes the summary."""
        split = make_split()
        run = run_regeneration(split.jobs, invert, config=config(), plan=split.plan, concurrency=2)

        updates = list(run)
        assert len(updates) == 12
        assert isinstance(run.summary, RunSummary)
        assert run.summary.done == 6

    def test_stream_cancel(self):
        """Test cancelling through the run object stops new dequeues."""
        split = make_split()
        gate = threading.Event()

        def generate(tile, reference, prompt):
            gate.wait(2.0)
            return tile

        run = run_regeneration(split.jobs, generate, config=config(), plan=split.plan, concurrency=1)
        run.cancel()
        gate.set()
        list(run)

        assert run.summary.cancelled
        assert run.summary.done <= 1

    def test_iterating_again_ends(self):
        """Test a finished run can be iterated again without blocking."""
        split = make_split(rows=1, cols=2)
        run = run_regeneration(split.jobs, invert, config=config(), plan=split.plan)

        assert len(list(run)) == 4
        assert list(run) == []

    def test_pool_reused_across_runs(self):
        """Test each run only sees its own updates and the callback is restored."""
        seen = []
        pool = RegenerationPool(invert, config=config(concurrency=1), status_callback=seen.append)

        first_jobs = make_split(rows=1, cols=2).jobs
        first = RegenerationRun(pool, first_jobs).start()
        assert len(list(first)) == 4
        first.join()
        assert pool.status_callback == seen.append

        second = RegenerationRun(pool, make_split(rows=1, cols=3).jobs).start()
        assert len(list(second)) == 6
        second.join()

        assert list(first) == []
        assert len(seen) == 10
        assert pool.status_callback == seen.append
