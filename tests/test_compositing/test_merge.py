"""Tests for the merge/composite engine."""

import numpy as np
import pytest

from tests.fixtures.image_fixtures import create_gradient, create_solid, encoded_png, make_job
from tilesmith.compositing.chroma import KeyColorSpec
from tilesmith.compositing.merge import (
    CompositeEngine,
    check_tile_set,
    feather_weights,
    merge_tiles,
    resolve_tile_image,
)
from tilesmith.errors import IncompleteTileSetError
from tilesmith.tiling.models import TileGeometry
from tilesmith.tiling.planner import plan_grid_with_counts, tile_geometries
from tilesmith.tiling.splitter import split_image

GREEN = (0, 255, 0)
RED = (0, 0, 255)
BLUE = (255, 0, 0)


def two_column_jobs(left_bgr, right_bgr, width=100, height=20, overlap=0.2):
    """1x2 grid whose tiles are solid colors."""
    plan = plan_grid_with_counts(width, height, rows=1, cols=2, overlap_ratio=overlap)
    left, right = tile_geometries(plan)
    return [
        make_job(0, 0, left.x, left.y, left.width, left.height,
                 result=create_solid((left.height, left.width), left_bgr)),
        make_job(0, 1, right.x, right.y, right.width, right.height,
                 result=create_solid((right.height, right.width), right_bgr)),
    ]


class TestFeatherWeights:
    """Tests for per-tile blend weights."""

    def test_lone_tile_is_flat(self):
        """Test a tile without neighbors has weight 1 everywhere."""
        g = TileGeometry(0, 0, 0, 0, 10, 8)
        weights = feather_weights(g, {g.key: g})
        assert weights.shape == (8, 10)
        assert np.allclose(weights, 1.0)

    def test_complementary_ramps(self):
        """Test neighbor weights sum to 1 across the overlap band."""
        left = TileGeometry(0, 0, 0, 0, 60, 10)
        right = TileGeometry(0, 1, 40, 0, 60, 10)
        neighbors = {left.key: left, right.key: right}

        wl = feather_weights(left, neighbors)
        wr = feather_weights(right, neighbors)

        band_left = wl[0, 40:60]
        band_right = wr[0, 0:20]
        assert np.allclose(band_left + band_right, 1.0)
        assert (band_left > 0).all() and (band_right > 0).all()
        assert np.allclose(wl[:, :40], 1.0)
        assert np.allclose(wr[:, 20:], 1.0)

    def test_weights_positive(self):
        """Test weights are strictly positive inside a grid."""
        tiles = tile_geometries(plan_grid_with_counts(90, 90, 3, 3, 0.3))
        neighbors = {g.key: g for g in tiles}
        for g in tiles:
            assert feather_weights(g, neighbors).min() > 0


class TestCheckTileSet:
    """Tests for tile-set completeness."""

    def test_empty(self):
        with pytest.raises(IncompleteTileSetError):
            check_tile_set([])

    def test_missing_cell(self):
        """Test a gap in the grid is reported by key."""
        jobs = two_column_jobs(RED, BLUE)
        jobs.append(make_job(1, 1, 0, 20, 10, 10, result=create_solid((10, 10), RED)))
        with pytest.raises(IncompleteTileSetError) as exc_info:
            check_tile_set(jobs)
        assert exc_info.value.missing == [(1, 0)]

    def test_tile_without_buffers(self):
        """Test a tile with neither result nor original is reported."""
        jobs = two_column_jobs(RED, BLUE)
        jobs[1].result = None
        with pytest.raises(IncompleteTileSetError) as exc_info:
            check_tile_set(jobs)
        assert exc_info.value.missing == [(0, 1)]


class TestResolveTileImage:
    """Tests for tile buffer resolution."""

    def test_result_preferred(self):
        job = make_job(0, 0, 0, 0, 4, 4, source=create_solid((4, 4), RED),
                       result=create_solid((4, 4), BLUE))
        image, is_fallback = resolve_tile_image(job)
        assert not is_fallback
        assert tuple(image[0, 0]) == BLUE + (255,)

    def test_source_fallback(self):
        job = make_job(0, 0, 0, 0, 4, 4, source=create_solid((4, 4), RED))
        image, is_fallback = resolve_tile_image(job)
        assert is_fallback
        assert tuple(image[0, 0]) == RED + (255,)

    def test_files_used(self, tmp_path):
        """Test persisted result and original files are loaded."""
        job = make_job(0, 0, 0, 0, 4, 4)
        job.source_path = str(tmp_path / "orig.png")
        job.result_path = str(tmp_path / "result.png")
        (tmp_path / "orig.png").write_bytes(encoded_png(create_solid((4, 4), RED)))

        image, is_fallback = resolve_tile_image(job)
        assert is_fallback

        (tmp_path / "result.png").write_bytes(encoded_png(create_solid((4, 4), BLUE)))
        image, is_fallback = resolve_tile_image(job)
        assert not is_fallback
        assert tuple(image[0, 0]) == BLUE + (255,)

    def test_nothing(self):
        with pytest.raises(IncompleteTileSetError):
            resolve_tile_image(make_job(0, 0, 0, 0, 4, 4))


class TestMergeTiles:
    """Tests for merge_tiles."""

    def test_idempotent_on_unmodified_tiles(self):
        """Test merging untouched crops reproduces the source exactly."""
        image = create_gradient((90, 130))
        plan = plan_grid_with_counts(130, 90, rows=3, cols=4, overlap_ratio=0.25)
        result = split_image(image, plan)

        merged = merge_tiles(result.jobs, (130, 90))
        assert np.array_equal(merged, image)

    def test_idempotent_with_key(self):
        """Test the content/background split keeps idempotence."""
        image = create_gradient((60, 60))
        image[:20, :20, :3] = GREEN
        result = split_image(image, plan_grid_with_counts(60, 60, 2, 2, 0.3))

        merged = merge_tiles(result.jobs, (60, 60), key_spec=KeyColorSpec("green", 0))
        assert np.array_equal(merged, image)

    def test_seam_blends_monotonically(self):
        """Test the overlap band ramps from the left color to the right color."""
        jobs = two_column_jobs(RED, BLUE)
        merged = merge_tiles(jobs, (100, 20))
        left, right = jobs[0].geometry, jobs[1].geometry

        assert tuple(merged[10, 0]) == RED + (255,)
        assert tuple(merged[10, 99]) == BLUE + (255,)

        red_channel = merged[10, right.x:left.x2, 2].astype(int)
        blue_channel = merged[10, right.x:left.x2, 0].astype(int)
        assert (np.diff(red_channel) <= 0).all()
        assert (np.diff(blue_channel) >= 0).all()
        assert (red_channel + blue_channel >= 254).all()

    def test_content_wins_over_background(self):
        """Test a key-colored pixel in one tile does not dilute content from another."""
        jobs = two_column_jobs(RED, GREEN)
        merged = merge_tiles(jobs, (100, 20), key_spec=KeyColorSpec("green", 10))
        left = jobs[0].geometry

        assert tuple(merged[5, left.x2 - 1]) == RED + (255,)
        assert tuple(merged[5, 99]) == GREEN + (255,)

    def test_remove_background(self):
        """Test background pixels become transparent and content opaque."""
        jobs = two_column_jobs(RED, GREEN)
        merged = merge_tiles(jobs, (100, 20), key_spec=KeyColorSpec("green", 10),
                             remove_background=True)
        assert merged[5, 0, 3] == 255
        assert tuple(merged[5, 99]) == (0, 0, 0, 0)

    def test_remove_background_requires_key(self):
        with pytest.raises(ValueError, match="key color"):
            merge_tiles(two_column_jobs(RED, BLUE), (100, 20), remove_background=True)

    def test_opaque_without_removal(self):
        """Test alpha is forced opaque when the background is kept."""
        jobs = two_column_jobs(RED, BLUE)
        jobs[0].result[:, :, 3] = 0
        merged = merge_tiles(jobs, (100, 20))
        assert (merged[:, :, 3] == 255).all()

    def test_mismatched_result_resized(self):
        """Test a result of the wrong size is resized to its geometry."""
        jobs = two_column_jobs(RED, BLUE)
        jobs[1].result = create_solid((7, 9), BLUE)
        merged = merge_tiles(jobs, (100, 20))
        assert merged.shape == (20, 100, 4)
        assert tuple(merged[10, 99]) == BLUE + (255,)

    def test_failed_tile_falls_back_to_original(self):
        """Test a tile without a result merges its original crop."""
        image = create_gradient((40, 80))
        result = split_image(image, plan_grid_with_counts(80, 40, 1, 2, 0.2))
        right = result.jobs[1]
        right.begin()
        right.fail("generation failed")
        result.jobs[0].result = create_solid(result.jobs[0].source.shape[:2], RED)

        merged = merge_tiles(result.jobs, (80, 40))
        assert np.array_equal(merged[:, right.geometry.x2 - 1], image[:, 79])

    def test_missing_tile_raises(self):
        jobs = two_column_jobs(RED, BLUE)
        jobs[0].result = None
        with pytest.raises(IncompleteTileSetError):
            merge_tiles(jobs, (100, 20))

    def test_uncovered_pixels_filled(self):
        """Test canvas pixels no tile covers get the fill color."""
        job = make_job(0, 0, 0, 0, 10, 10, result=create_solid((10, 10), RED))
        merged = merge_tiles([job], (20, 10))
        assert tuple(merged[5, 15]) == (255, 255, 255, 255)
        keyed = merge_tiles([job], (20, 10), key_spec=KeyColorSpec("green", 10))
        assert tuple(keyed[5, 15]) == GREEN + (255,)


class TestCompositeEngine:
    """Tests for re-entrant recomposition."""

    def test_recompose_with_new_tolerance(self):
        """Test changing tolerance only changes near-key pixels."""
        jobs = two_column_jobs(RED, GREEN)
        jobs[1].result[:, :, :3] = (30, 230, 30)
        engine = CompositeEngine(jobs, (100, 20))

        tight = engine.compose(KeyColorSpec("green", 5), remove_background=True)
        loose = engine.compose(KeyColorSpec("green", 15), remove_background=True)

        left_only = slice(0, jobs[1].geometry.x)
        right_only = slice(jobs[0].geometry.x2, 100)

        assert np.array_equal(tight[:, left_only], loose[:, left_only])
        assert (tight[:, right_only, 3] == 255).all()
        assert (loose[:, right_only, 3] == 0).all()
        # Across the seam the red content now wins outright
        assert (loose[:, jobs[1].geometry.x:jobs[0].geometry.x2, :3] == RED).all()

    def test_layers_cached(self):
        """Test tile buffers are prepared once until invalidated."""
        engine = CompositeEngine(two_column_jobs(RED, BLUE), (100, 20))
        first = engine.prepare()
        assert engine.prepare() is first
        engine.invalidate()
        assert engine.prepare() is not first

    def test_invalid_canvas(self):
        with pytest.raises(ValueError):
            CompositeEngine([], (0, 10))
