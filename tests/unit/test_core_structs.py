import threading

import numpy as np
import pytest

from raycloud.core.cuboid import Cuboid
from raycloud.core.grid import SpatialGrid
from raycloud.core.progress import Progress, ProgressThread
from raycloud.core.rays import RayBatch


def test_raybatch_rejects_mismatched_lengths() -> None:
    with pytest.raises(ValueError):
        RayBatch(
            starts=np.zeros((2, 3)),
            ends=np.zeros((2, 3)),
            times=np.zeros(1),
            colors=np.zeros((2, 4), dtype=np.uint8),
        )


def test_raybatch_bounded_follows_alpha() -> None:
    batch = RayBatch(
        starts=np.zeros((3, 3)),
        ends=np.ones((3, 3)),
        times=np.zeros(3),
        colors=np.array([[0, 0, 0, 255], [0, 0, 0, 0], [9, 9, 9, 1]], dtype=np.uint8),
    )
    np.testing.assert_array_equal(batch.bounded, [True, False, True])


def test_empty_cuboid_grows_to_points() -> None:
    box = Cuboid()
    assert box.is_empty()
    box.grow(np.array([[1.0, 2.0, 3.0], [-1.0, 0.0, 5.0]]))
    np.testing.assert_allclose(box.min_bound, [-1.0, 0.0, 3.0])
    np.testing.assert_allclose(box.max_bound, [1.0, 2.0, 5.0])
    assert box.contains(np.array([[0.0, 1.0, 4.0], [2.0, 1.0, 4.0]])).tolist() == [True, False]


def test_cuboid_clip_segment_reports_clipped_end() -> None:
    box = Cuboid(np.zeros(3), np.ones(3))
    start, end, end_clipped = box.clip_segment(np.array([-1.0, 0.5, 0.5]), np.array([2.0, 0.5, 0.5]))
    np.testing.assert_allclose(start, [0.0, 0.5, 0.5])
    np.testing.assert_allclose(end, [1.0, 0.5, 0.5])
    assert end_clipped
    assert box.clip_segment(np.array([-1.0, 2.0, 0.5]), np.array([2.0, 2.0, 0.5])) is None


def test_spatial_grid_dims_and_cells() -> None:
    grid: SpatialGrid[int] = SpatialGrid(np.zeros(3), np.array([2.5, 1.0, 0.0]), 1.0)
    assert grid.dims == (3, 1, 1)
    assert grid.cell(2, 0, 0) == []
    grid.insert(2, 0, 0, 7)
    grid.insert(2, 0, 0, 8)
    assert grid.cell(2, 0, 0) == [7, 8]
    with pytest.raises(IndexError):
        grid.cell(3, 0, 0)
    with pytest.raises(IndexError):
        grid.insert(-1, 0, 0, 1)


def test_spatial_grid_insert_box_is_clamped() -> None:
    grid: SpatialGrid[str] = SpatialGrid(np.zeros(3), np.full(3, 3.0), 1.0)
    grid.insert_box(np.array([-5.0, 0.5, 0.5]), np.array([1.5, 0.5, 0.5]), "a")
    occupied = sorted(idx for idx, _ in grid.occupied())
    assert occupied == [(0, 0, 0), (1, 0, 0)]


def test_progress_counts_across_threads() -> None:
    progress = Progress()
    progress.begin("work", 4000)

    def worker() -> None:
        for _ in range(1000):
            progress.increment()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    snap = progress.snapshot()
    assert snap.phase == "work"
    assert snap.progress == 4000
    assert progress.ratio() == pytest.approx(1.0)


def test_progress_thread_stops_cleanly() -> None:
    progress = Progress("idle", 0)
    with ProgressThread(progress, interval_s=0.01):
        progress.increment(3)
    assert progress.progress == 3
