import numpy as np
import pytest

from raycloud.core.progress import Progress
from raycloud.core.rays import RayBatch
from raycloud.core.reader import PlyRaySource
from raycloud.core.splitter import (
    alpha_predicate,
    box_predicate,
    colour_predicate,
    plane_predicate,
    range_predicate,
    raydir_predicate,
    single_colour_predicate,
    split_colours,
    split_grid,
    split_stream,
    time_percent_threshold,
    time_predicate,
    tube_predicate,
)
from raycloud.core.stream import ArrayRaySource
from raycloud.examples.synthetic import uniform_ray_cloud


class _ListSink:
    def __init__(self) -> None:
        self.batches = []
        self.closed = False

    def write_batch(self, batch: RayBatch) -> None:
        self.batches.append(batch)

    def close(self) -> None:
        self.closed = True

    def merged(self) -> RayBatch:
        return RayBatch.concatenate(self.batches)


def test_split_stream_routes_every_ray_once() -> None:
    cloud = uniform_ray_cloud((0, 0, 0), (2, 2, 2), 250, unbounded_fraction=0.2)
    inside, outside = _ListSink(), _ListSink()
    progress = Progress()
    counts = split_stream(
        ArrayRaySource(cloud.batch()), plane_predicate(np.array([1.0, 0.0, 0.0])),
        inside, outside, progress=progress, chunk_size=40,
    )
    assert counts is not None
    assert sum(counts) == 250
    assert inside.closed and outside.closed
    assert progress.progress == 250
    assert np.all(inside.merged().ends[:, 0] <= 1.0)
    assert np.all(outside.merged().ends[:, 0] > 1.0)
    np.testing.assert_allclose(
        np.sort(np.concatenate([inside.merged().times, outside.merged().times])), np.sort(cloud.times)
    )


def test_split_stream_reports_source_failure(tmp_path) -> None:
    inside, outside = _ListSink(), _ListSink()
    assert split_stream(PlyRaySource(tmp_path / "missing.ply"), time_predicate(0.0), inside, outside) is None
    assert inside.closed and outside.closed


def test_predicates_select_expected_rays() -> None:
    batch = RayBatch(
        starts=np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 0.0], [5.0, 0.0, 0.0]]),
        ends=np.array([[0.5, 0.0, 0.0], [3.0, 0.0, 0.0], [5.0, 0.0, 1.0]]),
        times=np.array([0.0, 1.0, 2.0]),
        colors=np.array([[0, 0, 0, 255], [0, 0, 0, 0], [0, 0, 0, 255]], dtype=np.uint8),
    )
    assert alpha_predicate(0.0)(batch).tolist() == [True, False, True]
    assert range_predicate(2.0)(batch).tolist() == [False, True, False]
    assert time_predicate(0.5)(batch).tolist() == [False, True, True]
    assert box_predicate(np.zeros(3), np.ones(3))(batch).tolist() == [False, True, True]
    tube = tube_predicate(np.zeros(3), np.array([4.0, 0.0, 0.0]), 0.5)
    assert tube(batch).tolist() == [False, False, True]
    assert raydir_predicate(np.array([0.0, 0.0, 0.8]))(batch).tolist() == [False, False, True]


def test_time_percent_threshold_spans_source() -> None:
    cloud = uniform_ray_cloud((0, 0, 0), (1, 1, 1), 101)
    threshold = time_percent_threshold(ArrayRaySource(cloud.batch()), 50.0)
    assert threshold == pytest.approx(0.05)


def test_split_grid_partitions_by_end_cell() -> None:
    cloud = uniform_ray_cloud((0, 0, 0), (3, 1, 1), 300)
    parts = split_grid(ArrayRaySource(cloud.batch()), 1.0, chunk_size=64)
    assert sorted(parts) == [(0, 0, 0), (1, 0, 0), (2, 0, 0)]
    assert sum(len(p) for p in parts.values()) == 300
    for (i, _, _), part in parts.items():
        assert np.all(np.floor(part.ends[:, 0]) == i)


def test_split_grid_zero_width_leaves_axis_whole() -> None:
    cloud = uniform_ray_cloud((0, 0, 0), (3, 3, 3), 200)
    parts = split_grid(ArrayRaySource(cloud.batch()), (0.0, 1.5, 0.0))
    assert sorted(parts) == [(0, 0, 0), (0, 1, 0)]


def test_split_grid_overlap_duplicates_boundary_rays() -> None:
    cloud = uniform_ray_cloud((0, 0, 0), (3, 1, 1), 300)
    plain = split_grid(ArrayRaySource(cloud.batch()), (1.0, 0.0, 0.0))
    grown = split_grid(ArrayRaySource(cloud.batch()), (1.0, 0.0, 0.0), overlap=0.1)
    assert sum(len(p) for p in grown.values()) > 300
    for cell, part in plain.items():
        assert set(part.times.tolist()) <= set(grown[cell].times.tolist())
    for (i, _, _), part in grown.items():
        assert np.all(part.ends[:, 0] >= i - 0.1) and np.all(part.ends[:, 0] <= i + 1.1)


def test_split_grid_rejects_all_zero_widths() -> None:
    cloud = uniform_ray_cloud((0, 0, 0), (1, 1, 1), 5)
    with pytest.raises(ValueError):
        split_grid(ArrayRaySource(cloud.batch()), 0.0)


def test_split_grid_with_a_time_period() -> None:
    cloud = uniform_ray_cloud((0, 0, 0), (3, 1, 1), 300)
    parts = split_grid(ArrayRaySource(cloud.batch()), (1.0, 0.0, 0.0), period=0.1, chunk_size=64)
    assert all(len(cell) == 4 for cell in parts)
    assert {cell[3] for cell in parts} == {0, 1, 2}
    assert sum(len(p) for p in parts.values()) == 300
    for (i, _, _, slot), part in parts.items():
        assert np.all(np.floor(part.ends[:, 0]) == i)
        assert np.all(np.floor(part.times / 0.1) == slot)


def test_split_grid_by_time_alone() -> None:
    cloud = uniform_ray_cloud((0, 0, 0), (3, 1, 1), 300)
    parts = split_grid(ArrayRaySource(cloud.batch()), 0.0, period=0.1)
    assert sorted(parts) == [(0, 0, 0, 0), (0, 0, 0, 1), (0, 0, 0, 2)]


def _coloured_batch() -> RayBatch:
    return RayBatch(
        starts=np.zeros((4, 3)),
        ends=np.arange(12, dtype=np.float64).reshape(4, 3),
        times=np.arange(4, dtype=np.float64),
        colors=np.array(
            [[255, 0, 0, 255], [100, 0, 0, 255], [0, 0, 255, 255], [255, 0, 0, 0]], dtype=np.uint8
        ),
    )


def test_colour_predicates() -> None:
    batch = _coloured_batch()
    assert colour_predicate(np.array([0.5, 0.0, 0.0]))(batch).tolist() == [True, False, False, True]
    assert single_colour_predicate((255, 0, 0))(batch).tolist() == [False, True, True, False]
    with pytest.raises(ValueError):
        colour_predicate(np.zeros(3))
    with pytest.raises(ValueError):
        single_colour_predicate((256, 0, 0))


def test_split_colours_gives_one_cloud_per_colour() -> None:
    parts = split_colours(ArrayRaySource(_coloured_batch()), chunk_size=3)
    assert sorted(parts) == [(0, 0, 255), (100, 0, 0), (255, 0, 0)]
    assert len(parts[(255, 0, 0)]) == 2
    np.testing.assert_allclose(parts[(255, 0, 0)].times, [0.0, 3.0])


def test_split_colours_reports_source_failure(tmp_path) -> None:
    assert split_colours(PlyRaySource(tmp_path / "missing.ply")) is None
