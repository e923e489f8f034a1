import numpy as np
import pytest
from laspy.errors import LaspyException

from raycloud.core.cloud import BoundsFlag, Cloud, KDTreeNeighbours, SurfelError
from raycloud.core.rays import RayBatch
from raycloud.core.stream import ArrayRaySource
from raycloud.examples.synthetic import plane_ray_cloud, uniform_ray_cloud
from raycloud.motion.pose import Pose


def _cloud(ends, starts=None, alpha=None) -> Cloud:
    ends = np.asarray(ends, dtype=np.float64)
    n = len(ends)
    colors = np.full((n, 4), 255, dtype=np.uint8)
    if alpha is not None:
        colors[:, 3] = alpha
    return Cloud(RayBatch(
        starts=np.zeros((n, 3)) if starts is None else starts,
        ends=ends,
        times=np.arange(n, dtype=np.float64),
        colors=colors,
    ))


def test_calc_bounds_ignores_unbounded_rays() -> None:
    cloud = _cloud([[0, 0, 0], [1, 2, 3], [50, 50, 50]], alpha=[255, 255, 0])
    box = cloud.calc_bounds()
    np.testing.assert_allclose(box.min_bound, [0, 0, 0])
    np.testing.assert_allclose(box.max_bound, [1, 2, 3])

    both = cloud.calc_bounds(BoundsFlag.BOTH)
    np.testing.assert_allclose(both.max_bound, [1, 2, 3])


def test_calc_bounds_none_without_bounded_rays() -> None:
    assert _cloud([[1, 1, 1]], alpha=[0]).calc_bounds() is None
    assert Cloud().calc_bounds() is None


def test_bounds_grow_when_rays_are_added() -> None:
    cloud = uniform_ray_cloud((0, 0, 0), (1, 1, 1), 50)
    before = cloud.calc_bounds()
    cloud.add_ray([0, 0, 0], [4, -1, 0.5], 1.0, [255, 255, 255, 255])
    after = cloud.calc_bounds()
    assert np.all(after.min_bound <= before.min_bound)
    assert np.all(after.max_bound >= before.max_bound)


def test_split_partitions_every_ray() -> None:
    cloud = uniform_ray_cloud((0, 0, 0), (1, 1, 1), 101, unbounded_fraction=0.3)
    first, second = cloud.split(lambda c, i: c.ends[i, 0] > 0.5)
    assert len(first) + len(second) == len(cloud)
    assert np.all(first.ends[:, 0] <= 0.5)
    assert np.all(second.ends[:, 0] > 0.5)


def test_split_mask_rejects_wrong_shape() -> None:
    with pytest.raises(ValueError):
        _cloud([[0, 0, 0]]).split_mask(np.array([True, False]))


def test_decimate_keeps_first_ray_per_voxel() -> None:
    cloud = _cloud([[0.1, 0.1, 0.1], [0.2, 0.2, 0.2], [1.5, 0.1, 0.1], [1.6, 0.2, 0.3]])
    occupied = cloud.decimate(1.0)
    np.testing.assert_allclose(cloud.times, [0.0, 2.0])
    assert occupied == {(0, 0, 0), (1, 0, 0)}


def test_decimate_by_chunks_shares_voxel_set() -> None:
    first = _cloud([[0.1, 0.1, 0.1], [1.5, 0.1, 0.1]])
    second = _cloud([[0.7, 0.7, 0.7], [2.5, 0.1, 0.1]])
    voxels = first.decimate(1.0)
    second.decimate(1.0, voxels)
    assert len(first) == 2
    np.testing.assert_allclose(second.ends, [[2.5, 0.1, 0.1]])


def test_point_spacing_shrinks_with_density() -> None:
    sparse = uniform_ray_cloud((0, 0, 0), (10, 10, 0), 1000)
    dense = uniform_ray_cloud((0, 0, 0), (10, 10, 0), 100000)
    sparse_spacing = sparse.estimate_point_spacing()
    dense_spacing = dense.estimate_point_spacing()
    assert sparse_spacing > dense_spacing > 0.0


def test_point_spacing_shrinks_with_density_in_a_unit_cube() -> None:
    sparse = uniform_ray_cloud((0, 0, 0), (1, 1, 1), 1000)
    dense = uniform_ray_cloud((0, 0, 0), (1, 1, 1), 100000)
    sparse_spacing = sparse.estimate_point_spacing()
    dense_spacing = dense.estimate_point_spacing()
    assert sparse_spacing > dense_spacing > 0.0


def test_point_spacing_requires_bounded_rays() -> None:
    with pytest.raises(ValueError):
        Cloud().estimate_point_spacing()


def test_streaming_spacing_matches_in_memory() -> None:
    cloud = uniform_ray_cloud((0, 0, 0), (5, 5, 1), 5000)
    info = Cloud.get_info(ArrayRaySource(cloud.batch()), chunk_size=700)
    assert info.num_bounded == 5000 and info.num_unbounded == 0
    streamed = Cloud.estimate_point_spacing_streaming(
        ArrayRaySource(cloud.batch()), info.ends_bound, info.num_bounded, chunk_size=700
    )
    assert streamed == pytest.approx(cloud.estimate_point_spacing())


def test_transform_moves_starts_and_ends() -> None:
    cloud = _cloud([[1, 0, 0]], starts=np.array([[0, 0, 0]]))
    cloud.transform(Pose.from_xyz_rpy((0, 0, 1), (0, 0, 90)), time_delta=2.0)
    np.testing.assert_allclose(cloud.ends, [[0, 1, 1]], atol=1e-12)
    np.testing.assert_allclose(cloud.starts, [[0, 0, 1]], atol=1e-12)
    np.testing.assert_allclose(cloud.times, [2.0])


def test_remove_unbounded_and_resize() -> None:
    cloud = _cloud([[0, 0, 0], [1, 1, 1], [2, 2, 2]], alpha=[255, 0, 255])
    cloud.remove_unbounded_rays()
    assert len(cloud) == 2
    cloud.resize(5)
    assert cloud.ray_count() == 5
    assert not cloud.ray_bounded(4)
    cloud.resize(1)
    np.testing.assert_allclose(cloud.ends, [[0, 0, 0]])


def test_moments_has_22_values() -> None:
    m = uniform_ray_cloud((0, 0, 0), (1, 1, 1), 20).moments()
    assert m.shape == (22,)


def test_surfels_on_plane_face_the_sensor() -> None:
    cloud = plane_ray_cloud(size=10.0, num_rays=2000, height=3.0)
    surfels = cloud.get_surfels(12)
    assert surfels.valid.all()
    assert np.all(surfels.normals[:, 2] > 0.99)
    # flat neighbourhoods have a floored smallest dimension
    assert np.all(surfels.dimensions[:, 0] < 1e-3)
    assert np.all(surfels.neighbour_indices >= 0)
    assert not np.any(surfels.neighbour_indices == np.arange(len(cloud))[:, None])


def test_surfels_skip_unbounded_rays() -> None:
    cloud = uniform_ray_cloud((0, 0, 0), (1, 1, 1), 200, unbounded_fraction=0.5)
    surfels = cloud.get_surfels(5)
    np.testing.assert_array_equal(surfels.valid, cloud.bounded_mask())
    assert np.all(surfels.neighbour_indices[~cloud.bounded_mask()] == -1)


def test_degenerate_surfels_raise_when_asked() -> None:
    cloud = _cloud([[0, 0, 0], [np.nan, 0, 0], [1, 1, 1]])
    with pytest.raises(SurfelError):
        cloud.get_surfels(2, neighbours=_FixedNeighbours(), on_degenerate="raise")
    skipped = cloud.get_surfels(2, neighbours=_FixedNeighbours(), on_degenerate="skip")
    assert not skipped.valid.any()
    assert np.isnan(skipped.normals).all()


class _FixedNeighbours:
    """Every point's neighbours are the other two points."""

    def knn(self, points, k):
        n = len(points)
        idx = np.array([[j for j in range(n) if j != i][:k] for i in range(n)])
        return idx, np.zeros(idx.shape)


def test_kdtree_neighbours_pad_small_clouds() -> None:
    idx, dist = KDTreeNeighbours().knn(np.array([[0.0, 0, 0], [1.0, 0, 0]]), 3)
    assert idx.shape == (2, 3)
    assert idx[0, 0] == 1 and idx[1, 0] == 0
    assert np.all(idx[:, 1:] == -1)
    assert np.isinf(dist[:, 1:]).all()
    assert dist[0, 0] == pytest.approx(1.0)


class _FailingLasSink:
    def write_batch(self, batch: RayBatch) -> None:
        raise LaspyException("header offsets out of range")

    def close(self) -> None:
        pass


def test_save_reports_laspy_errors() -> None:
    cloud = _cloud([[0, 0, 0], [1, 1, 1]])
    assert not cloud.save(_FailingLasSink())
