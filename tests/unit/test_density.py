import numpy as np
import pytest

from raycloud.core.cuboid import Cuboid
from raycloud.core.density import NEIGHBOUR_SHELLS, DensityVolume, DensityVoxel
from raycloud.core.rays import RayBatch
from raycloud.core.stream import ArrayRaySource
from raycloud.core.reader import PlyRaySource
from raycloud.examples.synthetic import plane_ray_cloud


def _volume(extent=(3.0, 1.0, 1.0)) -> DensityVolume:
    return DensityVolume(Cuboid(np.zeros(3), np.asarray(extent, dtype=np.float64)), 1.0)


def test_neighbour_shells_cover_all_26_offsets() -> None:
    assert [len(s) for s in NEIGHBOUR_SHELLS] == [6, 12, 8]
    offsets = {tuple(o) for shell in NEIGHBOUR_SHELLS for o in shell}
    assert len(offsets) == 26 and (0, 0, 0) not in offsets


def test_density_voxel_arithmetic() -> None:
    a = DensityVoxel(num_hits=1, num_rays=2, hit_length=0.5, miss_length=1.5)
    b = a + a * 0.5
    assert b.num_rays == pytest.approx(3.0)
    assert b.density == pytest.approx(1.5 / 3.0)
    a += DensityVoxel(num_rays=1, miss_length=2.0)
    assert a.num_rays == 3 and a.density == pytest.approx(1.0 / 4.0)
    assert DensityVoxel().density == 0.0


def test_bounded_ray_records_misses_then_hit() -> None:
    vol = _volume()
    vol.add_ray(np.array([0.5, 0.5, 0.5]), np.array([2.5, 0.5, 0.5]), bounded=True)
    first, middle, last = vol.voxel(0, 0, 0), vol.voxel(1, 0, 0), vol.voxel(2, 0, 0)
    assert (first.num_rays, first.num_hits) == (1, 0)
    assert first.miss_length == pytest.approx(0.5)
    assert middle.miss_length == pytest.approx(1.0)
    assert (last.num_rays, last.num_hits) == (1, 1)
    assert last.hit_length == pytest.approx(0.5)
    assert last.density == pytest.approx(2.0)


def test_unbounded_ray_only_misses() -> None:
    vol = _volume()
    vol.add_ray(np.array([0.5, 0.5, 0.5]), np.array([2.5, 0.5, 0.5]), bounded=False)
    assert vol.num_hits.sum() == 0
    assert vol.num_rays.sum() == 3
    assert vol.miss_length.sum() == pytest.approx(2.0)


def test_ray_leaving_the_volume_is_not_a_hit() -> None:
    vol = _volume()
    vol.add_ray(np.array([-2.0, 0.5, 0.5]), np.array([5.0, 0.5, 0.5]), bounded=True)
    assert vol.num_hits.sum() == 0
    np.testing.assert_allclose(vol.miss_length, [1.0, 1.0, 1.0])


def test_diagonal_ray_lengths_sum_to_clipped_length() -> None:
    vol = _volume((4.0, 4.0, 4.0))
    start, end = np.array([0.1, 0.2, 0.3]), np.array([3.7, 3.1, 2.9])
    vol.add_ray(start, end)
    total = vol.hit_length.sum() + vol.miss_length.sum()
    assert total == pytest.approx(np.linalg.norm(end - start))
    assert vol.num_hits.sum() == 1
    assert vol.voxel(3, 3, 2).num_hits == 1


def test_calculate_densities_resets_on_source_failure(tmp_path) -> None:
    vol = _volume()
    vol.add_ray(np.array([0.5, 0.5, 0.5]), np.array([2.5, 0.5, 0.5]))
    assert not vol.calculate_densities(PlyRaySource(tmp_path / "missing.ply"))
    assert vol.num_rays.sum() == 0 and vol.hit_length.sum() == 0


def test_calculate_densities_over_chunks() -> None:
    n = 40
    batch = RayBatch(
        starts=np.tile([0.5, 0.5, 0.5], (n, 1)),
        ends=np.tile([2.5, 0.5, 0.5], (n, 1)),
        times=np.zeros(n),
        colors=np.full((n, 4), 255, dtype=np.uint8),
    )
    vol = _volume()
    assert vol.calculate_densities(ArrayRaySource(batch), chunk_size=7)
    assert vol.voxel(2, 0, 0).num_hits == n
    assert vol.density()[2, 0, 0] == pytest.approx(2.0)
    assert vol.project(axis=0).shape == (1, 1)


def _cube_volume() -> DensityVolume:
    vol = _volume((3.0, 3.0, 3.0))
    vol.num_rays[:] = 4.0
    vol.miss_length[:] = 4.0
    centre = vol.flat_index(1, 1, 1)
    vol.num_rays[centre] = 1.0
    vol.num_hits[centre] = 1.0
    vol.miss_length[centre] = 0.0
    vol.hit_length[centre] = 0.5
    return vol


def test_neighbour_priors_borrow_from_face_shell() -> None:
    vol = _cube_volume()
    stats = vol.add_neighbour_priors(min_rays=10)
    centre = vol.voxel(1, 1, 1)
    # needs 9 more rays; the 6 face neighbours hold 24, so take 9/24 of them
    assert centre.num_rays == pytest.approx(10.0)
    assert centre.miss_length == pytest.approx(9.0)
    assert centre.num_hits == pytest.approx(1.0)
    assert stats.num_hit_voxels == 1 and stats.num_unsatisfied == 0
    # the border is never repaired
    assert vol.voxel(0, 0, 0).num_rays == pytest.approx(4.0)


def test_neighbour_priors_take_whole_shells_before_partial() -> None:
    vol = _cube_volume()
    vol.add_neighbour_priors(min_rays=60)
    # 59 needed: 24 from faces, 48 available from edges, so 35/48 of them
    centre = vol.voxel(1, 1, 1)
    assert centre.num_rays == pytest.approx(60.0)
    assert centre.miss_length == pytest.approx(24.0 + 48.0 * 35.0 / 48.0)


def test_neighbour_priors_report_unsatisfied_hits() -> None:
    vol = _volume((3.0, 3.0, 3.0))
    centre = vol.flat_index(1, 1, 1)
    vol.num_rays[centre] = 1.0
    vol.num_hits[centre] = 1.0
    vol.hit_length[centre] = 0.2
    stats = vol.add_neighbour_priors(min_rays=10)
    assert stats.num_unsatisfied == 1
    assert stats.unsatisfied_fraction == pytest.approx(1.0)


def test_neighbour_priors_skip_thin_volumes() -> None:
    stats = _volume().add_neighbour_priors()
    assert stats.num_hit_voxels == 0


def test_ray_starting_on_a_face_only_counts_voxels_it_enters() -> None:
    vol = _volume()
    vol.add_ray(np.array([1.0, 0.5, 0.5]), np.array([0.5, 0.5, 0.5]))
    np.testing.assert_allclose(vol.num_rays, [1.0, 0.0, 0.0])
    assert vol.voxel(0, 0, 0).num_hits == 1
    assert vol.voxel(0, 0, 0).hit_length == pytest.approx(0.5)


def test_ray_through_a_voxel_corner_skips_touched_voxels() -> None:
    vol = _volume((2.0, 2.0, 1.0))
    start, end = np.array([0.5, 0.5, 0.5]), np.array([1.5, 1.5, 0.5])
    vol.add_ray(start, end)
    rays = vol.num_rays.reshape(1, 2, 2)[0]
    np.testing.assert_allclose(rays, [[1.0, 0.0], [0.0, 1.0]])
    total = vol.hit_length.sum() + vol.miss_length.sum()
    assert total == pytest.approx(np.linalg.norm(end - start))
    assert vol.voxel(1, 1, 0).num_hits == 1


def test_padded_volume_repairs_a_flat_cloud() -> None:
    cloud = plane_ray_cloud(10.0, 2000)
    bounds = cloud.calc_bounds()
    vol = DensityVolume.around(bounds, 0.5)
    assert vol.dims[2] == 3
    np.testing.assert_allclose(vol.box_min, bounds.min_bound - 0.5)
    assert vol.calculate_densities(ArrayRaySource(cloud.batch()))
    # every end point lands in an interior voxel
    hits = vol.num_hits.reshape(vol.dims[::-1])
    assert hits[:, :, 0].sum() == 0 and hits[:, :, -1].sum() == 0
    assert hits[0].sum() == 0 and hits[-1].sum() == 0
    assert hits.sum() == 2000
    stats = vol.add_neighbour_priors()
    assert stats.num_hit_voxels > 300
