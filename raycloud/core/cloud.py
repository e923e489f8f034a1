from __future__ import annotations
from dataclasses import dataclass
import enum
from typing import Callable, Literal, Optional, Protocol, Set, Tuple, Union
import numpy as np
from laspy.errors import LaspyException  # type: ignore
from scipy.spatial import cKDTree

from .cuboid import Cuboid
from .debug import DebugDraw, NullDebugDraw
from .progress import Progress
from .rays import RayBatch, ray_bounded
from .stream import RaySink, RaySource, RaySourceError, RayStream, as_stream
from ..motion.pose import Pose
from .utils import get_logger

_log = get_logger()

VoxelKey = Tuple[int, int, int]

DEFAULT_SPACING_EXPONENT = 2.0
DEFAULT_SPACING_OVERESTIMATE = 5.0
MIN_SURFEL_EIGENVALUE = 1e-10


class BoundsFlag(enum.IntFlag):
    END = 1
    START = 2
    BOTH = 3


class SurfelError(ValueError):
    """Covariance of a ray's neighbourhood could not be decomposed."""


class NearestNeighbours(Protocol):
    def knn(self, points: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return (indices, squared distances), each (M, k); -1 / inf pad missing neighbours.

        A point is never its own neighbour.
        """
        ...


class KDTreeNeighbours:
    """k-nearest neighbours with scipy's cKDTree."""

    def __init__(self, eps: float = 0.0) -> None:
        self.eps = float(eps)

    def knn(self, points: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        m = len(points)
        if m == 0 or k <= 0:
            return np.zeros((m, max(k, 0)), dtype=np.int64), np.zeros((m, max(k, 0)))
        tree = cKDTree(points)
        dist, idx = tree.query(points, k=k + 1, eps=self.eps)
        dist = np.asarray(dist).reshape(m, k + 1)
        idx = np.asarray(idx).reshape(m, k + 1)
        # drop the query point itself; coincident duplicates may displace it, then drop the farthest
        is_self = idx == np.arange(m)[:, None]
        is_self[~is_self.any(axis=1), -1] = True
        keep = ~is_self
        idx = idx[keep].reshape(m, k).astype(np.int64)
        dist = dist[keep].reshape(m, k)
        missing = idx >= m
        idx[missing] = -1
        dist2 = np.where(missing, np.inf, dist * dist)
        return idx, dist2


@dataclass
class Surfels:
    """Per-ray local surface estimates. Rows of unbounded or skipped rays are not valid."""
    centroids: np.ndarray            # (N, 3)
    normals: np.ndarray              # (N, 3) facing the sensor
    dimensions: np.ndarray           # (N, 3) sqrt of eigenvalues, ascending
    matrices: np.ndarray             # (N, 3, 3) eigenvectors as columns
    neighbour_indices: np.ndarray    # (N, k) ray indices, -1 padded
    valid: np.ndarray                # (N,) bool


@dataclass
class RayCloudInfo:
    ends_bound: Cuboid
    starts_bound: Cuboid
    rays_bound: Cuboid
    num_bounded: int
    num_unbounded: int

    @property
    def num_rays(self) -> int:
        return self.num_bounded + self.num_unbounded


def _voxel_keys(points: np.ndarray, voxel_width: float) -> np.ndarray:
    return np.floor(points / voxel_width).astype(np.int64)


def _initial_spacing_width(bounds: Cuboid, num_points: int, exponent: float, overestimate: float) -> float:
    extent = bounds.extent
    positive = extent[extent > 0.0]
    if len(positive) == 0:
        raise ValueError("Cannot estimate point spacing of a cloud with zero extent.")
    # geometric mean of the extents; flat clouds fall back to their non-zero axes
    cloud_width = float(np.prod(positive) ** (1.0 / len(positive)))
    voxel_width = cloud_width / num_points ** (1.0 / exponent)
    return voxel_width * overestimate


def _rescale_spacing(voxel_width: float, num_points: int, num_voxels: int, exponent: float) -> float:
    points_per_voxel = num_points / num_voxels
    return voxel_width / points_per_voxel ** (1.0 / exponent)


class Cloud:
    """In-memory ray cloud: starts, ends, times and colors indexed in lockstep."""

    def __init__(self, batch: Optional[RayBatch] = None) -> None:
        batch = batch if batch is not None else RayBatch.empty()
        self.starts = batch.starts
        self.ends = batch.ends
        self.times = batch.times
        self.colors = batch.colors

    # -- basic container API --
    def __len__(self) -> int:
        return len(self.ends)

    def __repr__(self) -> str:
        return f"Cloud({len(self)} rays, {int(np.count_nonzero(self.bounded_mask()))} bounded)"

    def ray_count(self) -> int:
        return len(self.ends)

    def ray_bounded(self, i: int) -> bool:
        return bool(self.colors[i, 3] != 0)

    def bounded_mask(self) -> np.ndarray:
        return ray_bounded(self.colors)

    def batch(self) -> RayBatch:
        return RayBatch(starts=self.starts, ends=self.ends, times=self.times, colors=self.colors)

    def _assign(self, batch: RayBatch) -> None:
        self.starts, self.ends, self.times, self.colors = batch.as_tuple()

    def clear(self) -> None:
        self._assign(RayBatch.empty())

    def add_ray(self, start, end, time: float, color) -> None:
        self.extend(RayBatch(starts=[start], ends=[end], times=[time], colors=[color]))

    def extend(self, batch: RayBatch) -> None:
        self._assign(RayBatch.concatenate([self.batch(), batch]))

    def resize(self, size: int) -> None:
        n = len(self)
        if size <= n:
            self._assign(self.batch().take(slice(0, size)))
            return
        pad = size - n
        self.extend(RayBatch(
            starts=np.zeros((pad, 3)), ends=np.zeros((pad, 3)),
            times=np.zeros(pad), colors=np.zeros((pad, 4), dtype=np.uint8),
        ))

    def subset(self, index: np.ndarray) -> "Cloud":
        return Cloud(self.batch().take(index))

    # -- IO --
    def load(self, source: Union[RaySource, RayStream], chunk_size: Optional[int] = None) -> bool:
        """Drain ``source`` into this cloud. On failure the cloud is left empty."""
        stream = as_stream(source, chunk_size)
        try:
            batches = list(stream.chunks())
        except RaySourceError as exc:
            _log.error("Failed to load ray cloud: %s", exc)
            self.clear()
            return False
        self._assign(RayBatch.concatenate(batches))
        return True

    def save(self, sink: RaySink) -> bool:
        try:
            sink.write_batch(self.batch())
            sink.close()
        except (OSError, LaspyException) as exc:
            _log.error("Failed to save ray cloud: %s", exc)
            return False
        return True

    # -- bulk statistics --
    def calc_bounds(self, flags: BoundsFlag = BoundsFlag.END, progress: Optional[Progress] = None) -> Optional[Cuboid]:
        """Bounds of the bounded rays, or None when there are none."""
        mask = self.bounded_mask()
        if progress is not None:
            progress.begin("calc_bounds", len(self))
        if not np.any(mask):
            return None
        box = Cuboid()
        if flags & BoundsFlag.END:
            box.grow(self.ends[mask])
        if flags & BoundsFlag.START:
            box.grow(self.starts[mask])
        if progress is not None:
            progress.set_progress(len(self))
        return box

    def moments(self) -> np.ndarray:
        """22 summary values: start mean/sigma, end mean/sigma, time mean/sigma, colour mean/sigma."""
        if len(self) == 0:
            raise ValueError("Cannot compute moments of an empty cloud.")
        col = self.colors.astype(np.float64) / 255.0
        parts = []
        for arr in (self.starts, self.ends, self.times[:, None], col):
            parts.append(arr.mean(axis=0))
            parts.append(arr.std(axis=0))
        return np.concatenate(parts)

    def estimate_point_spacing(
        self,
        exponent: float = DEFAULT_SPACING_EXPONENT,
        overestimate: float = DEFAULT_SPACING_OVERESTIMATE,
    ) -> float:
        """Two-pass estimate of the mean spacing between end points.

        Models ``num_points = (cloud_width / spacing) ** exponent``. Exponents
        near 2 suit surfaces and terrain, towards 2.5 thick vegetation. The
        first pass deliberately overestimates the width; the second rescales
        it by the measured points per occupied voxel.
        """
        bounds = self.calc_bounds(BoundsFlag.END)
        if bounds is None:
            raise ValueError("Cannot estimate point spacing: cloud has no bounded rays.")
        ends = self.ends[self.bounded_mask()]
        num_points = len(ends)
        voxel_width = _initial_spacing_width(bounds, num_points, exponent, overestimate)
        _log.info("initial voxel width estimate: %g", voxel_width)
        num_voxels = len(np.unique(_voxel_keys(ends, voxel_width), axis=0))
        width = _rescale_spacing(voxel_width, num_points, num_voxels, exponent)
        _log.info("estimated point spacing: %g", width)
        return width

    # -- modifiers --
    def transform(self, pose: Pose, time_delta: float = 0.0) -> None:
        self.starts = pose.apply(self.starts)
        self.ends = pose.apply(self.ends)
        self.times = self.times + time_delta

    def remove_unbounded_rays(self) -> None:
        self._assign(self.batch().take(self.bounded_mask()))

    def decimate(self, voxel_width: float, voxel_set: Optional[Set[VoxelKey]] = None) -> Set[VoxelKey]:
        """Keep the first ray (in index order) per occupied end-point voxel.

        Voxels already present in ``voxel_set`` are treated as occupied, which
        lets a stream be decimated chunk by chunk. Returns the updated set.
        """
        if voxel_width <= 0.0:
            raise ValueError("voxel_width must be positive.")
        voxel_set = set() if voxel_set is None else voxel_set
        if len(self) == 0:
            return voxel_set
        keys = _voxel_keys(self.ends, voxel_width)
        uniq, first = np.unique(keys, axis=0, return_index=True)
        order = np.argsort(first)
        keep = []
        for row in order:
            key = (int(uniq[row, 0]), int(uniq[row, 1]), int(uniq[row, 2]))
            if key in voxel_set:
                continue
            voxel_set.add(key)
            keep.append(first[row])
        self._assign(self.batch().take(np.asarray(keep, dtype=np.int64)))
        return voxel_set

    def split(self, predicate: Callable[["Cloud", int], bool]) -> Tuple["Cloud", "Cloud"]:
        """Rays where ``predicate(cloud, i)`` is False go to the first cloud, True to the second."""
        mask = np.fromiter((bool(predicate(self, i)) for i in range(len(self))), dtype=bool, count=len(self))
        return self.split_mask(mask)

    def split_mask(self, mask: np.ndarray) -> Tuple["Cloud", "Cloud"]:
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (len(self),):
            raise ValueError(f"Split mask shape {mask.shape} != ({len(self)},)")
        return self.subset(~mask), self.subset(mask)

    # -- local surfaces --
    def get_surfels(
        self,
        neighbour_count: int,
        neighbours: Optional[NearestNeighbours] = None,
        on_degenerate: Literal["skip", "raise"] = "skip",
        debug_draw: Optional[DebugDraw] = None,
    ) -> Surfels:
        """Fit a surfel to each bounded ray's end point and its nearest neighbours."""
        if neighbour_count <= 0:
            raise ValueError("neighbour_count must be positive.")
        if on_degenerate not in ("skip", "raise"):
            raise ValueError(f"Unknown degeneracy policy '{on_degenerate}'")
        neighbours = neighbours or KDTreeNeighbours()
        debug_draw = debug_draw or NullDebugDraw()

        n = len(self)
        out = Surfels(
            centroids=np.zeros((n, 3)),
            normals=np.zeros((n, 3)),
            dimensions=np.zeros((n, 3)),
            matrices=np.zeros((n, 3, 3)),
            neighbour_indices=np.full((n, neighbour_count), -1, dtype=np.int64),
            valid=np.zeros(n, dtype=bool),
        )
        ray_ids = np.flatnonzero(self.bounded_mask())
        if len(ray_ids) == 0:
            return out
        pts = self.ends[ray_ids]
        idx, _ = neighbours.knn(pts, neighbour_count)
        has_nb = idx >= 0
        num = has_nb.sum(axis=1)

        nbr = pts[np.where(has_nb, idx, 0)] * has_nb[:, :, None]
        centroid = (pts + nbr.sum(axis=1)) / (num + 1)[:, None]
        self_off = pts - centroid
        nbr_off = (pts[np.where(has_nb, idx, 0)] - centroid[:, None, :]) * has_nb[:, :, None]
        scatter = np.einsum("mi,mj->mij", self_off, self_off) + np.einsum("mki,mkj->mij", nbr_off, nbr_off)
        scatter /= (num + 1)[:, None, None]

        vals, vecs, ok = self._eigen(scatter, on_degenerate)

        normal = vecs[:, :, 0].copy()
        facing_away = np.einsum("mi,mi->m", pts - self.starts[ray_ids], normal) > 0.0
        normal[facing_away] *= -1.0

        out.centroids[ray_ids] = centroid
        out.normals[ray_ids] = normal
        out.dimensions[ray_ids] = np.sqrt(np.maximum(vals, MIN_SURFEL_EIGENVALUE))
        out.matrices[ray_ids] = vecs
        out.neighbour_indices[ray_ids] = np.where(has_nb, ray_ids[np.where(has_nb, idx, 0)], -1)
        out.valid[ray_ids] = ok
        bad = ray_ids[~ok]
        for arr in (out.centroids, out.normals, out.dimensions, out.matrices):
            arr[bad] = np.nan
        if len(bad):
            _log.warning("Skipped %d degenerate surfels out of %d", len(bad), len(ray_ids))

        debug_draw.draw_ellipsoids(out.centroids[out.valid], out.matrices[out.valid], out.dimensions[out.valid])
        return out

    @staticmethod
    def _eigen(scatter: np.ndarray, on_degenerate: str) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        ok = np.isfinite(scatter).all(axis=(1, 2))
        if not ok.all() and on_degenerate == "raise":
            raise SurfelError(f"{int((~ok).sum())} neighbourhoods have non-finite covariance")
        safe = np.where(ok[:, None, None], scatter, np.eye(3))
        try:
            vals, vecs = np.linalg.eigh(safe)
        except np.linalg.LinAlgError:
            vals = np.zeros((len(safe), 3))
            vecs = np.tile(np.eye(3), (len(safe), 1, 1))
            for i, mat in enumerate(safe):
                try:
                    vals[i], vecs[i] = np.linalg.eigh(mat)
                except np.linalg.LinAlgError as exc:
                    if on_degenerate == "raise":
                        raise SurfelError(f"Eigen decomposition failed for neighbourhood {i}") from exc
                    ok[i] = False
        return vals, vecs, ok

    def generate_normals(self, neighbour_count: int = 16) -> np.ndarray:
        return self.get_surfels(neighbour_count).normals

    # -- streaming helpers over a source --
    @staticmethod
    def get_info(source: Union[RaySource, RayStream], chunk_size: Optional[int] = None) -> Optional[RayCloudInfo]:
        """Bounds and ray counts of a source without loading it. None on read failure."""
        info = RayCloudInfo(Cuboid(), Cuboid(), Cuboid(), 0, 0)

        def visit(starts, ends, times, colors) -> None:
            bounded = ray_bounded(colors)
            info.ends_bound.grow(ends[bounded])
            info.starts_bound.grow(starts)
            info.rays_bound.grow(ends)
            info.rays_bound.grow(starts)
            info.num_bounded += int(np.count_nonzero(bounded))
            info.num_unbounded += int(len(bounded) - np.count_nonzero(bounded))

        if not as_stream(source, chunk_size).for_each_chunk(visit):
            return None
        return info

    @staticmethod
    def estimate_point_spacing_streaming(
        source: Union[RaySource, RayStream],
        bounds: Cuboid,
        num_points: int,
        exponent: float = DEFAULT_SPACING_EXPONENT,
        overestimate: float = DEFAULT_SPACING_OVERESTIMATE,
        chunk_size: Optional[int] = None,
    ) -> float:
        """As :meth:`estimate_point_spacing`, for a source too large to load.

        ``bounds`` and ``num_points`` describe the bounded end points (see
        :meth:`get_info`). Returns 0.0 if the source cannot be read.
        """
        if num_points <= 0:
            raise ValueError("Cannot estimate point spacing: no bounded rays.")
        voxel_width = _initial_spacing_width(bounds, num_points, exponent, overestimate)
        _log.info("initial voxel width estimate: %g", voxel_width)
        occupied: Set[VoxelKey] = set()

        def visit(starts, ends, times, colors) -> None:
            keys = np.unique(_voxel_keys(ends[ray_bounded(colors)], voxel_width), axis=0)
            occupied.update(map(tuple, keys.tolist()))

        if not as_stream(source, chunk_size).for_each_chunk(visit):
            return 0.0
        width = _rescale_spacing(voxel_width, num_points, len(occupied), exponent)
        _log.info("estimated point spacing: %g", width)
        return width
