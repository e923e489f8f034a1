from __future__ import annotations
from dataclasses import dataclass
import itertools
from typing import List, Optional, Tuple, Union
import numpy as np

from .cuboid import Cuboid
from .rays import RayBatch
from .stream import RaySource, RayStream, as_stream
from .utils import get_logger

_log = get_logger()

DEFAULT_MIN_RAYS = 10
DEFAULT_WARN_FRACTION = 0.5

# 26 neighbour offsets grouped by how many axes they step along:
# 6 face, 12 edge and 8 corner neighbours, nearest shell first.
NEIGHBOUR_SHELLS: Tuple[np.ndarray, ...] = tuple(
    np.array([o for o in itertools.product((-1, 0, 1), repeat=3) if sum(map(abs, o)) == k], dtype=np.int64)
    for k in (1, 2, 3)
)


@dataclass
class DensityVoxel:
    """Evidence gathered in one voxel: lengths of rays passing through and ending in it."""
    num_hits: float = 0.0
    num_rays: float = 0.0
    hit_length: float = 0.0
    miss_length: float = 0.0

    def __add__(self, other: "DensityVoxel") -> "DensityVoxel":
        return DensityVoxel(
            self.num_hits + other.num_hits,
            self.num_rays + other.num_rays,
            self.hit_length + other.hit_length,
            self.miss_length + other.miss_length,
        )

    def __iadd__(self, other: "DensityVoxel") -> "DensityVoxel":
        self.num_hits += other.num_hits
        self.num_rays += other.num_rays
        self.hit_length += other.hit_length
        self.miss_length += other.miss_length
        return self

    def __mul__(self, scale: float) -> "DensityVoxel":
        return DensityVoxel(
            self.num_hits * scale,
            self.num_rays * scale,
            self.hit_length * scale,
            self.miss_length * scale,
        )

    __rmul__ = __mul__

    @property
    def density(self) -> float:
        """Hits per metre of ray passing through the voxel; 0 with no evidence."""
        total = self.hit_length + self.miss_length
        return self.num_hits / total if total > 0.0 else 0.0


@dataclass
class PriorStats:
    num_hit_voxels: int
    num_unsatisfied: int

    @property
    def unsatisfied_fraction(self) -> float:
        return self.num_unsatisfied / self.num_hit_voxels if self.num_hit_voxels else 0.0


class DensityVolume:
    """Per-voxel ray density over a bounding box.

    Each ray is walked voxel by voxel (Amanatides & Woo). A voxel the ray
    only passes through gains a miss and the length travelled inside it;
    the voxel where a bounded ray ends gains a hit and the partial length.
    Lanes are flat numpy arrays indexed ``ix + nx * (iy + ny * iz)``.
    """

    def __init__(
        self,
        bounds: Cuboid,
        voxel_width: float,
        dims: Optional[Tuple[int, int, int]] = None,
    ) -> None:
        if voxel_width <= 0.0:
            raise ValueError("voxel_width must be positive.")
        if bounds.is_empty():
            raise ValueError("DensityVolume needs non-empty bounds.")
        self.voxel_width = float(voxel_width)
        self.box_min = bounds.min_bound.copy()
        if dims is None:
            extent = bounds.extent
            dims = tuple(max(1, int(np.ceil(e / self.voxel_width))) for e in extent)  # type: ignore[assignment]
        self.dims: Tuple[int, int, int] = tuple(int(d) for d in dims)  # type: ignore[assignment]
        self.box_max = self.box_min + self.voxel_width * np.asarray(self.dims, dtype=np.float64)
        self.bounds = Cuboid(self.box_min.copy(), self.box_max.copy())
        self.reset()

    @classmethod
    def around(cls, bounds: Cuboid, voxel_width: float, padding: int = 1) -> "DensityVolume":
        """Volume covering ``bounds`` with ``padding`` empty voxels on every side.

        Every voxel that can hold data is then interior, so
        :meth:`add_neighbour_priors` reaches it even for a flat cloud.
        """
        if bounds.is_empty():
            raise ValueError("DensityVolume needs non-empty bounds.")
        pad = padding * float(voxel_width)
        dims = tuple(int(np.floor(e / voxel_width)) + 1 + 2 * padding for e in bounds.extent)
        return cls(Cuboid(bounds.min_bound - pad, bounds.max_bound + pad), voxel_width, dims)  # type: ignore[arg-type]

    def reset(self) -> None:
        n = int(np.prod(self.dims))
        self.num_hits = np.zeros(n)
        self.num_rays = np.zeros(n)
        self.hit_length = np.zeros(n)
        self.miss_length = np.zeros(n)

    def __repr__(self) -> str:
        return f"DensityVolume(dims={self.dims}, voxel_width={self.voxel_width})"

    def flat_index(self, ix: int, iy: int, iz: int) -> int:
        nx, ny, nz = self.dims
        if not (0 <= ix < nx and 0 <= iy < ny and 0 <= iz < nz):
            raise IndexError(f"Voxel ({ix}, {iy}, {iz}) outside dims {self.dims}")
        return ix + nx * (iy + ny * iz)

    def voxel(self, ix: int, iy: int, iz: int) -> DensityVoxel:
        i = self.flat_index(ix, iy, iz)
        return DensityVoxel(
            float(self.num_hits[i]), float(self.num_rays[i]),
            float(self.hit_length[i]), float(self.miss_length[i]),
        )

    # -- accumulation --
    def _walk(self, start: np.ndarray, end: np.ndarray, bounded: bool) -> Tuple[List[int], List[float], bool]:
        """Voxels crossed by start->end with the length travelled in each.

        The last voxel listed is where the ray stops; the returned flag says
        whether that stop is a hit (a bounded ray ending inside the volume).
        """
        clipped = self.bounds.clip_segment(start, end)
        if clipped is None:
            return [], [], False
        p0, p1, end_clipped = clipped
        d = p1 - p0
        length = float(np.linalg.norm(d))
        nx, ny, _ = self.dims
        upper = np.asarray(self.dims, dtype=np.int64) - 1
        # seed from just inside the ray so a start on a voxel face picks the voxel the ray enters
        seed = p0 + d * (1e-9 * self.voxel_width / length) if length > 0.0 else p0
        cell = np.clip(np.floor((seed - self.box_min) / self.voxel_width).astype(np.int64), 0, upper)
        end_cell = np.clip(np.floor((p1 - self.box_min) / self.voxel_width).astype(np.int64), 0, upper)

        step = np.sign(d).astype(np.int64)
        t_max = np.full(3, np.inf)
        t_delta = np.full(3, np.inf)
        for k in range(3):
            if d[k] != 0.0:
                edge = self.box_min[k] + self.voxel_width * (cell[k] + (1 if step[k] > 0 else 0))
                t_max[k] = (edge - p0[k]) / d[k]
                t_delta[k] = self.voxel_width / abs(d[k])

        cells: List[int] = []
        lengths: List[float] = []
        t = 0.0
        while True:
            axis = int(np.argmin(t_max))
            if np.array_equal(cell, end_cell) or t_max[axis] >= 1.0:
                cells.append(int(cell[0] + nx * (cell[1] + ny * cell[2])))
                lengths.append((1.0 - t) * length)
                break
            # crossing an edge or corner steps through voxels the ray only touches
            if t_max[axis] > t:
                cells.append(int(cell[0] + nx * (cell[1] + ny * cell[2])))
                lengths.append((t_max[axis] - t) * length)
                t = float(t_max[axis])
            cell[axis] += step[axis]
            t_max[axis] += t_delta[axis]
            if not 0 <= cell[axis] <= upper[axis]:
                break
        return cells, lengths, bounded and not end_clipped

    def add_ray(self, start: np.ndarray, end: np.ndarray, bounded: bool = True) -> None:
        self.add_rays(RayBatch(
            starts=[start], ends=[end], times=[0.0],
            colors=[(0, 0, 0, 255 if bounded else 0)],
        ))

    def add_rays(self, batch: RayBatch) -> None:
        """Walk every ray of the batch and accumulate into the lanes."""
        miss_cells: List[int] = []
        miss_lengths: List[float] = []
        hit_cells: List[int] = []
        hit_lengths: List[float] = []
        for start, end, bounded in zip(batch.starts, batch.ends, batch.bounded):
            cells, lengths, hit = self._walk(start, end, bool(bounded))
            if not cells:
                continue
            if hit:
                miss_cells.extend(cells[:-1])
                miss_lengths.extend(lengths[:-1])
                hit_cells.append(cells[-1])
                hit_lengths.append(lengths[-1])
            else:
                miss_cells.extend(cells)
                miss_lengths.extend(lengths)
        if miss_cells:
            idx = np.asarray(miss_cells, dtype=np.int64)
            np.add.at(self.num_rays, idx, 1.0)
            np.add.at(self.miss_length, idx, np.asarray(miss_lengths))
        if hit_cells:
            idx = np.asarray(hit_cells, dtype=np.int64)
            np.add.at(self.num_rays, idx, 1.0)
            np.add.at(self.num_hits, idx, 1.0)
            np.add.at(self.hit_length, idx, np.asarray(hit_lengths))

    def calculate_densities(self, source: Union[RaySource, RayStream], chunk_size: Optional[int] = None) -> bool:
        """Accumulate every ray of ``source``. On a source failure the volume is reset."""
        self.reset()
        stream = as_stream(source, chunk_size)

        def visit(starts, ends, times, colors) -> None:
            self.add_rays(RayBatch(starts=starts, ends=ends, times=times, colors=colors))

        if not stream.for_each_chunk(visit):
            self.reset()
            return False
        _log.info(
            "Density volume %s: %d rays, %d hits accumulated",
            self.dims, int(self.num_rays.sum()), int(self.num_hits.sum()),
        )
        return True

    # -- repair --
    def add_neighbour_priors(
        self,
        min_rays: int = DEFAULT_MIN_RAYS,
        warn_fraction: float = DEFAULT_WARN_FRACTION,
    ) -> PriorStats:
        """Top up under-observed voxels with evidence from their neighbours.

        Each interior voxel with fewer than ``min_rays`` rays borrows from
        its face, then edge, then corner neighbours until it has enough,
        taking a proportional share of the last shell it needs. Neighbour
        values are read from a snapshot taken before any voxel is changed.
        """
        nx, ny, nz = self.dims
        lanes = np.stack([self.num_hits, self.num_rays, self.hit_length, self.miss_length]).reshape(4, nz, ny, nx)
        if min(nx, ny, nz) < 3:
            _log.warning("Density volume %s too thin for neighbour priors", self.dims)
            return PriorStats(num_hit_voxels=0, num_unsatisfied=0)

        inner = (slice(None), slice(1, -1), slice(1, -1), slice(1, -1))
        centre = lanes[inner]
        remaining = np.maximum(float(min_rays) - centre[1], 0.0)
        prior = np.zeros_like(centre)
        for shell in NEIGHBOUR_SHELLS:
            shell_sum = np.zeros_like(centre)
            for dx, dy, dz in shell:
                shell_sum += lanes[:, 1 + dz:nz - 1 + dz, 1 + dy:ny - 1 + dy, 1 + dx:nx - 1 + dx]
            shell_rays = shell_sum[1]
            partial = (remaining > 0.0) & (shell_rays >= remaining)
            scale = np.where(remaining > 0.0, 1.0, 0.0)
            np.divide(remaining, shell_rays, out=scale, where=partial)
            prior += shell_sum * scale
            remaining = np.where(partial, 0.0, np.maximum(remaining - shell_rays, 0.0))

        repaired = lanes.copy()
        repaired[inner] += prior
        self.num_hits, self.num_rays, self.hit_length, self.miss_length = (
            lane.reshape(-1).copy() for lane in repaired
        )

        hit_voxels = centre[0] > 0.0
        stats = PriorStats(
            num_hit_voxels=int(hit_voxels.sum()),
            num_unsatisfied=int((hit_voxels & (remaining > 0.0)).sum()),
        )
        fraction = stats.unsatisfied_fraction
        if fraction > warn_fraction:
            _log.warning(
                "%.1f%% of hit voxels have fewer than %d rays even with neighbour priors; "
                "consider a larger voxel width", 100.0 * fraction, min_rays,
            )
        elif fraction < 0.01:
            _log.info(
                "%.2f%% of hit voxels lack evidence after neighbour priors; "
                "a smaller voxel width may be possible", 100.0 * fraction,
            )
        else:
            _log.info("%.1f%% of hit voxels lack evidence after neighbour priors", 100.0 * fraction)
        return stats

    # -- outputs --
    def _grid(self, lane: np.ndarray) -> np.ndarray:
        nx, ny, nz = self.dims
        return lane.reshape(nz, ny, nx).transpose(2, 1, 0)

    def density(self) -> np.ndarray:
        """Per-voxel density indexed ``[ix, iy, iz]``."""
        total = self.hit_length + self.miss_length
        dens = np.zeros_like(total)
        np.divide(self.num_hits, total, out=dens, where=total > 0.0)
        return self._grid(dens)

    def project(self, axis: int = 2) -> np.ndarray:
        """Densities summed along ``axis``: a 2D image of the volume seen down that axis."""
        if axis not in (0, 1, 2):
            raise ValueError(f"axis must be 0, 1 or 2, got {axis}")
        return self.density().sum(axis=axis)
