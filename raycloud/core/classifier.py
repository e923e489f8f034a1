from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple
import numpy as np

from .cloud import Cloud
from .debug import DebugDraw, NullDebugDraw
from .grid import SpatialGrid
from .mesh import Mesh
from .progress import Progress
from .utils import as_points, as_vector, get_logger

_log = get_logger()


def _seg_dist_sqr(p: np.ndarray, a: np.ndarray, b: np.ndarray) -> float:
    ab = b - a
    denom = float(np.dot(ab, ab))
    t = 0.0 if denom == 0.0 else min(max(float(np.dot(p - a, ab)) / denom, 0.0), 1.0)
    d = p - (a + ab * t)
    return float(np.dot(d, d))


def _lexicographically_positive(v: np.ndarray) -> bool:
    for c in v:
        if c != 0.0:
            return bool(c > 0.0)
    return False


class Triangle:
    """Triangle corners plus the face normal ``(c1 - c0) x (c2 - c0)``.

    The normal is left unnormalised; only its sign matters for the segment
    test. ``dist_sqr_to_point`` uses the unit normal.
    """
    __slots__ = ("corners", "normal", "unit_normal", "sides")

    def __init__(self, corners: np.ndarray) -> None:
        self.corners = np.asarray(corners, dtype=np.float64).reshape(3, 3)
        c0, c1, c2 = self.corners
        self.normal = np.cross(c1 - c0, c2 - c0)
        length = float(np.linalg.norm(self.normal))
        self.unit_normal = self.normal / length if length > 0.0 else self.normal
        # outward (away from the triangle) in-plane direction of each edge i -> i+1
        self.sides = np.array([np.cross(self.corners[(i + 1) % 3] - self.corners[i], self.normal) for i in range(3)])

    def intersects_segment(self, start: np.ndarray, end: np.ndarray) -> Optional[float]:
        """Fraction along start->end where the segment crosses the triangle, or None."""
        c0 = self.corners[0]
        d1 = float(np.dot(start - c0, self.normal))
        d2 = float(np.dot(end - c0, self.normal))
        if d1 * d2 > 0.0 or d1 == d2:
            return None
        depth = d1 / (d1 - d2)
        contact = start + (end - start) * depth
        for i in range(3):
            s = float(np.dot(contact - self.corners[i], self.sides[i]))
            if s > 0.0:
                return None
            if s == 0.0 and not self._owns_edge(i, end - start):
                return None
        return depth

    def _owns_edge(self, i: int, direction: np.ndarray) -> bool:
        # A contact exactly on an edge shared by two triangles must count for
        # exactly one of them. Viewed along the segment, the neighbours lie on
        # opposite sides of the edge, so their outward perpendiculars are
        # opposite and only one is lexicographically positive.
        a = self.corners[i]
        perp = np.cross(direction, self.corners[(i + 1) % 3] - a)
        if np.dot(perp, self.corners[(i + 2) % 3] - a) > 0.0:
            perp = -perp
        return _lexicographically_positive(perp)

    def dist_sqr_to_point(self, point: np.ndarray) -> float:
        """Squared distance from ``point`` to the closest point on the triangle."""
        c = self.corners
        if not self.unit_normal.any():
            return min(_seg_dist_sqr(point, c[i], c[(i + 1) % 3]) for i in range(3))
        pos = point - self.unit_normal * float(np.dot(point - c[0], self.unit_normal))
        outs = [i for i in range(3) if float(np.dot(pos - c[i], self.sides[i])) > 0.0]
        if not outs:
            d = point - pos
            return float(np.dot(d, d))
        return min(_seg_dist_sqr(point, c[i], c[(i + 1) % 3]) for i in outs)

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.corners.min(axis=0), self.corners.max(axis=0)


@dataclass
class HeightField:
    """Surface heights on a horizontal grid; NaN where no height could be resolved."""
    heights: np.ndarray          # (nx, ny)
    origin: np.ndarray           # (x, y) of the grid's minimum corner
    voxel_width: float
    unresolved: int

    def cell_centre(self, ix: int, iy: int) -> np.ndarray:
        return self.origin + self.voxel_width * (np.array([ix, iy], dtype=np.float64) + 0.5)


class MeshClassifier:
    """Inside/outside and height queries against a triangle mesh.

    Triangles are bucketed in a SpatialGrid of ``voxel_width`` cells so each
    query only tests the triangles in the cells it passes through.
    """

    def __init__(
        self,
        mesh: Mesh,
        voxel_width: float = 1.0,
        debug_draw: Optional[DebugDraw] = None,
        progress: Optional[Progress] = None,
    ) -> None:
        if voxel_width <= 0.0:
            raise ValueError("voxel_width must be positive.")
        self.mesh = mesh
        self.voxel_width = float(voxel_width)
        self.debug_draw = debug_draw or NullDebugDraw()
        self.progress = progress
        self.triangles: List[Triangle] = [Triangle(mesh.vertices[f]) for f in mesh.faces]
        self._grid: Optional[SpatialGrid[int]] = None

    @property
    def grid(self) -> SpatialGrid[int]:
        if self._grid is None:
            box = self.mesh.bounds()
            grid: SpatialGrid[int] = SpatialGrid(box.min_bound, box.max_bound, self.voxel_width)
            for i, tri in enumerate(self.triangles):
                grid.insert_box(*tri.bounds(), i)
            self._grid = grid
        return self._grid

    # -- containment --
    def crossings(self, point: np.ndarray) -> int:
        """Number of triangles crossed by a vertical cast from ``point`` down out of the grid."""
        grid = self.grid
        ix, iy, iz = grid.index_of(point)
        if not (0 <= ix < grid.dims[0] and 0 <= iy < grid.dims[1]) or iz < 0:
            return 0
        end = np.array([point[0], point[1], grid.box_min[2] - self.voxel_width])
        tested: Set[int] = set()
        count = 0
        for z in range(min(iz, grid.dims[2] - 1), -1, -1):
            for t in grid.cell(ix, iy, z):
                if t in tested:
                    continue
                tested.add(t)
                if self.triangles[t].intersects_segment(point, end) is not None:
                    count += 1
        return count

    def classify(self, points: np.ndarray, offset: float = 0.0) -> np.ndarray:
        """Inside mask for ``points``.

        ``offset`` moves the surface along its vertex normals: positive
        grows the enclosed volume by that distance, negative shrinks it.
        """
        pts = as_points(points)
        if self.progress is not None:
            self.progress.begin("classify", len(pts))
        inside = np.zeros(len(pts), dtype=bool)
        for i, p in enumerate(pts):
            inside[i] = self.crossings(p) % 2 == 1
            if self.progress is not None:
                self.progress.increment()
        _log.info("%d/%d inside mesh", int(inside.sum()), len(pts))
        if offset == 0.0:
            return inside
        # only points on the far side of the surface can change class
        candidates = np.flatnonzero(~inside if offset > 0.0 else inside)
        near = self._near_surface(pts[candidates], offset)
        inside[candidates[near]] = offset > 0.0
        _log.info("%d/%d inside mesh offset by %g", int(inside.sum()), len(pts), offset)
        return inside

    def _near_surface(self, points: np.ndarray, offset: float) -> np.ndarray:
        """Which points lie within |offset| of the surface."""
        dist = abs(offset)
        box = self.mesh.bounds()
        grid: SpatialGrid[int] = SpatialGrid(box.min_bound - dist, box.max_bound + dist, self.voxel_width)
        vnormals = self.mesh.vertex_normals()
        for i, (tri, face) in enumerate(zip(self.triangles, self.mesh.faces)):
            swept = np.vstack([tri.corners, tri.corners + vnormals[face] * offset])
            # padded so points near edges and corners still find the triangle
            grid.insert_box(swept.min(axis=0) - dist, swept.max(axis=0) + dist, i)
        near = np.zeros(len(points), dtype=bool)
        dist_sqr = dist * dist
        for j, p in enumerate(points):
            index = grid.index_of(p)
            if not grid.in_range(*index):
                continue
            near[j] = any(self.triangles[t].dist_sqr_to_point(p) < dist_sqr for t in grid.cell(*index))
        return near

    def split_cloud(self, cloud: Cloud, offset: float = 0.0) -> Tuple[Cloud, Cloud]:
        """Partition ``cloud`` into (inside, outside) by end point; unbounded rays are outside."""
        bounded = np.flatnonzero(cloud.bounded_mask())
        inside = np.zeros(len(cloud), dtype=bool)
        inside[bounded] = self.classify(cloud.ends[bounded], offset)
        outside_cloud, inside_cloud = cloud.split_mask(inside)
        self.debug_draw.draw_cloud(inside_cloud.ends)
        return inside_cloud, outside_cloud

    # -- height field --
    def to_height_field(
        self,
        box_min: np.ndarray,
        box_max: np.ndarray,
        voxel_width: float,
        from_top: bool = True,
    ) -> HeightField:
        """Mesh surface height per horizontal cell of the box.

        Each cell centre casts vertically through the box. Where several
        triangles are crossed, the one nearest the cast origin wins: the
        top-most surface (``from_top``) or the bottom-most. Cells with no
        crossing are filled by averaging resolved Moore neighbours,
        repeatedly; cells that never gain a resolved neighbour stay NaN.
        """
        box_min = as_vector(box_min)
        box_max = as_vector(box_max)
        flat_max = box_max.copy()
        flat_max[2] = box_min[2] + 0.5 * voxel_width   # a single layer of cells
        grid: SpatialGrid[int] = SpatialGrid(box_min, flat_max, voxel_width)
        for i, tri in enumerate(self.triangles):
            lo, hi = tri.bounds()
            if np.any(hi[:2] < box_min[:2]) or np.any(lo[:2] > box_max[:2]):
                continue
            grid.insert_box(np.array([lo[0], lo[1], box_min[2]]), np.array([hi[0], hi[1], box_min[2]]), i)

        nx, ny = grid.dims[0], grid.dims[1]
        heights = np.full((nx, ny), np.nan)
        top, base = box_max[2], box_min[2]
        cast_from, cast_to = (top, base) if from_top else (base, top)
        for (x, y, _), bucket in grid.occupied():
            centre = box_min[:2] + voxel_width * (np.array([x, y]) + 0.5)
            start = np.array([centre[0], centre[1], cast_from])
            end = np.array([centre[0], centre[1], cast_to])
            depths = [d for d in (self.triangles[t].intersects_segment(start, end) for t in bucket) if d is not None]
            if depths:
                heights[x, y] = cast_from + (cast_to - cast_from) * min(depths)

        unresolved = _fill_gaps(heights)
        if unresolved:
            _log.warning("Height field: %d/%d cells have no reachable surface height", unresolved, nx * ny)
        return HeightField(heights=heights, origin=box_min[:2].copy(), voxel_width=float(voxel_width), unresolved=unresolved)


def _fill_gaps(field: np.ndarray) -> int:
    """Fill NaN cells with the mean of resolved Moore neighbours, pass by pass. Returns cells left."""
    nx, ny = field.shape
    while True:
        unset = np.isnan(field)
        if not unset.any():
            return 0
        vals = np.pad(np.where(unset, 0.0, field), 1)
        counts = np.pad((~unset).astype(np.float64), 1)
        total = np.zeros_like(field)
        num = np.zeros_like(field)
        for dx in (-1, 0, 1):
            for dy in (-1, 0, 1):
                total += vals[1 + dx:1 + dx + nx, 1 + dy:1 + dy + ny]
                num += counts[1 + dx:1 + dx + nx, 1 + dy:1 + dy + ny]
        fillable = unset & (num > 0)
        if not fillable.any():
            return int(unset.sum())
        field[fillable] = total[fillable] / num[fillable]
