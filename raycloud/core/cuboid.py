from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Tuple
import numpy as np

from .utils import as_points, as_vector


def _empty_min() -> np.ndarray:
    return np.full(3, np.inf)


def _empty_max() -> np.ndarray:
    return np.full(3, -np.inf)


@dataclass
class Cuboid:
    """Axis-aligned box.

    The default-constructed box is empty: ``min_bound`` at +inf and
    ``max_bound`` at -inf, so growing it by any point yields that point.
    """
    min_bound: np.ndarray = field(default_factory=_empty_min)
    max_bound: np.ndarray = field(default_factory=_empty_max)

    def __post_init__(self) -> None:
        self.min_bound = as_vector(self.min_bound).copy()
        self.max_bound = as_vector(self.max_bound).copy()

    @staticmethod
    def from_points(points: np.ndarray) -> "Cuboid":
        box = Cuboid()
        box.grow(points)
        return box

    def is_empty(self) -> bool:
        return bool(np.any(self.min_bound > self.max_bound))

    def grow(self, points: np.ndarray) -> "Cuboid":
        pts = as_points(points)
        if len(pts):
            self.min_bound = np.minimum(self.min_bound, pts.min(axis=0))
            self.max_bound = np.maximum(self.max_bound, pts.max(axis=0))
        return self

    def union(self, other: "Cuboid") -> "Cuboid":
        return Cuboid(np.minimum(self.min_bound, other.min_bound), np.maximum(self.max_bound, other.max_bound))

    @property
    def extent(self) -> np.ndarray:
        return self.max_bound - self.min_bound

    def contains(self, points: np.ndarray) -> np.ndarray:
        pts = as_points(points)
        return np.all((pts >= self.min_bound) & (pts <= self.max_bound), axis=1)

    def intersects(self, other: "Cuboid") -> bool:
        return bool(np.all(self.min_bound <= other.max_bound) and np.all(other.min_bound <= self.max_bound))

    def clip_segment(
        self, start: np.ndarray, end: np.ndarray
    ) -> Optional[Tuple[np.ndarray, np.ndarray, bool]]:
        """Clip the segment start->end to the box (slab method).

        Returns ``(start, end, end_clipped)`` or ``None`` when the segment
        misses the box entirely.
        """
        start = np.asarray(start, dtype=np.float64)
        end = np.asarray(end, dtype=np.float64)
        d = end - start
        t0, t1 = 0.0, 1.0
        for k in range(3):
            if d[k] == 0.0:
                if start[k] < self.min_bound[k] or start[k] > self.max_bound[k]:
                    return None
                continue
            ta = (self.min_bound[k] - start[k]) / d[k]
            tb = (self.max_bound[k] - start[k]) / d[k]
            if ta > tb:
                ta, tb = tb, ta
            t0 = max(t0, ta)
            t1 = min(t1, tb)
            if t0 > t1:
                return None
        clipped_start = start + d * t0 if t0 > 0.0 else start.copy()
        clipped_end = start + d * t1 if t1 < 1.0 else end.copy()
        return clipped_start, clipped_end, t1 < 1.0

    def clip_segments(
        self, starts: np.ndarray, ends: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Vectorised :meth:`clip_segment`: ``(starts, ends, valid)`` for (N, 3) inputs.

        Rows where ``valid`` is False miss the box; their clipped values are undefined.
        """
        s = as_points(starts)
        e = as_points(ends)
        d = e - s
        t0 = np.zeros(len(s))
        t1 = np.ones(len(s))
        valid = np.ones(len(s), dtype=bool)
        with np.errstate(divide="ignore", invalid="ignore"):
            for k in range(3):
                flat = d[:, k] == 0.0
                valid &= ~(flat & ((s[:, k] < self.min_bound[k]) | (s[:, k] > self.max_bound[k])))
                ta = (self.min_bound[k] - s[:, k]) / d[:, k]
                tb = (self.max_bound[k] - s[:, k]) / d[:, k]
                t0 = np.maximum(t0, np.where(flat, -np.inf, np.minimum(ta, tb)))
                t1 = np.minimum(t1, np.where(flat, np.inf, np.maximum(ta, tb)))
        valid &= t0 <= t1
        return s + d * t0[:, None], s + d * t1[:, None], valid
