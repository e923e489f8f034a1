from __future__ import annotations
import math
from typing import Dict, Generic, Iterator, List, Tuple, TypeVar
import numpy as np

from .utils import as_vector

T = TypeVar("T")

Index3 = Tuple[int, int, int]


class SpatialGrid(Generic[T]):
    """Uniform voxel index over an axis-aligned box.

    Each cell is a bucket of payloads (triangle ids, ray indices, ...).
    Payloads spanning several cells are inserted into each of them by the
    caller. Cells are allocated lazily; only touched cells cost memory.
    Coordinates outside ``[0, dims)`` raise IndexError.
    """

    def __init__(self, box_min: np.ndarray, box_max: np.ndarray, voxel_width: float) -> None:
        if voxel_width <= 0.0:
            raise ValueError("voxel_width must be positive.")
        self.box_min = as_vector(box_min).copy()
        self.box_max = as_vector(box_max).copy()
        self.voxel_width = float(voxel_width)
        extent = np.maximum(self.box_max - self.box_min, 0.0)
        self.dims: Tuple[int, int, int] = tuple(  # type: ignore[assignment]
            max(1, int(math.ceil(e / self.voxel_width))) for e in extent
        )
        self._cells: Dict[int, List[T]] = {}

    def __repr__(self) -> str:
        return f"SpatialGrid(dims={self.dims}, voxel_width={self.voxel_width}, occupied={len(self._cells)})"

    def in_range(self, ix: int, iy: int, iz: int) -> bool:
        return 0 <= ix < self.dims[0] and 0 <= iy < self.dims[1] and 0 <= iz < self.dims[2]

    def flat_index(self, ix: int, iy: int, iz: int) -> int:
        if not self.in_range(ix, iy, iz):
            raise IndexError(f"Grid cell ({ix}, {iy}, {iz}) outside dims {self.dims}")
        return ix + self.dims[0] * (iy + self.dims[1] * iz)

    def index_of(self, point: np.ndarray) -> Index3:
        """Cell coordinates containing ``point`` (unclamped)."""
        p = (np.asarray(point, dtype=np.float64) - self.box_min) / self.voxel_width
        return int(math.floor(p[0])), int(math.floor(p[1])), int(math.floor(p[2]))

    def clamp_index(self, index: Index3) -> Index3:
        return tuple(min(max(int(i), 0), d - 1) for i, d in zip(index, self.dims))  # type: ignore[return-value]

    def insert(self, ix: int, iy: int, iz: int, payload: T) -> None:
        self._cells.setdefault(self.flat_index(ix, iy, iz), []).append(payload)

    def insert_box(self, lo: np.ndarray, hi: np.ndarray, payload: T) -> None:
        """Insert into every cell overlapping the box lo..hi, clipped to the grid."""
        a = self.clamp_index(self.index_of(lo))
        b = self.clamp_index(self.index_of(hi))
        for x in range(a[0], b[0] + 1):
            for y in range(a[1], b[1] + 1):
                for z in range(a[2], b[2] + 1):
                    self.insert(x, y, z, payload)

    def cell(self, ix: int, iy: int, iz: int) -> List[T]:
        return self._cells.get(self.flat_index(ix, iy, iz), [])

    def occupied(self) -> Iterator[Tuple[Index3, List[T]]]:
        nx, ny = self.dims[0], self.dims[1]
        for flat, bucket in self._cells.items():
            yield (flat % nx, (flat // nx) % ny, flat // (nx * ny)), bucket
