from __future__ import annotations
from dataclasses import dataclass
import numpy as np

def ray_bounded(colors: np.ndarray) -> np.ndarray:
    """Mask of rays with a physical return (non-zero alpha)."""
    return np.asarray(colors)[:, 3] != 0

@dataclass
class RayBatch:
    """A chunk of rays held as four parallel arrays."""
    starts: np.ndarray                    # (N, 3)
    ends: np.ndarray                      # (N, 3)
    times: np.ndarray                     # (N,)
    colors: np.ndarray                    # (N, 4) uint8 RGBA

    def __post_init__(self) -> None:
        self.starts = np.asarray(self.starts, dtype=np.float64).reshape(-1, 3)
        self.ends = np.asarray(self.ends, dtype=np.float64).reshape(-1, 3)
        self.times = np.asarray(self.times, dtype=np.float64).reshape(-1)
        self.colors = np.asarray(self.colors, dtype=np.uint8).reshape(-1, 4)
        n = len(self.ends)
        for name in ("starts", "times", "colors"):
            m = len(getattr(self, name))
            if m != n:
                raise ValueError(f"RayBatch '{name}' length {m} != {n}")

    def __len__(self) -> int:
        return len(self.ends)

    @property
    def bounded(self) -> np.ndarray:
        return ray_bounded(self.colors)

    @staticmethod
    def empty() -> "RayBatch":
        return RayBatch(
            starts=np.zeros((0, 3), dtype=np.float64),
            ends=np.zeros((0, 3), dtype=np.float64),
            times=np.zeros((0,), dtype=np.float64),
            colors=np.zeros((0, 4), dtype=np.uint8),
        )

    def take(self, index: np.ndarray) -> "RayBatch":
        return RayBatch(
            starts=self.starts[index],
            ends=self.ends[index],
            times=self.times[index],
            colors=self.colors[index],
        )

    def as_tuple(self) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        return self.starts, self.ends, self.times, self.colors

    @staticmethod
    def concatenate(batches: list["RayBatch"]) -> "RayBatch":
        if not batches:
            return RayBatch.empty()
        return RayBatch(
            starts=np.concatenate([b.starts for b in batches], axis=0),
            ends=np.concatenate([b.ends for b in batches], axis=0),
            times=np.concatenate([b.times for b in batches], axis=0),
            colors=np.concatenate([b.colors for b in batches], axis=0),
        )
