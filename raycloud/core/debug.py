from __future__ import annotations
from typing import Optional, Protocol, Sequence
import numpy as np


class DebugDraw(Protocol):
    """Visualisation hook. Operations take one explicitly; nothing is global."""

    def draw_cloud(self, points: np.ndarray, shade: Optional[np.ndarray] = None, id: int = 0) -> None: ...

    def draw_lines(self, starts: np.ndarray, ends: np.ndarray, colors: Optional[np.ndarray] = None) -> None: ...

    def draw_cylinders(
        self,
        starts: np.ndarray,
        ends: np.ndarray,
        radii: Sequence[float],
        id: int = 0,
        colors: Optional[np.ndarray] = None,
    ) -> None: ...

    def draw_ellipsoids(
        self,
        centres: np.ndarray,
        poses: np.ndarray,
        radii: np.ndarray,
        color: tuple[float, float, float] = (1.0, 1.0, 1.0),
        id: int = 0,
    ) -> None: ...


class NullDebugDraw:
    """Default DebugDraw: ignores everything."""

    def draw_cloud(self, points, shade=None, id=0) -> None:
        pass

    def draw_lines(self, starts, ends, colors=None) -> None:
        pass

    def draw_cylinders(self, starts, ends, radii, id=0, colors=None) -> None:
        pass

    def draw_ellipsoids(self, centres, poses, radii, color=(1.0, 1.0, 1.0), id=0) -> None:
        pass
