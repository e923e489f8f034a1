from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

import numpy as np

from ..core.cloud import Cloud
from ..core.mesh import Mesh
from ..core.rays import RayBatch


def _grid_plane(size: float, divisions: int, z: float) -> Tuple[np.ndarray, np.ndarray]:
    lin = np.linspace(-size / 2.0, size / 2.0, divisions + 1)
    xv, yv = np.meshgrid(lin, lin, indexing="ij")
    vertices = np.column_stack([xv.ravel(), yv.ravel(), np.full(xv.size, z)])

    faces = []
    for i in range(divisions):
        for j in range(divisions):
            idx0 = i * (divisions + 1) + j
            idx1 = idx0 + 1
            idx2 = idx0 + (divisions + 1)
            idx3 = idx2 + 1
            faces.append([idx0, idx2, idx3])
            faces.append([idx0, idx3, idx1])
    return vertices, np.asarray(faces, dtype=np.int64)


def box_mesh(
    center: Tuple[float, float, float] = (0.0, 0.0, 0.0),
    size: Tuple[float, float, float] = (1.0, 1.0, 1.0),
) -> Mesh:
    """Closed box of 12 triangles with outward-facing normals."""
    cx, cy, cz = center
    hx, hy, hz = (s / 2.0 for s in size)
    vertices = np.array([
        [cx - hx, cy - hy, cz - hz],
        [cx + hx, cy - hy, cz - hz],
        [cx + hx, cy + hy, cz - hz],
        [cx - hx, cy + hy, cz - hz],
        [cx - hx, cy - hy, cz + hz],
        [cx + hx, cy - hy, cz + hz],
        [cx + hx, cy + hy, cz + hz],
        [cx - hx, cy + hy, cz + hz],
    ])
    faces = np.array([
        [0, 2, 1], [0, 3, 2],  # bottom
        [4, 6, 7], [4, 5, 6],  # top
        [0, 5, 4], [0, 1, 5],  # front
        [1, 6, 5], [1, 2, 6],  # right
        [2, 7, 6], [2, 3, 7],  # back
        [3, 4, 7], [3, 0, 4],  # left
    ], dtype=np.int64)
    return Mesh(vertices, faces)


def plane_mesh(size: float = 10.0, divisions: int = 10, z: float = 0.0) -> Mesh:
    """Square upward-facing grid of ``2 * divisions**2`` triangles centred on the origin."""
    vertices, faces = _grid_plane(size, divisions, z)
    return Mesh(vertices, faces)


def uniform_ray_cloud(
    box_min: Tuple[float, float, float],
    box_max: Tuple[float, float, float],
    num_rays: int,
    rng: Optional[np.random.Generator] = None,
    sensor: Optional[Tuple[float, float, float]] = None,
    unbounded_fraction: float = 0.0,
) -> Cloud:
    """Rays ending uniformly in the box, starting at ``sensor`` (default: 1 m above each end)."""
    rng = rng or np.random.default_rng(12345)
    lo = np.asarray(box_min, dtype=np.float64)
    hi = np.asarray(box_max, dtype=np.float64)
    ends = lo + rng.random((num_rays, 3)) * (hi - lo)
    if sensor is None:
        starts = ends + np.array([0.0, 0.0, 1.0])
    else:
        starts = np.tile(np.asarray(sensor, dtype=np.float64), (num_rays, 1))
    colors = np.full((num_rays, 4), 255, dtype=np.uint8)
    colors[rng.random(num_rays) < unbounded_fraction, 3] = 0
    return Cloud(RayBatch(
        starts=starts,
        ends=ends,
        times=np.arange(num_rays, dtype=np.float64) * 1e-3,
        colors=colors,
    ))


def plane_ray_cloud(
    size: float,
    num_rays: int,
    height: float = 2.0,
    rng: Optional[np.random.Generator] = None,
) -> Cloud:
    """Rays from a sensor ``height`` above the origin to random points on the z=0 square."""
    rng = rng or np.random.default_rng(12345)
    xy = (rng.random((num_rays, 2)) - 0.5) * size
    ends = np.column_stack([xy, np.zeros(num_rays)])
    starts = np.tile(np.array([0.0, 0.0, height]), (num_rays, 1))
    return Cloud(RayBatch(
        starts=starts,
        ends=ends,
        times=np.arange(num_rays, dtype=np.float64) * 1e-3,
        colors=np.full((num_rays, 4), 255, dtype=np.uint8),
    ))


def generate_mesh(preset: str, size: float, path: Path) -> None:
    preset = preset.lower()
    if preset == "plane":
        plane_mesh(size=size, divisions=40).save(path)
        return
    if preset == "cube":
        box_mesh(size=(size, size, size)).save(path)
        return
    raise ValueError(f"Unknown synthetic mesh preset '{preset}'.")
