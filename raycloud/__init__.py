"""raycloud – ray cloud storage, streaming and analysis.

A ray cloud is a set of rays, each a sensor start point, an end point, a
time stamp and an RGBA colour whose alpha marks whether the ray ended on a
surface (bounded) or ran out of range (unbounded). The package provides:
- RayStream & ray sources/sinks (core.stream, core.reader, core.exporter)
- Cloud: in-memory ray cloud with bounds, spacing, decimation, surfels (core.cloud)
- SpatialGrid: bucketed voxel index (core.grid)
- MeshClassifier: inside/outside splitting and height fields (core.classifier)
- DensityVolume: per-voxel ray density with neighbour priors (core.density)
- render: top and side view pixel buffers of a cloud (core.renderer)
- Progress: thread-safe progress counter (core.progress)
"""

from .core.rays import RayBatch
from .core.cuboid import Cuboid
from .core.stream import RayStream, RaySourceError, ArrayRaySource
from .core.reader import PlyRaySource, LasRaySource, NpzRaySource
from .core.exporter import PlyRayWriter, LasRayWriter, NpzRayWriter
from .core.cloud import (
    Cloud, BoundsFlag, RayCloudInfo, Surfels, SurfelError, KDTreeNeighbours,
)
from .core.grid import SpatialGrid
from .core.mesh import Mesh
from .core.classifier import MeshClassifier, Triangle, HeightField
from .core.density import DensityVolume, DensityVoxel, PriorStats
from .core.splitter import split_stream, split_grid, split_colours
from .core.renderer import render, RenderStyle, ViewDirection
from .core.progress import Progress, ProgressThread
from .core.debug import DebugDraw, NullDebugDraw
from .motion.pose import Pose
