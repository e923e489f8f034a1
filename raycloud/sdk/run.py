from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np

from ..config import RayCloudConfig, load_config
from ..config.schema import (
    ColourSplitTaskConfig,
    DensityTaskConfig,
    GridSplitTaskConfig,
    HeightFieldTaskConfig,
    InfoTaskConfig,
    MeshSplitTaskConfig,
    OutputConfig,
    RenderTaskConfig,
    SurfelTaskConfig,
)
from ..core.classifier import HeightField, MeshClassifier
from ..core.cloud import Cloud, RayCloudInfo
from ..core.density import DensityVolume, PriorStats
from ..core.mesh import Mesh
from ..core.renderer import render
from ..core.splitter import split_colours, split_grid
from ..core.utils import configure_logging, get_logger
from ..runtime.builders import build_stream, build_writer, output_for

_log = get_logger()


class RunError(RuntimeError):
    """A file-level operation could not complete (unreadable input, empty cloud)."""


@dataclass(frozen=True)
class InfoResult:
    info: RayCloudInfo
    point_spacing: Optional[float]


@dataclass(frozen=True)
class MeshSplitResult:
    num_inside: int
    num_outside: int
    inside_path: Path
    outside_path: Path


@dataclass(frozen=True)
class GridSplitResult:
    paths: Dict[Tuple[int, ...], Path]
    counts: Dict[Tuple[int, ...], int]


@dataclass(frozen=True)
class ColourSplitResult:
    paths: Dict[Tuple[int, int, int], Path]
    counts: Dict[Tuple[int, int, int], int]


@dataclass(frozen=True)
class DensityResult:
    dims: Tuple[int, int, int]
    priors: Optional[PriorStats]
    output_path: Path


@dataclass(frozen=True)
class HeightFieldResult:
    height_field: HeightField
    output_path: Path


@dataclass(frozen=True)
class SurfelResult:
    num_valid: int
    output_path: Path


@dataclass(frozen=True)
class RenderResult:
    shape: Tuple[int, ...]
    pix_width: float
    output_path: Path


RunResult = Union[
    InfoResult, MeshSplitResult, GridSplitResult, ColourSplitResult,
    DensityResult, HeightFieldResult, SurfelResult, RenderResult,
]


def _suffixed(path: Path, suffix: str) -> Path:
    return path.with_name(f"{path.stem}_{suffix}{path.suffix}")


def _load_cloud(cfg: RayCloudConfig) -> Cloud:
    cloud = Cloud()
    if not cloud.load(build_stream(cfg)):
        raise RunError(f"Could not read ray cloud {cfg.input.path}")
    return cloud


def _write_cloud(cloud: Cloud, out_cfg: OutputConfig) -> None:
    if not cloud.save(build_writer(out_cfg)):
        raise RunError(f"Could not write ray cloud {out_cfg.path}")


def cloud_info(cfg: RayCloudConfig, task: InfoTaskConfig) -> InfoResult:
    info = Cloud.get_info(build_stream(cfg))
    if info is None:
        raise RunError(f"Could not read ray cloud {cfg.input.path}")
    _log.info(
        "%d rays (%d bounded, %d unbounded), end bounds %s .. %s",
        info.num_rays, info.num_bounded, info.num_unbounded,
        info.ends_bound.min_bound, info.ends_bound.max_bound,
    )
    spacing = None
    if task.estimate_spacing and info.num_bounded > 0:
        spacing = Cloud.estimate_point_spacing_streaming(
            build_stream(cfg),
            info.ends_bound,
            info.num_bounded,
            exponent=cfg.spacing.exponent,
            overestimate=cfg.spacing.overestimate,
        )
    return InfoResult(info=info, point_spacing=spacing)


def mesh_split(cfg: RayCloudConfig, task: MeshSplitTaskConfig) -> MeshSplitResult:
    assert cfg.output is not None
    cloud = _load_cloud(cfg)
    classifier = MeshClassifier(Mesh.load(task.mesh), voxel_width=task.voxel_width)
    inside, outside = classifier.split_cloud(cloud, task.offset)
    inside_cfg = output_for(cfg.output, _suffixed(cfg.output.path, "inside"))
    outside_cfg = output_for(cfg.output, _suffixed(cfg.output.path, "outside"))
    _write_cloud(inside, inside_cfg)
    _write_cloud(outside, outside_cfg)
    return MeshSplitResult(
        num_inside=len(inside),
        num_outside=len(outside),
        inside_path=inside_cfg.path,
        outside_path=outside_cfg.path,
    )


def grid_split(cfg: RayCloudConfig, task: GridSplitTaskConfig) -> GridSplitResult:
    assert cfg.output is not None
    clouds = split_grid(build_stream(cfg), task.cell_width, overlap=task.overlap, period=task.period)
    if clouds is None:
        raise RunError(f"Could not read ray cloud {cfg.input.path}")
    paths: Dict[Tuple[int, ...], Path] = {}
    for cell, cloud in clouds.items():
        out_cfg = output_for(cfg.output, _suffixed(cfg.output.path, "_".join(str(c) for c in cell)))
        _write_cloud(cloud, out_cfg)
        paths[cell] = out_cfg.path
    return GridSplitResult(paths=paths, counts={cell: len(cloud) for cell, cloud in clouds.items()})


def colour_split(cfg: RayCloudConfig, task: ColourSplitTaskConfig) -> ColourSplitResult:
    assert cfg.output is not None
    clouds = split_colours(build_stream(cfg))
    if clouds is None:
        raise RunError(f"Could not read ray cloud {cfg.input.path}")
    paths: Dict[Tuple[int, int, int], Path] = {}
    for rgb, cloud in clouds.items():
        out_cfg = output_for(cfg.output, _suffixed(cfg.output.path, "_".join(str(c) for c in rgb)))
        _write_cloud(cloud, out_cfg)
        paths[rgb] = out_cfg.path
    return ColourSplitResult(paths=paths, counts={rgb: len(cloud) for rgb, cloud in clouds.items()})


def density_map(cfg: RayCloudConfig, task: DensityTaskConfig) -> DensityResult:
    """Accumulate a density volume and save it, with its projection, as NPZ."""
    assert cfg.output is not None
    info = Cloud.get_info(build_stream(cfg))
    if info is None or info.num_bounded == 0:
        raise RunError(f"No bounded rays to build a density volume from in {cfg.input.path}")
    # pad so neighbour priors reach the outermost data voxels
    volume = DensityVolume.around(info.ends_bound, task.voxel_width)
    if not volume.calculate_densities(build_stream(cfg)):
        raise RunError(f"Could not read ray cloud {cfg.input.path}")
    priors = None
    if task.neighbour_priors:
        priors = volume.add_neighbour_priors(task.min_rays, task.warn_fraction)
    path = Path(cfg.output.path).with_suffix(".npz")
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(
        path,
        density=volume.density(),
        projection=volume.project(task.axis),
        box_min=volume.box_min,
        voxel_width=np.float64(volume.voxel_width),
    )
    return DensityResult(dims=volume.dims, priors=priors, output_path=path)


def height_field(cfg: RayCloudConfig, task: HeightFieldTaskConfig) -> HeightFieldResult:
    """Mesh heights over the horizontal extent of the cloud, saved as NPZ."""
    assert cfg.output is not None
    info = Cloud.get_info(build_stream(cfg))
    if info is None or info.num_bounded == 0:
        raise RunError(f"No bounded rays to take the height field extent from in {cfg.input.path}")
    mesh = Mesh.load(task.mesh)
    box = info.ends_bound.union(mesh.bounds())
    classifier = MeshClassifier(mesh, voxel_width=task.mesh_voxel_width)
    field = classifier.to_height_field(box.min_bound, box.max_bound, task.voxel_width, from_top=task.from_top)
    path = Path(cfg.output.path).with_suffix(".npz")
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(path, heights=field.heights, origin=field.origin, voxel_width=np.float64(field.voxel_width))
    return HeightFieldResult(height_field=field, output_path=path)


def surfels(cfg: RayCloudConfig, task: SurfelTaskConfig) -> SurfelResult:
    assert cfg.output is not None
    cloud = _load_cloud(cfg)
    result = cloud.get_surfels(cfg.surfels.neighbour_count, on_degenerate=cfg.surfels.on_degenerate)
    path = Path(cfg.output.path).with_suffix(".npz")
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(
        path,
        centroids=result.centroids,
        normals=result.normals,
        dimensions=result.dimensions,
        valid=result.valid,
    )
    return SurfelResult(num_valid=int(result.valid.sum()), output_path=path)


def render_image(cfg: RayCloudConfig, task: RenderTaskConfig) -> RenderResult:
    """Render the cloud within its end-point bounds and save the pixel buffer as NPZ.

    Without a pixel width, twice the estimated point spacing is used.
    """
    assert cfg.output is not None
    info = Cloud.get_info(build_stream(cfg))
    if info is None or info.num_bounded == 0:
        raise RunError(f"No bounded rays to render in {cfg.input.path}")
    pix_width = task.pix_width
    if pix_width is None:
        pix_width = 2.0 * Cloud.estimate_point_spacing_streaming(
            build_stream(cfg),
            info.ends_bound,
            info.num_bounded,
            exponent=cfg.spacing.exponent,
            overestimate=cfg.spacing.overestimate,
        )
        if pix_width <= 0.0:
            raise RunError(f"Could not read ray cloud {cfg.input.path}")
    image = render(
        build_stream(cfg), info.ends_bound, task.view, task.style, pix_width,
        hdr=task.hdr, min_rays=task.min_rays,
    )
    if image is None:
        raise RunError(f"Could not read ray cloud {cfg.input.path}")
    path = Path(cfg.output.path).with_suffix(".npz")
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(
        path,
        image=image,
        box_min=info.ends_bound.min_bound,
        pix_width=np.float64(pix_width),
    )
    return RenderResult(shape=tuple(image.shape), pix_width=float(pix_width), output_path=path)


def run_from_config(
    config: Union[str, Path, RayCloudConfig],
    *,
    output: Optional[Path] = None,
) -> RunResult:
    """Run the task described by a configuration file or object.

    Parameters
    ----------
    config:
        Path to a YAML file or a pre-loaded :class:`~raycloud.config.schema.RayCloudConfig`.
    output:
        Optional override for the output path. For ray cloud outputs the
        extension drives the format (``.ply``, ``.las``, ``.laz`` or ``.npz``).

    Returns
    -------
    RunResult
        The task-specific result record.
    """

    cfg = load_config(config) if not isinstance(config, RayCloudConfig) else config.model_copy(deep=True)
    configure_logging(cfg.log_level)

    if output is not None:
        out_path = Path(output).resolve()
        out_cfg = (cfg.output or OutputConfig(path=out_path)).model_copy(update={"path": out_path})
        if cfg.task.kind in {"mesh_split", "grid_split", "colour_split"}:
            out_cfg = output_for(out_cfg, out_path)
        cfg.output = out_cfg

    task = cfg.task
    if isinstance(task, InfoTaskConfig):
        return cloud_info(cfg, task)
    if isinstance(task, MeshSplitTaskConfig):
        return mesh_split(cfg, task)
    if isinstance(task, GridSplitTaskConfig):
        return grid_split(cfg, task)
    if isinstance(task, ColourSplitTaskConfig):
        return colour_split(cfg, task)
    if isinstance(task, DensityTaskConfig):
        return density_map(cfg, task)
    if isinstance(task, HeightFieldTaskConfig):
        return height_field(cfg, task)
    if isinstance(task, SurfelTaskConfig):
        return surfels(cfg, task)
    if isinstance(task, RenderTaskConfig):
        return render_image(cfg, task)
    raise ValueError(f"Unsupported task kind: {task.kind}")
