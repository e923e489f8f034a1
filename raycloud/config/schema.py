from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, model_validator


class InputConfig(BaseModel):
    path: Path


class StreamConfig(BaseModel):
    chunk_size: int = Field(1_000_000, gt=0)


class SpacingConfig(BaseModel):
    exponent: float = Field(2.0, gt=0.0)
    overestimate: float = Field(5.0, gt=0.0)


class SurfelConfig(BaseModel):
    neighbour_count: int = Field(16, gt=0)
    on_degenerate: Literal["skip", "raise"] = "skip"


class InfoTaskConfig(BaseModel):
    kind: Literal["info"]
    estimate_spacing: bool = True


class MeshSplitTaskConfig(BaseModel):
    kind: Literal["mesh_split"]
    mesh: Path
    offset: float = 0.0
    voxel_width: float = Field(1.0, gt=0.0)


class GridSplitTaskConfig(BaseModel):
    kind: Literal["grid_split"]
    cell_width: tuple[float, float, float]
    overlap: float = Field(0.0, ge=0.0)
    period: float = Field(0.0, ge=0.0)

    @model_validator(mode="after")
    def _validate_widths(self) -> "GridSplitTaskConfig":
        if any(w < 0.0 for w in self.cell_width) or not (any(w > 0.0 for w in self.cell_width) or self.period > 0.0):
            raise ValueError("cell_width needs non-negative values and a positive axis or period")
        return self


class DensityTaskConfig(BaseModel):
    kind: Literal["density"]
    voxel_width: float = Field(gt=0.0)
    neighbour_priors: bool = True
    min_rays: int = Field(10, gt=0)
    warn_fraction: float = Field(0.5, ge=0.0, le=1.0)
    axis: Literal[0, 1, 2] = 2


class HeightFieldTaskConfig(BaseModel):
    kind: Literal["height_field"]
    mesh: Path
    voxel_width: float = Field(gt=0.0)
    from_top: bool = True
    mesh_voxel_width: float = Field(1.0, gt=0.0)


class ColourSplitTaskConfig(BaseModel):
    kind: Literal["colour_split"]


class RenderTaskConfig(BaseModel):
    kind: Literal["render"]
    view: Literal["top", "left", "right", "front", "back"] = "top"
    style: Literal["ends", "mean", "sum", "starts", "rays", "height", "density", "density_rgb"] = "ends"
    pix_width: Optional[float] = Field(None, gt=0.0)
    hdr: bool = False
    min_rays: int = Field(10, ge=0)


class SurfelTaskConfig(BaseModel):
    kind: Literal["surfels"]


TaskConfig = Annotated[
    Union[
        InfoTaskConfig,
        MeshSplitTaskConfig,
        GridSplitTaskConfig,
        DensityTaskConfig,
        HeightFieldTaskConfig,
        SurfelTaskConfig,
        ColourSplitTaskConfig,
        RenderTaskConfig,
    ],
    Field(discriminator="kind"),
]


class OutputConfig(BaseModel):
    path: Path
    format: Literal["ply", "las", "laz", "npz"] = "ply"
    compress: Optional[bool] = None
    point_format: int = 7
    binary: bool = True

    @model_validator(mode="after")
    def _validate_format(self) -> "OutputConfig":
        if self.format == "laz" and self.compress is False:
            raise ValueError("format 'laz' implies compress=True")
        return self


class RayCloudConfig(BaseModel):
    input: InputConfig
    task: TaskConfig
    output: Optional[OutputConfig] = None
    stream: StreamConfig = StreamConfig()
    spacing: SpacingConfig = SpacingConfig()
    surfels: SurfelConfig = SurfelConfig()
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @model_validator(mode="after")
    def _require_output(self) -> "RayCloudConfig":
        if self.output is None and self.task.kind != "info":
            raise ValueError(f"Task '{self.task.kind}' requires an output section")
        return self


def load_config(path: str | Path) -> RayCloudConfig:
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError("Configuration root must be a mapping.")
    cfg = RayCloudConfig.model_validate(data)
    cfg.input.path = (path.parent / cfg.input.path).resolve()
    if cfg.output is not None:
        cfg.output.path = (path.parent / cfg.output.path).resolve()
    mesh = getattr(cfg.task, "mesh", None)
    if mesh is not None and not mesh.is_absolute():
        cfg.task.mesh = (path.parent / mesh).resolve()
    return cfg
