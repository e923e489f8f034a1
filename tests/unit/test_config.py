from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from raycloud.config import RayCloudConfig, load_config
from raycloud.runtime.builders import build_source, build_writer, output_for
from raycloud.core.exporter import LasRayWriter, PlyRayWriter
from raycloud.core.reader import NpzRaySource


def _write(path: Path, data: dict) -> Path:
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f)
    return path


def test_load_config_resolves_relative_paths(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path / "run.yaml", {
        "input": {"path": "cloud.ply"},
        "task": {"kind": "mesh_split", "mesh": "walls.ply", "offset": -0.2},
        "output": {"path": "out/split.ply"},
    }))
    assert cfg.input.path == (tmp_path / "cloud.ply").resolve()
    assert cfg.task.mesh == (tmp_path / "walls.ply").resolve()
    assert cfg.output.path == (tmp_path / "out" / "split.ply").resolve()
    assert cfg.task.offset == -0.2
    assert cfg.stream.chunk_size == 1_000_000
    assert cfg.spacing.exponent == 2.0 and cfg.spacing.overestimate == 5.0


def test_task_other_than_info_requires_output() -> None:
    with pytest.raises(ValidationError):
        RayCloudConfig.model_validate({"input": {"path": "a.ply"}, "task": {"kind": "density", "voxel_width": 0.5}})
    cfg = RayCloudConfig.model_validate({"input": {"path": "a.ply"}, "task": {"kind": "info"}})
    assert cfg.output is None


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        RayCloudConfig.model_validate({
            "input": {"path": "a.ply"},
            "task": {"kind": "grid_split", "cell_width": [0, 0, 0]},
            "output": {"path": "b.ply"},
        })
    with pytest.raises(ValidationError):
        RayCloudConfig.model_validate({
            "input": {"path": "a.ply"},
            "task": {"kind": "info"},
            "output": {"path": "b.laz", "format": "laz", "compress": False},
        })


def test_load_config_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)


def test_builders_pick_by_extension(tmp_path: Path) -> None:
    assert isinstance(build_source(tmp_path / "c.npz"), NpzRaySource)
    with pytest.raises(ValueError):
        build_source(tmp_path / "c.xyz")
    cfg = RayCloudConfig.model_validate({
        "input": {"path": "a.ply"}, "task": {"kind": "info"}, "output": {"path": str(tmp_path / "o.ply")},
    })
    assert isinstance(build_writer(cfg.output), PlyRayWriter)
    laz = output_for(cfg.output, tmp_path / "o.laz")
    assert laz.format == "laz" and laz.compress is True
    assert isinstance(build_writer(laz), LasRayWriter)


def test_render_colour_split_and_timed_grid_tasks() -> None:
    def validate(task: dict) -> RayCloudConfig:
        return RayCloudConfig.model_validate({"input": {"path": "a.ply"}, "task": task, "output": {"path": "b.ply"}})

    render = validate({"kind": "render", "view": "left", "style": "density_rgb"}).task
    assert (render.view, render.style, render.pix_width, render.hdr, render.min_rays) == (
        "left", "density_rgb", None, False, 10
    )
    assert validate({"kind": "colour_split"}).task.kind == "colour_split"
    grid = validate({"kind": "grid_split", "cell_width": [0, 0, 0], "period": 5.0}).task
    assert grid.period == 5.0
    with pytest.raises(ValidationError):
        validate({"kind": "render", "view": "bottom"})
    with pytest.raises(ValidationError):
        validate({"kind": "render", "pix_width": 0.0})
