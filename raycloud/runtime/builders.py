from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

from ..config.schema import OutputConfig, RayCloudConfig
from ..core.exporter import LasRayWriter, NpzRayWriter, PlyRayWriter
from ..core.reader import LasRaySource, NpzRaySource, PlyRaySource
from ..core.stream import RaySink, RaySource, RayStream


def build_source(path: Union[str, Path]) -> RaySource:
    """Ray source for ``path``, chosen by extension."""
    path = Path(path)
    ext = path.suffix.lower()
    if ext == ".ply":
        return PlyRaySource(path)
    if ext in {".las", ".laz"}:
        return LasRaySource(path)
    if ext == ".npz":
        return NpzRaySource(path)
    raise ValueError(f"Unsupported ray cloud extension '{ext}'")


def build_stream(cfg: RayCloudConfig, path: Optional[Union[str, Path]] = None) -> RayStream:
    return RayStream(build_source(path or cfg.input.path), chunk_size=cfg.stream.chunk_size)


def output_for(out_cfg: OutputConfig, path: Union[str, Path]) -> OutputConfig:
    """Copy of ``out_cfg`` writing to ``path`` with the format taken from its extension."""
    path = Path(path)
    ext = path.suffix.lower().lstrip(".")
    if ext not in {"ply", "las", "laz", "npz"}:
        raise ValueError(f"Unsupported output extension '.{ext}'")
    update = {"path": path, "format": ext}
    if ext == "las":
        update["compress"] = False
    elif ext == "laz":
        update["compress"] = True
    return out_cfg.model_copy(update=update)


def build_writer(out_cfg: OutputConfig) -> RaySink:
    format_lower = out_cfg.format.lower()
    if format_lower in {"las", "laz"}:
        compress = out_cfg.compress
        if compress is None:
            compress = format_lower == "laz"
        return LasRayWriter(
            str(out_cfg.path),
            point_format=out_cfg.point_format,
            compress=compress,
        )
    if format_lower == "npz":
        return NpzRayWriter(str(out_cfg.path))
    if format_lower == "ply":
        return PlyRayWriter(str(out_cfg.path), binary=out_cfg.binary)
    raise ValueError(f"Unsupported output format: {out_cfg.format}")
