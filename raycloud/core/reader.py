from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, List, Tuple
import numpy as np

import laspy  # type: ignore
from .rays import RayBatch
from .stream import RaySourceError
from .utils import get_logger

_log = get_logger()

_PLY_TYPES = {
    "char": "i1", "int8": "i1",
    "uchar": "u1", "uint8": "u1",
    "short": "i2", "int16": "i2",
    "ushort": "u2", "uint16": "u2",
    "int": "i4", "int32": "i4",
    "uint": "u4", "uint32": "u4",
    "float": "f4", "float32": "f4",
    "double": "f8", "float64": "f8",
}

_REQUIRED = ("x", "y", "z", "nx", "ny", "nz")


@dataclass
class PlyHeader:
    format: str                              # ascii | binary_little_endian | binary_big_endian
    vertex_count: int
    properties: List[Tuple[str, str]]        # (name, numpy type code), vertex element only
    data_offset: int

    def dtype(self) -> np.dtype:
        order = "<" if self.format == "binary_little_endian" else ">"
        return np.dtype([(name, order + code) for name, code in self.properties])


def read_ply_header(fh: BinaryIO) -> PlyHeader:
    first = fh.readline().decode("ascii", errors="replace").strip()
    if first != "ply":
        raise RaySourceError("Not a PLY file.")
    fmt = ""
    vertex_count = -1
    props: List[Tuple[str, str]] = []
    current_element = None
    seen_other_element = False
    while True:
        raw = fh.readline()
        if not raw:
            raise RaySourceError("Unexpected EOF while reading PLY header.")
        parts = raw.decode("ascii", errors="replace").split()
        if not parts:
            continue
        if parts[0] == "end_header":
            break
        if parts[0] == "format":
            fmt = parts[1]
        elif parts[0] == "element":
            current_element = parts[1]
            if current_element == "vertex":
                if seen_other_element:
                    raise RaySourceError("PLY vertex element must come first.")
                vertex_count = int(parts[2])
            else:
                seen_other_element = True
        elif parts[0] == "property" and current_element == "vertex":
            if parts[1] == "list":
                raise RaySourceError("List properties are not supported on ray vertices.")
            code = _PLY_TYPES.get(parts[1])
            if code is None:
                raise RaySourceError(f"Unknown PLY property type '{parts[1]}'.")
            props.append((parts[2], code))
    if fmt not in ("ascii", "binary_little_endian", "binary_big_endian"):
        raise RaySourceError(f"Unsupported PLY format '{fmt}'.")
    if vertex_count < 0:
        raise RaySourceError("PLY file has no vertex element.")
    names = {name for name, _ in props}
    missing = [name for name in _REQUIRED if name not in names]
    if missing:
        raise RaySourceError(f"PLY file is not a ray cloud (missing {', '.join(missing)}).")
    return PlyHeader(format=fmt, vertex_count=vertex_count, properties=props, data_offset=fh.tell())


def _batch_from_records(rec: np.ndarray) -> RayBatch:
    names = rec.dtype.names or ()
    ends = np.column_stack([rec["x"], rec["y"], rec["z"]]).astype(np.float64)
    offsets = np.column_stack([rec["nx"], rec["ny"], rec["nz"]]).astype(np.float64)
    times = rec["time"].astype(np.float64) if "time" in names else np.zeros(len(rec))
    colors = np.full((len(rec), 4), 255, dtype=np.uint8)
    for c, name in enumerate(("red", "green", "blue", "alpha")):
        if name in names:
            colors[:, c] = np.clip(rec[name], 0, 255).astype(np.uint8)
    return RayBatch(starts=ends + offsets, ends=ends, times=times, colors=colors)


class PlyRaySource:
    """Ray cloud PLY reader (ASCII or binary).

    Vertices hold the end point in x,y,z and the start point as an offset
    ``start - end`` in nx,ny,nz, plus time and RGBA.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def header(self) -> PlyHeader:
        try:
            with open(self.path, "rb") as fh:
                return read_ply_header(fh)
        except OSError as exc:
            raise RaySourceError(f"Cannot open {self.path}: {exc}") from exc

    def chunks(self, chunk_size: int) -> Iterator[RayBatch]:
        try:
            fh = open(self.path, "rb")
        except OSError as exc:
            raise RaySourceError(f"Cannot open {self.path}: {exc}") from exc
        with fh:
            header = read_ply_header(fh)
            if header.format == "ascii":
                yield from self._ascii_chunks(fh, header, chunk_size)
            else:
                yield from self._binary_chunks(fh, header, chunk_size)

    def _binary_chunks(self, fh: BinaryIO, header: PlyHeader, chunk_size: int) -> Iterator[RayBatch]:
        dtype = header.dtype()
        remaining = header.vertex_count
        while remaining > 0:
            n = min(chunk_size, remaining)
            buf = fh.read(n * dtype.itemsize)
            if len(buf) != n * dtype.itemsize:
                raise RaySourceError(f"{self.path.name} is truncated ({remaining} rays unread).")
            rec = np.frombuffer(buf, dtype=dtype, count=n)
            remaining -= n
            yield _batch_from_records(rec)

    def _ascii_chunks(self, fh: BinaryIO, header: PlyHeader, chunk_size: int) -> Iterator[RayBatch]:
        dtype = np.dtype([(name, code) for name, code in header.properties])
        n_props = len(header.properties)
        remaining = header.vertex_count
        while remaining > 0:
            n = min(chunk_size, remaining)
            rows = []
            for _ in range(n):
                line = fh.readline()
                if not line:
                    raise RaySourceError(f"{self.path.name} is truncated ({remaining} rays unread).")
                parts = line.split()
                if len(parts) < n_props:
                    raise RaySourceError(f"{self.path.name}: vertex line has {len(parts)} of {n_props} values.")
                rows.append(tuple(float(v) for v in parts[:n_props]))
                remaining -= 1
            rec = np.array(rows, dtype=dtype)
            yield _batch_from_records(rec)


class LasRaySource:
    """LAS/LAZ reader using laspy chunked reads.

    End points are the LAS coordinates; start points come from the
    ``StartX/StartY/StartZ`` extra dimensions written by LasRayWriter.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def chunks(self, chunk_size: int) -> Iterator[RayBatch]:
        try:
            reader = laspy.open(self.path)
        except (OSError, laspy.errors.LaspyException) as exc:
            raise RaySourceError(f"Cannot open {self.path}: {exc}") from exc
        with reader:
            pf = reader.header.point_format
            extras = set(pf.extra_dimension_names)
            if not {"StartX", "StartY", "StartZ"} <= extras:
                raise RaySourceError(f"{self.path.name} has no ray start dimensions.")
            dims = set(pf.dimension_names)
            try:
                for pts in reader.chunk_iterator(chunk_size):
                    n = len(pts)
                    ends = np.column_stack([np.asarray(pts.x), np.asarray(pts.y), np.asarray(pts.z)])
                    starts = np.column_stack([
                        np.asarray(pts["StartX"]), np.asarray(pts["StartY"]), np.asarray(pts["StartZ"])
                    ])
                    times = np.asarray(pts.gps_time, dtype=np.float64) if "gps_time" in dims else np.zeros(n)
                    colors = np.full((n, 4), 255, dtype=np.uint8)
                    if {"red", "green", "blue"} <= dims:
                        for c, name in enumerate(("red", "green", "blue")):
                            colors[:, c] = (np.asarray(pts[name]).astype(np.uint32) >> 8).astype(np.uint8)
                    if "Alpha" in extras:
                        colors[:, 3] = np.asarray(pts["Alpha"]).astype(np.uint8)
                    yield RayBatch(starts=starts, ends=ends, times=times, colors=colors)
            except laspy.errors.LaspyException as exc:
                raise RaySourceError(f"{self.path.name} is corrupt: {exc}") from exc


class NpzRaySource:
    """Reads the arrays written by NpzRayWriter (loads fully, then chunks)."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def chunks(self, chunk_size: int) -> Iterator[RayBatch]:
        try:
            with np.load(self.path) as data:
                batch = RayBatch(
                    starts=data["starts"], ends=data["ends"], times=data["times"], colors=data["colors"]
                )
        except (OSError, KeyError, ValueError) as exc:
            raise RaySourceError(f"Cannot read {self.path}: {exc}") from exc
        for start in range(0, len(batch), max(1, chunk_size)):
            yield batch.take(slice(start, start + chunk_size))
