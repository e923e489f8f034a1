from __future__ import annotations
from dataclasses import dataclass
from typing import BinaryIO, Dict, Optional, List
import numpy as np
import pathlib

import laspy  # type: ignore
from .rays import RayBatch
from .utils import get_logger

_log = get_logger()

_COUNT_WIDTH = 15  # fixed-width vertex count so the header can be patched in place


@dataclass
class LasRayWriter:
    """Streaming LAS/LAZ ray writer using laspy (v2+).

    End points go into the LAS coordinates, ray starts into the
    StartX/StartY/StartZ extra dimensions and alpha into an Alpha extra
    dimension. The header is created lazily on the first batch so the
    offset can be inferred from the data.
    """
    path: str
    point_format: int = 7
    compress: bool = False
    scale: tuple[float, float, float] = (1e-4, 1e-4, 1e-4)
    offset: Optional[tuple[float, float, float]] = None

    def __post_init__(self) -> None:
        self._fh: Optional[laspy.LasWriter] = None  # type: ignore
        self._header: Optional[laspy.LasHeader] = None  # type: ignore
        self.count = 0

    # -- public API --
    def write_batch(self, batch: RayBatch) -> None:
        if len(batch) == 0:
            return
        if self._fh is None:
            self._init_header_from_batch(batch)
        assert self._fh is not None and self._header is not None
        self._fh.write_points(self._point_record_from_batch(batch, self._header))
        self.count += len(batch)

    def close(self) -> None:
        if self._fh is None and self.count == 0:
            # nothing written yet: still produce a valid, empty file
            self._init_header_from_batch(RayBatch.empty())
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    # -- internals --
    def _init_header_from_batch(self, batch: RayBatch) -> None:
        hdr = laspy.LasHeader(point_format=laspy.PointFormat(self.point_format), version="1.4")
        hdr.scales = self.scale
        if self.offset is None:
            mn = np.min(batch.ends, axis=0) if len(batch) else np.zeros(3)
            hdr.offsets = (float(mn[0]), float(mn[1]), float(mn[2]))
        else:
            hdr.offsets = self.offset
        for name in ("StartX", "StartY", "StartZ"):
            hdr.add_extra_dim(laspy.ExtraBytesParams(name=name, type="float64"))
        hdr.add_extra_dim(laspy.ExtraBytesParams(name="Alpha", type="uint8"))

        path = pathlib.Path(self.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = laspy.open(path, mode="w", header=hdr, do_compress=self.compress)
        self._header = hdr
        _log.info("Opened %s (PF=%d, compress=%s)", path.name, self.point_format, self.compress)

    def _point_record_from_batch(self, batch: RayBatch, header: "laspy.LasHeader") -> "laspy.ScaleAwarePointRecord":
        pts = laspy.ScaleAwarePointRecord.zeros(len(batch), header=header)
        pts.x = batch.ends[:, 0]
        pts.y = batch.ends[:, 1]
        pts.z = batch.ends[:, 2]
        dims = pts.point_format.dimension_names
        if "gps_time" in dims:
            pts.gps_time = batch.times
        if all(nm in dims for nm in ("red", "green", "blue")):
            rgb = batch.colors[:, :3].astype(np.uint16) * 257  # 0..255 -> 0..65535
            pts.red = rgb[:, 0]
            pts.green = rgb[:, 1]
            pts.blue = rgb[:, 2]
        pts["StartX"] = batch.starts[:, 0]
        pts["StartY"] = batch.starts[:, 1]
        pts["StartZ"] = batch.starts[:, 2]
        pts["Alpha"] = batch.colors[:, 3]
        return pts


class PlyRayWriter:
    """Streaming ray cloud PLY writer.

    Rays are appended as they arrive; the vertex count in the header is
    patched on close.
    """
    def __init__(self, path: str, binary: bool = True) -> None:
        self.path = path
        self.binary = binary
        self.count = 0
        self._fh: Optional[BinaryIO] = None
        self._count_pos = 0
        self._dtype = np.dtype([
            ("x", "<f8"), ("y", "<f8"), ("z", "<f8"),
            ("nx", "<f8"), ("ny", "<f8"), ("nz", "<f8"),
            ("time", "<f8"),
            ("red", "u1"), ("green", "u1"), ("blue", "u1"), ("alpha", "u1"),
        ])

    def _open(self) -> None:
        path = pathlib.Path(self.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(path, "wb")
        fh.write(b"ply\n")
        fh.write(b"format binary_little_endian 1.0\n" if self.binary else b"format ascii 1.0\n")
        fh.write(b"comment generated by raycloud\n")
        fh.write(b"element vertex ")
        self._count_pos = fh.tell()
        fh.write(b"0".rjust(_COUNT_WIDTH, b"0") + b"\n")
        for name in ("x", "y", "z", "nx", "ny", "nz", "time"):
            fh.write(f"property double {name}\n".encode("ascii"))
        for name in ("red", "green", "blue", "alpha"):
            fh.write(f"property uchar {name}\n".encode("ascii"))
        fh.write(b"end_header\n")
        self._fh = fh

    def write_batch(self, batch: RayBatch) -> None:
        if self._fh is None:
            self._open()
        assert self._fh is not None
        offsets = batch.starts - batch.ends
        if self.binary:
            rec = np.empty(len(batch), dtype=self._dtype)
            rec["x"], rec["y"], rec["z"] = batch.ends.T
            rec["nx"], rec["ny"], rec["nz"] = offsets.T
            rec["time"] = batch.times
            rec["red"], rec["green"], rec["blue"], rec["alpha"] = batch.colors.T
            self._fh.write(rec.tobytes())
        else:
            lines = []
            for e, o, t, c in zip(batch.ends, offsets, batch.times, batch.colors):
                values = [float(v) for v in (*e, *o, t)]
                lines.append(
                    " ".join(f"{v:.17g}" for v in values)
                    + f" {int(c[0])} {int(c[1])} {int(c[2])} {int(c[3])}\n"
                )
            self._fh.write("".join(lines).encode("ascii"))
        self.count += len(batch)

    def close(self) -> None:
        if self._fh is None:
            self._open()
        assert self._fh is not None
        self._fh.seek(self._count_pos)
        self._fh.write(str(self.count).rjust(_COUNT_WIDTH, "0").encode("ascii"))
        self._fh.close()
        self._fh = None


class NpzRayWriter:
    def __init__(self, path: str) -> None:
        self.path = path
        self._batches: List[RayBatch] = []

    def write_batch(self, batch: RayBatch) -> None:
        self._batches.append(batch)

    def close(self) -> None:
        path = pathlib.Path(self.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        merged = RayBatch.concatenate(self._batches)
        out: Dict[str, np.ndarray] = {
            "starts": merged.starts,
            "ends": merged.ends,
            "times": merged.times,
            "colors": merged.colors,
        }
        np.savez_compressed(path, **out)
        self._batches.clear()
