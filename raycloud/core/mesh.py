from __future__ import annotations
from pathlib import Path
import numpy as np

import trimesh  # type: ignore
from .cuboid import Cuboid
from .utils import get_logger

_log = get_logger()


class Mesh:
    """Triangle mesh: a vertex list and a triangle index list.

    Containment queries against a mesh are only meaningful when it is closed
    and consistently oriented; open or non-manifold meshes are accepted but
    give unreliable inside/outside answers.
    """
    def __init__(self, vertices: np.ndarray, faces: np.ndarray) -> None:
        self.vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
        self.faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
        if len(self.faces) and (self.faces.min() < 0 or self.faces.max() >= len(self.vertices)):
            raise ValueError("Mesh face indices reference missing vertices.")

    def __repr__(self) -> str:
        return f"Mesh({len(self.vertices)} vertices, {len(self.faces)} triangles)"

    # -- IO helpers --
    @staticmethod
    def load(path: str | Path) -> "Mesh":
        path = Path(path)
        if path.suffix.lower() == ".ply" and Mesh._is_ascii_ply(path):
            return Mesh._load_ascii_ply(path)
        tm = trimesh.load_mesh(str(path), process=False)
        return Mesh(np.asarray(tm.vertices), np.asarray(tm.faces))

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write("ply\nformat ascii 1.0\n")
            f.write(f"element vertex {len(self.vertices)}\n")
            f.write("property double x\nproperty double y\nproperty double z\n")
            f.write(f"element face {len(self.faces)}\n")
            f.write("property list uchar int vertex_indices\n")
            f.write("end_header\n")
            for x, y, z in self.vertices:
                f.write(f"{float(x):.17g} {float(y):.17g} {float(z):.17g}\n")
            for a, b, c in self.faces:
                f.write(f"3 {int(a)} {int(b)} {int(c)}\n")

    # -- API --
    def bounds(self) -> Cuboid:
        if len(self.vertices) == 0:
            raise RuntimeError("Mesh has no vertices.")
        return Cuboid.from_points(self.vertices[np.unique(self.faces)] if len(self.faces) else self.vertices)

    def face_normals(self, normalize: bool = True) -> np.ndarray:
        tri = self.vertices[self.faces]
        normals = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        if normalize:
            lengths = np.linalg.norm(normals, axis=1, keepdims=True)
            normals = normals / np.where(lengths > 0.0, lengths, 1.0)
        return normals

    def vertex_normals(self) -> np.ndarray:
        """Unit vertex normals: the area-weighted sum of adjacent face normals."""
        normals = np.zeros_like(self.vertices)
        face_n = self.face_normals(normalize=False)
        for k in range(3):
            np.add.at(normals, self.faces[:, k], face_n)
        lengths = np.linalg.norm(normals, axis=1, keepdims=True)
        return normals / np.where(lengths > 0.0, lengths, 1.0)

    def reduce(self) -> None:
        """Drop vertices that no triangle references, renumbering the faces."""
        used, inverse = np.unique(self.faces.reshape(-1), return_inverse=True)
        self.vertices = self.vertices[used]
        self.faces = inverse.reshape(-1, 3).astype(np.int64)

    def moments(self) -> np.ndarray:
        """Vertex mean and standard deviation (6 values)."""
        return np.concatenate([self.vertices.mean(axis=0), self.vertices.std(axis=0)])

    # -- ASCII PLY --
    @staticmethod
    def _is_ascii_ply(path: Path) -> bool:
        with open(path, "rb") as f:
            head = f.read(256)
        return head.startswith(b"ply") and b"format ascii" in head

    @staticmethod
    def _load_ascii_ply(path: Path) -> "Mesh":
        with open(path, "r", encoding="utf-8") as f:
            header: list[str] = []
            while True:
                line = f.readline()
                if not line:
                    raise RuntimeError("Unexpected EOF while reading PLY header.")
                line = line.strip()
                header.append(line)
                if line == "end_header":
                    break

            if header[0] != "ply" or "format ascii" not in header[1]:
                raise RuntimeError("Only ASCII PLY format is supported here.")

            n_vertices = 0
            n_faces = 0
            order: list[str] = []
            for line in header[2:]:
                parts = line.split()
                if parts and parts[0] == "element":
                    order.append(parts[1])
                    if parts[1] == "vertex":
                        n_vertices = int(parts[2])
                    elif parts[1] == "face":
                        n_faces = int(parts[2])
            if order[:1] != ["vertex"]:
                raise RuntimeError("PLY mesh must list vertices first.")

            vertices = []
            for _ in range(n_vertices):
                parts = f.readline().split()
                if len(parts) < 3:
                    raise RuntimeError("Vertex line must contain at least xyz.")
                vertices.append(tuple(float(v) for v in parts[:3]))

            faces = []
            for _ in range(n_faces):
                parts = f.readline().split()
                if not parts:
                    raise RuntimeError("Unexpected EOF while reading PLY faces.")
                count = int(parts[0])
                idx = [int(v) for v in parts[1:1 + count]]
                # fan-triangulate polygons
                for j in range(1, count - 1):
                    faces.append((idx[0], idx[j], idx[j + 1]))

        _log.info("Loaded mesh %s: %d vertices, %d triangles", path.name, len(vertices), len(faces))
        return Mesh(np.asarray(vertices, dtype=np.float64).reshape(-1, 3), np.asarray(faces, dtype=np.int64).reshape(-1, 3))
