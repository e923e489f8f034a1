from __future__ import annotations
from dataclasses import dataclass, field
import numpy as np

@dataclass
class Pose:
    t: np.ndarray = field(default_factory=lambda: np.zeros(3))   # (3,)
    R: np.ndarray = field(default_factory=lambda: np.eye(3))     # (3,3)

    @staticmethod
    def from_xyz_rpy(xyz: tuple[float,float,float], rpy_deg: tuple[float,float,float]) -> "Pose":
        rx, ry, rz = np.deg2rad(rpy_deg)
        cx, sx = np.cos(rx), np.sin(rx)
        cy, sy = np.cos(ry), np.sin(ry)
        cz, sz = np.cos(rz), np.sin(rz)
        Rx = np.array([[1,0,0],[0,cx,-sx],[0,sx,cx]])
        Ry = np.array([[cy,0,sy],[0,1,0],[-sy,0,cy]])
        Rz = np.array([[cz,-sz,0],[sz,cz,0],[0,0,1]])
        R = Rz @ Ry @ Rx
        return Pose(t=np.array(xyz, dtype=float), R=R.astype(float))

    @staticmethod
    def from_xyz_quat(xyz: tuple[float,float,float], quat_wxyz: tuple[float,float,float,float]) -> "Pose":
        w, x, y, z = np.asarray(quat_wxyz, dtype=float) / np.linalg.norm(quat_wxyz)
        R = np.array([
            [1 - 2*(y*y + z*z), 2*(x*y - z*w), 2*(x*z + y*w)],
            [2*(x*y + z*w), 1 - 2*(x*x + z*z), 2*(y*z - x*w)],
            [2*(x*z - y*w), 2*(y*z + x*w), 1 - 2*(x*x + y*y)],
        ])
        return Pose(t=np.array(xyz, dtype=float), R=R)

    def apply(self, p_body: np.ndarray) -> np.ndarray:
        return (self.R @ p_body.T).T + self.t

    def inverse(self) -> "Pose":
        return Pose(t=-(self.R.T @ self.t), R=self.R.T.copy())

    def __mul__(self, other: "Pose") -> "Pose":
        return Pose(t=self.R @ other.t + self.t, R=self.R @ other.R)
