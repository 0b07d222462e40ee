"""Rigid and similarity transforms used by the mapping back end."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def _as_vector3(value, name: str) -> np.ndarray:
    vector = np.asarray(value, dtype=float).reshape(-1)
    if vector.shape != (3,):
        raise ValueError(f"{name} must have three components, got shape {np.shape(value)}")
    return vector


def _as_matrix3(value, name: str) -> np.ndarray:
    matrix = np.asarray(value, dtype=float)
    if matrix.shape != (3, 3):
        raise ValueError(f"{name} must be a 3x3 matrix, got shape {matrix.shape}")
    return matrix


def skew_symmetric(v) -> np.ndarray:
    """Return the 3x3 matrix ``[v]x`` such that ``[v]x @ w == v x w``."""
    x, y, z = _as_vector3(v, "v")
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def se3(rotation, translation) -> np.ndarray:
    """Build a 4x4 homogeneous rigid transform from ``R`` and ``t``."""
    transform = np.eye(4)
    transform[:3, :3] = _as_matrix3(rotation, "rotation")
    transform[:3, 3] = _as_vector3(translation, "translation")
    return transform


@dataclass(init=False)
class Sim3:
    """A similarity transform ``x -> s * R @ x + t``."""

    rotation: np.ndarray
    translation: np.ndarray
    scale: float

    def __init__(self, rotation, translation, scale=1.0):
        self.rotation = _as_matrix3(rotation, "rotation").copy()
        self.translation = _as_vector3(translation, "translation").copy()
        self.scale = float(scale)
        if self.scale == 0.0:
            raise ValueError("scale must be non-zero")

    @classmethod
    def from_pose(cls, tcw) -> "Sim3":
        """Build a unit-scale similarity from a 4x4 (or 3x4) camera pose."""
        pose = np.asarray(tcw, dtype=float)
        if pose.shape not in ((4, 4), (3, 4)):
            raise ValueError(f"pose must be 4x4 or 3x4, got shape {pose.shape}")
        return cls(pose[:3, :3], pose[:3, 3], 1.0)

    def __mul__(self, other: "Sim3") -> "Sim3":
        if not isinstance(other, Sim3):
            return NotImplemented
        return Sim3(
            self.rotation @ other.rotation,
            self.scale * (self.rotation @ other.translation) + self.translation,
            self.scale * other.scale,
        )

    def inverse(self) -> "Sim3":
        """Return the transform that undoes this one."""
        rotation_t = self.rotation.T
        inv_scale = 1.0 / self.scale
        return Sim3(rotation_t, -inv_scale * (rotation_t @ self.translation), inv_scale)

    def map(self, point) -> np.ndarray:
        """Apply the transform to a 3D point."""
        return self.scale * (self.rotation @ _as_vector3(point, "point")) + self.translation

    def to_matrix(self) -> np.ndarray:
        """Return the 4x4 matrix ``[sR | t; 0 1]``."""
        matrix = np.eye(4)
        matrix[:3, :3] = self.scale * self.rotation
        matrix[:3, 3] = self.translation
        return matrix

    def to_se3(self) -> np.ndarray:
        """Return the rigid pose ``[R | t/s; 0 1]`` obtained by dropping the scale."""
        return se3(self.rotation, self.translation / self.scale)