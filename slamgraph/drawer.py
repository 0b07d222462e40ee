"""Viewer geometry for the map: points, keyframe frustums and graph edges."""

from __future__ import annotations

import threading
from typing import Mapping, NamedTuple

import numpy as np


class MapPointVertices(NamedTuple):
    """Positions of ordinary and reference map points, one row per point."""

    points: np.ndarray
    reference_points: np.ndarray


class KeyFrameGeometry(NamedTuple):
    """Keyframe frustums (k x 8 x 2 x 3) and graph edges (m x 2 x 3) in world frame."""

    frustums: np.ndarray
    graph: np.ndarray


def frustum_segments(size) -> np.ndarray:
    """Return the 8 line segments of a camera frustum of width ``size`` in camera frame."""
    w = float(size)
    h = w * 0.75
    z = w * 0.6
    origin = (0.0, 0.0, 0.0)
    return np.array(
        [
            (origin, (w, h, z)),
            (origin, (w, -h, z)),
            (origin, (-w, -h, z)),
            (origin, (-w, h, z)),
            ((w, h, z), (w, -h, z)),
            ((-w, h, z), (-w, -h, z)),
            ((-w, h, z), (w, h, z)),
            ((-w, -h, z), (w, -h, z)),
        ],
        dtype=float,
    )


def _transform(segments: np.ndarray, twc) -> np.ndarray:
    twc = np.asarray(twc, dtype=float)
    return segments @ twc[:3, :3].T + twc[:3, 3]


def _center(keyframe) -> np.ndarray:
    return np.asarray(keyframe.camera_center(), dtype=float).reshape(3)


def _points_array(rows) -> np.ndarray:
    return np.array(rows, dtype=float).reshape(-1, 3)


class MapDrawer:
    """Produces the geometry a viewer draws for a map."""

    def __init__(self, world_map, settings: Mapping):
        self.world_map = world_map
        self.keyframe_size = float(settings.get("Viewer.KeyFrameSize", 0.0))
        self.keyframe_line_width = float(settings.get("Viewer.KeyFrameLineWidth", 0.0))
        self.graph_line_width = float(settings.get("Viewer.GraphLineWidth", 0.0))
        self.point_size = float(settings.get("Viewer.PointSize", 0.0))
        self.camera_size = float(settings.get("Viewer.CameraSize", 0.0))
        self.camera_line_width = float(settings.get("Viewer.CameraLineWidth", 0.0))
        self._camera_pose = None
        self._camera_lock = threading.Lock()

    def map_point_vertices(self) -> MapPointVertices:
        """Return positions of good map points, split into ordinary and reference ones."""
        points = self.world_map.all_map_points()
        references = list(dict.fromkeys(self.world_map.reference_map_points()))
        if not points:
            return MapPointVertices(_points_array([]), _points_array([]))

        reference_set = set(references)
        ordinary = [
            np.asarray(p.world_pos(), dtype=float).reshape(3)
            for p in points
            if not p.is_bad() and p not in reference_set
        ]
        reference = [np.asarray(p.world_pos(), dtype=float).reshape(3) for p in references if not p.is_bad()]
        return MapPointVertices(_points_array(ordinary), _points_array(reference))

    def keyframe_segments(self, draw_keyframes, draw_graph) -> KeyFrameGeometry:
        """Return keyframe frustums and covisibility, spanning-tree and loop edges."""
        keyframes = self.world_map.all_keyframes()

        frustums = np.zeros((0, 8, 2, 3))
        if draw_keyframes and keyframes:
            local = frustum_segments(self.keyframe_size)
            frustums = np.array([_transform(local, kf.pose_inverse()) for kf in keyframes])

        edges = []
        if draw_graph:
            for keyframe in keyframes:
                center = _center(keyframe)
                for other in keyframe.covisibles_by_weight(100):
                    if other.id < keyframe.id:
                        continue
                    edges.append((center, _center(other)))

                parent = keyframe.parent()
                if parent is not None:
                    edges.append((center, _center(parent)))

                for other in keyframe.loop_edges():
                    if other.id < keyframe.id:
                        continue
                    edges.append((center, _center(other)))

        graph = np.array(edges, dtype=float).reshape(-1, 2, 3)
        return KeyFrameGeometry(frustums, graph)

    def current_camera_segments(self, twc) -> np.ndarray:
        """Return the current camera frustum placed by ``twc``.

        ``twc`` is a 4x4 matrix or its 16 entries in column-major order.
        """
        matrix = np.asarray(twc, dtype=float)
        if matrix.shape == (16,):
            matrix = matrix.reshape(4, 4, order="F")
        elif matrix.shape != (4, 4):
            raise ValueError(f"twc must be 4x4 or 16 values, got shape {matrix.shape}")
        return _transform(frustum_segments(self.camera_size), matrix)

    def set_current_camera_pose(self, tcw) -> None:
        with self._camera_lock:
            self._camera_pose = np.array(tcw, dtype=float, copy=True)

    def current_opengl_camera_matrix(self) -> np.ndarray:
        """Return the camera-to-world matrix as 16 column-major values (identity if unset)."""
        with self._camera_lock:
            pose = None if self._camera_pose is None else self._camera_pose.copy()
        if pose is None:
            return np.eye(4).flatten(order="F")
        rwc = pose[:3, :3].T
        twc = -rwc @ pose[:3, 3]
        matrix = np.eye(4)
        matrix[:3, :3] = rwc
        matrix[:3, 3] = twc
        return matrix.flatten(order="F")