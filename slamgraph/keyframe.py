"""Keyframes: selected frames that anchor the map and the covisibility graph."""

from __future__ import annotations

import itertools
import math
import threading

import numpy as np

FRAME_GRID_COLS = 64
FRAME_GRID_ROWS = 48

# Minimum number of shared map points for a covisibility edge.
COVISIBILITY_THRESHOLD = 15

# Level of the vocabulary tree (from the leaves up) used for feature vectors.
FEATURE_VECTOR_LEVELS_UP = 4


def _pose_matrix(tcw) -> np.ndarray:
    matrix = np.asarray(tcw, dtype=float)
    if matrix.shape == (3, 4):
        matrix = np.vstack([matrix, [0.0, 0.0, 0.0, 1.0]])
    if matrix.shape != (4, 4):
        raise ValueError(f"pose must be 4x4 or 3x4, got shape {matrix.shape}")
    return matrix.copy()


def _ordered_by_weight(weights: dict) -> tuple[list, list]:
    """Return keyframes and their weights sorted by decreasing weight."""
    pairs = sorted(weights.items(), key=lambda item: (item[1], item[0].id), reverse=True)
    return [kf for kf, _ in pairs], [w for _, w in pairs]


class KeyFrame:
    """A keyframe with its pose, features, map point matches and graph links."""

    _ids = itertools.count()

    def __init__(self, frame, world_map, database):
        self.id = next(KeyFrame._ids)
        self.frame_id = frame.id
        self.timestamp = frame.timestamp

        self.grid_cols = FRAME_GRID_COLS
        self.grid_rows = FRAME_GRID_ROWS
        self.grid_element_width_inv = frame.grid_element_width_inv
        self.grid_element_height_inv = frame.grid_element_height_inv

        # Bookkeeping used by tracking, local mapping and loop closing.
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.tcw_gba = None
        self.tcw_bef_gba = None
        self.tcp = None

        self.fx = frame.fx
        self.fy = frame.fy
        self.cx = frame.cx
        self.cy = frame.cy
        self.invfx = frame.invfx
        self.invfy = frame.invfy
        self.bf = frame.bf
        self.b = frame.b
        self.th_depth = frame.th_depth

        self.n = frame.n
        self.keys = list(frame.keys)
        self.keys_un = list(frame.keys_un)
        self.u_right = list(frame.u_right)
        self.depth = list(frame.depth)
        self.descriptors = np.array(frame.descriptors, copy=True)

        self.bow_vector = dict(frame.bow_vector)
        self.feature_vector = dict(frame.feature_vector)

        self.scale_levels = frame.scale_levels
        self.scale_factor = frame.scale_factor
        self.log_scale_factor = frame.log_scale_factor
        self.scale_factors = list(frame.scale_factors)
        self.level_sigma2 = list(frame.level_sigma2)
        self.inv_level_sigma2 = list(frame.inv_level_sigma2)

        self.min_x = frame.min_x
        self.min_y = frame.min_y
        self.max_x = frame.max_x
        self.max_y = frame.max_y
        self.k = np.array(frame.k, dtype=float, copy=True)

        self.database = database
        self.vocabulary = frame.vocabulary
        self.world_map = world_map
        self.half_baseline = frame.b / 2

        self._map_points = list(frame.map_points)
        self.grid = [
            [list(cell) for cell in column[: self.grid_rows]]
            for column in frame.grid[: self.grid_cols]
        ]

        self._pose_lock = threading.RLock()
        self._connections_lock = threading.RLock()
        self._features_lock = threading.RLock()

        self._connected_weights: dict = {}
        self._ordered_connected: list = []
        self._ordered_weights: list = []
        self._first_connection = True
        self._parent = None
        self._children: dict = {}
        self._loop_edges: dict = {}
        self._not_erase = False
        self._to_be_erased = False
        self._bad = False

        self.set_pose(frame.tcw)

    def __repr__(self) -> str:
        return f"KeyFrame(id={self.id}, frame_id={self.frame_id})"

    def compute_bow(self) -> None:
        """Compute the bag-of-words vectors if they are not known yet."""
        if not self.bow_vector or not self.feature_vector:
            descriptors = list(self.descriptors)
            self.bow_vector, self.feature_vector = self.vocabulary.transform(
                descriptors, FEATURE_VECTOR_LEVELS_UP
            )

    # Pose

    def set_pose(self, tcw) -> None:
        pose = _pose_matrix(tcw)
        with self._pose_lock:
            self._tcw = pose
            rwc = pose[:3, :3].T
            self._ow = -rwc @ pose[:3, 3]
            twc = np.eye(4)
            twc[:3, :3] = rwc
            twc[:3, 3] = self._ow
            self._twc = twc
            self._cw = (twc @ np.array([self.half_baseline, 0.0, 0.0, 1.0]))[:3]

    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    def stereo_center(self) -> np.ndarray:
        """Return the world position of the midpoint of the stereo baseline."""
        with self._pose_lock:
            return self._cw.copy()

    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Covisibility graph

    def add_connection(self, keyframe, weight) -> None:
        with self._connections_lock:
            if self._connected_weights.get(keyframe) == weight:
                return
            self._connected_weights[keyframe] = weight
        self.update_best_covisibles()

    def update_best_covisibles(self) -> None:
        with self._connections_lock:
            self._ordered_connected, self._ordered_weights = _ordered_by_weight(
                self._connected_weights
            )

    def connected_keyframes(self) -> set:
        with self._connections_lock:
            return set(self._connected_weights)

    def vector_covisible_keyframes(self) -> list:
        with self._connections_lock:
            return list(self._ordered_connected)

    def best_covisibility_keyframes(self, n) -> list:
        with self._connections_lock:
            return list(self._ordered_connected[:n])

    def covisibles_by_weight(self, w) -> list:
        """Return the covisible keyframes ahead of the first one weighing less than ``w``.

        When no connection weighs less than ``w`` the result is empty.
        """
        with self._connections_lock:
            for position, weight in enumerate(self._ordered_weights):
                if weight < w:
                    return list(self._ordered_connected[:position])
            return []

    def weight(self, keyframe) -> int:
        with self._connections_lock:
            return self._connected_weights.get(keyframe, 0)

    # Map point matches

    def add_map_point(self, point, index) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def erase_map_point_match(self, index) -> None:
        with self._features_lock:
            self._map_points[index] = None

    def erase_map_point(self, point) -> None:
        index = point.index_in_keyframe(self)
        if index >= 0:
            with self._features_lock:
                self._map_points[index] = None

    def replace_map_point_match(self, index, point) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def map_points(self) -> set:
        """Return the good map points matched in this keyframe."""
        with self._features_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def tracked_map_points(self, min_obs) -> int:
        """Count good map points, requiring at least ``min_obs`` observations if positive."""
        with self._features_lock:
            points = list(self._map_points[: self.n])
        return sum(
            1
            for p in points
            if p is not None and not p.is_bad() and (min_obs <= 0 or p.num_observations() >= min_obs)
        )

    def map_point_matches(self) -> list:
        with self._features_lock:
            return list(self._map_points)

    def map_point(self, index):
        with self._features_lock:
            return self._map_points[index]

    def update_connections(self) -> None:
        """Rebuild covisibility links from the keyframes that share map points."""
        with self._features_lock:
            points = list(self._map_points)

        counter: dict = {}
        for point in points:
            if point is None or point.is_bad():
                continue
            for keyframe in point.observations():
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        best_count = 0
        best_keyframe = None
        strong: dict = {}
        for keyframe, count in counter.items():
            if count > best_count:
                best_count = count
                best_keyframe = keyframe
            if count >= COVISIBILITY_THRESHOLD:
                strong[keyframe] = count
                keyframe.add_connection(self, count)

        if not strong:
            strong[best_keyframe] = best_count
            best_keyframe.add_connection(self, best_count)

        ordered, weights = _ordered_by_weight(strong)

        with self._connections_lock:
            self._connected_weights = counter
            self._ordered_connected = ordered
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = ordered[0]
                self._parent.add_child(self)
                self._first_connection = False

    # Spanning tree and loop edges

    def add_child(self, keyframe) -> None:
        with self._connections_lock:
            self._children[keyframe] = None

    def erase_child(self, keyframe) -> None:
        with self._connections_lock:
            self._children.pop(keyframe, None)

    def change_parent(self, keyframe) -> None:
        with self._connections_lock:
            self._parent = keyframe
            keyframe.add_child(self)

    def children(self) -> set:
        with self._connections_lock:
            return set(self._children)

    def parent(self):
        with self._connections_lock:
            return self._parent

    def has_child(self, keyframe) -> bool:
        with self._connections_lock:
            return keyframe in self._children

    def add_loop_edge(self, keyframe) -> None:
        with self._connections_lock:
            self._not_erase = True
            self._loop_edges[keyframe] = None

    def loop_edges(self) -> set:
        with self._connections_lock:
            return set(self._loop_edges)

    # Removal

    def set_not_erase(self) -> None:
        with self._connections_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        with self._connections_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove the keyframe from the graph, the map and the database."""
        with self._connections_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            connected = list(self._connected_weights)

        for keyframe in connected:
            keyframe.erase_connection(self)

        with self._features_lock:
            points = [p for p in self._map_points if p is not None]
        for point in points:
            point.erase_observation(self)

        with self._connections_lock, self._features_lock:
            self._connected_weights.clear()
            self._ordered_connected = []
            self._ordered_weights = []

            candidates = {self._parent: None} if self._parent is not None else {}

            # Each round attaches the child with the strongest link to a candidate parent.
            while self._children:
                best = -1
                chosen = None
                for child in self._children:
                    if child.is_bad():
                        continue
                    for connected_kf in child.vector_covisible_keyframes():
                        for candidate in candidates:
                            if connected_kf.id == candidate.id:
                                w = child.weight(connected_kf)
                                if w > best:
                                    best = w
                                    chosen = (child, connected_kf)
                if chosen is None:
                    break
                child, new_parent = chosen
                child.change_parent(new_parent)
                candidates[child] = None
                del self._children[child]

            if self._parent is not None:
                for child in list(self._children):
                    child.change_parent(self._parent)
                self._parent.erase_child(self)
                self.tcp = self._tcw @ self._parent.pose_inverse()
            self._bad = True

        self.world_map.erase_keyframe(self)
        if self.database is not None:
            self.database.erase(self)

    def is_bad(self) -> bool:
        with self._connections_lock:
            return self._bad

    def erase_connection(self, keyframe) -> None:
        with self._connections_lock:
            if keyframe not in self._connected_weights:
                return
            del self._connected_weights[keyframe]
        self.update_best_covisibles()

    # Image queries

    def features_in_area(self, x, y, r) -> list:
        """Return indices of undistorted keypoints within the square of half-side ``r``."""
        indices: list = []

        min_cell_x = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return indices
        max_cell_x = min(self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv))
        if max_cell_x < 0:
            return indices
        min_cell_y = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return indices
        max_cell_y = min(self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv))
        if max_cell_y < 0:
            return indices

        for column in self.grid[min_cell_x : max_cell_x + 1]:
            for cell in column[min_cell_y : max_cell_y + 1]:
                for index in cell:
                    px, py = self.keys_un[index].pt[0], self.keys_un[index].pt[1]
                    if abs(px - x) < r and abs(py - y) < r:
                        indices.append(index)
        return indices

    def is_in_image(self, x, y) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, i):
        """Back-project keypoint ``i`` to world coordinates, or ``None`` without depth."""
        z = self.depth[i]
        if z <= 0:
            return None
        u, v = self.keys[i].pt[0], self.keys[i].pt[1]
        point_camera = np.array([(u - self.cx) * z * self.invfx, (v - self.cy) * z * self.invfy, z])
        with self._pose_lock:
            return self._twc[:3, :3] @ point_camera + self._twc[:3, 3]

    def compute_scene_median_depth(self, q) -> float:
        """Return the depth at position ``(count - 1) // q`` of the sorted point depths."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points[: self.n])
            tcw = self._tcw.copy()

        row = tcw[2, :3]
        z_offset = tcw[2, 3]
        depths = sorted(
            float(row @ np.asarray(p.world_pos(), dtype=float).reshape(3) + z_offset)
            for p in points
            if p is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points to compute a depth from")
        return depths[(len(depths) - 1) // q]