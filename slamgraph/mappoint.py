"""Map points: 3D landmarks observed from one or more keyframes."""

from __future__ import annotations

import itertools
import math
import threading

import numpy as np


def _vector3(value) -> np.ndarray:
    vector = np.asarray(value, dtype=float).reshape(-1)
    if vector.shape != (3,):
        raise ValueError(f"expected a 3D vector, got shape {np.shape(value)}")
    return vector


def descriptor_distance(a, b) -> int:
    """Return the Hamming distance between two binary descriptors."""
    first = np.asarray(a, dtype=np.uint8).reshape(-1)
    second = np.asarray(b, dtype=np.uint8).reshape(-1)
    if first.shape != second.shape:
        raise ValueError("descriptors must have the same length")
    return int(np.unpackbits(np.bitwise_xor(first, second)).sum())


class MapPoint:
    """A 3D point of the map together with the keyframes that observe it."""

    _ids = itertools.count()
    global_lock = threading.Lock()

    def __init__(self, position, reference_keyframe, world_map):
        self._setup(position, world_map)
        self.first_keyframe_id = reference_keyframe.id
        self.first_frame = reference_keyframe.frame_id
        self._reference = reference_keyframe
        self._normal = np.zeros(3)
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._descriptor = None
        self._assign_id()

    @classmethod
    def from_frame(cls, position, world_map, frame, index) -> "MapPoint":
        """Create a point seen by keypoint ``index`` of an ordinary frame."""
        point = cls.__new__(cls)
        point._setup(position, world_map)
        point.first_keyframe_id = -1
        point.first_frame = frame.id
        point._reference = None

        center = _vector3(frame.camera_center())
        offset = point._world_pos - center
        distance = float(np.linalg.norm(offset))
        point._normal = offset / distance

        level = frame.keys_un[index].octave
        point._max_distance = distance * frame.scale_factors[level]
        point._min_distance = point._max_distance / frame.scale_factors[frame.scale_levels - 1]
        point._descriptor = np.array(frame.descriptors[index], copy=True)
        point._assign_id()
        return point

    def _setup(self, position, world_map) -> None:
        self._world_pos = _vector3(position).copy()
        self._map = world_map
        self._lock = threading.RLock()
        self._observations: dict = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced = None

        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba = None

    def _assign_id(self) -> None:
        # Points are created from several threads; the map serialises ids.
        with self._map.mutex_point_creation:
            self.id = next(MapPoint._ids)

    def __repr__(self) -> str:
        return f"MapPoint(id={self.id}, pos={self._world_pos.tolist()})"

    def set_world_pos(self, position) -> None:
        with MapPoint.global_lock, self._lock:
            self._world_pos = _vector3(position).copy()

    def world_pos(self) -> np.ndarray:
        with self._lock:
            return self._world_pos.copy()

    def normal(self) -> np.ndarray:
        with self._lock:
            return self._normal.copy()

    def reference_keyframe(self):
        with self._lock:
            return self._reference

    def add_observation(self, keyframe, index) -> None:
        """Record that ``keyframe`` sees this point at keypoint ``index``."""
        with self._lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._n_obs += 2 if keyframe.u_right[index] >= 0 else 1

    def erase_observation(self, keyframe) -> None:
        """Forget an observation; the point goes bad when two or fewer remain."""
        bad = False
        with self._lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.u_right[index] >= 0 else 1
                if self._reference is keyframe:
                    self._reference = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    def observations(self) -> dict:
        with self._lock:
            return dict(self._observations)

    def num_observations(self) -> int:
        with self._lock:
            return self._n_obs

    def set_bad_flag(self) -> None:
        """Mark the point bad and detach it from every keyframe and the map."""
        with self._lock:
            self._bad = True
            observations = dict(self._observations)
            self._observations.clear()
        for keyframe, index in observations.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def replaced(self):
        with self._lock:
            return self._replaced

    def replace(self, other: "MapPoint") -> None:
        """Hand every observation over to ``other`` and retire this point."""
        if other.id == self.id:
            return
        with self._lock:
            observations = dict(self._observations)
            self._observations.clear()
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = other

        for keyframe, index in observations.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._lock:
            return self._bad

    def increase_visible(self, n=1) -> None:
        with self._lock:
            self._visible += n

    def increase_found(self, n=1) -> None:
        with self._lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with the least median distance to the others."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)

        descriptors = [
            np.asarray(keyframe.descriptors[index])
            for keyframe, index in observations.items()
            if not keyframe.is_bad()
        ]
        if not descriptors:
            return

        n = len(descriptors)
        distances = np.zeros((n, n), dtype=int)
        for i, j in itertools.combinations(range(n), 2):
            distances[i, j] = distances[j, i] = descriptor_distance(descriptors[i], descriptors[j])

        medians = np.sort(distances, axis=1)[:, (n - 1) // 2]
        best = int(np.argmin(medians))

        with self._lock:
            self._descriptor = descriptors[best].copy()

    def descriptor(self):
        with self._lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def index_in_keyframe(self, keyframe) -> int:
        with self._lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe) -> bool:
        with self._lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance distances."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
            reference = self._reference
            position = self._world_pos.copy()

        if not observations or reference is None:
            return

        normal = np.zeros(3)
        for keyframe in observations:
            direction = position - _vector3(keyframe.camera_center())
            normal += direction / np.linalg.norm(direction)

        distance = float(np.linalg.norm(position - _vector3(reference.camera_center())))
        level = reference.keys_un[observations.get(reference, 0)].octave
        max_distance = distance * reference.scale_factors[level]

        with self._lock:
            self._max_distance = max_distance
            self._min_distance = max_distance / reference.scale_factors[reference.scale_levels - 1]
            self._normal = normal / len(observations)

    def min_distance_invariance(self) -> float:
        with self._lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist, frame) -> int:
        """Predict the pyramid level at which the point is seen from ``current_dist``."""
        with self._lock:
            ratio = self._max_distance / current_dist
        if ratio <= 0:
            return 0
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        return min(max(scale, 0), frame.scale_levels - 1)