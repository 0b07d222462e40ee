"""Local mapping: integrates new keyframes and keeps the local map tidy."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque

from .triangulation import create_new_map_points

logger = logging.getLogger(__name__)

# Neighbours searched for triangulation and fusion.
STEREO_NEIGHBOURS = 10
MONOCULAR_NEIGHBOURS = 20
SECOND_NEIGHBOURS = 5

# A recently created point is culled when found in fewer than this share of the frames that see it.
MIN_FOUND_RATIO = 0.25

# A keyframe is redundant when this share of its points is seen by enough other keyframes.
REDUNDANCY_RATIO = 0.9
REDUNDANT_OBSERVATIONS = 3

_IDLE_SLEEP = 0.003


class LocalMapping:
    """Local mapping thread.

    Collaborators are duck-typed:

    * ``matcher`` provides ``search_for_triangulation(kf1, kf2, f12, only_stereo)
      -> pairs of indices`` and ``fuse_projection(keyframe, points)``, which
      projects ``points`` into ``keyframe`` and fuses duplicates.
    * ``optimizer`` provides ``local_bundle_adjustment(keyframe, abort_event, world_map)``.
    * The loop closer set with :meth:`set_loop_closer` provides ``insert_keyframe(keyframe)``.
    """

    def __init__(self, world_map, monocular, matcher, optimizer):
        self.world_map = world_map
        self.monocular = bool(monocular)
        self.matcher = matcher
        self.optimizer = optimizer

        self.loop_closer = None
        self.tracker = None

        self.current_keyframe = None
        self.recent_map_points: list = []

        self._new_keyframes: deque = deque()
        self._new_keyframes_lock = threading.Lock()

        self._abort_ba = threading.Event()

        self._reset_requested = False
        self._reset_lock = threading.Lock()

        self._finish_requested = False
        self._finished = True
        self._finish_lock = threading.Lock()

        self._stopped = False
        self._stop_requested = False
        self._not_stop = False
        self._stop_lock = threading.Lock()

        self._accept_keyframes = True
        self._accept_lock = threading.Lock()

    @property
    def abort_ba(self) -> threading.Event:
        """Event set whenever a running local bundle adjustment should stop."""
        return self._abort_ba

    def set_loop_closer(self, loop_closer) -> None:
        self.loop_closer = loop_closer

    def set_tracker(self, tracker) -> None:
        self.tracker = tracker

    # Main loop

    def run(self) -> None:
        """Process queued keyframes until a finish is requested."""
        with self._finish_lock:
            self._finished = False

        while True:
            # Tracking sees that local mapping is busy.
            self.set_accept_keyframes(False)

            if self.check_new_keyframes():
                self.process_new_keyframe()
                self.map_point_culling()
                self.create_new_map_points()

                if not self.check_new_keyframes():
                    self.search_in_neighbors()

                self._abort_ba.clear()

                if not self.check_new_keyframes() and not self.stop_requested():
                    if self.world_map.keyframes_in_map() > 2:
                        self.optimizer.local_bundle_adjustment(
                            self.current_keyframe, self._abort_ba, self.world_map
                        )
                    self.keyframe_culling()

                if self.loop_closer is not None:
                    self.loop_closer.insert_keyframe(self.current_keyframe)
            elif self.stop():
                while self.is_stopped() and not self.check_finish():
                    time.sleep(_IDLE_SLEEP)
                if self.check_finish():
                    break

            self.reset_if_requested()
            self.set_accept_keyframes(True)

            if self.check_finish():
                break
            time.sleep(_IDLE_SLEEP)

        self._set_finish()

    def insert_keyframe(self, keyframe) -> None:
        """Queue a keyframe and interrupt any running local bundle adjustment."""
        with self._new_keyframes_lock:
            self._new_keyframes.append(keyframe)
            self._abort_ba.set()

    def check_new_keyframes(self) -> bool:
        with self._new_keyframes_lock:
            return bool(self._new_keyframes)

    def keyframes_in_queue(self) -> int:
        with self._new_keyframes_lock:
            return len(self._new_keyframes)

    def process_new_keyframe(self) -> None:
        """Take the next keyframe, attach its points and insert it in the map."""
        with self._new_keyframes_lock:
            if not self._new_keyframes:
                raise LookupError("no keyframe waiting to be processed")
            keyframe = self._new_keyframes.popleft()
        self.current_keyframe = keyframe

        keyframe.compute_bow()

        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self.recent_map_points.append(point)

        keyframe.update_connections()
        self.world_map.add_keyframe(keyframe)

    def map_point_culling(self) -> None:
        """Drop recently created points that are rarely found or barely observed."""
        current_id = int(self.current_keyframe.id)
        min_observations = 2 if self.monocular else 3

        kept = []
        for point in self.recent_map_points:
            age = current_id - int(point.first_keyframe_id)
            if point.is_bad():
                continue
            if point.found_ratio() < MIN_FOUND_RATIO:
                point.set_bad_flag()
            elif age >= 2 and point.num_observations() <= min_observations:
                point.set_bad_flag()
            elif age >= 3:
                continue
            else:
                kept.append(point)
        self.recent_map_points = kept

    def _neighbour_count(self) -> int:
        return MONOCULAR_NEIGHBOURS if self.monocular else STEREO_NEIGHBOURS

    def create_new_map_points(self) -> list:
        """Triangulate new points with the best covisible keyframes; return them."""
        current = self.current_keyframe
        neighbours = current.best_covisibility_keyframes(self._neighbour_count())
        created = create_new_map_points(
            current,
            neighbours,
            self.matcher,
            self.world_map,
            self.monocular,
            self.check_new_keyframes,
        )
        self.recent_map_points.extend(created)
        return created

    def search_in_neighbors(self) -> None:
        """Fuse duplicated points between the current keyframe and its neighbourhood."""
        current = self.current_keyframe

        targets = []
        for neighbour in current.best_covisibility_keyframes(self._neighbour_count()):
            if neighbour.is_bad() or neighbour.fuse_target_for_kf == current.id:
                continue
            targets.append(neighbour)
            neighbour.fuse_target_for_kf = current.id

            for second in neighbour.best_covisibility_keyframes(SECOND_NEIGHBOURS):
                if (
                    second.is_bad()
                    or second.fuse_target_for_kf == current.id
                    or second.id == current.id
                ):
                    continue
                targets.append(second)

        current_points = current.map_point_matches()
        for target in targets:
            self.matcher.fuse_projection(target, current_points)

        candidates = []
        for target in targets:
            for point in target.map_point_matches():
                if point is None or point.is_bad() or point.fuse_candidate_for_kf == current.id:
                    continue
                point.fuse_candidate_for_kf = current.id
                candidates.append(point)

        self.matcher.fuse_projection(current, candidates)

        for point in current.map_point_matches():
            if point is not None and not point.is_bad():
                point.compute_distinctive_descriptors()
                point.update_normal_and_depth()

        current.update_connections()

    def keyframe_culling(self) -> None:
        """Mark local keyframes bad when most of their points are seen elsewhere.

        A point counts as redundant when at least three other keyframes see it at
        the same or a finer scale. Only close points are considered with depth.
        """
        for keyframe in self.current_keyframe.vector_covisible_keyframes():
            if keyframe.id == 0:
                continue

            redundant = 0
            n_points = 0
            for index, point in enumerate(keyframe.map_point_matches()):
                if point is None or point.is_bad():
                    continue
                if not self.monocular:
                    depth = keyframe.depth[index]
                    if depth > keyframe.th_depth or depth < 0:
                        continue

                n_points += 1
                if point.num_observations() <= REDUNDANT_OBSERVATIONS:
                    continue

                scale_level = keyframe.keys_un[index].octave
                n_obs = 0
                for other, other_index in point.observations().items():
                    if other is keyframe:
                        continue
                    if other.keys_un[other_index].octave <= scale_level + 1:
                        n_obs += 1
                        if n_obs >= REDUNDANT_OBSERVATIONS:
                            break
                if n_obs >= REDUNDANT_OBSERVATIONS:
                    redundant += 1

            if redundant > REDUNDANCY_RATIO * n_points:
                keyframe.set_bad_flag()

    # Thread synchronisation

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
        with self._new_keyframes_lock:
            self._abort_ba.set()

    def stop(self) -> bool:
        """Stop if a stop was requested and stopping is allowed; return whether stopped."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                logger.info("Local Mapping STOP")
                return True
            return False

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def release(self) -> None:
        """Resume after a stop, discarding queued keyframes; no-op once finished."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._new_keyframes_lock:
                self._new_keyframes.clear()
        logger.info("Local Mapping RELEASE")

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag) -> None:
        with self._accept_lock:
            self._accept_keyframes = bool(flag)

    def set_not_stop(self, flag) -> bool:
        """Forbid or allow stopping; forbidding fails when already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def interrupt_ba(self) -> None:
        self._abort_ba.set()

    def request_reset(self) -> None:
        """Ask the loop to reset and wait until it has done so."""
        with self._reset_lock:
            self._reset_requested = True
        while True:
            with self._reset_lock:
                if not self._reset_requested:
                    return
            time.sleep(_IDLE_SLEEP)

    def reset_if_requested(self) -> None:
        with self._reset_lock:
            if self._reset_requested:
                with self._new_keyframes_lock:
                    self._new_keyframes.clear()
                self.recent_map_points = []
                self._reset_requested = False

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def _set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True
        with self._stop_lock:
            self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished