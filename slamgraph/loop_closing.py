"""Loop closing: detects loops, estimates the similarity and corrects the map."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque

import numpy as np

from .geometry import Sim3
from .loop_detection import DEFAULT_CONSISTENCY_THRESHOLD, LoopDetector

logger = logging.getLogger(__name__)

MIN_BOW_MATCHES = 20
MIN_SIM3_INLIERS = 20
MIN_TOTAL_MATCHES = 40
RANSAC_ITERATIONS_PER_ROUND = 5
GLOBAL_BA_ITERATIONS = 10


def _count(matches) -> int:
    return sum(1 for match in matches if match is not None)


class LoopClosing:
    """Loop closing thread.

    Collaborators are duck-typed:

    * ``matcher`` provides ``search_by_bow(kf1, kf2) -> matches``,
      ``search_by_sim3(kf1, kf2, matches, s, R, t, th) -> matches``,
      ``search_by_projection(kf, scw, points, matches, th) -> matches`` and
      ``fuse(kf, scw, points, th) -> replacements``.
    * ``optimizer`` provides ``optimize_sim3(kf1, kf2, matches, sim3, th2, fix_scale)
      -> (inliers, sim3, matches)``, ``optimize_essential_graph(...)`` and
      ``global_bundle_adjustment(map, iterations, stop_event, loop_kf_id, robust)``.
    * ``solver_factory(kf1, kf2, matches, fix_scale)`` returns a RANSAC solver with
      ``set_ransac_parameters(probability, min_inliers, max_iterations)``,
      ``iterate(n) -> (transform or None, no_more, inliers, n_inliers)`` and
      ``estimated_rotation()``, ``estimated_translation()``, ``estimated_scale()``.
    """

    def __init__(self, world_map, database, vocabulary, fix_scale, matcher, optimizer, solver_factory):
        self.world_map = world_map
        self.database = database
        self.vocabulary = vocabulary
        self.fix_scale = fix_scale
        self.matcher = matcher
        self.optimizer = optimizer
        self.solver_factory = solver_factory
        self.covisibility_consistency_threshold = DEFAULT_CONSISTENCY_THRESHOLD
        self._detector = LoopDetector(database, vocabulary, self.covisibility_consistency_threshold)

        self.tracker = None
        self.local_mapper = None

        self._queue: deque = deque()
        self._queue_lock = threading.Lock()

        self._reset_requested = False
        self._reset_lock = threading.Lock()

        self._finish_requested = False
        self._finished = True
        self._finish_lock = threading.Lock()

        self.current_keyframe = None
        self.matched_keyframe = None
        self.candidates: list = []
        self.current_connected_keyframes: list = []
        self.current_matched_points: list = []
        self.loop_map_points: list = []
        self.sim3_scw = None
        self.scw = None
        self.last_loop_keyframe_id = 0

        self._gba_lock = threading.Lock()
        self._running_gba = False
        self._finished_gba = True
        self._stop_gba = threading.Event()
        self._gba_thread = None
        self._full_ba_index = 0

    def set_tracker(self, tracker) -> None:
        self.tracker = tracker

    def set_local_mapper(self, local_mapper) -> None:
        self.local_mapper = local_mapper

    def run(self) -> None:
        """Process queued keyframes until a finish is requested."""
        with self._finish_lock:
            self._finished = False

        while True:
            if self.check_new_keyframes():
                if self.detect_loop() and self.compute_sim3():
                    self.correct_loop()

            self.reset_if_requested()
            if self.check_finish():
                break
            time.sleep(0.005)

        self._set_finish()

    def insert_keyframe(self, keyframe) -> None:
        """Queue a keyframe; the first keyframe of the map is never queued."""
        with self._queue_lock:
            if keyframe.id != 0:
                self._queue.append(keyframe)

    def check_new_keyframes(self) -> bool:
        with self._queue_lock:
            return bool(self._queue)

    def detect_loop(self) -> bool:
        """Take the next queued keyframe and look for consistent loop candidates."""
        with self._queue_lock:
            if not self._queue:
                return False
            self.current_keyframe = self._queue.popleft()
        self.candidates = self._detector.detect(self.current_keyframe, self.last_loop_keyframe_id)
        return bool(self.candidates)

    def compute_sim3(self) -> bool:
        """Estimate the similarity to a loop candidate; return whether the loop is accepted."""
        current = self.current_keyframe
        candidates = list(self.candidates)
        n_initial = len(candidates)

        solvers = [None] * n_initial
        matches = [[] for _ in range(n_initial)]
        discarded = [False] * n_initial
        n_candidates = 0

        for i, keyframe in enumerate(candidates):
            keyframe.set_not_erase()
            if keyframe.is_bad():
                discarded[i] = True
                continue
            matches[i] = list(self.matcher.search_by_bow(current, keyframe))
            if _count(matches[i]) < MIN_BOW_MATCHES:
                discarded[i] = True
                continue
            solver = self.solver_factory(current, keyframe, matches[i], self.fix_scale)
            solver.set_ransac_parameters(0.99, MIN_SIM3_INLIERS, 300)
            solvers[i] = solver
            n_candidates += 1

        matched = False
        while n_candidates > 0 and not matched:
            for i, keyframe in enumerate(candidates):
                if discarded[i]:
                    continue
                solver = solvers[i]
                transform, no_more, inliers, _ = solver.iterate(RANSAC_ITERATIONS_PER_ROUND)

                if no_more:
                    discarded[i] = True
                    n_candidates -= 1

                if transform is None or np.size(transform) == 0:
                    continue

                points = [None] * len(matches[i])
                for j, is_inlier in enumerate(inliers):
                    if is_inlier:
                        points[j] = matches[i][j]

                rotation = solver.estimated_rotation()
                translation = solver.estimated_translation()
                scale = solver.estimated_scale()
                points = list(
                    self.matcher.search_by_sim3(current, keyframe, points, scale, rotation, translation, 7.5)
                )

                n_inliers, scm, points = self.optimizer.optimize_sim3(
                    current, keyframe, points, Sim3(rotation, translation, scale), 10, self.fix_scale
                )
                if n_inliers >= MIN_SIM3_INLIERS:
                    matched = True
                    self.matched_keyframe = keyframe
                    smw = Sim3.from_pose(keyframe.pose())
                    self.sim3_scw = scm * smw
                    self.scw = self.sim3_scw.to_matrix()
                    self.current_matched_points = list(points)
                    break

        if not matched:
            for keyframe in candidates:
                keyframe.set_erase()
            current.set_erase()
            return False

        loop_connected = self.matched_keyframe.vector_covisible_keyframes()
        loop_connected.append(self.matched_keyframe)
        self.loop_map_points = []
        for keyframe in loop_connected:
            for point in keyframe.map_point_matches():
                if point is None or point.is_bad() or point.loop_point_for_kf == current.id:
                    continue
                self.loop_map_points.append(point)
                point.loop_point_for_kf = current.id

        self.current_matched_points = list(
            self.matcher.search_by_projection(
                current, self.scw, self.loop_map_points, self.current_matched_points, 10
            )
        )

        if _count(self.current_matched_points) >= MIN_TOTAL_MATCHES:
            for keyframe in candidates:
                if keyframe is not self.matched_keyframe:
                    keyframe.set_erase()
            return True

        for keyframe in candidates:
            keyframe.set_erase()
        current.set_erase()
        return False

    def correct_loop(self) -> None:
        """Fuse both sides of the loop, optimise the pose graph and start a global BA."""
        logger.info("Loop detected!")
        mapper = self.local_mapper
        current = self.current_keyframe

        mapper.request_stop()

        if self.is_running_gba():
            with self._gba_lock:
                self._stop_gba.set()
                self._full_ba_index += 1
                self._gba_thread = None

        while not mapper.is_stopped():
            time.sleep(0.001)

        current.update_connections()

        connected = current.vector_covisible_keyframes()
        connected.append(current)
        self.current_connected_keyframes = connected

        corrected = {current: self.sim3_scw}
        non_corrected = {}
        twc = current.pose_inverse()

        with self.world_map.mutex_map_update:
            for keyframe in connected:
                tiw = keyframe.pose()
                if keyframe is not current:
                    sic = Sim3.from_pose(tiw @ twc)
                    corrected[keyframe] = sic * self.sim3_scw
                non_corrected[keyframe] = Sim3.from_pose(tiw)

            for keyframe, corrected_siw in corrected.items():
                corrected_swi = corrected_siw.inverse()
                siw = non_corrected[keyframe]
                for point in keyframe.map_point_matches():
                    if point is None or point.is_bad() or point.corrected_by_kf == current.id:
                        continue
                    point.set_world_pos(corrected_swi.map(siw.map(point.world_pos())))
                    point.corrected_by_kf = current.id
                    point.corrected_reference = keyframe.id
                    point.update_normal_and_depth()

                keyframe.set_pose(corrected_siw.to_se3())
                keyframe.update_connections()

            for index, loop_point in enumerate(self.current_matched_points):
                if loop_point is None:
                    continue
                current_point = current.map_point(index)
                if current_point is not None:
                    current_point.replace(loop_point)
                else:
                    current.add_map_point(loop_point, index)
                    loop_point.add_observation(current, index)
                    loop_point.compute_distinctive_descriptors()

        self.search_and_fuse(corrected)

        loop_connections = {}
        for keyframe in connected:
            previous = keyframe.vector_covisible_keyframes()
            keyframe.update_connections()
            links = set(keyframe.connected_keyframes())
            links.difference_update(previous)
            links.difference_update(connected)
            loop_connections[keyframe] = links

        self.optimizer.optimize_essential_graph(
            self.world_map,
            self.matched_keyframe,
            current,
            non_corrected,
            corrected,
            loop_connections,
            self.fix_scale,
        )
        self.world_map.inform_new_big_change()

        self.matched_keyframe.add_loop_edge(current)
        current.add_loop_edge(self.matched_keyframe)

        self._running_gba = True
        self._finished_gba = False
        self._stop_gba.clear()
        self._gba_thread = threading.Thread(
            target=self.run_global_bundle_adjustment, args=(current.id,), daemon=True
        )
        self._gba_thread.start()

        mapper.release()
        self.last_loop_keyframe_id = current.id

    def search_and_fuse(self, corrected_poses) -> None:
        """Project the loop map points into each corrected keyframe and fuse duplicates."""
        for keyframe, scw in corrected_poses.items():
            replacements = self.matcher.fuse(keyframe, scw.to_matrix(), self.loop_map_points, 4)
            with self.world_map.mutex_map_update:
                for replacement, loop_point in zip(replacements, self.loop_map_points):
                    if replacement is not None:
                        replacement.replace(loop_point)

    def request_reset(self) -> None:
        """Ask the loop to reset and wait until it has done so."""
        with self._reset_lock:
            self._reset_requested = True
        while True:
            with self._reset_lock:
                if not self._reset_requested:
                    return
            time.sleep(0.005)

    def reset_if_requested(self) -> None:
        with self._reset_lock:
            if self._reset_requested:
                with self._queue_lock:
                    self._queue.clear()
                self.last_loop_keyframe_id = 0
                self._reset_requested = False

    def run_global_bundle_adjustment(self, loop_keyframe_id) -> None:
        """Run a global BA and propagate its result through the spanning tree."""
        logger.info("Starting Global Bundle Adjustment")
        index = self._full_ba_index
        self.optimizer.global_bundle_adjustment(
            self.world_map, GLOBAL_BA_ITERATIONS, self._stop_gba, loop_keyframe_id, False
        )

        with self._gba_lock:
            if index != self._full_ba_index:
                return

            if not self._stop_gba.is_set():
                logger.info("Global Bundle Adjustment finished; updating map")
                mapper = self.local_mapper
                mapper.request_stop()
                while not mapper.is_stopped() and not mapper.is_finished():
                    time.sleep(0.001)

                with self.world_map.mutex_map_update:
                    self._propagate_keyframe_correction(loop_keyframe_id)
                    self._correct_map_points(loop_keyframe_id)
                    self.world_map.inform_new_big_change()
                    mapper.release()
                logger.info("Map updated!")

            self._finished_gba = True
            self._running_gba = False

    def _propagate_keyframe_correction(self, loop_keyframe_id) -> None:
        pending = deque(self.world_map.keyframe_origins)
        while pending:
            keyframe = pending[0]
            twc = keyframe.pose_inverse()
            for child in keyframe.children():
                if child.ba_global_for_kf != loop_keyframe_id:
                    tchildc = child.pose() @ twc
                    child.tcw_gba = tchildc @ keyframe.tcw_gba
                    child.ba_global_for_kf = loop_keyframe_id
                pending.append(child)
            keyframe.tcw_bef_gba = keyframe.pose()
            keyframe.set_pose(keyframe.tcw_gba)
            pending.popleft()

    def _correct_map_points(self, loop_keyframe_id) -> None:
        for point in self.world_map.all_map_points():
            if point.is_bad():
                continue
            if point.ba_global_for_kf == loop_keyframe_id:
                point.set_world_pos(point.pos_gba)
                continue
            reference = point.reference_keyframe()
            if reference is None or reference.ba_global_for_kf != loop_keyframe_id:
                continue
            before = np.asarray(reference.tcw_bef_gba, dtype=float)
            xc = before[:3, :3] @ point.world_pos() + before[:3, 3]
            twc = reference.pose_inverse()
            point.set_world_pos(twc[:3, :3] @ xc + twc[:3, 3])

    def is_running_gba(self) -> bool:
        with self._gba_lock:
            return self._running_gba

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def _set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished