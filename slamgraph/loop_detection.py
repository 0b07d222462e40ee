"""Loop candidate detection with covisibility consistency checks."""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_CONSISTENCY_THRESHOLD = 3

# Keyframes closer than this to the last loop are not checked for a loop.
MIN_KEYFRAMES_BETWEEN_LOOPS = 10


@dataclass
class ConsistentGroup:
    """A covisibility group and how many consecutive keyframes it has been consistent for."""

    keyframes: set = field(default_factory=set)
    consistency: int = 0


class LoopDetector:
    """Finds loop candidates that stay consistent over consecutive keyframes."""

    def __init__(self, database, vocabulary, consistency_threshold=DEFAULT_CONSISTENCY_THRESHOLD):
        self.database = database
        self.vocabulary = vocabulary
        self.consistency_threshold = consistency_threshold
        self.consistent_groups: list[ConsistentGroup] = []
        self.enough_consistent_candidates: list = []

    def minimum_score(self, keyframe) -> float:
        """Return the lowest similarity to a good covisible keyframe, at most 1."""
        min_score = 1.0
        for connected in keyframe.vector_covisible_keyframes():
            if connected.is_bad():
                continue
            score = self.vocabulary.score(keyframe.bow_vector, connected.bow_vector)
            if score < min_score:
                min_score = score
        return min_score

    def detect(self, keyframe, last_loop_id) -> list:
        """Return loop candidates consistent enough for ``keyframe``; add it to the database."""
        keyframe.set_not_erase()

        if keyframe.id < last_loop_id + MIN_KEYFRAMES_BETWEEN_LOOPS:
            self.database.add(keyframe)
            keyframe.set_erase()
            return []

        min_score = self.minimum_score(keyframe)
        candidates = self.database.detect_loop_candidates(keyframe, min_score)

        if not candidates:
            self.database.add(keyframe)
            self.consistent_groups = []
            keyframe.set_erase()
            return []

        self.enough_consistent_candidates = []
        current_groups: list[ConsistentGroup] = []
        group_used = [False] * len(self.consistent_groups)

        for candidate in candidates:
            candidate_group = candidate.connected_keyframes()
            candidate_group.add(candidate)

            enough_consistent = False
            consistent_for_some = False
            for position, previous in enumerate(self.consistent_groups):
                if previous.keyframes.isdisjoint(candidate_group):
                    continue
                consistent_for_some = True
                consistency = previous.consistency + 1
                if not group_used[position]:
                    current_groups.append(ConsistentGroup(set(candidate_group), consistency))
                    group_used[position] = True
                if consistency >= self.consistency_threshold and not enough_consistent:
                    self.enough_consistent_candidates.append(candidate)
                    enough_consistent = True

            if not consistent_for_some:
                current_groups.append(ConsistentGroup(set(candidate_group), 0))

        self.consistent_groups = current_groups
        self.database.add(keyframe)

        if not self.enough_consistent_candidates:
            keyframe.set_erase()
            return []
        return list(self.enough_consistent_candidates)

    def reset(self) -> None:
        self.consistent_groups = []
        self.enough_consistent_candidates = []