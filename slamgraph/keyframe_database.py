"""Inverted index of keyframes by visual word, for loop and relocalization queries."""

from __future__ import annotations

import threading
from typing import Callable, Iterable

# Keyframes must share more than this fraction of the best word count to be scored.
COMMON_WORDS_RATIO = 0.8

# Candidates are kept when their accumulated score exceeds this fraction of the best one.
RETAIN_RATIO = 0.75

# Number of covisible neighbours whose scores are accumulated.
COVISIBLE_NEIGHBOURS = 10


def _accumulate(
    scored: Iterable[tuple[float, object]],
    is_member: Callable[[object], bool],
    score_of: Callable[[object], float],
    initial_best: float,
) -> list:
    """Accumulate scores over covisible neighbours and keep the strongest keyframes."""
    accumulated = []
    best_acc = initial_best
    for score, keyframe in scored:
        best_score = score
        acc_score = score
        best_keyframe = keyframe
        for neighbour in keyframe.best_covisibility_keyframes(COVISIBLE_NEIGHBOURS):
            if not is_member(neighbour):
                continue
            neighbour_score = score_of(neighbour)
            acc_score += neighbour_score
            if neighbour_score > best_score:
                best_keyframe = neighbour
                best_score = neighbour_score
        accumulated.append((acc_score, best_keyframe))
        if acc_score > best_acc:
            best_acc = acc_score

    threshold = RETAIN_RATIO * best_acc
    retained = {}
    for acc_score, keyframe in accumulated:
        if acc_score > threshold and keyframe not in retained:
            retained[keyframe] = None
    return list(retained)


class KeyFrameDatabase:
    """Keyframes indexed by the visual words of their bag-of-words vectors."""

    def __init__(self, vocabulary):
        self.vocabulary = vocabulary
        self._inverted: dict = {}
        self._lock = threading.Lock()

    def add(self, keyframe) -> None:
        with self._lock:
            for word in keyframe.bow_vector:
                self._inverted.setdefault(word, []).append(keyframe)

    def erase(self, keyframe) -> None:
        with self._lock:
            for word in keyframe.bow_vector:
                keyframes = self._inverted.get(word)
                if not keyframes:
                    continue
                for position, candidate in enumerate(keyframes):
                    if candidate is keyframe:
                        del keyframes[position]
                        break

    def clear(self) -> None:
        with self._lock:
            self._inverted.clear()

    def detect_loop_candidates(self, keyframe, min_score) -> list:
        """Return keyframes that may close a loop with ``keyframe``.

        Keyframes already connected to ``keyframe`` in the covisibility graph
        are ignored, and only those scoring at least ``min_score`` are kept.
        """
        connected = keyframe.connected_keyframes()
        sharing = []
        with self._lock:
            for word in keyframe.bow_vector:
                for candidate in self._inverted.get(word, ()):
                    if candidate.loop_query != keyframe.id:
                        candidate.loop_words = 0
                        if candidate not in connected:
                            candidate.loop_query = keyframe.id
                            sharing.append(candidate)
                    candidate.loop_words += 1

        if not sharing:
            return []

        max_common = max(candidate.loop_words for candidate in sharing)
        min_common = int(max_common * COMMON_WORDS_RATIO)

        scored = []
        for candidate in sharing:
            if candidate.loop_words > min_common:
                score = self.vocabulary.score(keyframe.bow_vector, candidate.bow_vector)
                candidate.loop_score = score
                if score >= min_score:
                    scored.append((score, candidate))

        if not scored:
            return []

        return _accumulate(
            scored,
            lambda kf: kf.loop_query == keyframe.id and kf.loop_words > min_common,
            lambda kf: kf.loop_score,
            min_score,
        )

    def detect_relocalization_candidates(self, frame) -> list:
        """Return keyframes similar enough to ``frame`` to attempt relocalization."""
        sharing = []
        with self._lock:
            for word in frame.bow_vector:
                for candidate in self._inverted.get(word, ()):
                    if candidate.reloc_query != frame.id:
                        candidate.reloc_words = 0
                        candidate.reloc_query = frame.id
                        sharing.append(candidate)
                    candidate.reloc_words += 1

        if not sharing:
            return []

        max_common = max(candidate.reloc_words for candidate in sharing)
        min_common = int(max_common * COMMON_WORDS_RATIO)

        scored = []
        for candidate in sharing:
            if candidate.reloc_words > min_common:
                score = self.vocabulary.score(frame.bow_vector, candidate.bow_vector)
                candidate.reloc_score = score
                scored.append((score, candidate))

        if not scored:
            return []

        return _accumulate(
            scored,
            lambda kf: kf.reloc_query == frame.id,
            lambda kf: kf.reloc_score,
            0.0,
        )