import math
from types import SimpleNamespace

import numpy as np
import pytest

from slamgraph.map import Map
from slamgraph.mappoint import MapPoint, descriptor_distance


class FakeKeyFrame:
    def __init__(self, kf_id, n=4, stereo=(), center=(0.0, 0.0, 0.0), descriptors=None, bad=False):
        self.id = kf_id
        self.frame_id = kf_id * 10
        self.u_right = [5.0 if i in stereo else -1.0 for i in range(n)]
        self.descriptors = descriptors if descriptors is not None else np.zeros((n, 32), np.uint8)
        self.keys_un = [SimpleNamespace(octave=0) for _ in range(n)]
        self.scale_factors = [1.2**i for i in range(8)]
        self.scale_levels = 8
        self.log_scale_factor = math.log(1.2)
        self._center = np.array(center, dtype=float)
        self.bad = bad
        self.erased = []
        self.replaced = {}

    def camera_center(self):
        return self._center.copy()

    def is_bad(self):
        return self.bad

    def erase_map_point_match(self, index):
        self.erased.append(index)

    def replace_map_point_match(self, index, point):
        self.replaced[index] = point


def make_point(position=(0.0, 0.0, 2.0), keyframe=None, world_map=None):
    world_map = world_map or Map()
    keyframe = keyframe or FakeKeyFrame(0)
    point = MapPoint(position, keyframe, world_map)
    world_map.add_map_point(point)
    return point, keyframe, world_map


def test_descriptor_distance_identical_is_zero_and_symmetric():
    a = np.arange(32, dtype=np.uint8)
    b = a.copy()
    b[3] ^= 0b101
    assert descriptor_distance(a, a) == 0
    assert descriptor_distance(a, b) == descriptor_distance(b, a) == 2


def test_descriptor_distance_length_mismatch():
    with pytest.raises(ValueError):
        descriptor_distance(np.zeros(32, np.uint8), np.zeros(16, np.uint8))


def test_ids_increase():
    first, _, world_map = make_point()
    second = MapPoint((1, 1, 1), FakeKeyFrame(1), world_map)
    assert second.id > first.id


def test_initial_state():
    point, keyframe, _ = make_point()
    assert point.first_keyframe_id == keyframe.id
    assert point.first_frame == keyframe.frame_id
    assert point.reference_keyframe() is keyframe
    assert np.array_equal(point.normal(), np.zeros(3))
    assert point.descriptor() is None
    assert point.found_ratio() == 1.0
    assert not point.is_bad()


def test_world_pos_is_copied():
    point, _, _ = make_point()
    pos = point.world_pos()
    pos[0] = 99.0
    assert point.world_pos()[0] == 0.0
    point.set_world_pos([1.0, 2.0, 3.0])
    assert np.array_equal(point.world_pos(), [1.0, 2.0, 3.0])


def test_add_observation_counts_stereo_twice():
    point, kf0, _ = make_point()
    kf1 = FakeKeyFrame(1, stereo={2})
    point.add_observation(kf0, 1)
    point.add_observation(kf1, 2)
    point.add_observation(kf1, 3)
    assert point.num_observations() == 3
    assert point.observations() == {kf0: 1, kf1: 2}
    assert point.index_in_keyframe(kf1) == 2
    assert point.index_in_keyframe(FakeKeyFrame(5)) == -1
    assert point.is_in_keyframe(kf0)


def test_erase_observation_moves_reference_and_marks_bad():
    kf0 = FakeKeyFrame(0, stereo={0})
    kf1 = FakeKeyFrame(1, stereo={1})
    point, _, world_map = make_point(keyframe=kf0)
    point.add_observation(kf0, 0)
    point.add_observation(kf1, 1)
    assert point.num_observations() == 4

    point.erase_observation(kf0)

    assert point.reference_keyframe() is kf1
    assert point.is_bad()
    assert kf1.erased == [1]
    assert point.observations() == {}
    assert world_map.map_points_in_map() == 0


def test_erase_observation_keeps_point_with_enough_observations():
    point, kf0, world_map = make_point()
    others = [FakeKeyFrame(i) for i in range(1, 5)]
    point.add_observation(kf0, 0)
    for kf in others:
        point.add_observation(kf, 0)
    point.erase_observation(others[0])
    assert not point.is_bad()
    assert point.num_observations() == 4
    assert world_map.map_points_in_map() == 1


def test_found_ratio_tracks_counters():
    point, _, _ = make_point()
    point.increase_visible(3)
    point.increase_found(1)
    assert point.found_ratio() == pytest.approx(2 / 4)


def test_replace_transfers_observations():
    world_map = Map()
    kf0 = FakeKeyFrame(0)
    kf1 = FakeKeyFrame(1)
    old, _, _ = make_point(keyframe=kf0, world_map=world_map)
    new, _, _ = make_point(keyframe=kf1, world_map=world_map)
    old.add_observation(kf0, 2)
    old.add_observation(kf1, 3)
    new.add_observation(kf1, 1)

    old.replace(new)

    assert old.is_bad()
    assert old.replaced() is new
    assert kf0.replaced == {2: new}
    assert kf1.erased == [3]
    assert new.observations() == {kf1: 1, kf0: 2}
    assert new.found_ratio() == pytest.approx(1.0)
    assert world_map.all_map_points() == [new]


def test_replace_with_itself_is_ignored():
    point, kf0, _ = make_point()
    point.add_observation(kf0, 0)
    point.replace(point)
    assert not point.is_bad()
    assert point.replaced() is None


def test_distinctive_descriptor_skips_bad_keyframes():
    good_desc = np.full((4, 32), 7, np.uint8)
    bad_desc = np.full((4, 32), 200, np.uint8)
    good = FakeKeyFrame(0, descriptors=good_desc)
    bad = FakeKeyFrame(1, descriptors=bad_desc, bad=True)
    point, _, _ = make_point(keyframe=good)
    point.add_observation(bad, 1)
    point.add_observation(good, 1)
    point.compute_distinctive_descriptors()
    assert np.array_equal(point.descriptor(), good_desc[1])


def test_distinctive_descriptor_takes_first_least_median():
    far = np.zeros(32, np.uint8)
    far[0] = 0xFF
    far[1] = 0xFF
    near_a = np.zeros(32, np.uint8)
    near_b = np.zeros(32, np.uint8)
    near_b[0] = 0x01
    kfs = [FakeKeyFrame(i, descriptors=np.tile(d, (4, 1))) for i, d in enumerate([far, near_a, near_b])]
    point, _, _ = make_point(keyframe=kfs[0])
    for kf in kfs:
        point.add_observation(kf, 0)
    point.compute_distinctive_descriptors()
    assert np.array_equal(point.descriptor(), near_a)


def test_update_normal_and_depth():
    kf0 = FakeKeyFrame(0, center=(0.0, 0.0, 0.0))
    kf1 = FakeKeyFrame(1, center=(0.0, 0.0, 1.0))
    point, _, _ = make_point(position=(0.0, 0.0, 2.0), keyframe=kf0)
    point.add_observation(kf0, 0)
    point.add_observation(kf1, 0)
    point.update_normal_and_depth()
    assert np.allclose(point.normal(), [0.0, 0.0, 1.0])
    assert point.max_distance_invariance() == pytest.approx(1.2 * 2.0)
    assert point.min_distance_invariance() == pytest.approx(0.8 * 2.0 / 1.2**7)


def test_predict_scale_clamps():
    kf0 = FakeKeyFrame(0)
    point, _, _ = make_point(position=(0.0, 0.0, 2.0), keyframe=kf0)
    point.add_observation(kf0, 0)
    point.update_normal_and_depth()
    assert point.predict_scale(2.0, kf0) == 0
    assert point.predict_scale(50.0, kf0) == 0
    assert point.predict_scale(1e-6, kf0) == kf0.scale_levels - 1


def test_from_frame():
    descriptors = np.arange(4 * 32, dtype=np.uint8).reshape(4, 32)
    frame = SimpleNamespace(
        id=42,
        keys_un=[SimpleNamespace(octave=0) for _ in range(4)],
        scale_factors=[1.2**i for i in range(8)],
        scale_levels=8,
        descriptors=descriptors,
        camera_center=lambda: np.zeros(3),
    )
    point = MapPoint.from_frame((0.0, 3.0, 4.0), Map(), frame, 2)
    assert point.first_keyframe_id == -1
    assert point.first_frame == 42
    assert point.reference_keyframe() is None
    assert np.isclose(np.linalg.norm(point.normal()), 1.0)
    assert np.array_equal(point.descriptor(), descriptors[2])
    assert point.max_distance_invariance() == pytest.approx(1.2 * 5.0)