import math
from dataclasses import dataclass
from types import SimpleNamespace

import numpy as np
import pytest

from slamgraph.keyframe import FRAME_GRID_COLS, FRAME_GRID_ROWS, KeyFrame
from slamgraph.map import Map
from slamgraph.mappoint import MapPoint


@dataclass
class KeyPoint:
    pt: tuple
    octave: int = 0


class FakeVocabulary:
    def __init__(self):
        self.calls = []

    def transform(self, descriptors, levels_up):
        self.calls.append((len(descriptors), levels_up))
        return {3: 0.5}, {1: [0]}


class FakeDatabase:
    def __init__(self):
        self.erased = []

    def erase(self, keyframe):
        self.erased.append(keyframe)


def make_frame(keys=None, *, tcw=None, depth=None, vocabulary=None, bow=None, feat=None, b=0.2):
    keys = keys if keys is not None else [KeyPoint((10.0, 10.0))]
    n = len(keys)
    grid = [[[] for _ in range(FRAME_GRID_ROWS)] for _ in range(FRAME_GRID_COLS)]
    for index, kp in enumerate(keys):
        grid[int(kp.pt[0] * 0.1)][int(kp.pt[1] * 0.1)].append(index)
    scale_factors = [1.2**level for level in range(8)]
    return SimpleNamespace(
        id=7,
        timestamp=1.5,
        grid_element_width_inv=0.1,
        grid_element_height_inv=0.1,
        fx=100.0,
        fy=100.0,
        cx=320.0,
        cy=240.0,
        invfx=0.01,
        invfy=0.01,
        bf=100.0 * b,
        b=b,
        th_depth=40.0,
        n=n,
        keys=keys,
        keys_un=keys,
        u_right=[-1.0] * n,
        depth=depth if depth is not None else [-1.0] * n,
        descriptors=np.zeros((n, 32), dtype=np.uint8),
        bow_vector=bow or {},
        feature_vector=feat or {},
        scale_levels=8,
        scale_factor=1.2,
        log_scale_factor=math.log(1.2),
        scale_factors=scale_factors,
        level_sigma2=[s * s for s in scale_factors],
        inv_level_sigma2=[1.0 / (s * s) for s in scale_factors],
        min_x=0.0,
        max_x=640.0,
        min_y=0.0,
        max_y=480.0,
        k=np.array([[100.0, 0.0, 320.0], [0.0, 100.0, 240.0], [0.0, 0.0, 1.0]]),
        map_points=[None] * n,
        vocabulary=vocabulary,
        grid=grid,
        tcw=np.eye(4) if tcw is None else tcw,
    )


def make_keyframe(world_map=None, database=None, **kwargs):
    return KeyFrame(make_frame(**kwargs), world_map or Map(), database)


def many_keys(count):
    return [KeyPoint((10.0 + 5 * i, 20.0)) for i in range(count)]


def rotation_z(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def test_pose_and_inverse_are_consistent():
    tcw = np.eye(4)
    tcw[:3, :3] = rotation_z(0.3)
    tcw[:3, 3] = [1.0, -2.0, 0.5]
    kf = make_keyframe(tcw=tcw)
    assert np.allclose(kf.pose() @ kf.pose_inverse(), np.eye(4))
    assert np.allclose(kf.rotation(), tcw[:3, :3])
    assert np.allclose(kf.translation(), tcw[:3, 3])
    assert np.allclose(kf.camera_center(), -tcw[:3, :3].T @ tcw[:3, 3])
    expected_stereo = (kf.pose_inverse() @ np.array([kf.b / 2, 0.0, 0.0, 1.0]))[:3]
    assert np.allclose(kf.stereo_center(), expected_stereo)


def test_pose_returns_copies():
    kf = make_keyframe()
    pose = kf.pose()
    pose[0, 3] = 99.0
    assert np.allclose(kf.pose(), np.eye(4))


def test_set_pose_rejects_bad_shape():
    kf = make_keyframe()
    with pytest.raises(ValueError):
        kf.set_pose(np.eye(3))


def test_connections_are_ordered_by_weight():
    kf, a, b, c = (make_keyframe() for _ in range(4))
    kf.add_connection(a, 5)
    kf.add_connection(b, 20)
    kf.add_connection(c, 10)
    assert kf.vector_covisible_keyframes() == [b, c, a]
    assert kf.best_covisibility_keyframes(2) == [b, c]
    assert kf.best_covisibility_keyframes(10) == [b, c, a]
    assert kf.weight(b) == 20
    assert kf.weight(make_keyframe()) == 0
    assert kf.connected_keyframes() == {a, b, c}


def test_covisibles_by_weight():
    kf, a, b, c = (make_keyframe() for _ in range(4))
    assert kf.covisibles_by_weight(1) == []
    kf.add_connection(a, 5)
    kf.add_connection(b, 20)
    kf.add_connection(c, 10)
    assert kf.covisibles_by_weight(10) == [b, c]
    assert kf.covisibles_by_weight(1) == []


def test_erase_connection_reorders():
    kf, a, b = (make_keyframe() for _ in range(3))
    kf.add_connection(a, 5)
    kf.add_connection(b, 20)
    kf.erase_connection(b)
    assert kf.vector_covisible_keyframes() == [a]
    assert kf.weight(b) == 0


def test_map_point_slots():
    world_map = Map()
    kf = make_keyframe(world_map, keys=many_keys(3))
    point = MapPoint([0.0, 0.0, 1.0], kf, world_map)
    other = MapPoint([0.0, 0.0, 2.0], kf, world_map)
    kf.add_map_point(point, 1)
    assert kf.map_point(1) is point
    assert kf.map_point_matches() == [None, point, None]
    assert kf.map_points() == {point}
    kf.replace_map_point_match(1, other)
    assert kf.map_point(1) is other
    kf.erase_map_point_match(1)
    assert kf.map_point_matches() == [None, None, None]


def test_erase_map_point_uses_observation_index():
    world_map = Map()
    kf = make_keyframe(world_map, keys=many_keys(3))
    point = MapPoint([0.0, 0.0, 1.0], kf, world_map)
    point.add_observation(kf, 2)
    kf.add_map_point(point, 2)
    kf.erase_map_point(point)
    assert kf.map_point(2) is None


def shared_points(world_map, first, second, count):
    points = []
    for i in range(count):
        point = MapPoint([float(i), 0.0, 5.0], first, world_map)
        point.add_observation(first, i)
        point.add_observation(second, i)
        first.add_map_point(point, i)
        second.add_map_point(point, i)
        points.append(point)
    return points


def test_update_connections_with_strong_link_sets_parent():
    world_map = Map()
    first = make_keyframe(world_map, keys=many_keys(20))
    second = make_keyframe(world_map, keys=many_keys(20))
    shared_points(world_map, first, second, 16)
    second.update_connections()
    assert second.weight(first) == 16
    assert first.weight(second) == 16
    assert second.parent() is first
    assert first.has_child(second)
    assert first.children() == {second}


def test_update_connections_falls_back_to_best_link():
    world_map = Map()
    first = make_keyframe(world_map, keys=many_keys(20))
    second = make_keyframe(world_map, keys=many_keys(20))
    shared_points(world_map, first, second, 3)
    second.update_connections()
    assert first.weight(second) == 3
    assert second.vector_covisible_keyframes() == [first]


def test_tracked_map_points_respects_min_observations():
    world_map = Map()
    first = make_keyframe(world_map, keys=many_keys(20))
    second = make_keyframe(world_map, keys=many_keys(20))
    shared_points(world_map, first, second, 5)
    assert first.tracked_map_points(0) == 5
    assert first.tracked_map_points(2) == 5
    assert first.tracked_map_points(3) == 0


def test_features_in_area():
    keys = [KeyPoint((10.0, 10.0)), KeyPoint((15.0, 10.0)), KeyPoint((300.0, 200.0))]
    kf = make_keyframe(keys=keys)
    assert sorted(kf.features_in_area(12.0, 10.0, 6.0)) == [0, 1]
    assert kf.features_in_area(300.0, 201.0, 3.0) == [2]
    assert kf.features_in_area(5000.0, 10.0, 3.0) == []
    assert kf.features_in_area(-500.0, 10.0, 3.0) == []


def test_is_in_image():
    kf = make_keyframe()
    assert kf.is_in_image(0.0, 0.0)
    assert not kf.is_in_image(640.0, 10.0)
    assert not kf.is_in_image(10.0, -1.0)


def test_unproject_stereo_reprojects_to_keypoint():
    keys = [KeyPoint((370.0, 260.0)), KeyPoint((100.0, 100.0))]
    kf = make_keyframe(keys=keys, depth=[2.0, -1.0])
    point = kf.unproject_stereo(0)
    assert point[2] == pytest.approx(2.0)
    assert kf.fx * point[0] / point[2] + kf.cx == pytest.approx(370.0)
    assert kf.fy * point[1] / point[2] + kf.cy == pytest.approx(260.0)
    assert kf.unproject_stereo(1) is None


def test_unproject_stereo_follows_pose():
    keys = [KeyPoint((370.0, 260.0))]
    tcw = np.eye(4)
    tcw[:3, 3] = [0.0, 0.0, 1.0]
    moved = make_keyframe(keys=keys, depth=[2.0], tcw=tcw)
    still = make_keyframe(keys=keys, depth=[2.0])
    assert np.allclose(moved.unproject_stereo(0), still.unproject_stereo(0) + moved.camera_center())


def test_scene_median_depth():
    world_map = Map()
    kf = make_keyframe(world_map, keys=many_keys(3))
    for index, z in enumerate([3.0, 1.0, 2.0]):
        kf.add_map_point(MapPoint([0.0, 0.0, z], kf, world_map), index)
    assert kf.compute_scene_median_depth(2) == pytest.approx(2.0)
    assert kf.compute_scene_median_depth(1) == pytest.approx(3.0)


def test_scene_median_depth_without_points_raises():
    kf = make_keyframe()
    with pytest.raises(ValueError):
        kf.compute_scene_median_depth(2)


def test_compute_bow_only_when_missing():
    vocabulary = FakeVocabulary()
    kf = make_keyframe(vocabulary=vocabulary)
    kf.compute_bow()
    assert kf.bow_vector == {3: 0.5}
    assert vocabulary.calls == [(1, 4)]

    known = FakeVocabulary()
    ready = make_keyframe(vocabulary=known, bow={1: 0.2}, feat={0: [0]})
    ready.compute_bow()
    assert known.calls == []
    assert ready.bow_vector == {1: 0.2}


def build_tree():
    make_keyframe()  # makes sure the keyframes below never get id 0
    world_map = Map()
    database = FakeDatabase()
    parent = make_keyframe(world_map, database)
    middle = make_keyframe(world_map, database)
    child = make_keyframe(world_map, database)
    for kf in (parent, middle, child):
        world_map.add_keyframe(kf)
    middle.change_parent(parent)
    child.change_parent(middle)
    middle.add_connection(parent, 20)
    parent.add_connection(middle, 20)
    middle.add_connection(child, 10)
    child.add_connection(parent, 30)
    return world_map, database, parent, middle, child


def test_set_bad_flag_reassigns_children():
    world_map, database, parent, middle, child = build_tree()
    middle.set_bad_flag()
    assert middle.is_bad()
    assert child.parent() is parent
    assert parent.has_child(child)
    assert not parent.has_child(middle)
    assert parent.weight(middle) == 0
    assert middle not in world_map.all_keyframes()
    assert database.erased == [middle]
    assert np.allclose(middle.tcp, np.eye(4))


def test_not_erase_defers_bad_flag():
    _, database, _, middle, _ = build_tree()
    middle.set_not_erase()
    middle.set_bad_flag()
    assert not middle.is_bad()
    middle.set_erase()
    assert middle.is_bad()
    assert database.erased == [middle]


def test_loop_edge_protects_keyframe():
    _, _, parent, middle, _ = build_tree()
    middle.add_loop_edge(parent)
    middle.set_bad_flag()
    middle.set_erase()
    assert not middle.is_bad()
    assert middle.loop_edges() == {parent}


def test_child_bookkeeping():
    kf, other = make_keyframe(), make_keyframe()
    kf.add_child(other)
    assert kf.has_child(other)
    kf.erase_child(other)
    assert kf.children() == set()
    other.change_parent(kf)
    assert other.parent() is kf
    assert kf.has_child(other)