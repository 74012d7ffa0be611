import numpy as np
import pytest

from orbmap.keyframe import FrameData, KeyFrame, KeyPoint
from orbmap.map import Map
from orbmap.mappoint import MapPoint


class RecordingDatabase:
    def __init__(self):
        self.erased = []

    def erase(self, keyframe):
        self.erased.append(keyframe)


def make_frame(n=30, **kwargs):
    keys = [KeyPoint(10.0 + i, 20.0 + i) for i in range(n)]
    return FrameData(keys=keys, **kwargs)


def make_kf(map_, database=None, **kwargs):
    return KeyFrame(make_frame(**kwargs), map_, database)


def share_points(map_, kfs, count, z=5.0):
    points = []
    for i in range(count):
        point = MapPoint(np.array([0.0, 0.0, z]), kfs[0], map_)
        for kf in kfs:
            point.add_observation(kf, i)
            kf.add_map_point(point, i)
        map_.add_map_point(point)
        points.append(point)
    return points


def rotation_z(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def test_pose_inverse_and_camera_center():
    kf = make_kf(Map())
    pose = np.eye(4)
    pose[:3, :3] = rotation_z(0.3)
    pose[:3, 3] = [1.0, -2.0, 0.5]
    kf.set_pose(pose)
    assert np.allclose(kf.pose_inverse @ kf.pose, np.eye(4))
    assert np.allclose(kf.camera_center, -pose[:3, :3].T @ pose[:3, 3])
    assert np.allclose(kf.rotation, pose[:3, :3])
    assert np.allclose(kf.translation, pose[:3, 3])


def test_stereo_center_is_half_baseline_along_x():
    kf = make_kf(Map(), baseline=0.2)
    assert np.allclose(kf.stereo_center, [0.1, 0.0, 0.0, 1.0])


def test_connections_are_ordered_by_weight():
    m = Map()
    a, b, c, d = (make_kf(m) for _ in range(4))
    a.add_connection(c, 20)
    a.add_connection(b, 30)
    a.add_connection(d, 10)
    assert a.covisible_keyframes() == [b, c, d]
    assert a.ordered_weights == [30, 20, 10]
    assert a.best_covisibility_keyframes(2) == [b, c]
    assert a.best_covisibility_keyframes(10) == [b, c, d]
    assert a.connected_keyframes() == {b, c, d}
    assert a.weight(b) == 30
    assert a.weight(a) == 0


def test_covisibles_by_weight():
    m = Map()
    a, b, c, d = (make_kf(m) for _ in range(4))
    a.add_connection(b, 30)
    a.add_connection(c, 20)
    a.add_connection(d, 10)
    assert a.covisibles_by_weight(15) == [b, c]
    # Every connection reaches the threshold: empty, as in the reference.
    assert a.covisibles_by_weight(5) == []
    assert a.covisibles_by_weight(40) == []


def test_erase_connection_reorders():
    m = Map()
    a, b, c = (make_kf(m) for _ in range(3))
    a.add_connection(b, 30)
    a.add_connection(c, 20)
    a.erase_connection(b)
    assert a.covisible_keyframes() == [c]
    assert a.weight(b) == 0


def test_update_connections_links_both_ways_and_sets_parent():
    m = Map()
    a = make_kf(m)
    b = make_kf(m)
    share_points(m, [a, b], 20)
    b.update_connections()
    assert b.weight(a) == 20
    assert a.weight(b) == 20
    assert b.parent is a
    assert a.has_child(b)
    assert b in a.children()


def test_update_connections_below_threshold_keeps_strongest():
    m = Map()
    a, b, c = (make_kf(m) for _ in range(3))
    share_points(m, [a, b, c], 5)
    extra = MapPoint(np.array([0.0, 0.0, 3.0]), a, m)
    for kf in (a, b):
        extra.add_observation(kf, 6)
        kf.add_map_point(extra, 6)
    a.update_connections()
    assert a.covisible_keyframes() == [b]
    assert b.weight(a) == 6
    assert a.weight(c) == 5


def test_map_points_and_tracked_count():
    m = Map()
    a, b = make_kf(m), make_kf(m)
    points = share_points(m, [a, b], 4)
    points[0].set_bad_flag()
    assert a.map_points() == set(points[1:])
    assert a.tracked_map_points(0) == 3
    assert a.tracked_map_points(2) == 3
    assert a.tracked_map_points(3) == 0


def test_erase_and_replace_map_point_matches():
    m = Map()
    a, b = make_kf(m), make_kf(m)
    points = share_points(m, [a, b], 3)
    a.erase_map_point(points[1])
    assert a.map_point(1) is None
    a.erase_map_point_match(0)
    assert a.map_point(0) is None
    a.replace_map_point_match(0, points[2])
    assert a.map_point_matches()[:3] == [points[2], None, points[2]]


def test_features_in_area():
    kf = make_kf(Map())
    assert kf.features_in_area(10.0, 20.0, 0.5) == [0]
    assert sorted(kf.features_in_area(10.0, 20.0, 1.5)) == [0, 1]
    assert kf.features_in_area(600.0, 20.0, 2.0) == []


def test_is_in_image():
    kf = make_kf(Map())
    assert kf.is_in_image(0.0, 0.0)
    assert not kf.is_in_image(640.0, 10.0)
    assert not kf.is_in_image(10.0, -1.0)


def test_unproject_stereo_round_trip():
    depth = [2.0] + [-1.0] * 29
    kf = make_kf(Map(), fx=500.0, fy=450.0, cx=320.0, cy=240.0, depth=depth)
    point = kf.unproject_stereo(0)
    assert point[2] == pytest.approx(2.0)
    assert 500.0 * point[0] / point[2] + 320.0 == pytest.approx(10.0)
    assert 450.0 * point[1] / point[2] + 240.0 == pytest.approx(20.0)
    assert kf.unproject_stereo(1) is None


def test_compute_scene_median_depth():
    m = Map()
    kf = make_kf(m)
    for i, z in enumerate([5.0, 1.0, 4.0, 2.0, 3.0]):
        point = MapPoint(np.array([0.0, 0.0, z]), kf, m)
        kf.add_map_point(point, i)
    assert kf.compute_scene_median_depth(2) == pytest.approx(3.0)


def test_compute_scene_median_depth_without_points_raises():
    kf = make_kf(Map())
    with pytest.raises(ValueError):
        kf.compute_scene_median_depth(2)


def test_set_bad_flag_reparents_children_and_leaves_map():
    m = Map()
    database = RecordingDatabase()
    root = make_kf(m)
    middle = make_kf(m, database)
    leaf = make_kf(m)
    for kf in (root, middle, leaf):
        m.add_keyframe(kf)
    middle.change_parent(root)
    leaf.change_parent(middle)
    leaf.add_connection(root, 20)
    root.add_connection(leaf, 20)

    middle.set_bad_flag()

    assert middle.is_bad
    assert leaf.parent is root
    assert root.has_child(leaf)
    assert not root.has_child(middle)
    assert middle not in m.all_keyframes()
    assert database.erased == [middle]
    assert np.allclose(middle.tcp, np.eye(4))


def test_not_erase_defers_bad_flag_until_set_erase():
    m = Map()
    root = make_kf(m)
    kf = make_kf(m)
    kf.change_parent(root)
    kf.set_not_erase()
    kf.set_bad_flag()
    assert not kf.is_bad
    kf.set_erase()
    assert kf.is_bad


def test_loop_edge_keeps_keyframe_protected():
    m = Map()
    root, kf, other = make_kf(m), make_kf(m), make_kf(m)
    kf.change_parent(root)
    kf.add_loop_edge(other)
    assert kf.loop_edges() == {other}
    kf.set_bad_flag()
    kf.set_erase()
    assert not kf.is_bad


def test_erase_child_and_change_parent():
    m = Map()
    a, b, c = make_kf(m), make_kf(m), make_kf(m)
    c.change_parent(a)
    assert a.children() == {c}
    c.change_parent(b)
    a.erase_child(c)
    assert a.children() == set()
    assert c.parent is b
    assert b.has_child(c)