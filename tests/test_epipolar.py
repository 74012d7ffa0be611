import math

import numpy as np
import pytest

from orbmap.epipolar import compute_f12, skew_symmetric_matrix, triangulate
from orbmap.keyframe import FrameData, KeyFrame


def _pose(angle, translation):
    c, s = math.cos(angle), math.sin(angle)
    pose = np.eye(4)
    pose[:3, :3] = np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])
    pose[:3, 3] = translation
    return pose


def _keyframe(pose):
    frame = FrameData(fx=500.0, fy=480.0, cx=320.0, cy=240.0, pose=pose)
    return KeyFrame(frame, None, None)


def _pixel(keyframe, point):
    camera = keyframe.rotation @ point + keyframe.translation
    pixel = keyframe.K @ camera
    return pixel / pixel[2]


def test_skew_matches_cross_product():
    v = np.array([1.0, -2.0, 3.0])
    w = np.array([0.5, 4.0, -1.5])
    assert np.allclose(skew_symmetric_matrix(v) @ w, np.cross(v, w))


def test_skew_is_antisymmetric():
    m = skew_symmetric_matrix([0.3, 0.7, -1.1])
    assert np.allclose(m, -m.T)
    assert np.allclose(np.diag(m), 0.0)


def test_skew_rejects_wrong_size():
    with pytest.raises(ValueError):
        skew_symmetric_matrix([1.0, 2.0])


def test_fundamental_matrix_satisfies_epipolar_constraint():
    kf1 = _keyframe(_pose(0.1, [0.2, -0.1, 0.05]))
    kf2 = _keyframe(_pose(-0.15, [-0.4, 0.1, 0.3]))
    f12 = compute_f12(kf1, kf2)
    for point in ([0.5, 0.2, 4.0], [-1.0, 0.3, 6.0], [0.1, -0.8, 3.0]):
        p = np.array(point)
        x1 = _pixel(kf1, p)
        x2 = _pixel(kf2, p)
        assert abs(x1 @ f12 @ x2) < 1e-9 * np.linalg.norm(f12) * 1e3


def test_fundamental_matrix_is_rank_two():
    kf1 = _keyframe(_pose(0.0, [0.0, 0.0, 0.0]))
    kf2 = _keyframe(_pose(0.2, [1.0, 0.0, 0.0]))
    f12 = compute_f12(kf1, kf2)
    assert np.linalg.matrix_rank(f12) == 2


def test_triangulate_recovers_point():
    t1 = _pose(0.05, [0.0, 0.0, 0.0])
    t2 = _pose(-0.1, [-0.5, 0.0, 0.1])
    point = np.array([0.3, -0.2, 5.0])
    c1 = t1[:3, :3] @ point + t1[:3, 3]
    c2 = t2[:3, :3] @ point + t2[:3, 3]
    xn1 = c1[:2] / c1[2]
    xn2 = c2[:2] / c2[2]
    result = triangulate(xn1, xn2, t1[:3], t2)
    assert np.allclose(result, point, atol=1e-8)


def test_triangulate_rejects_bad_pose_shape():
    with pytest.raises(ValueError):
        triangulate([0.0, 0.0], [0.0, 0.0], np.eye(3), np.eye(4))