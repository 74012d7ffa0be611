"""Drawing data for the map viewer: points, keyframe frusta, graph edges, camera."""

from __future__ import annotations

import threading

import numpy as np

_FRUSTUM_HEIGHT_RATIO = 0.75
_FRUSTUM_DEPTH_RATIO = 0.6
_COVISIBILITY_DRAW_WEIGHT = 100


def camera_frustum_lines(size) -> np.ndarray:
    """The eight line segments of a camera frustum of width ``size``, shape (8, 2, 3)."""
    w = float(size)
    h = w * _FRUSTUM_HEIGHT_RATIO
    z = w * _FRUSTUM_DEPTH_RATIO
    origin = (0.0, 0.0, 0.0)
    corners = [(w, h, z), (w, -h, z), (-w, -h, z), (-w, h, z)]
    segments = [(origin, corner) for corner in corners]
    segments += [
        ((w, h, z), (w, -h, z)),
        ((-w, h, z), (-w, -h, z)),
        ((-w, h, z), (w, h, z)),
        ((-w, -h, z), (w, -h, z)),
    ]
    return np.array(segments, dtype=np.float64)


def _empty_points() -> np.ndarray:
    return np.empty((0, 3))


class MapDrawer:
    """Produces the geometry the viewer draws from a map.

    ``settings`` maps the viewer keys (``Viewer.KeyFrameSize``,
    ``Viewer.KeyFrameLineWidth``, ``Viewer.GraphLineWidth``,
    ``Viewer.PointSize``, ``Viewer.CameraSize``, ``Viewer.CameraLineWidth``)
    to numbers; missing keys read as 0.
    """

    def __init__(self, map_, settings):
        self.map = map_
        self.keyframe_size = float(settings.get("Viewer.KeyFrameSize", 0.0))
        self.keyframe_line_width = float(settings.get("Viewer.KeyFrameLineWidth", 0.0))
        self.graph_line_width = float(settings.get("Viewer.GraphLineWidth", 0.0))
        self.point_size = float(settings.get("Viewer.PointSize", 0.0))
        self.camera_size = float(settings.get("Viewer.CameraSize", 0.0))
        self.camera_line_width = float(settings.get("Viewer.CameraLineWidth", 0.0))
        self._camera_lock = threading.Lock()
        self._camera_pose = None

    def map_point_positions(self):
        """World positions of good points: (ordinary points, reference points)."""
        points = self.map.all_map_points()
        references = list(dict.fromkeys(self.map.reference_map_points))
        if not points:
            return _empty_points(), _empty_points()

        reference_set = set(references)
        ordinary = [
            p.world_pos for p in points if not p.is_bad and p not in reference_set
        ]
        current = [p.world_pos for p in references if not p.is_bad]
        return (
            np.array(ordinary) if ordinary else _empty_points(),
            np.array(current) if current else _empty_points(),
        )

    def keyframe_frustum_lines(self) -> list:
        """For every keyframe, its frustum segments in world coordinates."""
        local = camera_frustum_lines(self.keyframe_size)
        result = []
        for keyframe in self.map.all_keyframes():
            twc = keyframe.pose_inverse
            result.append(local @ twc[:3, :3].T + twc[:3, 3])
        return result

    def keyframe_graph_edges(self) -> list:
        """Covisibility, spanning-tree and loop edges as (start, end) centre pairs."""
        edges = []
        for keyframe in self.map.all_keyframes():
            centre = keyframe.camera_center
            for other in keyframe.covisibles_by_weight(_COVISIBILITY_DRAW_WEIGHT):
                if other.id < keyframe.id:
                    continue
                edges.append((centre, other.camera_center))

            parent = keyframe.parent
            if parent is not None:
                edges.append((centre, parent.camera_center))

            for other in sorted(keyframe.loop_edges(), key=lambda kf: kf.id):
                if other.id < keyframe.id:
                    continue
                edges.append((centre, other.camera_center))
        return edges

    def set_current_camera_pose(self, pose):
        """Store the current world-to-camera transform."""
        with self._camera_lock:
            self._camera_pose = np.array(pose, dtype=np.float64).reshape(4, 4)

    def current_opengl_camera_matrix(self) -> np.ndarray:
        """Camera-to-world transform as 16 column-major values; identity if unset."""
        with self._camera_lock:
            pose = None if self._camera_pose is None else self._camera_pose.copy()
        if pose is None:
            return np.eye(4).flatten(order="F")
        rwc = pose[:3, :3].T
        twc = -rwc @ pose[:3, 3]
        matrix = np.eye(4)
        matrix[:3, :3] = rwc
        matrix[:3, 3] = twc
        return matrix.flatten(order="F")