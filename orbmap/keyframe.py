"""Keyframes: frames kept in the map, with covisibility and spanning-tree links."""

from __future__ import annotations

import bisect
import itertools
import math
import threading
from dataclasses import dataclass, field

import numpy as np

COVISIBILITY_THRESHOLD = 15


@dataclass(frozen=True)
class KeyPoint:
    """A detected feature: image position and pyramid level."""

    x: float
    y: float
    octave: int = 0
    angle: float = -1.0
    response: float = 0.0
    size: float = 0.0


@dataclass
class FrameData:
    """The per-frame data a keyframe is built from.

    Optional sequences left as ``None`` are filled with neutral values:
    no stereo (``-1``), no map points, identity pose, a grid built from
    ``keys_un`` and scale factors derived from ``scale_factor``.
    """

    id: int = 0
    timestamp: float = 0.0
    fx: float = 1.0
    fy: float = 1.0
    cx: float = 0.0
    cy: float = 0.0
    bf: float = 0.0
    baseline: float = 0.0
    th_depth: float = 0.0
    keys: list = field(default_factory=list)
    keys_un: list | None = None
    uright: list | None = None
    depth: list | None = None
    descriptors: np.ndarray | None = None
    bow_vec: dict = field(default_factory=dict)
    feat_vec: dict = field(default_factory=dict)
    scale_levels: int = 8
    scale_factor: float = 1.2
    scale_factors: list | None = None
    level_sigma2: list | None = None
    inv_level_sigma2: list | None = None
    min_x: float = 0.0
    min_y: float = 0.0
    max_x: float = 640.0
    max_y: float = 480.0
    grid_cols: int = 64
    grid_rows: int = 48
    grid: list | None = None
    K: np.ndarray | None = None
    map_points: list | None = None
    vocabulary: object = None
    pose: np.ndarray | None = None

    def __post_init__(self):
        n = len(self.keys)
        if self.keys_un is None:
            self.keys_un = list(self.keys)
        if self.uright is None:
            self.uright = [-1.0] * n
        if self.depth is None:
            self.depth = [-1.0] * n
        if self.descriptors is None:
            self.descriptors = np.zeros((n, 32), dtype=np.uint8)
        if self.scale_factors is None:
            self.scale_factors = [self.scale_factor**i for i in range(self.scale_levels)]
        if self.level_sigma2 is None:
            self.level_sigma2 = [s * s for s in self.scale_factors]
        if self.inv_level_sigma2 is None:
            self.inv_level_sigma2 = [1.0 / s for s in self.level_sigma2]
        if self.K is None:
            self.K = np.array(
                [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]]
            )
        if self.map_points is None:
            self.map_points = [None] * n
        if self.pose is None:
            self.pose = np.eye(4)
        if self.grid is None:
            self.grid = self._build_grid()

    @property
    def log_scale_factor(self) -> float:
        return math.log(self.scale_factor)

    @property
    def grid_element_width_inv(self) -> float:
        return self.grid_cols / (self.max_x - self.min_x)

    @property
    def grid_element_height_inv(self) -> float:
        return self.grid_rows / (self.max_y - self.min_y)

    def _build_grid(self) -> list:
        grid = [[[] for _ in range(self.grid_rows)] for _ in range(self.grid_cols)]
        for index, kp in enumerate(self.keys_un):
            col = round((kp.x - self.min_x) * self.grid_element_width_inv)
            row = round((kp.y - self.min_y) * self.grid_element_height_inv)
            if 0 <= col < self.grid_cols and 0 <= row < self.grid_rows:
                grid[col][row].append(index)
        return grid


class KeyFrame:
    """A frame promoted into the map, linked to map points and other keyframes."""

    _ids = itertools.count()

    def __init__(self, frame, map_, database):
        self._pose_lock = threading.RLock()
        self._connections_lock = threading.RLock()
        self._features_lock = threading.RLock()

        self.frame_id = frame.id
        self.timestamp = frame.timestamp
        self.grid_cols = frame.grid_cols
        self.grid_rows = frame.grid_rows
        self.grid_element_width_inv = frame.grid_element_width_inv
        self.grid_element_height_inv = frame.grid_element_height_inv

        # Bookkeeping markers used by tracking, local mapping and loop closing.
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.tcw_gba = None
        self.tcw_bef_gba = None
        self.tcp = None

        self.fx, self.fy, self.cx, self.cy = frame.fx, frame.fy, frame.cx, frame.cy
        self.invfx = 1.0 / frame.fx
        self.invfy = 1.0 / frame.fy
        self.bf = frame.bf
        self.baseline = frame.baseline
        self.th_depth = frame.th_depth

        self.n = len(frame.keys)
        self.keys = list(frame.keys)
        self.keys_un = list(frame.keys_un)
        self.uright = list(frame.uright)
        self.depth = list(frame.depth)
        self.descriptors = np.array(frame.descriptors, dtype=np.uint8, copy=True)
        self.bow_vec = dict(frame.bow_vec)
        self.feat_vec = dict(frame.feat_vec)

        self.scale_levels = frame.scale_levels
        self.scale_factor = frame.scale_factor
        self.log_scale_factor = frame.log_scale_factor
        self.scale_factors = list(frame.scale_factors)
        self.level_sigma2 = list(frame.level_sigma2)
        self.inv_level_sigma2 = list(frame.inv_level_sigma2)

        self.min_x, self.min_y = frame.min_x, frame.min_y
        self.max_x, self.max_y = frame.max_x, frame.max_y
        self.K = np.array(frame.K, dtype=np.float64)
        self.vocabulary = frame.vocabulary
        self.grid = [[list(cell) for cell in column] for column in frame.grid]

        self._map_points = list(frame.map_points)
        self._database = database
        self._map = map_
        self._half_baseline = frame.baseline / 2

        self._first_connection = True
        self._parent = None
        self._not_erase = False
        self._to_be_erased = False
        self._bad = False
        self._connected: dict = {}
        self._ordered_connected: list = []
        self._ordered_weights: list = []
        self._children: dict = {}
        self._loop_edges: dict = {}

        self.id = next(KeyFrame._ids)
        self.set_pose(frame.pose)

    # -- pose -----------------------------------------------------------

    def set_pose(self, pose):
        """Set the world-to-camera transform and derived centres."""
        with self._pose_lock:
            tcw = np.array(pose, dtype=np.float64).reshape(4, 4)
            rwc = tcw[:3, :3].T
            ow = -rwc @ tcw[:3, 3]
            twc = np.eye(4)
            twc[:3, :3] = rwc
            twc[:3, 3] = ow
            self._tcw = tcw
            self._twc = twc
            self._ow = ow
            self._cw = twc @ np.array([self._half_baseline, 0.0, 0.0, 1.0])

    @property
    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    @property
    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    @property
    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    @property
    def stereo_center(self) -> np.ndarray:
        """Homogeneous world position of the midpoint of the stereo baseline."""
        with self._pose_lock:
            return self._cw.copy()

    @property
    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    @property
    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # -- covisibility graph ----------------------------------------------

    def add_connection(self, keyframe, weight):
        """Link to ``keyframe`` with ``weight`` shared points."""
        with self._connections_lock:
            if self._connected.get(keyframe) == weight:
                return
            self._connected[keyframe] = weight
        self.update_best_covisibles()

    def update_best_covisibles(self):
        """Reorder the connected keyframes by decreasing weight."""
        with self._connections_lock:
            pairs = sorted(
                ((w, kf) for kf, w in self._connected.items()),
                key=lambda pair: (pair[0], pair[1].id),
                reverse=True,
            )
            self._ordered_connected = [kf for _, kf in pairs]
            self._ordered_weights = [w for w, _ in pairs]

    def connected_keyframes(self) -> set:
        with self._connections_lock:
            return set(self._connected)

    def covisible_keyframes(self) -> list:
        """Connected keyframes, strongest first."""
        with self._connections_lock:
            return list(self._ordered_connected)

    @property
    def ordered_weights(self) -> list:
        with self._connections_lock:
            return list(self._ordered_weights)

    def best_covisibility_keyframes(self, n) -> list:
        with self._connections_lock:
            return list(self._ordered_connected[:n])

    def covisibles_by_weight(self, weight) -> list:
        """Keyframes sharing at least ``weight`` points.

        When every connection reaches ``weight`` the result is empty, as in
        the reference behaviour.
        """
        with self._connections_lock:
            if not self._ordered_connected:
                return []
            negated = [-w for w in self._ordered_weights]
            n = bisect.bisect_right(negated, -weight)
            if n == len(negated):
                return []
            return list(self._ordered_connected[:n])

    def weight(self, keyframe) -> int:
        with self._connections_lock:
            return self._connected.get(keyframe, 0)

    # -- map point associations -----------------------------------------

    def add_map_point(self, point, index):
        with self._features_lock:
            self._map_points[index] = point

    def erase_map_point_match(self, index):
        with self._features_lock:
            self._map_points[index] = None

    def erase_map_point(self, point):
        """Drop the association with ``point`` wherever it is observed."""
        index = point.index_in_keyframe(self)
        if index >= 0:
            self._map_points[index] = None

    def replace_map_point_match(self, index, point):
        self._map_points[index] = point

    def map_points(self) -> set:
        """The associated map points that are not bad."""
        with self._features_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad}

    def tracked_map_points(self, min_obs) -> int:
        """Count good points, only those with at least ``min_obs`` observations if positive."""
        with self._features_lock:
            return sum(
                1
                for p in self._map_points
                if p is not None
                and not p.is_bad
                and (min_obs <= 0 or p.n_obs >= min_obs)
            )

    def map_point_matches(self) -> list:
        with self._features_lock:
            return list(self._map_points)

    def map_point(self, index):
        with self._features_lock:
            return self._map_points[index]

    def update_connections(self):
        """Rebuild covisibility links from the keyframes that share map points."""
        with self._features_lock:
            points = list(self._map_points)

        counter: dict = {}
        for point in points:
            if point is None or point.is_bad:
                continue
            for keyframe in point.observations:
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        nmax = 0
        kf_max = None
        pairs = []
        for keyframe, count in counter.items():
            if count > nmax:
                nmax = count
                kf_max = keyframe
            if count >= COVISIBILITY_THRESHOLD:
                pairs.append((count, keyframe))
                keyframe.add_connection(self, count)

        if not pairs:
            pairs.append((nmax, kf_max))
            kf_max.add_connection(self, nmax)

        pairs.sort(key=lambda pair: (pair[0], pair[1].id), reverse=True)

        with self._connections_lock:
            self._connected = counter
            self._ordered_connected = [kf for _, kf in pairs]
            self._ordered_weights = [w for w, _ in pairs]
            if self._first_connection and self.id != 0:
                self._parent = self._ordered_connected[0]
                self._parent.add_child(self)
                self._first_connection = False

    # -- spanning tree and loop edges ------------------------------------

    def add_child(self, keyframe):
        with self._connections_lock:
            self._children[keyframe] = None

    def erase_child(self, keyframe):
        with self._connections_lock:
            self._children.pop(keyframe, None)

    def change_parent(self, keyframe):
        with self._connections_lock:
            self._parent = keyframe
        keyframe.add_child(self)

    def children(self) -> set:
        with self._connections_lock:
            return set(self._children)

    @property
    def parent(self):
        with self._connections_lock:
            return self._parent

    def has_child(self, keyframe) -> bool:
        with self._connections_lock:
            return keyframe in self._children

    def add_loop_edge(self, keyframe):
        with self._connections_lock:
            self._not_erase = True
            self._loop_edges[keyframe] = None

    def loop_edges(self) -> set:
        with self._connections_lock:
            return set(self._loop_edges)

    # -- erasure ----------------------------------------------------------

    def set_not_erase(self):
        """Protect the keyframe from erasure while another thread uses it."""
        with self._connections_lock:
            self._not_erase = True

    def set_erase(self):
        """Lift the protection; carry out a pending erasure if one was asked for."""
        with self._connections_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self):
        """Remove the keyframe from the graph, reattaching its children."""
        with self._connections_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return

        for keyframe in list(self._connected):
            keyframe.erase_connection(self)

        for point in list(self._map_points):
            if point is not None:
                point.erase_observation(self)

        with self._connections_lock, self._features_lock:
            self._connected = {}
            self._ordered_connected = []

            candidates = {self._parent} if self._parent is not None else set()
            while self._children:
                best = -1
                child = new_parent = None
                for kf in list(self._children):
                    if kf.is_bad:
                        continue
                    for connected in kf.covisible_keyframes():
                        if any(connected.id == c.id for c in candidates):
                            w = kf.weight(connected)
                            if w > best:
                                child, new_parent, best = kf, connected, w
                if child is None:
                    break
                child.change_parent(new_parent)
                candidates.add(child)
                self._children.pop(child, None)

            if self._parent is not None:
                for kf in list(self._children):
                    kf.change_parent(self._parent)
                self._parent.erase_child(self)
                self.tcp = self._tcw @ self._parent.pose_inverse
            self._bad = True

        if self._map is not None:
            self._map.erase_keyframe(self)
        if self._database is not None:
            self._database.erase(self)

    @property
    def is_bad(self) -> bool:
        with self._connections_lock:
            return self._bad

    def erase_connection(self, keyframe):
        with self._connections_lock:
            present = self._connected.pop(keyframe, None) is not None
        if present:
            self.update_best_covisibles()

    # -- geometry -----------------------------------------------------------

    def features_in_area(self, x, y, r) -> list:
        """Indices of undistorted keypoints within ``r`` (per axis) of (x, y)."""
        found: list = []
        min_cell_x = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return found
        max_cell_x = min(
            self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv)
        )
        if max_cell_x < 0:
            return found
        min_cell_y = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return found
        max_cell_y = min(
            self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv)
        )
        if max_cell_y < 0:
            return found

        for ix in range(min_cell_x, max_cell_x + 1):
            for iy in range(min_cell_y, max_cell_y + 1):
                for index in self.grid[ix][iy]:
                    kp = self.keys_un[index]
                    if abs(kp.x - x) < r and abs(kp.y - y) < r:
                        found.append(index)
        return found

    def is_in_image(self, x, y) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, i):
        """World position of feature ``i`` from its depth, or None without depth."""
        z = self.depth[i]
        if z <= 0:
            return None
        kp = self.keys[i]
        camera = np.array(
            [(kp.x - self.cx) * z * self.invfx, (kp.y - self.cy) * z * self.invfy, z]
        )
        with self._pose_lock:
            return self._twc[:3, :3] @ camera + self._twc[:3, 3]

    def compute_scene_median_depth(self, q=2) -> float:
        """The depth at position (n-1)//q among the sorted depths of the map points."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points)
            tcw = self._tcw.copy()
        row = tcw[2, :3]
        zcw = tcw[2, 3]
        depths = sorted(
            float(row @ p.world_pos + zcw) for p in points if p is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points")
        return depths[(len(depths) - 1) // q]