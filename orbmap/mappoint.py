"""Map points: 3D landmarks observed from one or more keyframes."""

from __future__ import annotations

import itertools
import math
import threading

import numpy as np


def _as_bits(descriptor) -> np.ndarray:
    if isinstance(descriptor, (bytes, bytearray, memoryview)):
        return np.frombuffer(bytes(descriptor), dtype=np.uint8)
    return np.asarray(descriptor, dtype=np.uint8).ravel()


def descriptor_distance(a, b) -> int:
    """Hamming distance between two binary descriptors."""
    left = _as_bits(a)
    right = _as_bits(b)
    if left.shape != right.shape:
        raise ValueError(
            f"descriptor sizes differ: {left.size} and {right.size} bytes"
        )
    return int(np.unpackbits(np.bitwise_xor(left, right)).sum())


class MapPoint:
    """A triangulated landmark with its observations and viewing statistics.

    Keyframes are expected to expose ``id``, ``frame_id``, ``uright``,
    ``keys_un``, ``descriptors``, ``scale_factors``, ``scale_levels``,
    ``is_bad``, ``camera_center``, ``erase_map_point_match(index)`` and
    ``replace_map_point_match(index, point)``.
    """

    # Held by optimisers while they write positions back.
    global_lock = threading.Lock()
    _ids = itertools.count()

    def __init__(self, position, reference_keyframe, map_):
        self.first_kf_id = reference_keyframe.id
        self.first_frame = reference_keyframe.frame_id

        # Bookkeeping markers used by tracking, local mapping and loop closing.
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba = None

        self._lock = threading.RLock()
        self._world_pos = np.array(position, dtype=np.float64).reshape(3)
        self._normal = np.zeros(3)
        self._descriptor = None
        self._observations: dict = {}
        self._n_obs = 0
        self._reference_keyframe = reference_keyframe
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._map = map_

        with map_.point_creation_lock:
            self.id = next(MapPoint._ids)

    # -- position and viewing data -------------------------------------

    @property
    def world_pos(self) -> np.ndarray:
        with self._lock:
            return self._world_pos.copy()

    @world_pos.setter
    def world_pos(self, position):
        with MapPoint.global_lock, self._lock:
            self._world_pos = np.array(position, dtype=np.float64).reshape(3)

    @property
    def normal(self) -> np.ndarray:
        with self._lock:
            return self._normal.copy()

    @property
    def descriptor(self):
        with self._lock:
            return None if self._descriptor is None else self._descriptor.copy()

    @property
    def reference_keyframe(self):
        with self._lock:
            return self._reference_keyframe

    @property
    def replaced(self):
        """The point that took over from this one, if any."""
        with self._lock:
            return self._replaced

    @property
    def is_bad(self) -> bool:
        with self._lock:
            return self._bad

    @property
    def max_distance(self) -> float:
        with self._lock:
            return self._max_distance

    @property
    def min_distance(self) -> float:
        with self._lock:
            return self._min_distance

    # -- observations ---------------------------------------------------

    @property
    def observations(self) -> dict:
        """A copy of the keyframe -> feature index mapping."""
        with self._lock:
            return dict(self._observations)

    @property
    def n_obs(self) -> int:
        """Number of observations; stereo observations count twice."""
        with self._lock:
            return self._n_obs

    def add_observation(self, keyframe, index):
        """Record that ``keyframe`` sees this point at feature ``index``."""
        with self._lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._n_obs += 2 if keyframe.uright[index] >= 0 else 1

    def erase_observation(self, keyframe):
        """Forget an observation; the point goes bad with two or fewer left."""
        bad = False
        with self._lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.uright[index] >= 0 else 1
                if self._reference_keyframe is keyframe:
                    self._reference_keyframe = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    def set_bad_flag(self):
        """Mark the point bad and detach it from its keyframes and the map."""
        with self._lock:
            self._bad = True
            observations = self._observations
            self._observations = {}
        for keyframe, index in observations.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def replace(self, other):
        """Merge this point into ``other`` and retire this one."""
        if other.id == self.id:
            return
        with self._lock:
            observations = self._observations
            self._observations = {}
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = other

        for keyframe, index in observations.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    # -- tracking statistics -------------------------------------------

    def increase_visible(self, n=1):
        with self._lock:
            self._visible += n

    def increase_found(self, n=1):
        with self._lock:
            self._found += n

    def found_ratio(self) -> float:
        """Fraction of the times the point was predicted visible that it was found."""
        with self._lock:
            return self._found / self._visible

    # -- descriptor and geometry ---------------------------------------

    def compute_distinctive_descriptors(self):
        """Pick the observed descriptor with least median distance to the rest."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return

        descriptors = [
            np.array(keyframe.descriptors[index], dtype=np.uint8)
            for keyframe, index in observations.items()
            if not keyframe.is_bad
        ]
        if not descriptors:
            return

        count = len(descriptors)
        distances = np.zeros((count, count), dtype=np.int64)
        for i, j in itertools.combinations(range(count), 2):
            d = descriptor_distance(descriptors[i], descriptors[j])
            distances[i, j] = distances[j, i] = d

        median_position = (count - 1) // 2
        medians = [sorted(row)[median_position] for row in distances.tolist()]
        best = min(range(count), key=medians.__getitem__)

        with self._lock:
            self._descriptor = descriptors[best].copy()

    def index_in_keyframe(self, keyframe) -> int:
        """Feature index of this point in ``keyframe``, or -1."""
        with self._lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe) -> bool:
        with self._lock:
            return keyframe in self._observations

    def update_normal_and_depth(self):
        """Recompute the mean viewing direction and scale-invariance distances."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
            reference = self._reference_keyframe
            position = self._world_pos.copy()
        if not observations or reference is None:
            return

        normal = np.zeros(3)
        for keyframe in observations:
            direction = position - np.asarray(keyframe.camera_center, dtype=np.float64).reshape(3)
            normal += direction / np.linalg.norm(direction)

        offset = position - np.asarray(reference.camera_center, dtype=np.float64).reshape(3)
        distance = float(np.linalg.norm(offset))
        level = reference.keys_un[observations.get(reference, 0)].octave
        level_scale = reference.scale_factors[level]
        top_scale = reference.scale_factors[reference.scale_levels - 1]

        with self._lock:
            self._max_distance = distance * level_scale
            self._min_distance = self._max_distance / top_scale
            self._normal = normal / len(observations)

    def min_distance_invariance(self) -> float:
        with self._lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._lock:
            return 1.2 * self._max_distance

    def predict_scale(self, distance, frame) -> int:
        """Pyramid level at which the point should appear from ``distance``.

        ``frame`` may be a frame or keyframe exposing ``log_scale_factor``
        and ``scale_levels``.
        """
        with self._lock:
            ratio = self._max_distance / distance
        if ratio <= 0:
            return 0
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        return max(0, min(scale, frame.scale_levels - 1))