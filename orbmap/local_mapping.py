"""Local mapping: takes new keyframes from tracking and maintains the local map."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque

_log = logging.getLogger(__name__)

_POLL_SECONDS = 0.003
_MIN_FOUND_RATIO = 0.25
_REDUNDANT_OBSERVERS = 3
_REDUNDANT_FRACTION = 0.9


class LocalMapping:
    """Queue of new keyframes plus the bookkeeping that cleans up the local map.

    The stop, reset and finish handshakes let tracking and loop closing pause
    or reset this worker while it runs in its own thread (see ``run``).
    """

    def __init__(self, map_, monocular):
        self._map = map_
        self.monocular = bool(monocular)
        self._loop_closer = None
        self._tracker = None

        self._new_kfs_lock = threading.Lock()
        self._new_keyframes: deque = deque()
        self._recent_points: list = []
        self._current = None
        self._abort_ba = False

        self._reset_lock = threading.Lock()
        self._reset_requested = False

        self._finish_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True

        self._stop_lock = threading.Lock()
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False

        self._accept_lock = threading.Lock()
        self._accept = True

    # -- wiring --------------------------------------------------------------

    def set_loop_closer(self, loop_closer):
        self._loop_closer = loop_closer

    def set_tracker(self, tracker):
        self._tracker = tracker

    @property
    def current_keyframe(self):
        """The keyframe processed most recently."""
        return self._current

    @property
    def abort_ba(self) -> bool:
        """True when a running local bundle adjustment should give up."""
        return self._abort_ba

    @property
    def recent_map_points(self) -> list:
        """Recently created map points still on probation."""
        return list(self._recent_points)

    def add_recent_map_point(self, point):
        """Put a newly created map point on probation for culling."""
        self._recent_points.append(point)

    # -- main loop ----------------------------------------------------------

    def run(self, create_new_map_points=None, search_in_neighbors=None,
            local_bundle_adjustment=None):
        """Process queued keyframes until a finish is requested.

        The optional steps are called as ``create_new_map_points(self, kf)``,
        ``search_in_neighbors(self, kf)`` and
        ``local_bundle_adjustment(kf, should_abort, map_)`` where
        ``should_abort`` is a callable returning the abort flag.
        """
        with self._finish_lock:
            self._finished = False

        while True:
            self.set_accept_keyframes(False)

            if self.check_new_keyframes():
                keyframe = self.process_new_keyframe()
                self.map_point_culling()
                if create_new_map_points is not None:
                    create_new_map_points(self, keyframe)
                if not self.check_new_keyframes() and search_in_neighbors is not None:
                    search_in_neighbors(self, keyframe)

                self._abort_ba = False

                if not self.check_new_keyframes() and not self.stop_requested():
                    if (local_bundle_adjustment is not None
                            and self._map.keyframes_in_map > 2):
                        local_bundle_adjustment(keyframe, lambda: self._abort_ba, self._map)
                    self.keyframe_culling()

                if self._loop_closer is not None:
                    self._loop_closer.insert_keyframe(keyframe)
            elif self.stop():
                while self.is_stopped() and not self._check_finish():
                    time.sleep(_POLL_SECONDS)
                if self._check_finish():
                    break

            self.reset_if_requested()
            self.set_accept_keyframes(True)

            if self._check_finish():
                break
            time.sleep(_POLL_SECONDS)

        self._set_finish()

    # -- keyframe queue -----------------------------------------------------

    def insert_keyframe(self, keyframe):
        """Queue a keyframe and ask any running bundle adjustment to stop."""
        with self._new_kfs_lock:
            self._new_keyframes.append(keyframe)
            self._abort_ba = True

    def keyframes_in_queue(self) -> int:
        with self._new_kfs_lock:
            return len(self._new_keyframes)

    def check_new_keyframes(self) -> bool:
        with self._new_kfs_lock:
            return bool(self._new_keyframes)

    def process_new_keyframe(self):
        """Take the oldest queued keyframe, link its map points and add it to the map.

        Bag-of-words vectors are expected to be filled in already.
        """
        with self._new_kfs_lock:
            if not self._new_keyframes:
                raise RuntimeError("no keyframe waiting to be processed")
            keyframe = self._new_keyframes.popleft()
        self._current = keyframe

        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad:
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self._recent_points.append(point)

        keyframe.update_connections()
        self._map.add_keyframe(keyframe)
        return keyframe

    # -- culling --------------------------------------------------------------

    def _require_current(self):
        if self._current is None:
            raise RuntimeError("no keyframe has been processed yet")
        return self._current

    def map_point_culling(self):
        """Drop recent map points that are seldom found or too weakly observed."""
        current_id = self._require_current().id
        threshold = 2 if self.monocular else 3

        kept = []
        for point in self._recent_points:
            if point.is_bad:
                continue
            age = current_id - point.first_kf_id
            if point.found_ratio() < _MIN_FOUND_RATIO:
                point.set_bad_flag()
            elif age >= 2 and point.n_obs <= threshold:
                point.set_bad_flag()
            elif age >= 3:
                continue
            else:
                kept.append(point)
        self._recent_points = kept

    def keyframe_culling(self):
        """Remove covisible keyframes whose points are 90% seen by three others."""
        for keyframe in self._require_current().covisible_keyframes():
            if keyframe.id == 0:
                continue

            redundant = 0
            n_points = 0
            for index, point in enumerate(keyframe.map_point_matches()):
                if point is None or point.is_bad:
                    continue
                if not self.monocular:
                    depth = keyframe.depth[index]
                    if depth > keyframe.th_depth or depth < 0:
                        continue

                n_points += 1
                if point.n_obs <= _REDUNDANT_OBSERVERS:
                    continue
                level = keyframe.keys_un[index].octave
                observers = 0
                for other, other_index in point.observations.items():
                    if other is keyframe:
                        continue
                    if other.keys_un[other_index].octave <= level + 1:
                        observers += 1
                        if observers >= _REDUNDANT_OBSERVERS:
                            break
                if observers >= _REDUNDANT_OBSERVERS:
                    redundant += 1

            if redundant > _REDUNDANT_FRACTION * n_points:
                keyframe.set_bad_flag()

    # -- stop / release ------------------------------------------------------

    def request_stop(self):
        with self._stop_lock:
            self._stop_requested = True
        with self._new_kfs_lock:
            self._abort_ba = True

    def stop(self) -> bool:
        """Enter the stopped state if a stop was requested and is allowed."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                _log.info("Local Mapping STOP")
                return True
            return False

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def release(self):
        """Leave the stopped state and drop queued keyframes; no-op once finished."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._new_kfs_lock:
                self._new_keyframes.clear()
        _log.info("Local Mapping RELEASE")

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept

    def set_accept_keyframes(self, flag):
        with self._accept_lock:
            self._accept = bool(flag)

    def set_not_stop(self, flag) -> bool:
        """Forbid (or allow) stopping; fails if asked to forbid while stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def interrupt_ba(self):
        self._abort_ba = True

    # -- reset ------------------------------------------------------------

    def request_reset(self):
        """Ask for a reset and block until the worker has carried it out."""
        with self._reset_lock:
            self._reset_requested = True
        while True:
            with self._reset_lock:
                if not self._reset_requested:
                    return
            time.sleep(_POLL_SECONDS)

    def reset_if_requested(self):
        with self._reset_lock:
            if self._reset_requested:
                with self._new_kfs_lock:
                    self._new_keyframes.clear()
                self._recent_points = []
                self._reset_requested = False

    # -- finish -------------------------------------------------------------

    def request_finish(self):
        with self._finish_lock:
            self._finish_requested = True

    def _check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def _set_finish(self):
        with self._finish_lock:
            self._finished = True
        with self._stop_lock:
            self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished