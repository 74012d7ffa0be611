"""Loop closing: detects revisited places and coordinates the map correction."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass

_log = logging.getLogger(__name__)

_POLL_SECONDS = 0.005
_STOP_WAIT_SECONDS = 0.001
# Keyframes that must pass after a loop before another one is looked for.
_MIN_KEYFRAMES_BETWEEN_LOOPS = 10
# Consecutive consistent detections needed to accept a loop candidate.
_COVISIBILITY_CONSISTENCY_THRESHOLD = 3


@dataclass
class ConsistentGroup:
    """A candidate's covisibility group and how many times in a row it was seen."""

    keyframes: frozenset
    consistency: int


class LoopClosing:
    """Takes keyframes from local mapping and looks for loops among them.

    The geometric verification and the correction itself need a similarity
    solver and an optimiser; ``run`` accepts them as callables.
    """

    def __init__(self, map_, database, vocabulary, fix_scale):
        self._map = map_
        self._database = database
        self._vocabulary = vocabulary
        self.fix_scale = bool(fix_scale)
        self._tracker = None
        self._local_mapper = None

        self.covisibility_consistency_threshold = _COVISIBILITY_CONSISTENCY_THRESHOLD

        self._queue_lock = threading.Lock()
        self._queue: deque = deque()

        self._current = None
        self._matched = None
        self._consistent_groups: list = []
        self._enough_consistent: list = []
        self._last_loop_kf_id = 0

        self._reset_lock = threading.Lock()
        self._reset_requested = False

        self._finish_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True

        self._gba_lock = threading.Lock()
        self._running_gba = False
        self._finished_gba = True
        self._stop_gba = False
        self._full_ba_index = 0
        self._gba_thread = None

    # -- wiring --------------------------------------------------------------

    def set_tracker(self, tracker):
        self._tracker = tracker

    def set_local_mapper(self, local_mapper):
        self._local_mapper = local_mapper

    # -- state ----------------------------------------------------------------

    @property
    def current_keyframe(self):
        """The keyframe examined most recently."""
        return self._current

    @property
    def matched_keyframe(self):
        """The keyframe the last accepted loop was closed against."""
        return self._matched

    @property
    def consistent_groups(self) -> list:
        return list(self._consistent_groups)

    @property
    def enough_consistent_candidates(self) -> list:
        """Candidates from the last detection that were consistent long enough."""
        return list(self._enough_consistent)

    @property
    def last_loop_kf_id(self) -> int:
        return self._last_loop_kf_id

    @property
    def stop_gba(self) -> bool:
        """True when a running global bundle adjustment should give up."""
        return self._stop_gba

    # -- queue ----------------------------------------------------------------

    def insert_keyframe(self, keyframe):
        """Queue a keyframe; the first keyframe of the map is never queued."""
        with self._queue_lock:
            if keyframe.id != 0:
                self._queue.append(keyframe)

    def check_new_keyframes(self) -> bool:
        with self._queue_lock:
            return bool(self._queue)

    # -- detection ------------------------------------------------------------

    def detect_loop(self) -> bool:
        """Take the oldest queued keyframe and check it for a consistent loop."""
        with self._queue_lock:
            if not self._queue:
                raise RuntimeError("no keyframe waiting for loop detection")
            current = self._queue.popleft()
            # Keep local mapping from erasing it while it is examined here.
            current.set_not_erase()
        self._current = current

        if current.id < self._last_loop_kf_id + _MIN_KEYFRAMES_BETWEEN_LOOPS:
            self._database.add(current)
            current.set_erase()
            return False

        # The lowest similarity to a covisible keyframe is the bar candidates must clear.
        min_score = 1.0
        for keyframe in current.covisible_keyframes():
            if keyframe.is_bad:
                continue
            score = self._vocabulary.score(current.bow_vec, keyframe.bow_vec)
            min_score = min(min_score, score)

        candidates = self._database.detect_loop_candidates(current, min_score)
        if not candidates:
            self._database.add(current)
            self._consistent_groups = []
            current.set_erase()
            return False

        self._enough_consistent = []
        new_groups = []
        group_used = [False] * len(self._consistent_groups)
        for candidate in candidates:
            candidate_group = frozenset(candidate.connected_keyframes() | {candidate})

            enough = False
            consistent_with_some = False
            for index, previous in enumerate(self._consistent_groups):
                if candidate_group.isdisjoint(previous.keyframes):
                    continue
                consistent_with_some = True
                consistency = previous.consistency + 1
                if not group_used[index]:
                    new_groups.append(ConsistentGroup(candidate_group, consistency))
                    group_used[index] = True
                if consistency >= self.covisibility_consistency_threshold and not enough:
                    self._enough_consistent.append(candidate)
                    enough = True

            if not consistent_with_some:
                new_groups.append(ConsistentGroup(candidate_group, 0))

        self._consistent_groups = new_groups
        self._database.add(current)

        if not self._enough_consistent:
            current.set_erase()
            return False
        return True

    # -- main loop -------------------------------------------------------------

    def run(self, compute_sim3=None, correct_loop=None):
        """Examine queued keyframes until a finish is requested.

        ``compute_sim3(self)`` verifies the candidates geometrically and returns
        the matched keyframe or None; ``correct_loop(self)`` then corrects the
        map. Without ``compute_sim3`` no loop is ever accepted.
        """
        with self._finish_lock:
            self._finished = False

        while True:
            if self.check_new_keyframes() and self.detect_loop():
                matched = compute_sim3(self) if compute_sim3 is not None else None
                self._settle_candidates(matched)
                if matched is not None:
                    _log.info("Loop detected!")
                    if correct_loop is not None:
                        correct_loop(self)
                    self._last_loop_kf_id = self._current.id

            self.reset_if_requested()
            if self._check_finish():
                break
            time.sleep(_POLL_SECONDS)

        self._set_finish()

    def _settle_candidates(self, matched):
        """Release the candidates; on failure release the current keyframe too."""
        self._matched = matched
        for candidate in self._enough_consistent:
            if candidate is not matched:
                candidate.set_erase()
        if matched is None:
            self._current.set_erase()

    # -- global bundle adjustment ---------------------------------------------

    def is_running_gba(self) -> bool:
        with self._gba_lock:
            return self._running_gba

    def is_finished_gba(self) -> bool:
        with self._gba_lock:
            return self._finished_gba

    def abort_global_bundle_adjustment(self):
        """Ask a running global bundle adjustment to stop and discard its result."""
        with self._gba_lock:
            if self._running_gba:
                self._stop_gba = True
                self._full_ba_index += 1

    def launch_global_bundle_adjustment(self, loop_kf_id, optimize=None,
                                        apply_correction=None):
        """Start ``run_global_bundle_adjustment`` in a background thread."""
        with self._gba_lock:
            self._running_gba = True
            self._finished_gba = False
            self._stop_gba = False
        self._gba_thread = threading.Thread(
            target=self.run_global_bundle_adjustment,
            args=(loop_kf_id, optimize, apply_correction),
            daemon=True,
        )
        self._gba_thread.start()
        return self._gba_thread

    def run_global_bundle_adjustment(self, loop_kf_id, optimize=None,
                                     apply_correction=None) -> bool:
        """Optimise the whole map and propagate the correction.

        ``optimize(map_, should_stop, loop_kf_id)`` runs the adjustment and
        ``apply_correction(map_, loop_kf_id)`` updates poses and points while
        local mapping is stopped. Returns False if a newer run superseded this one.
        """
        _log.info("Starting Global Bundle Adjustment")
        index = self._full_ba_index
        if optimize is not None:
            optimize(self._map, lambda: self._stop_gba, loop_kf_id)

        with self._gba_lock:
            if index != self._full_ba_index:
                return False

            if not self._stop_gba:
                _log.info("Global Bundle Adjustment finished; updating map")
                mapper = self._local_mapper
                if mapper is not None:
                    mapper.request_stop()
                    while not mapper.is_stopped() and not mapper.is_finished():
                        time.sleep(_STOP_WAIT_SECONDS)

                with self._map.map_update_lock:
                    if apply_correction is not None:
                        apply_correction(self._map, loop_kf_id)
                    self._map.inform_new_big_change()

                if mapper is not None:
                    mapper.release()
                _log.info("Map updated!")

            self._finished_gba = True
            self._running_gba = False
        return True

    # -- reset ------------------------------------------------------------------

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
                with self._queue_lock:
                    self._queue.clear()
                self._last_loop_kf_id = 0
                self._reset_requested = False

    # -- finish ------------------------------------------------------------------

    def request_finish(self):
        with self._finish_lock:
            self._finish_requested = True

    def _check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def _set_finish(self):
        with self._finish_lock:
            self._finished = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished