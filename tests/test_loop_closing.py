import threading
import time

import pytest

from orbmap.loop_closing import ConsistentGroup, LoopClosing
from orbmap.map import Map


class FakeKeyFrame:
    def __init__(self, id_, bow=None):
        self.id = id_
        self.bow_vec = bow or {id_: 1.0}
        self.is_bad = False
        self.not_erase = False
        self.erase_calls = 0
        self.covisible = []
        self.connected = set()

    def set_not_erase(self):
        self.not_erase = True

    def set_erase(self):
        self.not_erase = False
        self.erase_calls += 1

    def covisible_keyframes(self):
        return list(self.covisible)

    def connected_keyframes(self):
        return set(self.connected)

    def __hash__(self):
        return hash(self.id)

    def __eq__(self, other):
        return self is other


class FakeDatabase:
    def __init__(self, candidates=None):
        self.added = []
        self.candidates = candidates or []
        self.min_scores = []

    def add(self, keyframe):
        self.added.append(keyframe)

    def detect_loop_candidates(self, keyframe, min_score):
        self.min_scores.append(min_score)
        return list(self.candidates)


class FakeVocabulary:
    def __init__(self, scores=None):
        self.scores = scores or {}

    def score(self, a, b):
        return self.scores.get(next(iter(b)), 0.5)


def make_loop_closing(database=None, vocabulary=None, map_=None):
    return LoopClosing(
        map_ or Map(), database or FakeDatabase(), vocabulary or FakeVocabulary(), True
    )


def test_insert_keyframe_skips_first_keyframe():
    lc = make_loop_closing()
    lc.insert_keyframe(FakeKeyFrame(0))
    assert lc.check_new_keyframes() is False
    lc.insert_keyframe(FakeKeyFrame(3))
    assert lc.check_new_keyframes() is True


def test_detect_loop_on_empty_queue_raises():
    lc = make_loop_closing()
    with pytest.raises(RuntimeError):
        lc.detect_loop()


def test_detect_loop_too_soon_after_start():
    db = FakeDatabase()
    lc = make_loop_closing(database=db)
    kf = FakeKeyFrame(5)
    lc.insert_keyframe(kf)
    assert lc.detect_loop() is False
    assert db.added == [kf]
    assert kf.erase_calls == 1
    assert db.min_scores == []
    assert lc.current_keyframe is kf


def test_detect_loop_without_candidates_clears_groups():
    db = FakeDatabase()
    lc = make_loop_closing(database=db)
    kf = FakeKeyFrame(20)
    lc.insert_keyframe(kf)
    assert lc.detect_loop() is False
    assert lc.consistent_groups == []
    assert db.added == [kf]
    assert kf.not_erase is False


def test_min_score_is_lowest_covisible_score_ignoring_bad():
    good_a = FakeKeyFrame(1)
    good_b = FakeKeyFrame(2)
    bad = FakeKeyFrame(3)
    bad.is_bad = True
    vocab = FakeVocabulary({1: 0.4, 2: 0.2, 3: 0.01})
    db = FakeDatabase()
    lc = make_loop_closing(database=db, vocabulary=vocab)
    kf = FakeKeyFrame(30)
    kf.covisible = [good_a, good_b, bad]
    lc.insert_keyframe(kf)
    lc.detect_loop()
    assert db.min_scores == [0.2]


def test_min_score_defaults_to_one_without_covisibles():
    db = FakeDatabase()
    lc = make_loop_closing(database=db)
    lc.insert_keyframe(FakeKeyFrame(30))
    lc.detect_loop()
    assert db.min_scores == [1.0]


def test_loop_accepted_after_consistent_detections():
    candidate = FakeKeyFrame(2)
    neighbour = FakeKeyFrame(3)
    candidate.connected = {neighbour}
    db = FakeDatabase([candidate])
    lc = make_loop_closing(database=db)

    results = []
    for id_ in (40, 41, 42, 43):
        lc.insert_keyframe(FakeKeyFrame(id_))
        results.append(lc.detect_loop())

    assert results == [False, False, False, True]
    assert lc.enough_consistent_candidates == [candidate]
    groups = lc.consistent_groups
    assert len(groups) == 1
    assert groups[0].keyframes == frozenset({candidate, neighbour})
    assert groups[0].consistency == 3


def test_new_group_starts_with_zero_consistency():
    candidate = FakeKeyFrame(2)
    db = FakeDatabase([candidate])
    lc = make_loop_closing(database=db)
    lc.insert_keyframe(FakeKeyFrame(50))
    lc.detect_loop()
    assert lc.consistent_groups == [ConsistentGroup(frozenset({candidate}), 0)]


def test_reset_clears_queue_and_last_loop():
    lc = make_loop_closing()
    lc.insert_keyframe(FakeKeyFrame(7))
    thread = threading.Thread(target=lc.request_reset)
    thread.start()
    deadline = time.time() + 5
    while thread.is_alive() and time.time() < deadline:
        lc.reset_if_requested()
        time.sleep(0.001)
    thread.join(timeout=1)
    assert not thread.is_alive()
    assert lc.check_new_keyframes() is False
    assert lc.last_loop_kf_id == 0


def test_run_processes_queue_and_finishes():
    db = FakeDatabase()
    lc = make_loop_closing(database=db)
    assert lc.is_finished() is True
    kf = FakeKeyFrame(4)
    lc.insert_keyframe(kf)
    thread = threading.Thread(target=lc.run)
    thread.start()
    deadline = time.time() + 5
    while lc.check_new_keyframes() and time.time() < deadline:
        time.sleep(0.002)
    lc.request_finish()
    thread.join(timeout=5)
    assert lc.is_finished() is True
    assert db.added == [kf]


def test_run_records_accepted_loop():
    candidate = FakeKeyFrame(2)
    other = FakeKeyFrame(8)
    db = FakeDatabase([candidate, other])
    lc = make_loop_closing(database=db)
    lc.covisibility_consistency_threshold = 0
    corrected = []

    current = FakeKeyFrame(60)
    lc.insert_keyframe(current)
    lc.request_finish()
    lc.run(compute_sim3=lambda closer: candidate,
           correct_loop=lambda closer: corrected.append(closer.current_keyframe))

    assert corrected == [current]
    assert lc.matched_keyframe is candidate
    assert lc.last_loop_kf_id == 60
    assert candidate.erase_calls == 0
    assert other.erase_calls == 1


def test_run_without_solver_releases_keyframes():
    candidate = FakeKeyFrame(2)
    db = FakeDatabase([candidate])
    lc = make_loop_closing(database=db)
    lc.covisibility_consistency_threshold = 0
    current = FakeKeyFrame(70)
    lc.insert_keyframe(current)
    lc.request_finish()
    lc.run()
    assert candidate.erase_calls == 1
    assert current.not_erase is False
    assert lc.last_loop_kf_id == 0


def test_global_bundle_adjustment_updates_map():
    map_ = Map()
    lc = make_loop_closing(map_=map_)
    assert lc.is_running_gba() is False
    assert lc.is_finished_gba() is True

    calls = []
    thread = lc.launch_global_bundle_adjustment(
        12,
        optimize=lambda m, should_stop, kf_id: calls.append(("opt", kf_id, should_stop())),
        apply_correction=lambda m, kf_id: calls.append(("fix", kf_id)),
    )
    thread.join(timeout=5)
    assert calls == [("opt", 12, False), ("fix", 12)]
    assert map_.last_big_change_index == 1
    assert lc.is_running_gba() is False
    assert lc.is_finished_gba() is True


def test_aborted_global_bundle_adjustment_is_discarded():
    map_ = Map()
    lc = make_loop_closing(map_=map_)
    corrections = []

    def optimize(m, should_stop, kf_id):
        lc.abort_global_bundle_adjustment()

    with lc._gba_lock:
        lc._running_gba = True
    applied = lc.run_global_bundle_adjustment(
        5, optimize=optimize, apply_correction=lambda m, k: corrections.append(k)
    )
    assert applied is False
    assert corrections == []
    assert map_.last_big_change_index == 0
    assert lc.stop_gba is True


class FakeMapper:
    def __init__(self):
        self.events = []

    def request_stop(self):
        self.events.append("stop")

    def is_stopped(self):
        return True

    def is_finished(self):
        return False

    def release(self):
        self.events.append("release")


def test_global_bundle_adjustment_pauses_local_mapping():
    lc = make_loop_closing()
    mapper = FakeMapper()
    lc.set_local_mapper(mapper)
    assert lc.run_global_bundle_adjustment(3) is True
    assert mapper.events == ["stop", "release"]
    assert lc.is_finished_gba() is True