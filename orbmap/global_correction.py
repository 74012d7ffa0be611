"""Propagation of a global bundle adjustment result through the whole map."""

from __future__ import annotations

from collections import deque

import numpy as np


def _set_position(point, position):
    setter = getattr(point, "set_world_pos", None)
    if callable(setter):
        setter(position)
    else:
        point.world_pos = position


def propagate_keyframe_corrections(origins, loop_keyframe_id) -> list:
    """Walk the spanning tree from ``origins`` and apply the optimised poses.

    Keyframes the adjustment did not reach (inserted while it ran) receive the
    correction of their parent, keeping their pose relative to it. Every
    visited keyframe keeps its previous pose in ``tcw_bef_gba``. Returns the
    keyframes in the order they were updated.
    """
    queue = deque(origins)
    updated = []
    while queue:
        keyframe = queue[0]
        if keyframe.tcw_gba is None:
            raise ValueError(f"keyframe {keyframe.id} has no optimised pose")
        twc = keyframe.pose_inverse
        for child in sorted(keyframe.children(), key=lambda kf: kf.id):
            if child.ba_global_for_kf != loop_keyframe_id:
                tchildc = child.pose @ twc
                child.tcw_gba = tchildc @ keyframe.tcw_gba
                child.ba_global_for_kf = loop_keyframe_id
            queue.append(child)

        keyframe.tcw_bef_gba = keyframe.pose
        keyframe.set_pose(keyframe.tcw_gba)
        updated.append(keyframe)
        queue.popleft()
    return updated


def correct_map_points(points, loop_keyframe_id) -> int:
    """Move map points to their optimised or reference-corrected positions.

    Returns how many points were moved.
    """
    moved = 0
    for point in points:
        if point.is_bad:
            continue

        if getattr(point, "ba_global_for_kf", None) == loop_keyframe_id:
            _set_position(point, np.array(point.pos_gba, dtype=np.float64))
            moved += 1
            continue

        reference = point.reference_keyframe
        if reference is None or reference.ba_global_for_kf != loop_keyframe_id:
            continue
        before = reference.tcw_bef_gba
        if before is None:
            continue

        # Into the uncorrected camera, then back out with the corrected pose.
        camera = before[:3, :3] @ np.asarray(point.world_pos, dtype=np.float64) + before[:3, 3]
        twc = reference.pose_inverse
        _set_position(point, twc[:3, :3] @ camera + twc[:3, 3])
        moved += 1
    return moved


def apply_global_correction(map_, loop_keyframe_id):
    """Apply a finished global adjustment to every keyframe and map point.

    The spanning-tree roots (keyframes without a parent) are the origins the
    correction starts from. Returns (keyframes updated, points moved).
    """
    origins = sorted(
        (kf for kf in map_.all_keyframes() if kf.parent is None and not kf.is_bad),
        key=lambda kf: kf.id,
    )
    updated = propagate_keyframe_corrections(origins, loop_keyframe_id)
    moved = correct_map_points(map_.all_map_points(), loop_keyframe_id)
    return updated, moved