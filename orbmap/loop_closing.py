"""Loop closing: detects revisited places and propagates global corrections."""

from __future__ import annotations

import threading
from collections import deque
from typing import Any

import numpy as np

from orbmap.loop_detection import LoopDetector

# Keyframes that must pass after a closed loop before looking for another one.
_MIN_KEYFRAMES_BETWEEN_LOOPS = 10


class LoopClosing:
    """Queue of keyframes checked for loops, and map update after global BA.

    The ``database`` must offer ``add(keyframe)`` and
    ``detect_loop_candidates(keyframe, min_score)``; the ``vocabulary`` must
    offer ``score(bow_a, bow_b)``.
    """

    def __init__(self, world_map, database, vocabulary, fix_scale):
        self._map = world_map
        self._database = database
        self._vocabulary = vocabulary
        self.fix_scale = bool(fix_scale)

        self._queue_lock = threading.RLock()
        self._finish_lock = threading.RLock()
        self._gba_lock = threading.RLock()
        self._reset_cond = threading.Condition()

        self._queue: deque[Any] = deque()

        self.covisibility_consistency_th = 3
        self._detector = LoopDetector(database, vocabulary, self.covisibility_consistency_th)

        self.tracker = None
        self.local_mapper = None

        self.current_keyframe = None
        self.matched_keyframe = None
        self.enough_consistent_candidates: list[Any] = []
        self.last_loop_kf_id = 0

        self._reset_requested = False
        self._finish_requested = False
        self._finished = True

        self._running_gba = False
        self._finished_gba = True
        self.stop_gba = False

    def set_tracker(self, tracker) -> None:
        self.tracker = tracker

    def set_local_mapper(self, local_mapper) -> None:
        self.local_mapper = local_mapper

    # Keyframe queue

    def insert_keyframe(self, keyframe) -> None:
        """Queue a keyframe for loop detection; the first keyframe is never queued."""
        with self._queue_lock:
            if keyframe.id != 0:
                self._queue.append(keyframe)

    def check_new_keyframes(self) -> bool:
        with self._queue_lock:
            return bool(self._queue)

    # Detection

    def detect_loop(self) -> bool:
        """Take the oldest queued keyframe and look for a consistent loop candidate.

        Returns True when at least one candidate has been consistent long
        enough; the candidates are then in ``enough_consistent_candidates``.
        The keyframe is added to the database in every case.
        """
        with self._queue_lock:
            if not self._queue:
                raise LookupError("no keyframe is waiting for loop detection")
            keyframe = self._queue.popleft()
            keyframe.set_not_erase()
        self.current_keyframe = keyframe

        if keyframe.id < self.last_loop_kf_id + _MIN_KEYFRAMES_BETWEEN_LOOPS:
            self._database.add(keyframe)
            keyframe.set_erase()
            return False

        min_score = self._detector.minimum_score(keyframe)
        candidates = self._database.detect_loop_candidates(keyframe, min_score)

        if not candidates:
            self._database.add(keyframe)
            self._detector.reset_groups()
            keyframe.set_erase()
            return False

        self.enough_consistent_candidates = self._detector.update_consistency(candidates)
        self._database.add(keyframe)

        if not self.enough_consistent_candidates:
            keyframe.set_erase()
            return False
        return True

    def consistent_groups(self) -> list:
        return self._detector.consistent_groups()

    # Global bundle adjustment

    def propagate_global_correction(self, loop_keyframe_id) -> None:
        """Apply a finished global bundle adjustment to the whole map.

        Keyframes optimised by the adjustment carry their result in
        ``tcw_gba``; the correction is carried down the spanning tree from the
        map's origin keyframes to keyframes added meanwhile. Map points take
        their optimised position, or follow their reference keyframe.
        Local mapping must be stopped by the caller.
        """
        with self._gba_lock:
            self._running_gba = True
            self._finished_gba = False
        try:
            with self._map.mutex_map_update:
                self._correct_keyframes(loop_keyframe_id)
                self._correct_map_points(loop_keyframe_id)
            self._map.inform_new_big_change()
        finally:
            with self._gba_lock:
                self._finished_gba = True
                self._running_gba = False

    def _correct_keyframes(self, loop_keyframe_id) -> None:
        pending = deque(self._map.keyframe_origins)
        while pending:
            keyframe = pending.popleft()
            if keyframe.tcw_gba is None:
                raise ValueError(f"keyframe {keyframe.id} has no optimised pose")
            twc = np.asarray(keyframe.pose_inverse(), dtype=np.float64)
            gba = np.asarray(keyframe.tcw_gba, dtype=np.float64)
            for child in keyframe.children():
                if child.ba_global_for_kf != loop_keyframe_id:
                    tchildc = np.asarray(child.pose(), dtype=np.float64) @ twc
                    child.tcw_gba = (tchildc @ gba).astype(np.float32)
                    child.ba_global_for_kf = loop_keyframe_id
                pending.append(child)
            keyframe.tcw_bef_gba = keyframe.pose()
            keyframe.set_pose(keyframe.tcw_gba)

    def _correct_map_points(self, loop_keyframe_id) -> None:
        for point in self._map.all_map_points():
            if point.is_bad():
                continue
            if point.ba_global_for_kf == loop_keyframe_id:
                point.set_world_pos(point.pos_gba)
                continue
            ref = point.reference_keyframe()
            if ref is None or ref.ba_global_for_kf != loop_keyframe_id:
                continue
            before = np.asarray(ref.tcw_bef_gba, dtype=np.float64)
            xc = before[:3, :3] @ np.asarray(point.world_pos(), dtype=np.float64) + before[:3, 3]
            twc = np.asarray(ref.pose_inverse(), dtype=np.float64)
            point.set_world_pos(twc[:3, :3] @ xc + twc[:3, 3])

    def is_running_gba(self) -> bool:
        with self._gba_lock:
            return self._running_gba

    def is_finished_gba(self) -> bool:
        with self._gba_lock:
            return self._finished_gba

    # Reset

    def request_reset(self, timeout=None) -> None:
        """Ask for a reset and wait until it has been performed.

        Raises TimeoutError, withdrawing the request, if it is not served
        within ``timeout`` seconds.
        """
        with self._reset_cond:
            self._reset_requested = True
            served = self._reset_cond.wait_for(lambda: not self._reset_requested, timeout)
            if not served:
                self._reset_requested = False
                raise TimeoutError("loop closing reset was not served in time")

    def reset_if_requested(self) -> None:
        with self._reset_cond:
            if self._reset_requested:
                with self._queue_lock:
                    self._queue.clear()
                self.last_loop_kf_id = 0
                self._reset_requested = False
                self._reset_cond.notify_all()

    # Finish

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished