"""时序平滑：固定长度环形缓冲，给出显示置信度、位置稳定性与取景提示。"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import numpy as np

from docready import config as cfg
from docready import geometry
from docready.context import DetectionHistoryEntry, Frame, Quad, SmoothedDetection

log = logging.getLogger(__name__)


class TemporalSmoother:
    """把逐帧四边形（可能为 None）平滑成稳定的叠加层状态。"""

    def __init__(self, config: Dict[str, Any] | None = None):
        self.cfg = cfg.merged(cfg.DEFAULTS["smoothing"], config)
        self.capacity = int(self.cfg["history_size"])
        self._history: Deque[DetectionHistoryEntry] = deque(maxlen=self.capacity)
        self._ready_fired = False

    @property
    def history(self) -> List[DetectionHistoryEntry]:
        return list(self._history)

    def reset(self) -> None:
        self._history.clear()
        self._ready_fired = False

    def update(self, quad: Optional[Quad], frame: Frame, timestamp: Optional[float] = None) -> SmoothedDetection:
        ts = timestamp if timestamp is not None else time.time()
        self._history.append(DetectionHistoryEntry(quad, ts))
        detected = [e.quad for e in self._history if e.quad is not None]
        # 分母是缓冲容量：连续空帧时逐步衰减到 0
        confidence = len(detected) / float(self.capacity)
        stable = self._position_stable(detected)
        shown = confidence >= self.cfg["show_confidence"] and stable

        if not shown:
            self._ready_fired = False
            return SmoothedDetection(
                detected=False,
                quad=None,
                confidence=confidence,
                is_stable=stable,
                alignment="searching",
                scale=frame.scale,
            )

        smoothed = self._average(detected)
        alignment = self._alignment(smoothed, frame.width, frame.height)
        ready_transition = False
        if alignment == "ready":
            if not self._ready_fired:
                self._ready_fired = True
                ready_transition = True
        else:
            self._ready_fired = False
        return SmoothedDetection(
            detected=True,
            quad=smoothed,
            confidence=confidence,
            is_stable=True,
            alignment=alignment,
            scale=frame.scale,
            ready_transition=ready_transition,
        )

    def _position_stable(self, detected: List[Quad]) -> bool:
        window = int(self.cfg["stable_window"])
        if len(detected) < window:
            return False
        recent = detected[-window:]
        tol = self.cfg["position_tolerance"]
        for prev, cur in zip(recent, recent[1:]):
            if max(geometry.corner_drift(prev, cur)) > tol:
                return False
        return True

    @staticmethod
    def _average(detected: List[Quad]) -> Quad:
        pts = np.asarray(detected, dtype=np.float64).mean(axis=0)
        return [(float(x), float(y)) for x, y in pts]

    def _alignment(self, quad: Quad, width: int, height: int) -> str:
        fill = geometry.quad_area(quad) / float(max(1, width * height))
        if fill < self.cfg["too_far"]:
            return "too_far"
        if fill > self.cfg["too_close"]:
            return "too_close"
        cx, cy = geometry.centroid(quad)
        drift = np.hypot(cx - width / 2.0, cy - height / 2.0)
        if drift > width * self.cfg["off_center"]:
            return "off_center"
        if geometry.check_skew(quad, self.cfg["skew_ratio"]):
            return "tilted"
        return "ready"
