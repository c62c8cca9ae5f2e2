"""拍摄就绪评估：七个信号 → 综合得分 + 阻断原因 + 操作提示，每个检测帧调用一次。"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

import numpy as np

from docready import config as cfg
from docready import geometry
from docready.context import (
    BlockingReason,
    Frame,
    Guidance,
    GuidanceHint,
    Quad,
    ReadinessAssessment,
)

log = logging.getLogger(__name__)

_BLOCK_ICONS = {
    "LOW_CONFIDENCE": "help",
    "NO_CONTENT": "document-search",
    "INVALID_SHAPE": "resize",
    "TOO_FAR": "zoom-in",
    "TOO_CLOSE": "zoom-out",
    "BLURRY": "focus",
}


def elapsed_ms(since: float, ts: float) -> int:
    return int(round((ts - since) * 1000.0))


def _mean3(pixels: np.ndarray) -> np.ndarray:
    # 与检测无关的快速灰度：RGB 简单平均
    if pixels.ndim == 2:
        return pixels.astype(np.float32)
    return pixels[:, :, :3].astype(np.float32).mean(axis=2)


class ReadinessEngine:
    """逐帧就绪评估，内部保存稳定起点与最近的四边形历史。"""

    def __init__(self, config: Dict[str, Any] | None = None):
        self.cfg = cfg.merged(cfg.DEFAULTS["readiness"], config)
        self.thresholds = self.cfg["thresholds"]
        self.stability_duration_ms = int(self.cfg["stability_duration_ms"])
        self._history: Deque[Quad] = deque(maxlen=int(self.cfg["history_size"]))
        self.stable_since: Optional[float] = None

    def reset(self) -> None:
        self._history.clear()
        self.stable_since = None

    def assess(
        self,
        detected: bool,
        quad: Any,
        confidence: float,
        frame: Optional[Frame] = None,
        timestamp: Optional[float] = None,
        frame_size: Optional[Tuple[int, int]] = None,
    ) -> ReadinessAssessment:
        ts = timestamp if timestamp is not None else time.time()
        if not detected or quad is None:
            return self._failed("NO_DOCUMENT", "No document detected in frame", ts)
        quad = geometry.as_quad(quad)
        if quad is None or not self._is_valid_quad(quad):
            return self._failed("INVALID_GEOMETRY", "Detected outline is not a usable document shape", ts)

        pixels = frame.pixels if frame is not None else None
        if frame is not None:
            frame_size = (frame.width, frame.height)
        factors = {
            "quad_confidence": float(confidence or 0.0),
            "stability": self._stability(quad, ts),
            "quality_estimate": self._estimate_quality(pixels) if pixels is not None else 0.7,
            "edge_density": self._edge_density(pixels, quad) if pixels is not None else 0.5,
            "aspect_ratio": geometry.aspect_ratio(quad),
            "coverage": self._coverage(quad, frame_size),
            "focus_score": self._focus(pixels, quad) if pixels is not None else 0.6,
        }

        score = self._composite(factors)
        progress = self._progress(ts)
        blocks = self._blocks(factors)
        if blocks:
            hints = [
                GuidanceHint(priority=0 if b.severity == "critical" else 1, message=b.message, icon=_BLOCK_ICONS.get(b.code, "alert"), code=b.code)
                for b in blocks
            ]
            return ReadinessAssessment(
                ready=False,
                score=score,
                factors=factors,
                blocking_reasons=blocks,
                guidance=Guidance(primary=hints[0], hints=hints, is_ready=False),
                quad=None,
                timestamp=ts,
                stability_met=False,
                stability_progress=progress,
                stable_since=self.stable_since,
            )

        stability_met = self._stability_met(ts)
        return ReadinessAssessment(
            ready=score >= self.cfg["ready_score"] and stability_met,
            score=score,
            factors=factors,
            blocking_reasons=[],
            guidance=self._guidance(factors, stability_met),
            quad=quad,
            timestamp=ts,
            stability_met=stability_met,
            stability_progress=progress,
            stable_since=self.stable_since,
        )

    def _is_valid_quad(self, quad: Quad) -> bool:
        xs = [p[0] for p in quad]
        ys = [p[1] for p in quad]
        extent = self.cfg["min_quad_extent"]
        if max(xs) - min(xs) < extent or max(ys) - min(ys) < extent:
            return False
        return not geometry.is_self_intersecting(quad)

    def _stability(self, quad: Quad, ts: float) -> float:
        self._history.append(quad)
        if len(self._history) < 3:
            return 0.0
        hist = list(self._history)
        movement = 0.0
        for prev, cur in zip(hist, hist[1:]):
            movement += sum(geometry.corner_drift(prev, cur)) / 4.0
        avg = movement / (len(hist) - 1)
        stability = max(0.0, 1.0 - avg / self.cfg["jitter_scale_px"])
        # 一旦抖动超阈值立即清零，不累计
        if stability >= self.thresholds["stability"]:
            if self.stable_since is None:
                self.stable_since = ts
        else:
            self.stable_since = None
        return stability

    @staticmethod
    def _estimate_quality(pixels: np.ndarray) -> float:
        flat = _mean3(pixels).reshape(-1)[::10]
        if flat.size == 0:
            return 0.5
        brightness = float(flat.mean())
        spread = float(flat.max() - flat.min())
        return ((1 - abs(brightness - 128) / 128) + min(1.0, spread / 150)) / 2

    def _edge_density(self, pixels: np.ndarray, quad: Quad) -> float:
        gray = _mean3(pixels)
        h, w = gray.shape[:2]
        x1, y1, x2, y2 = geometry.quad_bbox(quad)
        # 外接框取整到最近像素
        min_x = max(0, int(round(x1)))
        max_x = min(w, int(round(x2)) + 1)
        min_y = max(0, int(round(y1)))
        max_y = min(h, int(round(y2)) + 1)
        roi = gray[min_y:max_y, min_x:max_x]
        if roi.shape[0] < 2 or roi.shape[1] < 2:
            return 0.0
        gy, gx = np.gradient(roi)
        return float((np.hypot(gx, gy) > self.cfg["edge_gradient"]).mean())

    @staticmethod
    def _coverage(quad: Quad, frame_size: Optional[Tuple[int, int]]) -> float:
        area = geometry.quad_area(quad)
        if frame_size:
            frame_area = frame_size[0] * frame_size[1]
        else:
            frame_area = max(p[0] for p in quad) * max(p[1] for p in quad) * 1.5
        return area / frame_area if frame_area > 0 else 0.0

    @staticmethod
    def _focus(pixels: np.ndarray, quad: Quad) -> float:
        gray = _mean3(pixels)
        h, w = gray.shape[:2]
        cx, cy = geometry.centroid(quad)
        x0 = max(1, int(math.floor(cx - 15)))
        x1 = min(w - 1, int(math.floor(cx + 15)) + 1)
        y0 = max(1, int(math.floor(cy - 15)))
        y1 = min(h - 1, int(math.floor(cy + 15)) + 1)
        if x1 <= x0 or y1 <= y0:
            return 0.0
        c = gray[y0:y1, x0:x1]
        lap = gray[y0:y1, x0 - 1 : x1 - 1] + gray[y0:y1, x0 + 1 : x1 + 1] + gray[y0 - 1 : y1 - 1, x0:x1] + gray[y0 + 1 : y1 + 1, x0:x1] - 4 * c
        return min(1.0, float((lap**2).mean()) / 2000.0)

    def _blocks(self, factors: Dict[str, float]) -> List[BlockingReason]:
        t = self.thresholds
        blocks = []
        if factors["quad_confidence"] < t["min_confidence"]:
            blocks.append(BlockingReason("LOW_CONFIDENCE", "Document detection is uncertain", "critical"))
        if factors["edge_density"] < t["edge_density"]:
            blocks.append(BlockingReason("NO_CONTENT", "No document content detected, might be a blank surface", "critical"))
        lo, hi = t["aspect_ratio"]
        if factors["aspect_ratio"] < lo or factors["aspect_ratio"] > hi:
            blocks.append(BlockingReason("INVALID_SHAPE", "Detected shape doesn't look like a document", "warning"))
        if factors["coverage"] < t["coverage"]:
            blocks.append(BlockingReason("TOO_FAR", "Document is too small, move closer", "warning"))
        if factors["coverage"] > t["max_coverage"]:
            blocks.append(BlockingReason("TOO_CLOSE", "Document edges may be cut off, move back", "warning"))
        if factors["focus_score"] < t["focus_score"]:
            blocks.append(BlockingReason("BLURRY", "Image appears blurry, hold steady", "warning"))
        return blocks

    def _composite(self, factors: Dict[str, float]) -> float:
        score = 0.0
        total = 0.0
        for key, weight in self.cfg["weights"].items():
            if key in factors:
                score += factors[key] * weight
                total += weight
        return score / total if total > 0 else 0.0

    def stable_elapsed_ms(self, ts: float) -> int:
        """稳定持续毫秒数，先取整再与阈值比较。"""
        if self.stable_since is None:
            return 0
        return elapsed_ms(self.stable_since, ts)

    def _stability_met(self, ts: float) -> bool:
        if self.stable_since is None:
            return False
        return self.stable_elapsed_ms(ts) >= self.stability_duration_ms

    def _progress(self, ts: float) -> float:
        if self.stable_since is None:
            return 0.0
        if self.stability_duration_ms <= 0:
            return 1.0
        return min(1.0, self.stable_elapsed_ms(ts) / float(self.stability_duration_ms))

    def _guidance(self, factors: Dict[str, float], stability_met: bool) -> Guidance:
        t = self.thresholds
        hints = []
        if factors["stability"] < t["stability"]:
            hints.append(GuidanceHint(1, "Hold steady", "motion", "STABILITY"))
        elif not stability_met:
            hints.append(GuidanceHint(1, "Almost there…", "timer", "STABILITY"))
        if factors["quad_confidence"] < t["quad_confidence"]:
            hints.append(GuidanceHint(2, "Center the document", "target", "CONFIDENCE"))
        if factors["edge_density"] < t["edge_density"]:
            hints.append(GuidanceHint(3, "Point at a document with writing", "document", "CONTENT"))
        if factors["focus_score"] < t["focus_score"]:
            hints.append(GuidanceHint(4, "Tap to focus", "focus", "FOCUS"))
        if factors["coverage"] < t["coverage"]:
            hints.append(GuidanceHint(5, "Move closer", "zoom-in", "COVERAGE"))
        hints.sort(key=lambda h: h.priority)
        primary = hints[0] if hints else GuidanceHint(0, "Ready to capture", "check", "READY")
        return Guidance(primary=primary, hints=hints, is_ready=not hints)

    def _failed(self, code: str, message: str, ts: float) -> ReadinessAssessment:
        self.reset()
        return ReadinessAssessment(
            ready=False,
            score=0.0,
            factors=None,
            blocking_reasons=[BlockingReason(code, message, "critical")],
            guidance=Guidance(primary=GuidanceHint(0, "Position document in frame", "scan", code), hints=[], is_ready=False),
            quad=None,
            timestamp=ts,
        )
