"""提交分析前的最后一道校验：拍摄数据、几何、内容、时序四项检查。"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import cv2
import numpy as np

from docready import config as cfg
from docready import geometry, io_utils
from docready.context import Capture, CheckResult, PreFlightReport, ReadinessAssessment

log = logging.getLogger(__name__)

PASS = "PASS"
WARN = "WARN"
FAIL = "FAIL"


class PreFlightCheck:
    """任一 FAIL 即不通过；WARN 只记录。"""

    def __init__(self, config: Dict[str, Any] | None = None):
        self.cfg = cfg.merged(cfg.DEFAULTS["preflight"], config)
        self.checks: List[Tuple[str, Callable[..., CheckResult]]] = [
            ("CAPTURE_VALIDATION", self._validate_capture),
            ("GEOMETRY_VALIDATION", self._validate_geometry),
            ("CONTENT_VALIDATION", self._validate_content),
            ("TIMING_VALIDATION", self._validate_timing),
        ]

    def run(self, capture: Optional[Capture], readiness: Optional[ReadinessAssessment] = None, now: Optional[float] = None) -> PreFlightReport:
        now = now if now is not None else time.time()
        report = PreFlightReport(passed=True, failures=[], warnings=[], checks={}, timestamp=now)
        for name, check in self.checks:
            try:
                result = check(capture, readiness, now)
            except Exception as exc:  # noqa: BLE001
                log.exception("preflight: %s 异常", name)
                result = CheckResult(FAIL, f"Check raised {type(exc).__name__}")
            report.checks[name] = result
            if result.status == FAIL:
                report.passed = False
                report.failures.append(f"{name}: {result.reason}")
            elif result.status == WARN:
                report.warnings.append(f"{name}: {result.reason}")
        log.info("preflight: passed=%s failures=%d warnings=%d", report.passed, len(report.failures), len(report.warnings))
        return report

    def _validate_capture(self, capture: Optional[Capture], readiness, now: float) -> CheckResult:
        if capture is None:
            return CheckResult(FAIL, "No capture data provided")
        image = capture.image
        if not isinstance(image, np.ndarray) or image.size == 0:
            return CheckResult(FAIL, "Invalid image data type")
        payload = capture.payload
        if not isinstance(payload, (bytes, bytearray)):
            return CheckResult(FAIL, "Image payload is missing")
        if io_utils.sniff_format(bytes(payload)) is None:
            return CheckResult(FAIL, "Image payload is not a recognised image encoding")
        if len(payload) < self.cfg["min_payload_bytes"]:
            return CheckResult(FAIL, "Image data too small, likely corrupt", {"bytes": len(payload)})
        age_ms = (now - capture.timestamp) * 1000.0 if capture.timestamp else 0.0
        if age_ms > self.cfg["stale_capture_ms"]:
            return CheckResult(WARN, "Capture is stale", {"age_ms": round(age_ms)})
        return CheckResult(PASS)

    def _validate_geometry(self, capture: Optional[Capture], readiness: Optional[ReadinessAssessment], now: float) -> CheckResult:
        raw = (capture.quad if capture is not None else None) or (readiness.quad if readiness is not None else None)
        if raw is None:
            return CheckResult(FAIL, "No document geometry detected")
        quad = geometry.as_quad(raw)
        if quad is None:
            return CheckResult(FAIL, "Invalid quad structure or non-finite coordinate")
        area = geometry.quad_area(quad)
        if area < self.cfg["min_quad_area"]:
            return CheckResult(FAIL, "Detected document area is too small", {"area": area})
        min_edge = min(geometry.side_lengths(quad))
        if min_edge < self.cfg["min_edge_length"]:
            return CheckResult(FAIL, "Document edges are too short", {"area": area, "min_edge": min_edge})
        details = {"area": area, "min_edge": min_edge}
        if not geometry.is_convex(quad):
            return CheckResult(WARN, "Document outline is not convex", details)
        return CheckResult(PASS, details=details)

    def _validate_content(self, capture: Optional[Capture], readiness: Optional[ReadinessAssessment], now: float) -> CheckResult:
        result = CheckResult(PASS)
        factors = readiness.factors if readiness is not None else None
        if factors and "edge_density" in factors:
            density = factors["edge_density"]
            result.details["edge_density"] = density
            if density < self.cfg["edge_density_fail"]:
                return CheckResult(FAIL, "No visible content, appears blank", result.details)
            if density < self.cfg["edge_density_warn"]:
                result = CheckResult(WARN, "Very little content detected", result.details)
        if capture is not None and (capture.payload or capture.image is not None):
            score = self._quick_content(capture)
            result.details["content_score"] = score
            if score < self.cfg["content_floor"]:
                return CheckResult(FAIL, "Image analysis found no document content", result.details)
        return result

    def _validate_timing(self, capture, readiness: Optional[ReadinessAssessment], now: float) -> CheckResult:
        result = CheckResult(PASS)
        if readiness is None:
            return result
        age_ms = (now - readiness.timestamp) * 1000.0
        result.details["readiness_age_ms"] = round(age_ms)
        if age_ms > self.cfg["stale_readiness_ms"]:
            result.status, result.reason = WARN, "Readiness state may be outdated"
        if not readiness.stability_met:
            result.status, result.reason = WARN, "Capture triggered before stability confirmed"
        if readiness.score < self.cfg["min_readiness_score"]:
            result.status, result.reason = WARN, f"Low readiness score at capture: {readiness.score:.2f}"
        return result

    def _quick_content(self, capture: Capture) -> float:
        """在 64x64 缩略图上统计横向强变化像素对的比例。"""
        try:
            image = io_utils.decode_image(bytes(capture.payload)) if capture.payload else capture.image
        except Exception:  # noqa: BLE001
            log.warning("preflight: 载荷解码失败，跳过内容快检")
            return 0.5
        if image is None or image.size == 0:
            return 0.0
        sz = int(self.cfg["content_size"])
        small = cv2.resize(image, (sz, sz), interpolation=cv2.INTER_AREA).astype(np.float32)
        gray = small[:, :, :3].mean(axis=2) if small.ndim == 3 else small
        inner = gray[1 : sz - 1, 1 : sz - 1]
        right = gray[1 : sz - 1, 2:sz]
        edges = int(np.count_nonzero(np.abs(inner - right) > self.cfg["content_diff"]))
        return edges / float((sz - 2) * (sz - 2))
