"""分析流水线：六道门依次校验后才调用解读后端，任何异常都以结果值返回。"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from docready import config as cfg
from docready import geometry
from docready.calibration import ConfidenceCalibrator, raw_confidence
from docready.context import (
    Capture,
    GateOutcome,
    PipelineError,
    PipelineResult,
    QualityReport,
    ReadinessAssessment,
)
from docready.interpreter import (
    DEFAULT_INSTRUCTIONS,
    Interpreter,
    InterpreterResponseError,
    InterpreterTransportError,
    offline_estimate,
)
from docready.preflight import PreFlightCheck

log = logging.getLogger(__name__)

USER_MESSAGES = {
    "NO_CAPTURE": "No photo was captured. Please try again.",
    "INVALID_GEOMETRY": "Couldn't find the document edges. Reposition the page and try again.",
    "PREFLIGHT_FAILED": "The photo didn't pass validation. Please rescan.",
    "NO_CONTENT": "The page looks blank. Point the camera at a document with writing.",
    "ANALYSIS_FAILED": "Analysis failed. Please try again.",
    "INVALID_RESULT": "We couldn't read the results. Please try again.",
    "SUSPICIOUS_RESULT": "The result looked unreliable. Please rescan the page.",
    "UNEXPECTED": "Something went wrong. Please try again.",
}


class _GateFailed(Exception):
    def __init__(self, code: str, detail: str, message: Optional[str] = None):
        self.code = code
        self.detail = detail
        self.message = message or USER_MESSAGES.get(code, USER_MESSAGES["UNEXPECTED"])
        super().__init__(detail)


def validate_result(result: Any, suspicious: float = 1.0) -> Optional[Tuple[str, str]]:
    """结果形状与置信度检查，通过返回 None，否则 (错误码, 原因)。"""
    if not isinstance(result, dict):
        return "INVALID_RESULT", "result is not an object"
    worksheet = isinstance(result.get("responses"), list) and isinstance(result.get("overallAssessment"), dict)
    score = result.get("score")
    single = isinstance(score, (int, float)) and not isinstance(score, bool) and isinstance(result.get("logicTrace"), list)
    if not (worksheet or single):
        return "INVALID_RESULT", "missing required fields"
    conf = result.get("confidence")
    if conf is not None:
        value = raw_confidence(result)
        if value is None or not 0.0 <= value <= 1.0:
            return "INVALID_RESULT", f"confidence out of range: {conf!r}"
        if value >= suspicious:
            return "SUSPICIOUS_RESULT", f"confidence exactly {value}"
    return None


class AnalysisPipeline:
    """
    门控顺序：拍摄存在 → 几何有效 → PreFlight → 内容非空 → 调用解读 → 结果校验。
    interpreter 为 None 表示未配置后端，直接走离线估算。
    """

    def __init__(
        self,
        interpreter: Optional[Interpreter] = None,
        config: Dict[str, Any] | None = None,
        preflight: Optional[PreFlightCheck] = None,
        calibrator: Optional[ConfidenceCalibrator] = None,
        instructions: str = DEFAULT_INSTRUCTIONS,
    ):
        self.cfg = cfg.merged(cfg.DEFAULTS["pipeline"], config)
        self.interpreter = interpreter
        self.preflight = preflight or PreFlightCheck()
        self.calibrator = calibrator
        self.instructions = instructions

    @property
    def has_backend(self) -> bool:
        return self.interpreter is not None

    def run(
        self,
        capture: Optional[Capture],
        readiness: Optional[ReadinessAssessment] = None,
        quality: Optional[QualityReport] = None,
        document_type: Optional[str] = None,
        now: Optional[float] = None,
    ) -> PipelineResult:
        t0 = time.time()
        trace: List[GateOutcome] = []
        warnings: List[str] = []
        state: Dict[str, Any] = {}
        gates: List[Tuple[str, Callable[..., Optional[str]]]] = [
            ("capture", lambda: self._gate_capture(capture)),
            ("geometry", lambda: self._gate_geometry(capture)),
            ("preflight", lambda: self._gate_preflight(capture, readiness, now, warnings)),
            ("content", lambda: self._gate_content(readiness)),
            ("execute", lambda: self._gate_execute(capture, readiness, quality, document_type, warnings, state)),
            ("validate", lambda: self._gate_validate(state)),
        ]
        try:
            for name, gate in gates:
                tg = time.time()
                n_warn = len(warnings)
                try:
                    detail = gate()
                except _GateFailed as exc:
                    trace.append(GateOutcome(name, "fail", exc.detail, (time.time() - tg) * 1000.0))
                    log.warning("pipeline: gate %s 未通过 code=%s detail=%s", name, exc.code, exc.detail)
                    return PipelineResult(
                        success=False,
                        error=PipelineError(exc.code, exc.message),
                        warnings=warnings,
                        trace=trace,
                        latency_ms=(time.time() - t0) * 1000.0,
                    )
                status = "warn" if len(warnings) > n_warn else "pass"
                trace.append(GateOutcome(name, status, detail, (time.time() - tg) * 1000.0))

            result = state["result"]
            calibration = None
            if self.calibrator is not None:
                calibration = self.calibrator.calibrate_result(result, quality.score if quality else None, document_type)
            latency = (time.time() - t0) * 1000.0
            log.info("pipeline: 成功 offline=%s latency=%.0fms", bool(result.get("_offlineEstimate")), latency)
            return PipelineResult(
                success=True,
                result=result,
                calibration=calibration,
                warnings=warnings,
                trace=trace,
                latency_ms=latency,
            )
        except Exception as exc:  # noqa: BLE001
            log.exception("pipeline: 未预期异常")
            return PipelineResult(
                success=False,
                error=PipelineError("UNEXPECTED", USER_MESSAGES["UNEXPECTED"]),
                warnings=warnings + [f"{type(exc).__name__}: {exc}"],
                trace=trace,
                latency_ms=(time.time() - t0) * 1000.0,
            )

    @staticmethod
    def _gate_capture(capture: Optional[Capture]) -> Optional[str]:
        if capture is None:
            raise _GateFailed("NO_CAPTURE", "no capture provided")
        image = capture.image
        if not isinstance(image, np.ndarray) or image.size == 0:
            raise _GateFailed("NO_CAPTURE", "capture has no image")
        return None

    @staticmethod
    def _gate_geometry(capture: Capture) -> Optional[str]:
        if geometry.as_quad(capture.quad) is None:
            raise _GateFailed("INVALID_GEOMETRY", "quad missing or malformed")
        return None

    def _gate_preflight(self, capture: Capture, readiness: Optional[ReadinessAssessment], now: Optional[float], warnings: List[str]) -> Optional[str]:
        report = self.preflight.run(capture, readiness, now=now)
        if not report.passed:
            reason = report.failures[0]
            raise _GateFailed("PREFLIGHT_FAILED", reason, f"{USER_MESSAGES['PREFLIGHT_FAILED']} ({reason.split(': ', 1)[-1]})")
        warnings.extend(report.warnings)
        return f"{len(report.warnings)} warnings" if report.warnings else None

    def _gate_content(self, readiness: Optional[ReadinessAssessment]) -> Optional[str]:
        factors = readiness.factors if readiness is not None else None
        if not factors or "edge_density" not in factors:
            return "no readiness snapshot"
        density = factors["edge_density"]
        if density < self.cfg["content_floor"]:
            raise _GateFailed("NO_CONTENT", f"edge density {density:.3f} below floor")
        return None

    def _gate_execute(
        self,
        capture: Capture,
        readiness: Optional[ReadinessAssessment],
        quality: Optional[QualityReport],
        document_type: Optional[str],
        warnings: List[str],
        state: Dict[str, Any],
    ) -> Optional[str]:
        doc_type = document_type or self.cfg["document_type"]
        quality_score = quality.score if quality else (readiness.score if readiness else 0.5)
        seed = hashlib.sha1(capture.payload or b"").hexdigest()
        if self.interpreter is None:
            warnings.append("No interpretation backend configured; showing an offline estimate")
            state["result"] = offline_estimate(seed, quality_score, doc_type)
            return "offline estimate (no backend)"
        try:
            state["result"] = self.interpreter.analyze(capture.payload, self.instructions)
            return None
        except (InterpreterTransportError, OSError) as exc:
            # 网络/超时：降级为离线估算，仍算成功
            log.warning("pipeline: 解读后端不可用，使用离线估算: %s", exc)
            warnings.append("Interpretation backend unreachable; showing an offline estimate")
            state["result"] = offline_estimate(seed, quality_score, doc_type)
            return "offline estimate (transport error)"
        except InterpreterResponseError as exc:
            raise _GateFailed("INVALID_RESULT", exc.message) from exc
        except Exception as exc:  # noqa: BLE001
            log.exception("pipeline: 解读后端异常")
            raise _GateFailed("ANALYSIS_FAILED", f"{type(exc).__name__}: {exc}") from exc

    def _gate_validate(self, state: Dict[str, Any]) -> Optional[str]:
        problem = validate_result(state.get("result"), self.cfg["suspicious_confidence"])
        if problem is not None:
            code, reason = problem
            raise _GateFailed(code, reason)
        return None
