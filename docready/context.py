"""流程上下文与结果数据结构。"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

Point = Tuple[float, float]
Quad = List[Point]  # tl, tr, br, bl


class PageStatus(str, Enum):
    DETECTED = "detected"
    CAPTURED = "captured"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    FAILED = "failed"


class ScanMode(str, Enum):
    SCANNING = "scanning"
    QUALITY_CHECK = "quality_check"
    QUALITY_ISSUE = "quality_issue"
    ENHANCING = "enhancing"
    CAPTURING = "capturing"
    ANALYZING = "analyzing"
    DUPLICATE_DETECTED = "duplicate_detected"
    COMPLETE = "complete"


@dataclass
class Frame:
    """检测用帧：下采样后的像素 + 相对原始帧的缩放。"""

    pixels: np.ndarray
    width: int
    height: int
    scale: float = 1.0


@dataclass
class DetectionHistoryEntry:
    """平滑器环形缓冲中的一帧：四边形可能为 None。"""

    quad: Optional[Quad]
    timestamp: float


@dataclass
class SmoothedDetection:
    """时序平滑后的检测结果。"""

    detected: bool
    quad: Optional[Quad]
    confidence: float
    is_stable: bool
    alignment: str
    scale: float = 1.0
    ready_transition: bool = False


@dataclass
class Page:
    """一次追踪到的纸页及其生命周期数据。"""

    id: int
    first_seen: float
    last_seen: float
    last_quad: Quad
    status: PageStatus = PageStatus.DETECTED
    frame_count: int = 1
    quad_history: List[Quad] = field(default_factory=list)
    captured_image: Optional[np.ndarray] = None
    fingerprint: Optional[Dict[str, str]] = None
    analysis_result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class TrackUpdate:
    page_id: int
    page: Page
    is_new: bool


@dataclass
class PageStability:
    stable: bool
    jitter: float
    frame_count: int


@dataclass
class BlockingReason:
    code: str
    message: str
    severity: str  # critical | warning


@dataclass
class GuidanceHint:
    priority: int
    message: str
    icon: str
    code: str = ""


@dataclass
class Guidance:
    primary: GuidanceHint
    hints: List[GuidanceHint]
    is_ready: bool


@dataclass
class ReadinessAssessment:
    """单帧就绪评估：可否拍摄、得分、阻断原因与操作提示。"""

    ready: bool
    score: float
    factors: Optional[Dict[str, float]]
    blocking_reasons: List[BlockingReason]
    guidance: Guidance
    quad: Optional[Quad]
    timestamp: float
    stability_met: bool = False
    stability_progress: float = 0.0
    stable_since: Optional[float] = None


@dataclass
class QualityIssue:
    type: str
    severity: str  # critical | moderate | info
    message: str


@dataclass
class QualityReport:
    """高分辨率静帧的质量报告。"""

    score: float
    metrics: Dict[str, float]
    issues: List[QualityIssue]
    recommendations: List[str]
    should_proceed: bool
    can_auto_fix: bool
    confidence: float = 0.0
    elapsed: float = 0.0

    def has_issue(self, issue_type: str) -> bool:
        return any(i.type == issue_type for i in self.issues)


@dataclass
class EnhancementResult:
    image: np.ndarray
    applied_fixes: List[str]
    original_quality: float
    estimated_improvement: float


@dataclass
class DuplicateMatch:
    page_id: int
    similarity: float


@dataclass
class Capture:
    """拍摄快照：静帧像素、编码后的传输载荷、检测四边形与时间。"""

    image: Optional[np.ndarray]
    payload: Optional[bytes]
    quad: Optional[Quad]
    timestamp: float
    readiness_score: float = 0.0
    page_id: Optional[int] = None


@dataclass
class CheckResult:
    status: str  # PASS | WARN | FAIL
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PreFlightReport:
    passed: bool
    failures: List[str]
    warnings: List[str]
    checks: Dict[str, CheckResult]
    timestamp: float


@dataclass
class GateOutcome:
    name: str
    status: str  # pass | warn | fail
    detail: Optional[str] = None
    elapsed_ms: float = 0.0


@dataclass
class PipelineError:
    code: str
    message: str


@dataclass
class PipelineResult:
    """分析流水线结果：成功带载荷，失败带错误码与可读提示。"""

    success: bool
    error: Optional[PipelineError] = None
    result: Optional[Dict[str, Any]] = None
    calibration: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)
    trace: List[GateOutcome] = field(default_factory=list)
    latency_ms: float = 0.0

    @property
    def offline_estimate(self) -> bool:
        return bool(self.result and self.result.get("_offlineEstimate"))


@dataclass
class CycleResult:
    """单个检测周期的输出。"""

    timestamp: float
    detection: SmoothedDetection
    readiness: ReadinessAssessment
    page_id: Optional[int] = None
    page_stable: bool = False
    capture_due: bool = False
    next_interval: float = 0.2
    events: List[str] = field(default_factory=list)


@dataclass
class CaptureOutcome:
    """一次拍摄尝试的结果。"""

    success: bool
    reason: Optional[str] = None  # busy | quality | duplicate | page_state | analysis_failed | stale | error
    code: Optional[str] = None
    message: Optional[str] = None
    page_id: Optional[int] = None
    quality: Optional[QualityReport] = None
    enhancement: Optional[EnhancementResult] = None
    duplicate: Optional[DuplicateMatch] = None
    fingerprint: Optional[Dict[str, str]] = None
    pipeline: Optional[PipelineResult] = None
    trace_id: Optional[str] = None
    elapsed: float = 0.0
