"""扫描会话：串联检测周期与拍摄流程，管理模式、自动拍摄、轮询间隔与事件。"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from docready import config as cfg
from docready import io_utils
from docready import runtime_utils
from docready.calibration import ConfidenceCalibrator
from docready.context import (
    Capture,
    CaptureOutcome,
    CycleResult,
    Page,
    PageStatus,
    ReadinessAssessment,
    ScanMode,
    SmoothedDetection,
)
from docready.detect import EdgeQuadDetector
from docready.enhance import ImageEnhancer
from docready.fingerprint import SemanticFingerprint
from docready.frames import FrameSource, downscale_frame
from docready.interpreter import HttpInterpreter, Interpreter
from docready.page_tracker import PageTracker
from docready.pipeline import AnalysisPipeline
from docready.preflight import PreFlightCheck
from docready.quality import ImageQualityAnalyzer
from docready.readiness import ReadinessEngine, elapsed_ms
from docready.reasoner import CrossPageReasoner
from docready.smoothing import TemporalSmoother
from docready.storage import Store, StoreError, new_session_id, normalize_and_store, open_store

log = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]

EVENT_READY = "ready"
EVENT_CAPTURE_SUCCESS = "capture_success"

CAPTURE_MESSAGES = {
    "CAPTURE_IN_PROGRESS": "A capture is already in progress.",
    "QUALITY_REJECTED": "Image quality is too low to analyze.",
    "DUPLICATE": "This page has already been scanned.",
    "STALE": "The session was reset during capture.",
    "PAGE_UNAVAILABLE": "This page was already captured. Move to the next page.",
    "UNEXPECTED": "Something went wrong during capture. Please try again.",
}


class ScanSession:
    """
    一个会话持有每个组件各一份实例，组件之间不共享可变状态。
    检测周期由调用方驱动（process_frame 或 run），拍摄同一时刻至多一个在途。
    """

    def __init__(
        self,
        config: Dict[str, Any] | None = None,
        interpreter: Optional[Interpreter] = None,
        store: Optional[Store] = None,
        session_id: Optional[str] = None,
    ):
        self.conf = cfg.merged(cfg.DEFAULTS, config)
        self.sched = self.conf["scheduler"]
        self.detector = EdgeQuadDetector(self.conf["detection"])
        self.smoother = TemporalSmoother(self.conf["smoothing"])
        self.tracker = PageTracker(self.conf["tracker"])
        self.readiness = ReadinessEngine(self.conf["readiness"])
        self.analyzer = ImageQualityAnalyzer(self.conf["quality"])
        self.enhancer = ImageEnhancer(self.conf["enhance"])
        self.fingerprinter = SemanticFingerprint(self.conf["fingerprint"])
        self.calibrator = ConfidenceCalibrator(self.conf["calibration"])
        self.reasoner = CrossPageReasoner(self.conf["reasoner"])
        self.pipeline = AnalysisPipeline(
            interpreter=interpreter,
            config=self.conf["pipeline"],
            preflight=PreFlightCheck(self.conf["preflight"]),
            calibrator=self.calibrator,
        )
        self.store = store
        self.session_id = session_id or new_session_id()
        self.effective_mode = self.conf["mode"]

        self._state_lock = threading.RLock()
        self._capture_lock = threading.Lock()
        self._epoch = 0
        self._inflight: Dict[str, Any] = {}
        self._listeners: List[Listener] = []
        self._clear_state()

    @property
    def has_backend(self) -> bool:
        return self.pipeline.has_backend

    def _clear_state(self) -> None:
        self.mode = ScanMode.SCANNING
        self.active_page_id: Optional[int] = None
        self.last_detection: Optional[SmoothedDetection] = None
        self.last_readiness: Optional[ReadinessAssessment] = None
        self.last_capture: Optional[CaptureOutcome] = None
        self.last_synthesis: Optional[Dict[str, Any]] = None
        self.interval = self.sched["fast_interval_ms"] / 1000.0
        self._page_stable_since: Optional[float] = None

    # ── 事件 ──────────────────────────────────────────────
    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, name: str, payload: Any = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(name, payload)
            except Exception:  # noqa: BLE001
                log.exception("session: 事件监听器异常 event=%s", name)

    # ── 检测周期 ──────────────────────────────────────────
    def process_frame(self, image: np.ndarray, timestamp: Optional[float] = None) -> CycleResult:
        """跑一个检测周期；任何异常都降级为本周期未检出。"""
        ts = timestamp if timestamp is not None else time.time()
        try:
            return self._cycle(image, ts)
        except Exception:  # noqa: BLE001
            log.exception("session: 检测周期异常，按未检出处理")
            with self._state_lock:
                detection = SmoothedDetection(False, None, 0.0, False, "searching")
                readiness = self.readiness.assess(False, None, 0.0, timestamp=ts)
                self.last_detection, self.last_readiness = detection, readiness
                self._page_stable_since = None
                self.interval = self.sched["fast_interval_ms"] / 1000.0
                return CycleResult(timestamp=ts, detection=detection, readiness=readiness, next_interval=self.interval)

    def _cycle(self, image: np.ndarray, ts: float) -> CycleResult:
        frame = downscale_frame(image, int(self.conf["limits"]["detect_max_dim"]))
        raw_quad = self.detector.detect(frame)
        events: List[str] = []
        with self._state_lock:
            detection = self.smoother.update(raw_quad, frame, ts)
            readiness = self.readiness.assess(detection.detected, detection.quad, detection.confidence, frame=frame, timestamp=ts)
            self.last_detection, self.last_readiness = detection, readiness

            page_stable = False
            if detection.detected and detection.quad is not None:
                update = self.tracker.update(detection.quad, ts)
                if update is not None:
                    self.active_page_id = update.page_id
                    page_stable = self.tracker.stability(update.page_id).stable
            if page_stable:
                if self._page_stable_since is None:
                    self._page_stable_since = ts
            else:
                self._page_stable_since = None

            if detection.ready_transition:
                events.append(EVENT_READY)
            capture_due = self._capture_due(ts)
            self.interval = self._next_interval(readiness, ts)
            result = CycleResult(
                timestamp=ts,
                detection=detection,
                readiness=readiness,
                page_id=self.active_page_id,
                page_stable=page_stable,
                capture_due=capture_due,
                next_interval=self.interval,
                events=events,
            )
        log.debug(
            "session: cycle detected=%s conf=%.2f ready=%s score=%.2f page=%s interval=%.1f",
            detection.detected,
            detection.confidence,
            readiness.ready,
            readiness.score,
            self.active_page_id,
            self.interval,
        )
        for name in events:
            self._emit(name, result)
        return result

    def _capture_due(self, ts: float) -> bool:
        if not self.sched["auto_capture"] or self._page_stable_since is None:
            return False
        if self.mode != ScanMode.SCANNING or self._capture_lock.locked():
            return False
        page = self.active_page
        if page is None or page.captured_image is not None:
            return False
        return elapsed_ms(self._page_stable_since, ts) >= self.sched["auto_capture_delay_ms"]

    def _next_interval(self, readiness: ReadinessAssessment, ts: float) -> float:
        if readiness.stability_met and readiness.stable_since is not None:
            if elapsed_ms(readiness.stable_since, ts) > self.sched["throttle_after_ms"]:
                return self.sched["slow_interval_ms"] / 1000.0
        return self.sched["fast_interval_ms"] / 1000.0

    @property
    def active_page(self) -> Optional[Page]:
        if self.active_page_id is None:
            return None
        return self.tracker.get(self.active_page_id)

    @property
    def is_ready_to_capture(self) -> bool:
        with self._state_lock:
            page = self.active_page
            return bool(
                self.last_readiness is not None
                and self.last_readiness.ready
                and (page is None or page.captured_image is None)
                and self.mode == ScanMode.SCANNING
            )

    # ── 拍摄流程 ──────────────────────────────────────────
    def capture(self, image: np.ndarray, timestamp: Optional[float] = None) -> CaptureOutcome:
        """静帧路径：质量 → 增强 → 编码 → 指纹去重 → 登记 → 门控分析。"""
        if not self._capture_lock.acquire(blocking=False):
            log.info("session: 已有拍摄在途，拒绝新的拍摄请求")
            return CaptureOutcome(False, reason="busy", code="CAPTURE_IN_PROGRESS", message=CAPTURE_MESSAGES["CAPTURE_IN_PROGRESS"])
        t0 = time.time()
        try:
            outcome = self._capture(image, timestamp if timestamp is not None else time.time())
        except Exception as exc:  # noqa: BLE001
            log.exception("session: 拍摄流程异常，回到扫描状态")
            outcome = self._capture_error(exc)
        finally:
            self._capture_lock.release()
        outcome.elapsed = time.time() - t0
        with self._state_lock:
            self.last_capture = outcome
        if outcome.success:
            self._emit(EVENT_CAPTURE_SUCCESS, outcome)
        return outcome

    def _set_mode(self, epoch: int, mode: ScanMode) -> bool:
        with self._state_lock:
            if epoch != self._epoch:
                return False
            self.mode = mode
            return True

    def _capture_error(self, exc: Exception) -> CaptureOutcome:
        with self._state_lock:
            page_id = self._inflight.get("page_id")
            registered = self._inflight.get("registered")
            if self._inflight.get("epoch") == self._epoch:
                # 只把本次拍摄登记过的页标为失败
                page = self.tracker.get(registered) if registered is not None else None
                if page is not None and page.status in (PageStatus.CAPTURED, PageStatus.ANALYZING):
                    self.tracker.mark_failed(registered, f"{type(exc).__name__}: {exc}")
                self.mode = ScanMode.SCANNING
        return CaptureOutcome(False, reason="error", code="UNEXPECTED", message=CAPTURE_MESSAGES["UNEXPECTED"], page_id=page_id)

    def _stale(self, page_id: Optional[int], **kwargs: Any) -> CaptureOutcome:
        log.warning("session: 拍摄期间会话被重置，丢弃结果 page=%s", page_id)
        return CaptureOutcome(False, reason="stale", message=CAPTURE_MESSAGES["STALE"], page_id=page_id, **kwargs)

    def _capture(self, image: np.ndarray, ts: float) -> CaptureOutcome:
        with self._state_lock:
            epoch = self._epoch
            page_id = self.active_page_id
            readiness = self.last_readiness
            quad = self.last_detection.quad if self.last_detection is not None else None
            self._inflight = {"epoch": epoch, "page_id": page_id, "registered": None}
            self.mode = ScanMode.QUALITY_CHECK

        still, effective_mode = runtime_utils.prepare_still(image, self.conf)
        self.effective_mode = effective_mode
        self.analyzer.cfg["hough_max_side"] = self.conf["quality"]["hough_max_side"]
        self.enhancer.cfg["sharpen"] = self.conf["enhance"]["sharpen"]
        quality = self.analyzer.analyze(still)
        if not quality.should_proceed:
            log.warning("session: 质量不达标 score=%.3f issues=%s", quality.score, [i.type for i in quality.issues])
            if not self._set_mode(epoch, ScanMode.QUALITY_ISSUE):
                return self._stale(page_id, quality=quality)
            hint = quality.recommendations[0] if quality.recommendations else CAPTURE_MESSAGES["QUALITY_REJECTED"]
            return CaptureOutcome(False, reason="quality", code="QUALITY_REJECTED", message=hint, page_id=page_id, quality=quality)

        enhancement = None
        if self.conf["enhance"]["enabled"] and quality.can_auto_fix and quality.issues:
            if not self._set_mode(epoch, ScanMode.ENHANCING):
                return self._stale(page_id, quality=quality)
            enhancement = self.enhancer.enhance(still, quality)
            still = enhancement.image

        if not self._set_mode(epoch, ScanMode.CAPTURING):
            return self._stale(page_id, quality=quality)
        payload = io_utils.encode_image(still, int(self.conf["interpreter"]["jpeg_quality"]))
        fingerprint = self.fingerprinter.generate(still)

        with self._state_lock:
            if epoch != self._epoch:
                return self._stale(page_id, quality=quality, fingerprint=fingerprint)
            existing = [(p.id, p.fingerprint) for p in self.tracker.fingerprinted_pages()]
            log.debug("session: 去重比较 %d 页", len(existing))
            duplicate = self.fingerprinter.find_duplicate(fingerprint, existing)
            if duplicate is not None:
                self.mode = ScanMode.DUPLICATE_DETECTED
                log.info("session: 重复页面 page=%d similarity=%.3f", duplicate.page_id, duplicate.similarity)
                return CaptureOutcome(
                    False,
                    reason="duplicate",
                    code="DUPLICATE",
                    message=CAPTURE_MESSAGES["DUPLICATE"],
                    page_id=page_id,
                    quality=quality,
                    enhancement=enhancement,
                    duplicate=duplicate,
                    fingerprint=fingerprint,
                )
            page = self.tracker.get(page_id) if page_id is not None else None
            if (page is None or page.status != PageStatus.DETECTED) and quad is not None:
                # 同一位置换了新纸：原页已有拍摄，另登记一页
                page = self.tracker.add_page(quad, ts)
                page_id = self.active_page_id = page.id
                self._inflight["page_id"] = page_id
                self._page_stable_since = None
            if page_id is not None and not self.tracker.set_capture(page_id, still, fingerprint):
                self.mode = ScanMode.SCANNING
                log.warning("session: 页面无法登记拍摄 page=%s", page_id)
                return CaptureOutcome(
                    False,
                    reason="page_state",
                    code="PAGE_UNAVAILABLE",
                    message=CAPTURE_MESSAGES["PAGE_UNAVAILABLE"],
                    page_id=page_id,
                    quality=quality,
                    enhancement=enhancement,
                    fingerprint=fingerprint,
                )
            self._inflight["registered"] = page_id
            auto_analyze = bool(self.sched["auto_analyze"])
            self.mode = ScanMode.ANALYZING if auto_analyze else ScanMode.SCANNING
        log.info("session: 已拍摄 page=%s mode=%s enhanced=%s", page_id, effective_mode, bool(enhancement))

        outcome = CaptureOutcome(True, page_id=page_id, quality=quality, enhancement=enhancement, fingerprint=fingerprint)
        if not auto_analyze:
            return outcome

        with self._state_lock:
            if epoch != self._epoch:
                return self._stale(page_id, quality=quality, fingerprint=fingerprint)
            if page_id is not None:
                self.tracker.mark_analyzing(page_id)
        snapshot = Capture(
            image=still,
            payload=payload,
            quad=quad,
            timestamp=ts,
            readiness_score=readiness.score if readiness is not None else 0.0,
            page_id=page_id,
        )
        result = self.pipeline.run(snapshot, readiness, quality, now=ts)
        outcome.pipeline = result

        with self._state_lock:
            if epoch != self._epoch:
                return self._stale(page_id, quality=quality, fingerprint=fingerprint, pipeline=result)
            if not result.success:
                if page_id is not None:
                    self.tracker.mark_failed(page_id, result.error.message)
                self.mode = ScanMode.SCANNING
                outcome.success = False
                outcome.reason = "analysis_failed"
                outcome.code = result.error.code
                outcome.message = result.error.message
                return outcome
            if page_id is not None:
                self.tracker.mark_complete(page_id, result.result)
            self.last_synthesis = self.reasoner.synthesize(self.tracker.analyzed_pages())
            self.mode = ScanMode.COMPLETE

        if self.store is not None:
            outcome.trace_id = self._persist(result, page_id, quality.score)
        return outcome

    def _persist(self, result, page_id: Optional[int], quality_score: float) -> Optional[str]:
        try:
            stored = normalize_and_store(
                self.store,
                result.result,
                metadata={"page_id": page_id, "quality_score": quality_score},
                session_id=self.session_id,
                calibration=result.calibration,
            )
        except StoreError as exc:
            log.warning("session: 结果入库失败: %s", exc)
            return None
        return stored.get("id")

    # ── 会话控制 ──────────────────────────────────────────
    def reset(self) -> None:
        """原子清空追踪器、就绪引擎、平滑器，并作废在途拍摄。"""
        with self._state_lock:
            self._epoch += 1
            self.tracker.reset()
            self.readiness.reset()
            self.smoother.reset()
            self._clear_state()
        log.info("session: 已重置")

    def next_page(self) -> None:
        with self._state_lock:
            self.mode = ScanMode.SCANNING
            self.active_page_id = None
            self._page_stable_since = None

    def synthesis(self) -> Optional[Dict[str, Any]]:
        with self._state_lock:
            return self.reasoner.synthesize(self.tracker.analyzed_pages())

    def run(self, source: FrameSource, stop_event: Optional[threading.Event] = None, max_cycles: Optional[int] = None) -> int:
        """协作式循环：逐帧检测，自动拍摄交给单线程 worker，返回已跑周期数。"""
        stop_event = stop_event or threading.Event()
        cycles = 0
        pending: Optional[Future] = None
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="docready-capture") as pool:
            while not stop_event.is_set():
                if max_cycles is not None and cycles >= max_cycles:
                    break
                image = source.read()
                if image is None:
                    break
                cycle = self.process_frame(image)
                cycles += 1
                if pending is not None and pending.done():
                    _collect(pending)
                    pending = None
                if cycle.capture_due and pending is None:
                    pending = pool.submit(self.capture, image.copy())
                stop_event.wait(cycle.next_interval)
        if pending is not None:
            _collect(pending)
        log.info("session: 循环结束 cycles=%d", cycles)
        return cycles


def _collect(pending: Future) -> None:
    exc = pending.exception()
    if exc is not None:
        log.error("session: 后台拍摄异常: %s: %s", type(exc).__name__, exc)


def create_session(conf: Dict[str, Any], store: Optional[Store] = None) -> ScanSession:
    """按配置装配会话：配置了解读端点才有后端，存储默认本地。"""
    interp_cfg = conf["interpreter"]
    interpreter = None
    if interp_cfg.get("endpoint"):
        interpreter = HttpInterpreter(interp_cfg["endpoint"], timeout=interp_cfg.get("timeout", 30), api_key=interp_cfg.get("api_key"))
    if store is None:
        store = open_store(conf["storage"])
    session = ScanSession(conf, interpreter=interpreter, store=store)
    log.info("session: 创建 id=%s backend=%s", session.session_id, session.has_backend)
    return session
