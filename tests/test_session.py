import logging

import numpy as np
import pytest

from docready.context import PageStatus, ScanMode
from docready.session import EVENT_CAPTURE_SUCCESS, EVENT_READY, ScanSession, create_session
from docready.storage import TRACES, LocalStore
from docready import config as cfg
from conftest import draw_document


def _feed(session, image, n, t=1000.0):
    cycles = []
    for _ in range(n):
        cycle = session.process_frame(image, timestamp=t)
        cycles.append(cycle)
        t += cycle.next_interval
    return cycles, t


def test_cycles_build_up_to_ready(document_image):
    session = ScanSession()
    cycles, _ = _feed(session, document_image, 12)
    assert not cycles[3].detection.detected
    assert cycles[4].detection.detected
    assert cycles[4].page_id == 1
    assert cycles[-1].readiness.ready
    assert session.is_ready_to_capture
    ready_events = [c for c in cycles if EVENT_READY in c.events]
    assert len(ready_events) == 1


def test_capture_without_backend_is_offline_estimate(document_image, tmp_path):
    store = LocalStore(tmp_path)
    session = ScanSession(store=store)
    seen = []
    session.add_listener(lambda name, payload: seen.append(name))
    _, t = _feed(session, document_image, 12)
    outcome = session.capture(document_image, timestamp=t)
    assert outcome.success
    assert outcome.page_id == 1
    assert outcome.pipeline.offline_estimate
    assert outcome.quality.should_proceed
    assert session.mode == ScanMode.COMPLETE
    assert session.tracker.get(1).status == PageStatus.COMPLETE
    assert session.tracker.get(1).fingerprint == outcome.fingerprint
    assert session.synthesis()["page_count"] == 1
    assert outcome.trace_id == store.query(TRACES)[0]["id"]
    assert EVENT_CAPTURE_SUCCESS in seen


def test_same_page_again_is_duplicate(document_image):
    session = ScanSession()
    _, t = _feed(session, document_image, 12)
    assert session.capture(document_image, timestamp=t).success
    session.next_page()
    _, t = _feed(session, document_image, 6, t=t + 1.0)
    outcome = session.capture(document_image, timestamp=t)
    assert not outcome.success
    assert outcome.code == "DUPLICATE"
    assert outcome.duplicate.page_id == 1
    assert outcome.page_id == 2
    assert session.mode == ScanMode.DUPLICATE_DETECTED


def test_capture_only_mode_skips_analysis(document_image):
    session = ScanSession({"scheduler": {"auto_analyze": False}})
    _, t = _feed(session, document_image, 12)
    outcome = session.capture(document_image, timestamp=t)
    assert outcome.success
    assert outcome.pipeline is None
    assert session.tracker.get(1).status == PageStatus.CAPTURED
    assert session.mode == ScanMode.SCANNING


def test_low_quality_still_is_rejected(document_image):
    session = ScanSession()
    _feed(session, document_image, 12)
    outcome = session.capture(np.full((480, 640, 3), 252, dtype=np.uint8), timestamp=2000.0)
    assert not outcome.success
    assert outcome.code == "QUALITY_REJECTED"
    assert outcome.message
    assert session.mode == ScanMode.QUALITY_ISSUE


def test_concurrent_capture_is_rejected(document_image):
    session = ScanSession()
    session._capture_lock.acquire()
    try:
        outcome = session.capture(document_image, timestamp=1.0)
    finally:
        session._capture_lock.release()
    assert outcome.reason == "busy"
    assert outcome.code == "CAPTURE_IN_PROGRESS"


def test_reset_during_capture_discards_result(document_image):
    session = ScanSession()
    _, t = _feed(session, document_image, 12)
    analyze = session.analyzer.analyze

    def analyze_then_reset(image):
        report = analyze(image)
        session.reset()
        return report

    session.analyzer.analyze = analyze_then_reset
    outcome = session.capture(document_image, timestamp=t)
    assert not outcome.success
    assert outcome.reason == "stale"
    assert session.tracker.pages() == []
    assert session.mode == ScanMode.SCANNING
    assert session.active_page_id is None


def test_listener_errors_are_logged(document_image, caplog):
    session = ScanSession()

    def broken(name, payload):
        raise RuntimeError("listener bug")

    session.add_listener(broken)
    with caplog.at_level(logging.ERROR, logger="docready.session"):
        cycles, _ = _feed(session, document_image, 6)
    assert any(EVENT_READY in c.events for c in cycles)
    assert "事件监听器异常" in caplog.text
    session.remove_listener(broken)
    assert session._listeners == []


def test_auto_capture_becomes_due_after_stable_delay(document_image):
    session = ScanSession({"scheduler": {"auto_capture": True}})
    cycles, _ = _feed(session, document_image, 20)
    due = [i for i, c in enumerate(cycles) if c.capture_due]
    assert due
    # 页面第 8 帧起稳定，之后至少再等 1.2 秒
    assert due[0] >= 13
    assert not ScanSession().sched["auto_capture"]


def test_interval_slows_down_once_stable(document_image):
    session = ScanSession()
    cycles, _ = _feed(session, document_image, 20)
    assert cycles[0].next_interval == pytest.approx(0.2)
    assert cycles[-1].next_interval == pytest.approx(0.5)
    blank = np.full((480, 640, 3), 30, dtype=np.uint8)
    after, _ = _feed(session, blank, 6, t=2000.0)
    assert after[-1].next_interval == pytest.approx(0.2)


def test_detector_failure_degrades_to_no_detection(document_image):
    session = ScanSession()

    def boom(frame):
        raise ValueError("broken frame")

    session.detector.detect = boom
    cycle = session.process_frame(document_image, timestamp=1.0)
    assert not cycle.detection.detected
    assert cycle.readiness.blocking_reasons[0].code == "NO_DOCUMENT"


def test_create_session_wires_backend(tmp_path):
    conf = cfg.merged(cfg.DEFAULTS, {"storage": {"local_dir": str(tmp_path)}})
    assert not create_session(conf).has_backend
    conf["interpreter"]["endpoint"] = "https://proxy.example.com/analyze"
    session = create_session(conf)
    assert session.has_backend
    assert isinstance(session.store, LocalStore)


def test_run_loop_stops_at_end_of_source(document_image):
    class Replay:
        def __init__(self, n):
            self.n = n

        def read(self):
            if self.n == 0:
                return None
            self.n -= 1
            return document_image

    session = ScanSession({"scheduler": {"fast_interval_ms": 1, "slow_interval_ms": 1}})
    assert session.run(Replay(3)) == 3
    assert session.run(Replay(10), max_cycles=2) == 2


def test_detected_document_is_never_reported_blank(document_image):
    session = ScanSession()
    cycles, _ = _feed(session, document_image, 12)
    detected = [c for c in cycles if c.detection.detected]
    assert len(detected) == 8
    for cycle in detected:
        assert "NO_CONTENT" not in [b.code for b in cycle.readiness.blocking_reasons]


def test_capture_error_returns_to_scanning(document_image):
    session = ScanSession()
    _, t = _feed(session, document_image, 12)
    outcome = session.capture(None, timestamp=t)
    assert not outcome.success
    assert outcome.code == "UNEXPECTED"
    assert outcome.reason == "error"
    assert session.mode == ScanMode.SCANNING
    assert session.tracker.get(1).status == PageStatus.DETECTED
    assert session.capture(document_image, timestamp=t).success


def test_analysis_crash_marks_page_failed(document_image, caplog):
    session = ScanSession()
    _, t = _feed(session, document_image, 12)

    def crash(*args, **kwargs):
        raise RuntimeError("pipeline bug")

    session.pipeline.run = crash
    with caplog.at_level(logging.ERROR, logger="docready.session"):
        outcome = session.capture(document_image, timestamp=t)
    assert outcome.code == "UNEXPECTED"
    assert outcome.page_id == 1
    assert session.tracker.get(1).status == PageStatus.FAILED
    assert session.tracker.get(1).error == "RuntimeError: pipeline bug"
    assert session.mode == ScanMode.SCANNING
    assert "拍摄流程异常" in caplog.text


def test_new_sheet_in_same_place_gets_its_own_page(document_image):
    session = ScanSession({"scheduler": {"auto_analyze": False}, "fingerprint": {"duplicate_threshold": 0.98}})
    _, t = _feed(session, document_image, 12)
    assert session.capture(document_image, timestamp=t).page_id == 1

    sheet_b = draw_document(seed=99)
    sheet_b[250:420, 80:560] = 240
    session.next_page()
    _, t = _feed(session, sheet_b, 6, t=t + 1.0)
    second = session.capture(sheet_b, timestamp=t)
    assert second.success
    assert second.page_id == 2
    assert session.tracker.get(2).fingerprint == second.fingerprint
    assert session.tracker.get(1).status == PageStatus.CAPTURED

    _, t = _feed(session, sheet_b, 3, t=t + 1.0)
    again = session.capture(sheet_b, timestamp=t)
    assert not again.success
    assert again.code == "DUPLICATE"
    assert again.duplicate.page_id == 2


def test_run_loop_collects_worker_errors(document_image, caplog):
    class Replay:
        def __init__(self, n):
            self.n = n

        def read(self):
            if self.n == 0:
                return None
            self.n -= 1
            return document_image

    session = ScanSession({"scheduler": {"auto_capture": True, "auto_capture_delay_ms": 0, "fast_interval_ms": 1, "slow_interval_ms": 1}})

    def broken_capture(image, timestamp=None):
        raise RuntimeError("worker bug")

    session.capture = broken_capture
    with caplog.at_level(logging.ERROR, logger="docready.session"):
        assert session.run(Replay(15)) == 15
    assert "后台拍摄异常" in caplog.text
