import math

import pytest

from docready.context import PageStatus
from docready.page_tracker import PageTracker
from conftest import rect_quad


def test_new_page_then_match():
    tracker = PageTracker()
    first = tracker.update(rect_quad(0, 0, 100, 100), 0.0)
    second = tracker.update(rect_quad(2, 2, 102, 102), 0.2)
    assert first.is_new and first.page_id == 1
    assert not second.is_new and second.page_id == 1
    assert tracker.get(1).frame_count == 2
    assert tracker.get(1).last_seen == 0.2


def test_iou_threshold_is_inclusive():
    tracker = PageTracker({"iou_threshold": 0.5})
    tracker.update(rect_quad(0, 0, 120, 100), 0.0)
    # 交 80x100，并 160x100，IoU 恰为 0.5
    update = tracker.update(rect_quad(40, 0, 160, 100), 0.2)
    assert not update.is_new


def test_default_threshold_boundary():
    tracker = PageTracker()
    tracker.update(rect_quad(0, 0, 100, 100), 0.0)
    # 交 63x100，并 137x100，IoU 约 0.46
    update = tracker.update(rect_quad(37, 0, 137, 100), 0.2)
    assert not update.is_new
    update = tracker.update(rect_quad(100, 0, 200, 100), 0.4)
    assert update.is_new


def test_disjoint_quads_never_match():
    for order in ((0, 1), (1, 0)):
        tracker = PageTracker()
        quads = [rect_quad(0, 0, 50, 50), rect_quad(200, 200, 250, 250)]
        ids = [tracker.update(quads[i], 0.0).page_id for i in order]
        assert ids == [1, 2]
        assert len(tracker.pages()) == 2


def test_invalid_quad_is_ignored():
    tracker = PageTracker()
    assert tracker.update(None, 0.0) is None
    assert tracker.update([(0, 0), (1, 1)], 0.0) is None
    assert tracker.pages() == []


def test_stability_requires_history_and_low_jitter():
    tracker = PageTracker()
    tracker.update(rect_quad(0, 0, 100, 100), 0.0)
    tracker.update(rect_quad(0, 0, 100, 100), 0.2)
    early = tracker.stability(1)
    assert not early.stable and math.isinf(early.jitter)
    for i in range(3):
        tracker.update(rect_quad(1, 0, 101, 100), 0.4 + i * 0.2)
    steady = tracker.stability(1)
    assert steady.stable
    assert steady.jitter < 8


def test_jittery_page_is_not_stable():
    tracker = PageTracker()
    for i in range(6):
        d = 15 if i % 2 else 0
        tracker.update(rect_quad(d, 0, 100 + d, 100), i * 0.2)
    assert not tracker.stability(1).stable


def test_history_is_bounded():
    tracker = PageTracker()
    for i in range(25):
        tracker.update(rect_quad(0, 0, 100, 100), i * 0.1)
    assert len(tracker.get(1).quad_history) == 10


def test_lifecycle_is_forward_only():
    tracker = PageTracker()
    tracker.update(rect_quad(0, 0, 100, 100), 0.0)
    assert not tracker.mark_analyzing(1)
    assert tracker.set_capture(1, "img", {"combined": "x"})
    assert tracker.get(1).status == PageStatus.CAPTURED
    assert not tracker.set_capture(1, "img2")
    assert tracker.mark_analyzing(1)
    assert tracker.mark_complete(1, {"responses": []})
    assert not tracker.mark_failed(1, "late")
    assert tracker.get(1).status == PageStatus.COMPLETE
    assert tracker.analyzed_pages() == [tracker.get(1)]
    assert tracker.fingerprinted_pages() == [tracker.get(1)]


def test_finished_pages_no_longer_match():
    tracker = PageTracker()
    tracker.update(rect_quad(0, 0, 100, 100), 0.0)
    tracker.set_capture(1, "img")
    tracker.mark_failed(1, "analysis failed")
    update = tracker.update(rect_quad(0, 0, 100, 100), 1.0)
    assert update.is_new and update.page_id == 2
    assert tracker.get(1).error == "analysis failed"


def test_unknown_page_transition(caplog):
    tracker = PageTracker()
    assert not tracker.mark_complete(7, {})
    assert "未知页面" in caplog.text


def test_reset_restarts_ids():
    tracker = PageTracker()
    tracker.update(rect_quad(0, 0, 100, 100), 0.0)
    tracker.reset()
    assert tracker.update(rect_quad(0, 0, 100, 100), 0.0).page_id == 1


def test_added_page_takes_over_same_position():
    tracker = PageTracker()
    tracker.update(rect_quad(0, 0, 100, 100), 0.0)
    tracker.set_capture(1, "img")
    page = tracker.add_page(rect_quad(0, 0, 100, 100), 1.0)
    assert page.id == 2 and page.status == PageStatus.DETECTED
    update = tracker.update(rect_quad(0, 0, 100, 100), 1.2)
    assert update.page_id == 2
    assert tracker.get(1).frame_count == 1
