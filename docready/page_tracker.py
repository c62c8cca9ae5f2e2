"""多页追踪：按外接框 IoU 关联帧间四边形，维护每页生命周期。"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional

from docready import config as cfg
from docready import geometry
from docready.context import Page, PageStability, PageStatus, Quad, TrackUpdate

log = logging.getLogger(__name__)

_TRANSITIONS = {
    PageStatus.DETECTED: {PageStatus.CAPTURED},
    PageStatus.CAPTURED: {PageStatus.ANALYZING, PageStatus.FAILED},
    PageStatus.ANALYZING: {PageStatus.COMPLETE, PageStatus.FAILED},
    PageStatus.COMPLETE: set(),
    PageStatus.FAILED: set(),
}


class PageTracker:
    """页面 id 从 1 递增；已完成/失败的页不再参与匹配。"""

    def __init__(self, config: Dict[str, Any] | None = None):
        self.cfg = cfg.merged(cfg.DEFAULTS["tracker"], config)
        self._pages: Dict[int, Page] = {}
        self._next_id = 1

    def update(self, quad: Optional[Quad], timestamp: float) -> Optional[TrackUpdate]:
        quad = geometry.as_quad(quad)
        if quad is None:
            return None
        best: Optional[Page] = None
        best_iou = 0.0
        for page in self._pages.values():
            if page.status in (PageStatus.COMPLETE, PageStatus.FAILED):
                continue
            iou = geometry.bbox_iou(quad, page.last_quad)
            # 同等重叠时取后登记的页
            if iou >= self.cfg["iou_threshold"] and iou >= best_iou:
                best, best_iou = page, iou
        if best is not None:
            best.last_quad = quad
            best.last_seen = timestamp
            best.frame_count += 1
            best.quad_history.append(quad)
            limit = int(self.cfg["buffer_size"])
            if len(best.quad_history) > limit:
                del best.quad_history[: len(best.quad_history) - limit]
            return TrackUpdate(page_id=best.id, page=best, is_new=False)

        page = self.add_page(quad, timestamp)
        return TrackUpdate(page_id=page.id, page=page, is_new=True)

    def add_page(self, quad: Quad, timestamp: float) -> Page:
        """无条件登记新页，用于同一位置换了一张纸的情况。"""
        page = Page(id=self._next_id, first_seen=timestamp, last_seen=timestamp, last_quad=quad, quad_history=[quad])
        self._pages[page.id] = page
        self._next_id += 1
        log.info("tracker: 新页面 id=%d", page.id)
        return page

    def stability(self, page_id: int) -> PageStability:
        page = self._pages.get(page_id)
        if page is None or len(page.quad_history) < 3:
            return PageStability(stable=False, jitter=math.inf, frame_count=page.frame_count if page else 0)
        hist = page.quad_history
        total = 0.0
        for prev, cur in zip(hist, hist[1:]):
            total += sum(geometry.corner_drift(prev, cur))
        jitter = total / ((len(hist) - 1) * 4)
        stable = jitter < self.cfg["jitter_px"] and page.frame_count >= self.cfg["min_frames"]
        return PageStability(stable=stable, jitter=jitter, frame_count=page.frame_count)

    def get(self, page_id: int) -> Optional[Page]:
        return self._pages.get(page_id)

    def pages(self) -> List[Page]:
        return sorted(self._pages.values(), key=lambda p: p.id)

    def analyzed_pages(self) -> List[Page]:
        return [p for p in self.pages() if p.status == PageStatus.COMPLETE and p.analysis_result]

    def fingerprinted_pages(self) -> List[Page]:
        return [p for p in self.pages() if p.fingerprint]

    def _transition(self, page_id: int, status: PageStatus) -> Optional[Page]:
        page = self._pages.get(page_id)
        if page is None:
            log.warning("tracker: 未知页面 id=%s", page_id)
            return None
        if status not in _TRANSITIONS[page.status]:
            log.warning("tracker: 非法状态迁移 id=%d %s -> %s", page_id, page.status.value, status.value)
            return None
        page.status = status
        return page

    def set_capture(self, page_id: int, image: Any, fingerprint: Optional[Dict[str, str]] = None) -> bool:
        page = self._transition(page_id, PageStatus.CAPTURED)
        if page is None:
            return False
        page.captured_image = image
        page.fingerprint = fingerprint
        return True

    def mark_analyzing(self, page_id: int) -> bool:
        return self._transition(page_id, PageStatus.ANALYZING) is not None

    def mark_complete(self, page_id: int, result: Dict[str, Any]) -> bool:
        page = self._transition(page_id, PageStatus.COMPLETE)
        if page is None:
            return False
        page.analysis_result = result
        return True

    def mark_failed(self, page_id: int, error: str) -> bool:
        page = self._transition(page_id, PageStatus.FAILED)
        if page is None:
            return False
        page.error = error
        return True

    def reset(self) -> None:
        self._pages.clear()
        self._next_id = 1
