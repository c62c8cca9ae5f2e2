"""单帧文档四边形检测：Sobel 边缘 + Hough 直线 + 水平/竖直分桶求交。"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import cv2
import numpy as np

from docready import config as cfg
from docready import geometry
from docready.context import Frame, Quad

log = logging.getLogger(__name__)


@dataclass
class Line:
    rho: float
    theta: float  # 弧度
    votes: int

    @property
    def degrees(self) -> float:
        return math.degrees(self.theta)


def to_gray(pixels: np.ndarray) -> np.ndarray:
    """RGB/RGBA/灰度统一转为 float32 灰度（0.299/0.587/0.114）。"""
    if pixels.ndim == 2:
        return pixels.astype(np.float32)
    if pixels.shape[2] == 4:
        pixels = pixels[:, :, :3]
    return cv2.cvtColor(pixels.astype(np.float32), cv2.COLOR_RGB2GRAY)


class EdgeQuadDetector:
    """在下采样帧上找出最可信的文档四边形，找不到返回 None。"""

    def __init__(self, config: Dict[str, Any] | None = None):
        self.cfg = cfg.merged(cfg.DEFAULTS["detection"], config)

    def detect(self, frame: Frame) -> Optional[Quad]:
        try:
            gray = to_gray(frame.pixels)
            edges = self.detect_edges(gray)
            lines = self.find_lines(edges)
        except Exception:  # noqa: BLE001
            log.exception("detect: 检测异常，本帧按未检出处理")
            return None
        if len(lines) < 4:
            log.debug("detect: 直线不足 lines=%d", len(lines))
            return None
        return self.find_quad(lines, frame.width, frame.height)

    def detect_edges(self, gray: np.ndarray) -> np.ndarray:
        gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
        mag = cv2.magnitude(gx, gy)
        edges = np.where(mag > self.cfg["edge_threshold"], 255, 0).astype(np.uint8)
        # 只保留内部像素
        edges[0, :] = 0
        edges[-1, :] = 0
        edges[:, 0] = 0
        edges[:, -1] = 0
        return edges

    def find_lines(self, edges: np.ndarray) -> List[Line]:
        """Hough 投票 + 非极大抑制，返回票数降序的前 N 条直线。"""
        h, w = edges.shape[:2]
        step = max(1, int(self.cfg["sample_step"]))
        diag = int(math.ceil(math.hypot(w, h)))
        num_rho = diag * 2
        ys, xs = np.nonzero(edges[::step, ::step])
        if xs.size == 0:
            return []
        xs = xs.astype(np.float64) * step
        ys = ys.astype(np.float64) * step

        thetas = np.deg2rad(np.arange(180, dtype=np.float64))
        acc = np.zeros((num_rho, 180), dtype=np.int32)
        for t_idx, theta in enumerate(thetas):
            rho_idx = np.round(xs * math.cos(theta) + ys * math.sin(theta)).astype(np.int64) + diag
            rho_idx = rho_idx[(rho_idx >= 0) & (rho_idx < num_rho)]
            acc[:, t_idx] = np.bincount(rho_idx, minlength=num_rho)[:num_rho]

        min_votes = max(self.cfg["min_votes"], min(w, h) * self.cfg["min_votes_ratio"])
        rho_ids, theta_ids = np.nonzero(acc > min_votes)
        if rho_ids.size == 0:
            return []
        votes = acc[rho_ids, theta_ids]
        order = np.argsort(-votes, kind="stable")

        rho_tol = self.cfg["rho_tolerance"]
        theta_tol = self.cfg["theta_tolerance_deg"]
        limit = int(self.cfg["num_lines"])
        kept: List[Line] = []
        kept_deg: List[int] = []
        for i in order:
            rho = float(rho_ids[i] - diag)
            deg = int(theta_ids[i])
            suppressed = False
            for line, k_deg in zip(kept, kept_deg):
                if abs(rho - line.rho) < rho_tol and abs(deg - k_deg) < theta_tol:
                    suppressed = True
                    break
            if suppressed:
                continue
            kept.append(Line(rho=rho, theta=float(thetas[deg]), votes=int(votes[i])))
            kept_deg.append(deg)
            if len(kept) >= limit:
                break
        return kept

    def find_quad(self, lines: List[Line], width: int, height: int) -> Optional[Quad]:
        tol = self.cfg["bucket_tolerance_deg"]
        horizontal = [ln for ln in lines if 90 - tol < ln.degrees < 90 + tol]
        vertical = [ln for ln in lines if ln.degrees < tol or ln.degrees > 180 - tol]
        if len(horizontal) < 2 or len(vertical) < 2:
            log.debug("detect: 分桶不足 h=%d v=%d", len(horizontal), len(vertical))
            return None
        margin = self.cfg["bounds_margin"]
        corners = []
        for h_line in horizontal[:2]:
            for v_line in vertical[:2]:
                pt = _intersect(h_line, v_line)
                if pt is None:
                    continue
                x, y = pt
                if -margin <= x <= width + margin and -margin <= y <= height + margin:
                    corners.append((min(max(x, 0.0), float(width)), min(max(y, 0.0), float(height))))
        if len(corners) != 4:
            return None
        quad = geometry.sort_corners(corners)
        if not self.is_valid_quad(quad, width, height):
            return None
        return quad

    def is_valid_quad(self, quad: Quad, width: int, height: int) -> bool:
        area_ratio = geometry.quad_area(quad) / float(max(1, width * height))
        if area_ratio < self.cfg["min_area_ratio"] or area_ratio > self.cfg["max_area_ratio"]:
            return False
        for angle in geometry.interior_angles(quad):
            if angle < self.cfg["min_angle"] or angle > self.cfg["max_angle"]:
                return False
        return True


def _intersect(a: Line, b: Line) -> Optional[tuple]:
    cos1, sin1 = math.cos(a.theta), math.sin(a.theta)
    cos2, sin2 = math.cos(b.theta), math.sin(b.theta)
    denom = cos1 * sin2 - cos2 * sin1
    if abs(denom) < 0.001:
        return None
    x = (a.rho * sin2 - b.rho * sin1) / denom
    y = (b.rho * cos1 - a.rho * cos2) / denom
    return x, y
