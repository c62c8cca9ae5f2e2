"""四边形几何工具：角点排序、面积、角度、IoU、自交与凸性判定。"""

from __future__ import annotations

import math
from typing import Any, Iterable, Optional, Sequence, Tuple

import numpy as np

from docready.context import Point, Quad


def as_quad(obj: Any) -> Optional[Quad]:
    """把 list/tuple/ndarray/{x,y} 形式的 4 点规整为 [(x, y)]*4，不合法返回 None。"""
    if obj is None:
        return None
    try:
        pts = list(obj)
    except TypeError:
        return None
    if len(pts) != 4:
        return None
    out = []
    for p in pts:
        if isinstance(p, dict):
            x, y = p.get("x"), p.get("y")
        else:
            try:
                if len(p) != 2:
                    return None
                x, y = p[0], p[1]
            except TypeError:
                return None
        try:
            x, y = float(x), float(y)
        except (TypeError, ValueError):
            return None
        if not (math.isfinite(x) and math.isfinite(y)):
            return None
        out.append((x, y))
    return out


def centroid(quad: Sequence[Point]) -> Point:
    pts = np.asarray(quad, dtype=np.float64)
    c = pts.mean(axis=0)
    return float(c[0]), float(c[1])


def sort_corners(corners: Iterable[Point]) -> Quad:
    # 按绕质心的极角升序：图像坐标下得到 tl, tr, br, bl
    pts = [(float(x), float(y)) for x, y in corners]
    cx, cy = centroid(pts)
    return sorted(pts, key=lambda p: math.atan2(p[1] - cy, p[0] - cx))


def quad_area(quad: Sequence[Point]) -> float:
    """鞋带公式面积。"""
    pts = np.asarray(quad, dtype=np.float64)
    x, y = pts[:, 0], pts[:, 1]
    return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))) / 2.0)


def corner_angle(p1: Point, p2: Point, p3: Point) -> float:
    """p2 处的内角（度）。"""
    v1 = (p1[0] - p2[0], p1[1] - p2[1])
    v2 = (p3[0] - p2[0], p3[1] - p2[1])
    n1 = math.hypot(*v1)
    n2 = math.hypot(*v2)
    if n1 == 0 or n2 == 0:
        return 0.0
    cos = (v1[0] * v2[0] + v1[1] * v2[1]) / (n1 * n2)
    return math.degrees(math.acos(max(-1.0, min(1.0, cos))))


def interior_angles(quad: Sequence[Point]) -> list[float]:
    return [corner_angle(quad[(i - 1) % 4], quad[i], quad[(i + 1) % 4]) for i in range(4)]


def side_lengths(quad: Sequence[Point]) -> list[float]:
    """上、右、下、左四边长。"""
    return [math.dist(quad[i], quad[(i + 1) % 4]) for i in range(4)]


def aspect_ratio(quad: Sequence[Point]) -> float:
    top, right, bottom, left = side_lengths(quad)
    height = (left + right) / 2.0
    if height <= 0:
        return 0.0
    return ((top + bottom) / 2.0) / height


def check_skew(quad: Sequence[Point], min_ratio: float = 0.65) -> bool:
    """对边长度比过小说明透视倾斜严重。"""
    top, right, bottom, left = side_lengths(quad)
    h_ratio = min(top, bottom) / max(top, bottom, 1e-9)
    v_ratio = min(left, right) / max(left, right, 1e-9)
    return h_ratio < min_ratio or v_ratio < min_ratio


def quad_bbox(quad: Sequence[Point]) -> Tuple[float, float, float, float]:
    pts = np.asarray(quad, dtype=np.float64)
    return float(pts[:, 0].min()), float(pts[:, 1].min()), float(pts[:, 0].max()), float(pts[:, 1].max())


def bbox_iou(a: Sequence[Point], b: Sequence[Point]) -> float:
    """外接矩形 IoU。"""
    ax1, ay1, ax2, ay2 = quad_bbox(a)
    bx1, by1, bx2, by2 = quad_bbox(b)
    iw = max(0.0, min(ax2, bx2) - max(ax1, bx1))
    ih = max(0.0, min(ay2, by2) - max(ay1, by1))
    inter = iw * ih
    union = (ax2 - ax1) * (ay2 - ay1) + (bx2 - bx1) * (by2 - by1) - inter
    if union <= 0:
        return 0.0
    return inter / union


def _ccw(a: Point, b: Point, c: Point) -> bool:
    return (c[1] - a[1]) * (b[0] - a[0]) > (b[1] - a[1]) * (c[0] - a[0])


def _segments_intersect(a: Point, b: Point, c: Point, d: Point) -> bool:
    return _ccw(a, c, d) != _ccw(b, c, d) and _ccw(a, b, c) != _ccw(a, b, d)


def is_self_intersecting(quad: Sequence[Point]) -> bool:
    a, b, c, d = quad
    return _segments_intersect(a, b, c, d) or _segments_intersect(b, c, d, a)


def is_convex(quad: Sequence[Point]) -> bool:
    signs = []
    for i in range(4):
        p0, p1, p2 = quad[i], quad[(i + 1) % 4], quad[(i + 2) % 4]
        cross = (p1[0] - p0[0]) * (p2[1] - p1[1]) - (p1[1] - p0[1]) * (p2[0] - p1[0])
        if cross != 0:
            signs.append(cross > 0)
    return len(set(signs)) <= 1


def corner_drift(a: Sequence[Point], b: Sequence[Point]) -> list[float]:
    """两个四边形对应角点的位移。"""
    return [math.dist(p, q) for p, q in zip(a, b)]


def scale_quad(quad: Sequence[Point], factor: float) -> Quad:
    return [(x * factor, y * factor) for x, y in quad]
