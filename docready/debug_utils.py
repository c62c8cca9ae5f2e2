"""调试与可视化工具：在帧上画检测四边形与就绪状态。"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import cv2
import numpy as np

from docready import io_utils

_ALIGNMENT_COLORS = {
    "ready": (0, 200, 0),
    "too_far": (255, 165, 0),
    "too_close": (255, 165, 0),
    "off_center": (255, 215, 0),
    "tilted": (255, 215, 0),
    "searching": (200, 200, 200),
}


def save_debug_image(arr: np.ndarray, path: Path) -> None:
    """保存调试图，保证目录存在。"""
    path.parent.mkdir(parents=True, exist_ok=True)
    io_utils.save_image(arr, str(path))


def _put_label(overlay: np.ndarray, text: str, org: tuple, color: tuple, scale: float = 0.8) -> None:
    # 黑底描边 + 彩色文字，亮背景上也能看清
    cv2.putText(overlay, text, org, cv2.FONT_HERSHEY_SIMPLEX, scale, (0, 0, 0), 3, cv2.LINE_AA)
    cv2.putText(overlay, text, org, cv2.FONT_HERSHEY_SIMPLEX, scale, color, 1, cv2.LINE_AA)


def draw_quad_overlay(
    image: np.ndarray,
    quad: Optional[Sequence[Sequence[float]]],
    scale: float = 1.0,
    alignment: str = "searching",
    label: Optional[str] = None,
) -> np.ndarray:
    """quad 为检测帧坐标，按 scale 还原到原图后绘制。"""
    overlay = image.copy()
    if overlay.ndim == 2:
        overlay = cv2.cvtColor(overlay, cv2.COLOR_GRAY2RGB)
    color = _ALIGNMENT_COLORS.get(alignment, (255, 0, 255))
    thickness = max(2, int(max(overlay.shape[:2]) / 300))
    if quad:
        factor = 1.0 / scale if scale > 0 else 1.0
        pts = np.array([[x * factor, y * factor] for x, y in quad], dtype=np.int32)
        cv2.polylines(overlay, [pts], isClosed=True, color=color, thickness=thickness)
        for idx, (cx, cy) in enumerate(pts, start=1):
            cv2.circle(overlay, (int(cx), int(cy)), thickness * 3, (50, 50, 255), -1)
            _put_label(overlay, f"P{idx}", (int(cx) + 8, int(cy) - 8), (255, 255, 0))
    _put_label(overlay, label or alignment, (20, 40), color)
    return overlay
