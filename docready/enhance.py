"""拍摄后自动修复：按质量问题做提亮/拉伸/锐化，最后统一套文档色调曲线。"""

from __future__ import annotations

import logging
from typing import Any, Dict

import cv2
import numpy as np

from docready import config as cfg
from docready.context import EnhancementResult, QualityReport
from docready.quality import luminance

log = logging.getLogger(__name__)


def _adjust_brightness(image: np.ndarray, factor: float) -> np.ndarray:
    return np.clip(image.astype(np.float32) * factor, 0, 255)


def _contrast_stretch(image: np.ndarray, low_pct: float = 2.0, high_pct: float = 98.0) -> np.ndarray:
    """按亮度分位数线性拉伸，所有通道共用同一映射。"""
    lo, hi = np.percentile(luminance(image), [low_pct, high_pct])
    if hi - lo < 1e-3:
        return image.astype(np.float32)
    stretched = (image.astype(np.float32) - lo) * (255.0 / (hi - lo))
    return np.clip(stretched, 0, 255)


def _unsharp_mask(image: np.ndarray, amount: float = 1.0, ksize: int = 3) -> np.ndarray:
    img = image.astype(np.float32)
    blur = cv2.GaussianBlur(img, (ksize, ksize), 0)
    sharp = cv2.addWeighted(img, 1 + amount, blur, -amount, 0)
    return np.clip(sharp, 0, 255)


def _document_curve(image: np.ndarray, gamma: float = 1.2) -> np.ndarray:
    """以中灰为界：暗部压得更暗，亮部推得更亮，按亮度比例缩放各通道。"""
    img = image.astype(np.float32)
    gray = luminance(img)
    safe = np.maximum(gray, 1e-6)
    dark = np.power(gray / 128.0, gamma) * 128.0 / safe
    light = (255.0 - np.power(np.clip(255.0 - gray, 0, None) / 127.0, gamma) * 127.0) / safe
    factor = np.where(gray < 128, dark, light)
    factor = np.where(gray <= 0, 1.0, factor)
    if img.ndim == 3:
        factor = factor[:, :, None]
    return np.clip(img * factor, 0, 255)


class ImageEnhancer:
    """修复结果只做估算，不回灌分析器复检。"""

    def __init__(self, config: Dict[str, Any] | None = None):
        self.cfg = cfg.merged(cfg.DEFAULTS["enhance"], config)

    def enhance(self, image: np.ndarray, report: QualityReport) -> EnhancementResult:
        out = image.astype(np.float32)
        applied = []
        for issue in report.issues:
            if issue.type == "DARK" and "brightness_boost" not in applied:
                out = _adjust_brightness(out, self.cfg["brightness_factor"])
                applied.append("brightness_boost")
            elif issue.type == "LOW_CONTRAST" and "contrast_enhancement" not in applied:
                lo, hi = self.cfg["contrast_clip"]
                out = _contrast_stretch(out, lo, hi)
                applied.append("contrast_enhancement")
            elif issue.type == "SKEWED" and "skew_noted" not in applied:
                applied.append("skew_noted")

        blur = report.metrics.get("blur", 1.0)
        if self.cfg["sharpen"] and blur < self.cfg["sharpen_below_blur"]:
            out = _unsharp_mask(out, float(self.cfg["unsharp_amount"]))
            applied.append("sharpening")

        out = _document_curve(out, self.cfg["tone_gamma"])
        applied.append("document_optimization")

        improvement = self._estimate_improvement(report, applied)
        log.info("enhance: fixes=%s improvement=%.3f", applied, improvement)
        return EnhancementResult(
            image=out.astype(np.uint8),
            applied_fixes=applied,
            original_quality=report.score,
            estimated_improvement=improvement,
        )

    def _estimate_improvement(self, report: QualityReport, applied: list) -> float:
        m = report.metrics
        imp = 0.0
        if "brightness_boost" in applied:
            imp += (1 - m.get("brightness", 1.0)) * 0.3
        if "contrast_enhancement" in applied:
            imp += (1 - m.get("contrast", 1.0)) * 0.4
        if "sharpening" in applied:
            imp += (1 - m.get("blur", 1.0)) * 0.2
        return min(self.cfg["max_improvement"], imp)
