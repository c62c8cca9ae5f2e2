"""语义指纹：感知哈希 + 版面结构码 + 色彩分布码，用于会话内重复页判定。"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

import cv2
import numpy as np
from skimage import filters

from docready import config as cfg
from docready.context import DuplicateMatch
from docready.quality import luminance

log = logging.getLogger(__name__)


def _bits_to_hex(bits: str) -> str:
    pad = (-len(bits)) % 4
    bits = bits + "0" * pad
    return "".join(f"{int(bits[i : i + 4], 2):x}" for i in range(0, len(bits), 4))


def _hex_to_bits(value: str) -> str:
    return "".join(f"{int(ch, 16):04b}" for ch in value)


def perceptual_hash(image: np.ndarray) -> str:
    """16x16 灰度 DCT，取左上 8x8 去掉直流分量，按中位数二值化。"""
    small = cv2.resize(luminance(image), (16, 16), interpolation=cv2.INTER_AREA)
    coeffs = cv2.dct(small.astype(np.float32))[:8, :8].reshape(-1)[1:]
    median = float(np.median(coeffs))
    bits = "".join("1" if c > median else "0" for c in coeffs)
    return _bits_to_hex(bits)


def structural_hash(image: np.ndarray) -> str:
    """32x32 Otsu 二值后按 4x4 网格统计墨迹密度，H/M/L/E 四档。"""
    small = cv2.resize(luminance(image), (32, 32), interpolation=cv2.INTER_AREA)
    if float(small.max() - small.min()) < 1.0:
        return "E" * 16
    thresh = filters.threshold_otsu(small)
    ink = small <= thresh
    cells = ink.reshape(4, 8, 4, 8).mean(axis=(1, 3))
    out = []
    for d in cells.reshape(-1):
        if d > 0.5:
            out.append("H")
        elif d > 0.2:
            out.append("M")
        elif d > 0.05:
            out.append("L")
        else:
            out.append("E")
    return "".join(out)


def color_hash(image: np.ndarray) -> str:
    """8x8 HSV 中饱和且不太暗的像素按 30 度色相分桶，桶内超过 3 个记 1。"""
    if image.ndim == 2:
        return "0" * 12
    rgb = image[:, :, :3]
    small = cv2.resize(rgb.astype(np.float32) / 255.0, (8, 8), interpolation=cv2.INTER_AREA)
    hsv = cv2.cvtColor(small, cv2.COLOR_RGB2HSV)
    hue, sat, val = hsv[:, :, 0], hsv[:, :, 1], hsv[:, :, 2]
    mask = (sat > 0.2) & (val > 0.2)
    buckets = np.clip((hue[mask] // 30).astype(np.int64), 0, 11)
    counts = np.bincount(buckets, minlength=12)
    return "".join("1" if c > 3 else "0" for c in counts[:12])


def _hamming_similarity(a: str, b: str) -> float:
    n = max(len(a), len(b))
    if n == 0:
        return 1.0
    diff = sum(1 for i in range(n) if i >= len(a) or i >= len(b) or a[i] != b[i])
    return 1.0 - diff / n


def _positional_similarity(a: str, b: str) -> float:
    n = max(len(a), len(b))
    if n == 0:
        return 1.0
    same = sum(1 for i in range(min(len(a), len(b))) if a[i] == b[i])
    return same / n


class SemanticFingerprint:
    """同一会话内的重复页检测。"""

    def __init__(self, config: Dict[str, Any] | None = None):
        self.cfg = cfg.merged(cfg.DEFAULTS["fingerprint"], config)

    def generate(self, image: np.ndarray) -> Dict[str, str]:
        perceptual = perceptual_hash(image)
        structural = structural_hash(image)
        color = color_hash(image)
        return {
            "perceptual": perceptual,
            "structural": structural,
            "color": color,
            "combined": f"{perceptual}|{structural}|{color}",
        }

    def compare(self, a: Dict[str, str], b: Dict[str, str]) -> float:
        """加权相似度，对称，compare(a, a) == 1.0。"""
        w = self.cfg["weights"]
        perceptual = _hamming_similarity(_hex_to_bits(a["perceptual"]), _hex_to_bits(b["perceptual"]))
        structural = _positional_similarity(a["structural"], b["structural"])
        color = _hamming_similarity(a["color"], b["color"])
        return w["perceptual"] * perceptual + w["structural"] * structural + w["color"] * color

    def is_duplicate(self, a: Dict[str, str], b: Dict[str, str]) -> Tuple[bool, float]:
        similarity = self.compare(a, b)
        return similarity > self.cfg["duplicate_threshold"], similarity

    def find_duplicate(self, fingerprint: Dict[str, str], existing: Iterable[Tuple[int, Dict[str, str]]]) -> Optional[DuplicateMatch]:
        """与任意一页相似即判重，返回首个命中。"""
        compared = 0
        for page_id, other in existing:
            if not other:
                continue
            compared += 1
            dup, similarity = self.is_duplicate(fingerprint, other)
            if dup:
                log.info("fingerprint: 重复页 page=%s similarity=%.3f", page_id, similarity)
                return DuplicateMatch(page_id=page_id, similarity=similarity)
        log.debug("fingerprint: 比较 %d 页，无重复", compared)
        return None
