"""静帧质量分析：清晰度/亮度/对比度/噪声/倾斜/文本密度，输出问题与建议。"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Dict, List

import cv2
import numpy as np

from docready import config as cfg
from docready.context import QualityIssue, QualityReport

log = logging.getLogger(__name__)

AUTO_FIXABLE = {"LOW_CONTRAST", "DARK", "SKEWED"}

RECOMMENDATIONS = {
    "BLUR": "Hold the camera steadier or move closer",
    "DARK": "Increase lighting or move to a brighter area",
    "BRIGHT": "Reduce direct light or move away from windows",
    "LOW_CONTRAST": "Ensure document is on a contrasting surface",
    "SKEWED": "Align document edges with the frame",
    "INVALID_IMAGE": "Retake the photo",
}


def luminance(image: np.ndarray) -> np.ndarray:
    """RGB → float32 亮度（0.299/0.587/0.114）。"""
    if image.ndim == 2:
        return image.astype(np.float32)
    if image.shape[2] == 4:
        image = image[:, :, :3]
    return cv2.cvtColor(image.astype(np.float32), cv2.COLOR_RGB2GRAY)


def _limit_side(gray: np.ndarray, max_side: int) -> np.ndarray:
    h, w = gray.shape[:2]
    scale = min(1.0, max_side / float(max(h, w)))
    if scale >= 1.0:
        return gray
    return cv2.resize(gray, (max(1, int(w * scale)), max(1, int(h * scale))), interpolation=cv2.INTER_AREA)


class ImageQualityAnalyzer:
    """对候选静帧做深度质量评估。"""

    def __init__(self, config: Dict[str, Any] | None = None):
        self.cfg = cfg.merged(cfg.DEFAULTS["quality"], config)

    def analyze(self, image: np.ndarray) -> QualityReport:
        t0 = time.time()
        if image is None or getattr(image, "size", 0) == 0 or min(image.shape[:2]) < 3:
            issue = QualityIssue("INVALID_IMAGE", "critical", "Image is empty or too small")
            return QualityReport(
                score=0.0,
                metrics={},
                issues=[issue],
                recommendations=[RECOMMENDATIONS["INVALID_IMAGE"]],
                should_proceed=False,
                can_auto_fix=False,
            )
        gray = luminance(image)
        work = _limit_side(gray, int(self.cfg["hough_max_side"]))
        metrics = {
            "blur": self.blur_score(gray),
            "brightness": self.brightness_score(gray),
            "contrast": self.contrast_score(gray),
            "noise": self.noise_score(gray),
            "skew": self.skew_score(work),
            "text_density": self.text_density_score(work),
        }
        mean_lum = float(gray.mean())
        score = sum(metrics[k] * w for k, w in self.cfg["weights"].items())
        issues = self.detect_issues(metrics, mean_lum)
        report = QualityReport(
            score=float(score),
            metrics=metrics,
            issues=issues,
            recommendations=self.recommendations(issues),
            should_proceed=score > self.cfg["proceed_score"],
            can_auto_fix=all(i.type in AUTO_FIXABLE for i in issues if i.severity == "critical"),
            confidence=self.confidence(metrics),
            elapsed=time.time() - t0,
        )
        log.info("quality: score=%.3f issues=%s elapsed=%.3fs", report.score, [i.type for i in issues], report.elapsed)
        return report

    def blur_score(self, gray: np.ndarray) -> float:
        lap = cv2.Laplacian(gray, cv2.CV_32F, ksize=1)[1:-1, 1:-1]
        if lap.size == 0:
            return 0.0
        variance = float((lap.astype(np.float64) ** 2).mean())
        return min(1.0, variance / self.cfg["blur_scale"])

    @staticmethod
    def brightness_score(gray: np.ndarray) -> float:
        avg = float(gray.mean())
        return max(0.0, 1.0 - abs(avg - 128.0) / 128.0)

    def contrast_score(self, gray: np.ndarray) -> float:
        p5, p95 = np.percentile(gray, [5, 95])
        return min(1.0, float(p95 - p5) / self.cfg["contrast_scale"])

    def noise_score(self, gray: np.ndarray) -> float:
        block = int(self.cfg["noise_block"])
        h, w = gray.shape[:2]
        nh, nw = h // block, w // block
        if nh == 0 or nw == 0:
            return 1.0
        tiles = gray[: nh * block, : nw * block].reshape(nh, block, nw, block)
        variances = np.sort(tiles.var(axis=(1, 3)).reshape(-1))
        estimate = float(variances[int(len(variances) * 0.1)])
        return max(0.0, 1.0 - estimate / self.cfg["noise_scale"])

    def skew_score(self, gray: np.ndarray) -> float:
        """主导直线角度偏离坐标轴的程度，取 -45..45 度范围投票。"""
        gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
        mag = cv2.magnitude(gx, gy)
        mag[0, :] = 0
        mag[-1, :] = 0
        mag[:, 0] = 0
        mag[:, -1] = 0
        ys, xs = np.nonzero(mag[::2, ::2] > self.cfg["skew_edge_threshold"])
        if xs.size == 0:
            return 1.0
        xs = xs.astype(np.float64) * 2
        ys = ys.astype(np.float64) * 2
        best_votes = -1
        best_theta = 0
        for theta in range(-45, 46):
            rad = math.radians(theta)
            bins = np.round((xs * math.cos(rad) + ys * math.sin(rad)) / 10.0).astype(np.int64)
            votes = int(np.bincount(bins - bins.min()).max())
            if votes > best_votes:
                best_votes, best_theta = votes, theta
        folded = abs(best_theta) % 90
        skew_deg = min(folded, 90 - folded)
        return max(0.0, 1.0 - skew_deg / 45.0)

    def text_density_score(self, gray: np.ndarray) -> float:
        gray_u8 = np.clip(gray, 0, 255).astype(np.uint8)
        binary = cv2.adaptiveThreshold(
            gray_u8, 255, cv2.ADAPTIVE_THRESH_MEAN_C, cv2.THRESH_BINARY, int(self.cfg["adaptive_block"]), int(self.cfg["adaptive_c"])
        )
        h, w = binary.shape[:2]
        transitions = int(np.count_nonzero(binary[:, 1:] != binary[:, :-1]))
        density = transitions / float(max(1, w * h))
        if density < 0.01:
            return 0.3
        if density > 0.15:
            return 0.5
        return min(1.0, density / 0.05)

    @staticmethod
    def detect_issues(metrics: Dict[str, float], mean_lum: float) -> List[QualityIssue]:
        issues = []
        if metrics["blur"] < 0.4:
            issues.append(QualityIssue("BLUR", "critical" if metrics["blur"] < 0.2 else "moderate", "Image is blurry"))
        # 亮度分数是对称的，用平均亮度区分偏暗/过曝
        if metrics["brightness"] < 0.3:
            severity = "critical" if metrics["brightness"] < 0.15 else "moderate"
            if mean_lum < 128:
                issues.append(QualityIssue("DARK", severity, "Image is too dark"))
            else:
                issues.append(QualityIssue("BRIGHT", severity, "Image is overexposed"))
        if metrics["contrast"] < 0.3:
            issues.append(QualityIssue("LOW_CONTRAST", "moderate", "Low contrast between text and background"))
        if metrics["skew"] < 0.6:
            issues.append(QualityIssue("SKEWED", "critical" if metrics["skew"] < 0.3 else "moderate", "Document is tilted"))
        if metrics["text_density"] < 0.3:
            issues.append(QualityIssue("SPARSE", "info", "Limited text content detected"))
        return issues

    @staticmethod
    def recommendations(issues: List[QualityIssue]) -> List[str]:
        out: List[str] = []
        for issue in issues:
            rec = RECOMMENDATIONS.get(issue.type)
            if rec and rec not in out:
                out.append(rec)
        return out

    @staticmethod
    def confidence(metrics: Dict[str, float]) -> float:
        """分析结论本身的可信度。"""
        core = 0.4 * metrics["blur"] + 0.3 * metrics["contrast"] + 0.15 * metrics["brightness"] + 0.15 * metrics["noise"]
        return 0.5 + core * 0.5
