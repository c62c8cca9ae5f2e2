"""解读结果的置信度后校准：多因子加权，结果夹到 [0.1, 0.95]。"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Dict, List, Optional

from docready import config as cfg

log = logging.getLogger(__name__)

ILLEGIBLE = "[ILLEGIBLE]"


def raw_confidence(result: Dict[str, Any] | None) -> Optional[float]:
    """兼容 {confidence: {overall}} 与 {confidence: x} 两种结果形状。"""
    if not result:
        return None
    conf = result.get("confidence")
    if isinstance(conf, dict):
        conf = conf.get("overall")
    if isinstance(conf, bool) or not isinstance(conf, (int, float)):
        return None
    return float(conf)


class ConfidenceCalibrator:
    def __init__(self, config: Dict[str, Any] | None = None):
        self.cfg = cfg.merged(cfg.DEFAULTS["calibration"], config)
        self.weights: Dict[str, float] = self.cfg["weights"]
        self.history: List[Dict[str, Any]] = []

    def _clamp(self, value: float) -> float:
        return max(self.cfg["floor"], min(self.cfg["ceiling"], value))

    def calibrate(
        self,
        raw: Optional[float],
        image_quality: Optional[float],
        responses: Optional[List[Dict[str, Any]]] = None,
        document_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """返回 overall / per_question / factors / explanation。"""
        factors = {
            "image_quality": 0.7 if image_quality is None else float(image_quality),
            "response_consistency": self._consistency(responses),
            "historical_accuracy": self._historical_accuracy(document_type),
            "content_complexity": self._complexity(responses),
            "raw_confidence": self._adjust_raw(raw),
        }
        total = 0.0
        for key, weight in self.weights.items():
            value = factors.get(key)
            if value is None or not math.isfinite(value):
                value = 0.5
            total += value * weight
        overall = self._clamp(total)
        return {
            "overall": overall,
            "per_question": self._per_question(responses, factors),
            "factors": factors,
            "explanation": self._explain(factors, overall),
        }

    def calibrate_result(self, result: Dict[str, Any], image_quality: Optional[float], document_type: Optional[str] = None) -> Dict[str, Any]:
        responses = result.get("responses") if isinstance(result.get("responses"), list) else None
        return self.calibrate(raw_confidence(result), image_quality, responses, document_type or result.get("documentType"))

    def record_outcome(self, result: Dict[str, Any] | None, was_correct: bool, document_type: Optional[str] = None) -> None:
        self.history.append(
            {
                "timestamp": time.time(),
                "was_correct": bool(was_correct),
                "document_type": document_type,
                "original_confidence": raw_confidence(result),
            }
        )
        limit = int(self.cfg["history_limit"])
        if len(self.history) > limit:
            self.history = self.history[-limit:]

    def stats(self) -> Optional[Dict[str, float]]:
        total = len(self.history)
        if not total:
            return None
        correct = sum(1 for h in self.history if h["was_correct"])
        avg_conf = sum(h["original_confidence"] if h["original_confidence"] is not None else 0.7 for h in self.history) / total
        return {"total_assessments": total, "accuracy_rate": correct / total, "average_confidence": avg_conf}

    @staticmethod
    def _consistency(responses: Optional[List[Dict[str, Any]]]) -> float:
        if not responses:
            return 0.5
        confs = []
        for r in responses:
            value = (r.get("confidence") or {}).get("individual") if isinstance(r.get("confidence"), dict) else None
            if value is None:
                value = (r.get("score") or {}).get("percentage") if isinstance(r.get("score"), dict) else None
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                confs.append(float(value))
        if len(confs) < 2:
            return 0.7
        mean = sum(confs) / len(confs)
        std = math.sqrt(sum((c - mean) ** 2 for c in confs) / len(confs))
        return max(0.4, 1 - std)

    def _historical_accuracy(self, document_type: Optional[str]) -> float:
        relevant = [h for h in self.history if not document_type or h["document_type"] == document_type]
        relevant = relevant[-int(self.cfg["history_window"]) :]
        if not relevant:
            return 0.7
        return sum(1 for h in relevant if h["was_correct"]) / len(relevant)

    @staticmethod
    def _complexity(responses: Optional[List[Dict[str, Any]]]) -> float:
        if not responses:
            return 0.5
        score = 0.0
        n = 0
        for r in responses:
            length = len(str(r.get("studentAnswer") or ""))
            score += 0.3 if length > 200 else 0.6 if length > 50 else 0.9
            n += 1
            if len(str(r.get("workShown") or "")) > 20:
                score += 0.5
                n += 1
            if r.get("isCorrect") == "partial":
                score += 0.4
                n += 1
        return score / n if n else 0.7

    @staticmethod
    def _adjust_raw(raw: Optional[float]) -> float:
        # 模型自报的高置信度往往偏高，压一压
        if raw is None:
            return 0.5
        if raw > 0.9:
            return 0.85 + (raw - 0.9) * 0.5
        if raw > 0.7:
            return raw * 0.95
        return raw

    def _per_question(self, responses: Optional[List[Dict[str, Any]]], factors: Dict[str, float]) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for r in responses or []:
            conf = r.get("confidence")
            c = conf.get("individual") if isinstance(conf, dict) else None
            c = 0.7 if not isinstance(c, (int, float)) else float(c)
            if r.get("studentAnswer") == ILLEGIBLE:
                c = 0.1
            elif r.get("isCorrect") == "partial":
                c *= 0.85
            c *= factors["image_quality"]
            out[str(r.get("questionId") or "unknown")] = self._clamp(c)
        return out

    @staticmethod
    def _explain(factors: Dict[str, float], overall: float) -> Dict[str, Any]:
        notes = []
        if factors["image_quality"] < 0.5:
            notes.append("Low image quality reduces confidence")
        if factors["response_consistency"] < 0.5:
            notes.append("Inconsistent response confidence")
        if factors["historical_accuracy"] < 0.6:
            notes.append("Past corrections suggest this type is challenging")
        if factors["content_complexity"] < 0.5:
            notes.append("Complex content adds uncertainty")
        if not notes:
            notes.append("All factors within normal ranges")
        return {"summary": f"Calibrated: {overall * 100:.0f}%", "factors": notes}
