"""多页综合：合并题目、成绩走势、知识点掌握度、错误模式与建议。"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, List, Optional, Sequence

from docready import config as cfg
from docready.context import Page
from docready.interpreter import letter_grade

log = logging.getLogger(__name__)

_INTERPRETATIONS = {
    "improving": "Student demonstrates growth. Later sections show stronger understanding.",
    "declining": "Performance decreased on later pages, could indicate fatigue or difficulty.",
    "stable": "Consistent performance throughout.",
}

_PRIORITY_ORDER = {"high": 0, "medium": 1, "positive": 2, "low": 3}


def _responses(page: Page) -> List[Dict[str, Any]]:
    result = page.analysis_result or {}
    responses = result.get("responses")
    return [r for r in responses if isinstance(r, dict)] if isinstance(responses, list) else []


def _question_number(question_id: Any) -> int:
    digits = re.sub(r"\D", "", str(question_id or ""))
    return int(digits) if digits else 0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


class CrossPageReasoner:
    """对已完成分析的页面做纯函数式综合。"""

    def __init__(self, config: Dict[str, Any] | None = None):
        self.cfg = cfg.merged(cfg.DEFAULTS["reasoner"], config)

    def synthesize(self, pages: Sequence[Page]) -> Optional[Dict[str, Any]]:
        if not pages:
            return None
        synthesis = {
            "page_count": len(pages),
            "unified_responses": self.merge_responses(pages),
            "progression": self.progression(pages),
            "concept_mastery": self.concept_mastery(pages),
            "overall_assessment": self.overall_assessment(pages),
            "patterns": self.patterns(pages),
        }
        synthesis["recommendations"] = self.recommendations(synthesis)
        log.info(
            "reasoner: pages=%d responses=%d trend=%s",
            len(pages),
            len(synthesis["unified_responses"]),
            synthesis["progression"]["trend"],
        )
        return synthesis

    @staticmethod
    def merge_responses(pages: Sequence[Page]) -> List[Dict[str, Any]]:
        """同题号 + 题干前 30 字视为同一题，跨页续答挂到 continued_from。"""
        merged: List[Dict[str, Any]] = []
        seen = set()
        for number, page in enumerate(pages, start=1):
            for r in _responses(page):
                key = (r.get("questionId"), str(r.get("questionText") or "")[:30])
                if key in seen:
                    existing = next((m for m in merged if m.get("questionId") == r.get("questionId")), None)
                    if existing is not None:
                        existing.setdefault("continued_from", []).append({"page_id": page.id, "additional_answer": r.get("studentAnswer")})
                    continue
                seen.add(key)
                merged.append({**r, "source_page_id": page.id, "page_number": number})
        return sorted(merged, key=lambda m: _question_number(m.get("questionId")))

    def progression(self, pages: Sequence[Page]) -> Dict[str, Any]:
        scores = []
        for number, page in enumerate(pages, start=1):
            overall = (page.analysis_result or {}).get("overallAssessment") or {}
            score = overall.get("score") if isinstance(overall, dict) else None
            if _is_number(score):
                scores.append({"page": number, "score": float(score)})
        if len(scores) < 2:
            return {"trend": "insufficient_data", "scores": scores}

        mid = math.ceil(len(scores) / 2)
        first = sum(s["score"] for s in scores[:mid]) / mid
        second = sum(s["score"] for s in scores[mid:]) / (len(scores) - mid)
        diff = second - first
        threshold = self.cfg["trend_threshold"]
        trend = "improving" if diff > threshold else "declining" if diff < -threshold else "stable"
        peak = max(scores, key=lambda s: s["score"])
        valley = min(scores, key=lambda s: s["score"])
        return {
            "trend": trend,
            "scores": scores,
            "first_half_average": round(first, 1),
            "second_half_average": round(second, 1),
            "peak": dict(peak),
            "lowest": dict(valley),
            "interpretation": _INTERPRETATIONS[trend],
        }

    @staticmethod
    def concept_mastery(pages: Sequence[Page]) -> List[Dict[str, Any]]:
        concepts: Dict[str, Dict[str, Any]] = {}
        for page in pages:
            for r in _responses(page):
                pct = (r.get("score") or {}).get("percentage") if isinstance(r.get("score"), dict) else None
                if not _is_number(pct):
                    correct = r.get("isCorrect")
                    pct = 1.0 if correct is True else 0.5 if correct == "partial" else 0.0
                for concept in r.get("conceptsAssessed") or []:
                    entry = concepts.setdefault(concept, {"total": 0.0, "count": 0})
                    entry["total"] += float(pct)
                    entry["count"] += 1
        mastery = []
        for concept, data in concepts.items():
            avg = data["total"] / data["count"]
            if avg >= 0.9:
                level = "mastered"
            elif avg >= 0.7:
                level = "proficient"
            elif avg >= 0.5:
                level = "developing"
            else:
                level = "needs_work"
            mastery.append({"concept": concept, "average_score": avg, "level": level, "question_count": data["count"]})
        return sorted(mastery, key=lambda m: m["average_score"])

    @staticmethod
    def overall_assessment(pages: Sequence[Page]) -> Dict[str, Any]:
        scored = []
        for page in pages:
            for r in _responses(page):
                score = r.get("score")
                if isinstance(score, dict) and _is_number(score.get("earned")) and _is_number(score.get("possible")):
                    scored.append(r)
        possible = sum(r["score"]["possible"] for r in scored)
        if not scored or possible <= 0:
            return {"score": None, "grade": None, "message": "Unable to calculate"}
        earned = sum(r["score"]["earned"] for r in scored)
        pct = earned / possible * 100.0
        return {
            "score": round(pct, 1),
            "earned": earned,
            "possible": possible,
            "grade": letter_grade(pct),
            "question_count": len(scored),
            "correct_count": sum(1 for r in scored if r.get("isCorrect") is True),
            "partial_count": sum(1 for r in scored if r.get("isCorrect") == "partial"),
            "incorrect_count": sum(1 for r in scored if r.get("isCorrect") is False),
        }

    def patterns(self, pages: Sequence[Page]) -> List[Dict[str, Any]]:
        min_count = int(self.cfg["pattern_min_count"])
        found: List[Dict[str, Any]] = []

        errors: Dict[str, int] = {}
        skipped: Dict[str, int] = {}
        strengths: Dict[str, int] = {}
        for page in pages:
            for r in _responses(page):
                if r.get("errorType"):
                    errors[r["errorType"]] = errors.get(r["errorType"], 0) + 1
                if not str(r.get("studentAnswer") or "").strip():
                    section = re.sub(r"\d", "", str(r.get("questionId") or "")) or "general"
                    skipped[section] = skipped.get(section, 0) + 1
            overall = (page.analysis_result or {}).get("overallAssessment")
            if not isinstance(overall, dict):
                continue
            for s in overall.get("strengths") or []:
                key = str(s).lower().strip()
                strengths[key] = strengths.get(key, 0) + 1

        for error_type, count in sorted(errors.items(), key=lambda kv: -kv[1]):
            if count >= min_count:
                found.append(
                    {
                        "type": "recurring_error",
                        "description": f"{error_type} errors appeared {count} times",
                        "severity": "high" if count >= 4 else "medium",
                        "error_type": error_type,
                        "count": count,
                    }
                )
        for section, count in skipped.items():
            if count >= min_count:
                found.append(
                    {
                        "type": "skipped_questions",
                        "description": f"Multiple questions skipped in {section}",
                        "severity": "medium",
                        "section": section,
                        "count": count,
                    }
                )
        for strength, count in strengths.items():
            if count >= min_count:
                found.append({"type": "consistent_strength", "description": strength, "severity": "positive", "count": count})
        return found

    @staticmethod
    def recommendations(synthesis: Dict[str, Any]) -> List[Dict[str, Any]]:
        recs = []
        weak = [c for c in synthesis["concept_mastery"] if c["level"] == "needs_work"][:3]
        for c in weak:
            recs.append(
                {
                    "priority": "high",
                    "category": "concept_review",
                    "message": f"Focus on {c['concept']}: {c['average_score'] * 100:.0f}% mastery",
                    "suggested_actions": [f"Review {c['concept']} fundamentals", "Practice more problems", "Consider one-on-one help"],
                }
            )
        if synthesis["progression"]["trend"] == "declining":
            recs.append(
                {
                    "priority": "medium",
                    "category": "study_habits",
                    "message": "Performance decreased on later pages",
                    "suggested_actions": ["Take short breaks", "Tackle difficult sections first", "Practice time management"],
                }
            )
        for p in synthesis["patterns"]:
            if p["type"] == "recurring_error" and p["severity"] == "high":
                recs.append(
                    {
                        "priority": "high",
                        "category": "error_correction",
                        "message": f"Recurring {p['error_type']} errors need attention",
                        "suggested_actions": [f"Review common causes of {p['error_type']} errors", "Practice checking work", "Create a checklist"],
                    }
                )
        strengths = [p["description"] for p in synthesis["patterns"] if p["type"] == "consistent_strength"]
        if strengths:
            recs.append(
                {
                    "priority": "positive",
                    "category": "reinforcement",
                    "message": "Strengths: " + ", ".join(strengths),
                    "suggested_actions": ["Continue applying these skills", "Help peers in these areas"],
                }
            )
        return sorted(recs, key=lambda r: _PRIORITY_ORDER[r["priority"]])
