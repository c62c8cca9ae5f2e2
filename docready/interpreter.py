"""文档解读后端：HTTP 客户端 + 无后端/网络失败时的离线估算。"""

from __future__ import annotations

import hashlib
import json
import logging
import random
import re
from typing import Any, Dict, Optional, Protocol

import requests

from docready import io_utils

log = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = """You are an expert at reading handwritten student work.

Read every question on this worksheet page together with the student's answer.

Return ONLY valid JSON in this exact shape:
{
  "documentType": "WORKSHEET",
  "pageAnalysis": {"contentSummary": "", "estimatedCompleteness": 0.0, "readabilityScore": 0.0},
  "studentInfo": {"name": null, "date": null},
  "responses": [
    {"questionId": "Q1", "questionText": "", "studentAnswer": "", "isCorrect": true,
     "score": {"earned": 0, "possible": 0, "percentage": 0.0},
     "feedback": "", "errorType": null, "workShown": "",
     "confidence": {"individual": 0.0}}
  ],
  "overallAssessment": {"score": 0, "grade": "", "strengths": [], "areasForImprovement": [], "suggestedNextSteps": []},
  "confidence": {"overall": 0.0}
}

Write [ILLEGIBLE] as the studentAnswer when a response cannot be read.
confidence values are 0.0-1.0 and describe how certain you are of your reading."""

_QUESTIONS = [
    "Solve for x: 2x + 5 = 13",
    "What is the capital of France?",
    "Calculate the area (length 8, width 5)",
    "Name three primary colors",
    "What year did WWII end?",
    "Simplify: 3/4 + 1/2",
    "Define photosynthesis",
    "What is 15% of 80?",
]
_ANSWERS = ["x = 4", "Paris", "40 sq units", "red, blue, yellow", "1945", "5/4", "Plants convert sunlight to energy", "12"]


class InterpreterError(Exception):
    """解读后端调用失败。"""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class InterpreterTransportError(InterpreterError):
    """网络/超时/服务端错误：调用方可降级为离线估算。"""


class InterpreterResponseError(InterpreterError):
    """响应无法解析为结果对象。"""


class Interpreter(Protocol):
    def analyze(self, payload: bytes, instructions: str) -> Dict[str, Any]: ...


def extract_json(text: str) -> Dict[str, Any]:
    """从模型输出里截取第一个 {...} 并解析。"""
    match = re.search(r"\{[\s\S]*\}", text or "")
    if not match:
        raise InterpreterResponseError("No JSON found in response", "NO_JSON")
    try:
        obj = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise InterpreterResponseError(f"Invalid JSON in response: {exc}", "BAD_JSON") from exc
    if not isinstance(obj, dict):
        raise InterpreterResponseError("Response JSON is not an object", "BAD_SHAPE")
    return obj


class HttpInterpreter:
    """
    通过代理端点调用视觉模型：POST {imageBase64, prompt}，返回 JSON 结果。
    API key 只放在代理侧；这里可选带一个访问令牌。
    """

    def __init__(self, endpoint: str, timeout: float = 30, api_key: Optional[str] = None, session: Optional[requests.Session] = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.api_key = api_key
        self.session = session or requests.Session()
        log.info("interpreter: endpoint=%s timeout=%ss", endpoint, timeout)

    def analyze(self, payload: bytes, instructions: str) -> Dict[str, Any]:
        image_b64 = io_utils.to_data_url(payload)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = self.session.post(
                self.endpoint,
                json={"imageBase64": image_b64, "prompt": instructions},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise InterpreterTransportError(f"Request failed: {exc}", "NETWORK_ERROR") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise InterpreterTransportError(f"Backend error {response.status_code}", "BACKEND_ERROR", {"status": response.status_code})
        if response.status_code >= 400:
            raise InterpreterResponseError(f"Request rejected {response.status_code}", "REJECTED", {"status": response.status_code, "body": response.text[:500]})
        return extract_json(response.text)


def offline_estimate(seed: str, quality_score: float, document_type: str = "WORKSHEET") -> Dict[str, Any]:
    """
    按质量给出确定性的本地估算结果，形状与真实结果一致，打 _offlineEstimate 标记。
    同一 seed + 质量得到同一结果。
    """
    quality = max(0.0, min(1.0, float(quality_score)))
    digest = hashlib.sha1(f"{seed}|{quality:.3f}".encode("utf-8")).hexdigest()
    rng = random.Random(int(digest[:16], 16))
    n = rng.randint(3, 8)
    responses = []
    for i in range(1, n + 1):
        correct = rng.random() < 0.6 + quality * 0.2
        partial = not correct and rng.random() < 0.3
        earned = 10 if correct else 5 if partial else 0
        responses.append(
            {
                "questionId": f"Q{i}",
                "questionText": _QUESTIONS[i % len(_QUESTIONS)],
                "studentAnswer": _ANSWERS[rng.randrange(len(_ANSWERS))],
                "isCorrect": "partial" if partial else correct,
                "score": {"earned": earned, "possible": 10, "percentage": earned / 10.0},
                "feedback": "Correct! Great work." if correct else "Partially correct. Check your final step." if partial else "Not quite. Review the concept.",
                "confidence": {"individual": round(0.7 + rng.random() * 0.25, 3)},
            }
        )
    earned = sum(r["score"]["earned"] for r in responses)
    possible = sum(r["score"]["possible"] for r in responses)
    pct = earned / possible * 100.0
    return {
        "documentType": document_type,
        "pageAnalysis": {
            "contentSummary": "Estimated locally without an interpretation backend",
            "estimatedCompleteness": round(0.85 + rng.random() * 0.15, 3),
            "readabilityScore": quality,
        },
        "studentInfo": {"name": None, "date": None},
        "responses": responses,
        "overallAssessment": {
            "score": pct,
            "grade": letter_grade(pct),
            "strengths": ["Shows work"],
            "areasForImprovement": ["Double-check arithmetic"],
            "suggestedNextSteps": ["Practice similar problems"],
        },
        "confidence": {"overall": round(min(0.95, 0.75 + quality * 0.2), 3)},
        "_offlineEstimate": True,
    }


def letter_grade(pct: float) -> str:
    if pct >= 90:
        return "A"
    if pct >= 80:
        return "B"
    if pct >= 70:
        return "C"
    if pct >= 60:
        return "D"
    return "F"
