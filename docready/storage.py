"""结果持久化：远端 REST 表优先，失败回落到本地 JSON 文件。"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import requests

from docready import summary_utils
from docready.calibration import ConfidenceCalibrator, raw_confidence
from docready.pipeline import validate_result

log = logging.getLogger(__name__)

TRACES = "logic_traces"
ERRORS = "analysis_errors"
CORRECTIONS = "corrections"


class StoreError(Exception):
    """存储写入/查询失败。"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class Store(Protocol):
    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]: ...

    def query(self, table: str, **filters: Any) -> List[Dict[str, Any]]: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class LocalStore:
    """每张表一个 JSON 数组文件。"""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _path(self, table: str) -> Path:
        return self.root / f"{table}.json"

    def _load(self, table: str) -> List[Dict[str, Any]]:
        path = self._path(table)
        if not path.exists():
            return []
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(f"Failed to read {path}: {exc}") from exc
        return data if isinstance(data, list) else []

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            rows = self._load(table)
            rows.append(record)
            path = self._path(table)
            tmp = path.with_suffix(".json.tmp")
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                with tmp.open("w", encoding="utf-8") as f:
                    json.dump(rows, f, ensure_ascii=False, indent=2, default=summary_utils.json_default)
                tmp.replace(path)
            except OSError as exc:
                raise StoreError(f"Failed to write {path}: {exc}") from exc
        return record

    def query(self, table: str, **filters: Any) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._load(table)
        return [r for r in rows if all(r.get(k) == v for k, v in filters.items())]


class RestStore:
    """PostgREST 风格接口：POST /rest/v1/<table>，GET ?col=eq.value。"""

    def __init__(self, base_url: str, api_key: str, timeout: float = 10, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        body = json.loads(json.dumps(record, default=summary_utils.json_default))
        try:
            response = self.session.post(f"{self.base_url}/rest/v1/{table}", json=body, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise StoreError(f"Insert into {table} failed: {exc}") from exc
        if response.status_code >= 400:
            raise StoreError(f"Insert into {table} rejected: {response.status_code}", {"body": response.text[:500]})
        try:
            data = response.json()
        except ValueError:
            return record
        if isinstance(data, list) and data:
            return data[0]
        return data if isinstance(data, dict) else record

    def query(self, table: str, **filters: Any) -> List[Dict[str, Any]]:
        params = {k: f"eq.{v}" for k, v in filters.items()}
        try:
            response = self.session.get(f"{self.base_url}/rest/v1/{table}", params=params, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise StoreError(f"Query on {table} failed: {exc}") from exc
        if response.status_code >= 400:
            raise StoreError(f"Query on {table} rejected: {response.status_code}", {"body": response.text[:500]})
        try:
            data = response.json()
        except ValueError as exc:
            raise StoreError(f"Query on {table} returned invalid JSON") from exc
        return data if isinstance(data, list) else []


class FallbackStore:
    def __init__(self, primary: Store, fallback: Store):
        self.primary = primary
        self.fallback = fallback

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.primary.insert(table, record)
        except StoreError as exc:
            log.warning("storage: 远端写入失败，改写本地 table=%s: %s", table, exc)
            return self.fallback.insert(table, record)

    def query(self, table: str, **filters: Any) -> List[Dict[str, Any]]:
        try:
            rows = self.primary.query(table, **filters)
        except StoreError as exc:
            log.warning("storage: 远端查询失败，只查本地 table=%s: %s", table, exc)
            rows = []
        return rows + self.fallback.query(table, **filters)


def open_store(storage_cfg: Dict[str, Any], session: Optional[requests.Session] = None) -> Store:
    """有远端配置时返回 远端+本地 组合，否则只用本地。"""
    local = LocalStore(storage_cfg.get("local_dir") or ".docready/store")
    url = storage_cfg.get("remote_url")
    key = storage_cfg.get("remote_key")
    if url and key:
        return FallbackStore(RestStore(url, key, timeout=storage_cfg.get("timeout", 10), session=session), local)
    return local


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def normalize_and_store(
    store: Store,
    result: Dict[str, Any],
    metadata: Optional[Dict[str, Any]] = None,
    session_id: Optional[str] = None,
    calibration: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """校验后写 logic_traces；不合法的结果写 analysis_errors 留档。"""
    metadata = metadata or {}
    problem = validate_result(result)
    if problem is not None:
        code, reason = problem
        log.warning("storage: 结果校验失败 %s %s", code, reason)
        store.insert(
            ERRORS,
            {
                "raw_response": json.dumps(result, ensure_ascii=False, default=summary_utils.json_default),
                "error": f"{code}: {reason}",
                "capture_metadata": metadata,
                "created_at": _now_iso(),
            },
        )
        return {"success": False, "error": "Response validation failed"}

    overall = result.get("overallAssessment") if isinstance(result.get("overallAssessment"), dict) else {}
    confidence = calibration["overall"] if calibration else raw_confidence(result)
    record = {
        "id": f"trace_{int(time.time() * 1000)}_{uuid.uuid4().hex[:4]}",
        "session_id": session_id or new_session_id(),
        "document_type": result.get("documentType"),
        "score": overall.get("score", result.get("score")),
        "grade": overall.get("grade"),
        "is_correct": result.get("isCorrect"),
        "responses": result.get("responses"),
        "logic_trace": result.get("logicTrace"),
        "divergence_point": result.get("divergencePoint"),
        "remediation": result.get("remediation"),
        "confidence": confidence,
        "offline_estimate": bool(result.get("_offlineEstimate")),
        "capture_quality": metadata.get("quality_score", 1.0),
        "page_id": metadata.get("page_id"),
        "created_at": _now_iso(),
    }
    stored = store.insert(TRACES, record)
    return {"success": True, "id": stored.get("id", record["id"]), "result": result}


def submit_correction(
    store: Store,
    trace_id: str,
    original_error_type: Optional[str],
    actual_error_type: Optional[str],
    notes: Optional[str] = None,
    calibrator: Optional[ConfidenceCalibrator] = None,
) -> Dict[str, Any]:
    """教师纠错入库，并作为校准器的历史准确率信号。"""
    store.insert(
        CORRECTIONS,
        {
            "trace_id": trace_id,
            "original_error_type": original_error_type,
            "actual_error_type": actual_error_type,
            "notes": notes,
            "created_at": _now_iso(),
        },
    )
    if calibrator is not None:
        traces = store.query(TRACES, id=trace_id)
        trace = traces[0] if traces else {}
        calibrator.record_outcome(
            {"confidence": trace.get("confidence")},
            was_correct=original_error_type == actual_error_type,
            document_type=trace.get("document_type"),
        )
    return {"success": True}
