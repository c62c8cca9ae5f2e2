"""summary 构建与 JSON 序列化工具。"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np


def json_default(obj):
    """兼容 numpy 标量/数组与枚举的 JSON 序列化。"""
    if isinstance(obj, (np.bool_,)):
        return bool(obj)
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (np.floating,)):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return f"<ndarray shape={list(obj.shape)}>"
    if isinstance(obj, Enum):
        return obj.value
    return str(obj)


def save_summary(summary: Dict[str, Any], path: Path) -> None:
    """保存 run_summary.json，保证目录存在。"""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary, ensure_ascii=False, indent=2, default=json_default), encoding="utf-8")


def page_entry(page, capture: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """单页摘要：不写像素，只写状态/指纹/结果。"""
    entry = {
        "page_id": page.id,
        "status": page.status.value,
        "frame_count": page.frame_count,
        "first_seen": page.first_seen,
        "last_seen": page.last_seen,
        "last_quad": [list(p) for p in page.last_quad],
        "fingerprint": (page.fingerprint or {}).get("combined"),
        "has_result": page.analysis_result is not None,
        "error": page.error,
    }
    if capture:
        entry["capture"] = capture
    return entry


def build_summary(
    input_path: str,
    mode: str,
    effective_mode: str,
    pages: List[Dict[str, Any]],
    captures: List[Dict[str, Any]],
    synthesis: Optional[Dict[str, Any]],
    elapsed_total: float,
    stage_times: Dict[str, Any],
    debug_dir: str | None = None,
) -> Dict[str, Any]:
    """构建 run_summary 字典，集中管理字段。"""
    summary = {
        "input": input_path,
        "mode": mode,
        "mode_effective": effective_mode,
        "pages": pages,
        "captures": captures,
        "synthesis": synthesis,
        "elapsed_total": elapsed_total,
        "stage_times": stage_times,
    }
    if debug_dir:
        summary["debug_dir"] = debug_dir
    return summary
