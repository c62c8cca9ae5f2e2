"""MCP Server for docready capture readiness and analysis."""

from __future__ import annotations

import logging
import time
from itertools import combinations
from pathlib import Path
from typing import Any

from docready import config as cfg
from docready import io_utils
from docready import runtime_utils
from docready.fingerprint import SemanticFingerprint
from docready.session import ScanSession, create_session

try:
    from fastmcp import FastMCP
except ImportError:
    raise ImportError(
        "fastmcp is required for MCP server mode. "
        "Install with: pip install fastmcp"
    )

# Initialize MCP server
mcp = FastMCP("docready")
log = logging.getLogger(__name__)


def _warm_up(session: ScanSession, image, frames: int) -> Any:
    """同一张图喂若干周期，让平滑器与就绪引擎积累到稳定状态。"""
    cycle = None
    t = time.time()
    for _ in range(max(1, frames)):
        cycle = session.process_frame(image, timestamp=t)
        t += cycle.next_interval
    return cycle, t


@mcp.tool()
def assess_image(input_path: str, frames: int = 8, mode: str = "quality") -> dict[str, Any]:
    """
    Run detection, readiness and still-quality analysis on one image.

    Args:
        input_path: Path to the image file
        frames: Number of detection cycles to replay before assessing
        mode: Processing mode - "fast", "quality", or "auto"

    Returns:
        Dictionary with detected quad, readiness factors, blocking reasons,
        guidance and the still quality report
    """
    if not Path(input_path).exists():
        return {"success": False, "error": f"Input file not found: {input_path}"}
    try:
        conf = cfg.load_config(None, mode=mode)
        image = io_utils.load_image(input_path)
        session = ScanSession(conf)
        cycle, _ = _warm_up(session, image, frames)
        readiness = cycle.readiness
        still, effective_mode = runtime_utils.prepare_still(image, session.conf)
        session.analyzer.cfg["hough_max_side"] = session.conf["quality"]["hough_max_side"]
        quality = session.analyzer.analyze(still)
        return {
            "success": True,
            "input": input_path,
            "mode_effective": effective_mode,
            "detected": cycle.detection.detected,
            "quad": cycle.detection.quad,
            "alignment": cycle.detection.alignment,
            "ready": readiness.ready,
            "readiness_score": readiness.score,
            "factors": readiness.factors,
            "blocking_reasons": [{"code": b.code, "message": b.message, "severity": b.severity} for b in readiness.blocking_reasons],
            "guidance": readiness.guidance.primary.message,
            "quality": {
                "score": quality.score,
                "metrics": quality.metrics,
                "issues": [{"type": i.type, "severity": i.severity, "message": i.message} for i in quality.issues],
                "recommendations": quality.recommendations,
                "should_proceed": quality.should_proceed,
                "confidence": quality.confidence,
            },
        }
    except Exception as e:
        log.exception("Failed to assess image")
        return {"success": False, "error": str(e)}


@mcp.tool()
def check_duplicates(input_paths: list[str], threshold: float | None = None) -> dict[str, Any]:
    """
    Compare semantic fingerprints of a set of images.

    Args:
        input_paths: Image file paths to compare pairwise
        threshold: Similarity above which two images count as duplicates (default 0.85)

    Returns:
        Dictionary with per-image fingerprints and all pairwise similarities
    """
    missing = [p for p in input_paths if not Path(p).exists()]
    if missing:
        return {"success": False, "error": f"Input file not found: {missing[0]}"}
    fp_cfg = {"duplicate_threshold": threshold} if threshold is not None else None
    fingerprinter = SemanticFingerprint(fp_cfg)
    try:
        prints = {p: fingerprinter.generate(io_utils.load_image(p)) for p in input_paths}
        pairs = []
        for a, b in combinations(input_paths, 2):
            is_dup, sim = fingerprinter.is_duplicate(prints[a], prints[b])
            pairs.append({"a": a, "b": b, "similarity": round(sim, 4), "duplicate": is_dup})
        return {
            "success": True,
            "fingerprints": {p: fp["combined"] for p, fp in prints.items()},
            "pairs": pairs,
            "duplicates": [pr for pr in pairs if pr["duplicate"]],
        }
    except Exception as e:
        log.exception("Failed to fingerprint images")
        return {"success": False, "error": str(e)}


@mcp.tool()
def analyze_document(input_path: str, frames: int = 8, mode: str = "quality") -> dict[str, Any]:
    """
    Run the full still path on one image: quality gate, enhancement,
    fingerprint, and the gated analysis pipeline.

    Uses the interpretation endpoint from DOCREADY_INTERPRETER_URL when set,
    otherwise returns an offline estimate flagged as such.

    Args:
        input_path: Path to the image file
        frames: Number of detection cycles to replay before capturing
        mode: Processing mode - "fast", "quality", or "auto"

    Returns:
        Dictionary with success status, error code or result, and gate trace
    """
    if not Path(input_path).exists():
        return {"success": False, "error": f"Input file not found: {input_path}"}
    try:
        conf = runtime_utils.build_runtime_config(mode, None, debug=False)
        image = io_utils.load_image(input_path)
        session = create_session(conf)
        _, t = _warm_up(session, image, frames)
        outcome = session.capture(image, timestamp=t)
        pipeline = outcome.pipeline
        return {
            "success": outcome.success,
            "reason": outcome.reason,
            "code": outcome.code,
            "message": outcome.message,
            "quality_score": outcome.quality.score if outcome.quality else None,
            "enhancement": outcome.enhancement.applied_fixes if outcome.enhancement else [],
            "result": pipeline.result if pipeline else None,
            "calibration": pipeline.calibration if pipeline else None,
            "offline_estimate": pipeline.offline_estimate if pipeline else False,
            "warnings": pipeline.warnings if pipeline else [],
            "gates": [{"name": g.name, "status": g.status, "detail": g.detail} for g in pipeline.trace] if pipeline else [],
            "trace_id": outcome.trace_id,
        }
    except Exception as e:
        log.exception("Failed to analyze document")
        return {"success": False, "error": str(e)}


def main():
    """Start the MCP server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    mcp.run()


if __name__ == "__main__":
    main()
