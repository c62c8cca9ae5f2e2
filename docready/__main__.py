"""Entry point for docready package."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, List

log = logging.getLogger(__name__)


def _capture_entry(path: str, outcome, readiness) -> Dict[str, Any]:
    """单次拍摄摘要：不写像素。"""
    quality = outcome.quality
    pipeline = outcome.pipeline
    entry: Dict[str, Any] = {
        "file": Path(path).name,
        "success": outcome.success,
        "reason": outcome.reason,
        "code": outcome.code,
        "message": outcome.message,
        "page_id": outcome.page_id,
        "quality_score": quality.score if quality else None,
        "issues": [i.type for i in quality.issues] if quality else [],
        "enhancement": outcome.enhancement.applied_fixes if outcome.enhancement else [],
        "fingerprint": (outcome.fingerprint or {}).get("combined"),
        "trace_id": outcome.trace_id,
        "elapsed": round(outcome.elapsed, 3),
        "readiness": {
            "ready": readiness.ready,
            "score": readiness.score,
            "blocking": [b.code for b in readiness.blocking_reasons],
            "guidance": readiness.guidance.primary.message,
        }
        if readiness is not None
        else None,
    }
    if outcome.duplicate is not None:
        entry["duplicate_of"] = outcome.duplicate.page_id
        entry["similarity"] = outcome.duplicate.similarity
    if pipeline is not None:
        entry["offline_estimate"] = pipeline.offline_estimate
        entry["warnings"] = pipeline.warnings
        entry["gates"] = [{"name": g.name, "status": g.status, "detail": g.detail} for g in pipeline.trace]
        if pipeline.calibration:
            entry["confidence"] = pipeline.calibration["overall"]
    return entry


def process_inputs(
    input_path: str,
    output_root: str,
    mode: str = "quality",
    config_path: str | None = None,
    debug: bool = False,
    frames_per_still: int | None = None,
    no_analyze: bool = False,
) -> Dict[str, Any]:
    """
    把每张图片当作一段静止的取景画面回放若干个检测周期，再拍摄一次。
    时间戳按轮询间隔模拟推进，因此稳定性与自动节流按真实时序计算。
    """
    from docready import debug_utils, io_utils, runtime_utils, summary_utils
    from docready.config import DEFAULTS
    from docready.session import create_session

    t_start = time.time()
    conf = runtime_utils.build_runtime_config(mode, config_path, debug, frames_per_still, no_analyze)
    if conf["storage"].get("local_dir") == DEFAULTS["storage"]["local_dir"]:
        conf["storage"]["local_dir"] = str(Path(output_root) / "store")
    out_dir = Path(output_root)
    out_dir.mkdir(parents=True, exist_ok=True)
    debug_dir = out_dir / "debug" if conf["run"]["debug"] else None

    session = create_session(conf)
    captures: List[Dict[str, Any]] = []
    stage_times = {"detect": 0.0, "capture": 0.0}
    effective_mode = conf["mode"]
    clock = time.time()
    per_still = int(conf["run"]["frames_per_still"])

    for path in io_utils.list_images(input_path):
        image = io_utils.load_image(path)
        session.next_page()
        cycle = None
        t0 = time.time()
        for _ in range(per_still):
            cycle = session.process_frame(image, timestamp=clock)
            clock += cycle.next_interval
        stage_times["detect"] += time.time() - t0

        t0 = time.time()
        readiness = cycle.readiness if cycle is not None else None
        outcome = session.capture(image, timestamp=clock)
        stage_times["capture"] += time.time() - t0
        effective_mode = session.effective_mode
        captures.append(_capture_entry(path, outcome, readiness))
        log.info("cli: %s success=%s reason=%s page=%s", Path(path).name, outcome.success, outcome.reason, outcome.page_id)

        if debug_dir is not None and cycle is not None:
            label = f"{cycle.detection.alignment} score={cycle.readiness.score:.2f}"
            overlay = debug_utils.draw_quad_overlay(image, cycle.detection.quad, cycle.detection.scale, cycle.detection.alignment, label)
            debug_utils.save_debug_image(overlay, debug_dir / f"{Path(path).stem}_overlay.png")

    pages = [summary_utils.page_entry(p) for p in session.tracker.pages()]
    summary = summary_utils.build_summary(
        input_path=input_path,
        mode=conf["mode"],
        effective_mode=effective_mode,
        pages=pages,
        captures=captures,
        synthesis=session.synthesis(),
        elapsed_total=time.time() - t_start,
        stage_times=stage_times,
        debug_dir=str(debug_dir) if debug_dir else None,
    )
    summary_utils.save_summary(summary, out_dir / "run_summary.json")
    return summary


def run_cli():
    """Run the CLI mode."""
    from docready import io_utils

    parser = argparse.ArgumentParser(description="Document capture readiness and analysis CLI")
    parser.add_argument("--input", required=True, help="Input image or directory, replayed as camera frames")
    parser.add_argument("--output", required=True, help="Output directory")
    parser.add_argument("--mode", default="quality", choices=["fast", "quality", "auto"], help="Processing mode")
    parser.add_argument("--config", default=None, help="Config file path")
    parser.add_argument("--debug", action="store_true", help="Write quad overlays")
    parser.add_argument("--frames-per-still", type=int, default=None, help="Detection cycles fed per image before capture")
    parser.add_argument("--no-analyze", action="store_true", help="Capture only, skip the analysis pipeline")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if not io_utils.list_images(args.input):
        logging.error("No images found: %s", args.input)
        sys.exit(1)

    summary = process_inputs(
        input_path=args.input,
        output_root=args.output,
        mode=args.mode,
        config_path=args.config,
        debug=args.debug,
        frames_per_still=args.frames_per_still,
        no_analyze=args.no_analyze,
    )
    ok = sum(1 for c in summary["captures"] if c["success"])
    logging.info("Captured %d/%d, summary at %s", ok, len(summary["captures"]), Path(args.output) / "run_summary.json")


def run_mcp():
    """Run the MCP server mode."""
    from docready.mcp_server import main as mcp_main
    mcp_main()


def main():
    """Main entry point that dispatches to CLI or MCP."""
    if len(sys.argv) > 1 and sys.argv[1] == "--mcp":
        sys.argv.pop(1)  # Remove --mcp flag
        run_mcp()
    else:
        run_cli()


if __name__ == "__main__":
    main()
