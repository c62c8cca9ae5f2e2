"""配置集中管理模块：默认参数 + YAML + 模式合并。"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict

import yaml

DEFAULTS: Dict[str, Any] = {
    "mode": "quality",  # fast | quality | auto
    "limits": {
        "max_side": 2400,  # 静帧最长边
        "min_side": 480,  # 静帧最小边
        "detect_max_dim": 320,  # 检测帧最长边（下采样后）
    },
    "detection": {
        "edge_threshold": 30,  # Sobel 幅值阈值
        "num_lines": 20,
        "sample_step": 2,  # 投票时隔点采样
        "min_votes": 30,
        "min_votes_ratio": 0.1,  # 相对短边
        "rho_tolerance": 10,
        "theta_tolerance_deg": 5,
        "bucket_tolerance_deg": 25,  # 水平/竖直分桶容差
        "bounds_margin": 5,  # 交点允许越界像素
        "min_area_ratio": 0.12,
        "max_area_ratio": 0.95,
        "min_angle": 55.0,
        "max_angle": 125.0,
    },
    "smoothing": {
        "history_size": 8,
        "show_confidence": 0.6,  # 近期帧检出比例下限
        "position_tolerance": 25.0,  # 角点漂移像素（下采样坐标）
        "stable_window": 3,
        "too_far": 0.2,
        "too_close": 0.92,
        "off_center": 0.18,  # 相对帧宽
        "skew_ratio": 0.65,
    },
    "tracker": {
        "buffer_size": 10,
        "iou_threshold": 0.45,  # 含边界
        "jitter_px": 8.0,
        "min_frames": 4,
    },
    "readiness": {
        "thresholds": {
            "quad_confidence": 0.7,
            "stability": 0.85,
            "quality_estimate": 0.5,
            "edge_density": 0.1,
            "aspect_ratio": [0.5, 2.0],
            "coverage": 0.15,
            "max_coverage": 0.95,
            "focus_score": 0.4,
            "min_confidence": 0.3,  # 低于即 critical 阻断
        },
        "weights": {
            "quad_confidence": 0.25,
            "stability": 0.25,
            "quality_estimate": 0.20,
            "edge_density": 0.15,
            "coverage": 0.15,
        },
        "ready_score": 0.7,
        "stability_duration_ms": 500,
        "history_size": 10,
        "jitter_scale_px": 10.0,  # 平均位移达到该值时稳定度归零
        "edge_gradient": 20.0,  # 中心差分梯度幅值，超过即算边缘像素
        "min_quad_extent": 10.0,
    },
    "quality": {
        "weights": {
            "blur": 0.25,
            "brightness": 0.15,
            "contrast": 0.20,
            "noise": 0.15,
            "skew": 0.10,
            "text_density": 0.15,
        },
        "proceed_score": 0.4,
        "blur_scale": 500.0,
        "contrast_scale": 200.0,
        "noise_scale": 20.0,
        "noise_block": 8,
        "skew_edge_threshold": 100.0,
        "hough_max_side": 800,  # 倾斜/文本密度在限尺寸副本上计算
        "adaptive_block": 31,
        "adaptive_c": 10,
    },
    "enhance": {
        "enabled": True,
        "brightness_factor": 1.3,
        "contrast_clip": [2.0, 98.0],
        "sharpen": True,
        "sharpen_below_blur": 0.7,
        "unsharp_amount": 1.0,
        "tone_gamma": 1.2,
        "max_improvement": 0.3,
    },
    "fingerprint": {
        "duplicate_threshold": 0.85,
        "weights": {"perceptual": 0.50, "structural": 0.35, "color": 0.15},
    },
    "preflight": {
        "min_payload_bytes": 1000,
        "stale_capture_ms": 5000,
        "min_quad_area": 1000.0,
        "min_edge_length": 20.0,
        "edge_density_fail": 0.05,
        "edge_density_warn": 0.1,
        "content_floor": 0.1,
        "content_size": 64,
        "content_diff": 30,
        "stale_readiness_ms": 1000,
        "min_readiness_score": 0.6,
    },
    "pipeline": {
        "content_floor": 0.05,
        "suspicious_confidence": 1.0,
        "document_type": "WORKSHEET",
    },
    "calibration": {
        "weights": {
            "image_quality": 0.25,
            "response_consistency": 0.20,
            "historical_accuracy": 0.25,
            "content_complexity": 0.15,
            "raw_confidence": 0.15,
        },
        "history_window": 20,
        "history_limit": 100,
        "floor": 0.1,
        "ceiling": 0.95,
    },
    "reasoner": {
        "trend_threshold": 10.0,
        "pattern_min_count": 2,
    },
    "scheduler": {
        "fast_interval_ms": 200,
        "slow_interval_ms": 500,
        "throttle_after_ms": 2000,
        "auto_capture": False,
        "auto_capture_delay_ms": 1200,
        "auto_analyze": True,
    },
    "interpreter": {
        "endpoint": None,  # 为空时走离线估算
        "api_key": None,
        "timeout": 30,
        "jpeg_quality": 92,
    },
    "storage": {
        "remote_url": None,
        "remote_key": None,
        "timeout": 10,
        "local_dir": ".docready/store",
    },
    "output": {
        "jpeg_quality": 92,
    },
    "run": {
        "debug": False,
        "frames_per_still": 8,
    },
}


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            base[k] = _deep_update(base[k], v)
        else:
            base[k] = v
    return base


def merged(defaults: Dict[str, Any], override: Dict[str, Any] | None) -> Dict[str, Any]:
    """组件级配置合并：默认值深拷贝后覆盖，不修改入参。"""
    cfg = copy.deepcopy(defaults)
    if override:
        cfg = _deep_update(cfg, copy.deepcopy(override))
    return cfg


def load_config(config_path: str | None = None, mode: str = "quality") -> Dict[str, Any]:
    """加载配置，合并默认 + YAML + 模式。"""
    cfg = copy.deepcopy(DEFAULTS)
    if config_path:
        path = Path(config_path)
        if path.exists():
            with path.open("r", encoding="utf-8") as f:
                yaml_cfg = yaml.safe_load(f) or {}
                cfg = _deep_update(cfg, yaml_cfg)
    cfg["mode"] = mode or cfg.get("mode", "quality")
    # 模式驱动的轻量参数映射
    mode_lower = (cfg.get("mode") or "quality").lower()
    if mode_lower == "fast":
        cfg["limits"]["max_side"] = min(cfg["limits"]["max_side"], 1280)
        cfg["quality"]["hough_max_side"] = min(cfg["quality"]["hough_max_side"], 512)
        cfg["enhance"]["sharpen"] = False
    elif mode_lower == "quality":
        cfg["enhance"]["sharpen"] = True
    # auto 在拿到静帧尺寸后再决定，见 runtime_utils.prepare_still
    return cfg
