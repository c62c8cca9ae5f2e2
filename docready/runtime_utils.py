"""运行时辅助工具：配置加载、模式判定与静帧缩放。"""

from __future__ import annotations

import os
from typing import Tuple

import cv2
import numpy as np

from docready import config as cfg


def build_runtime_config(
    mode: str,
    config_path: str | None,
    debug: bool,
    frames_per_still: int | None = None,
    no_analyze: bool = False,
) -> dict:
    """
    加载配置并应用命令行开关；解读后端与远端存储可由环境变量补齐。
    只有入口层读取环境变量，核心组件只看显式配置。
    """
    conf = cfg.load_config(config_path, mode=mode)
    conf["run"]["debug"] = bool(debug or conf["run"].get("debug", False))
    if frames_per_still:
        conf["run"]["frames_per_still"] = int(frames_per_still)
    if no_analyze:
        conf["scheduler"]["auto_analyze"] = False
    interp = conf["interpreter"]
    interp["endpoint"] = interp.get("endpoint") or os.environ.get("DOCREADY_INTERPRETER_URL")
    store = conf["storage"]
    store["remote_url"] = store.get("remote_url") or os.environ.get("DOCREADY_STORE_URL")
    store["remote_key"] = store.get("remote_key") or os.environ.get("DOCREADY_STORE_KEY")
    return conf


def prepare_still(image: np.ndarray, conf: dict) -> Tuple[np.ndarray, str]:
    """
    按配置约束静帧尺寸，返回 (image, effective_mode)。
    auto 模式按原始长边决定是否关闭锐化、收紧倾斜估计尺寸。
    """
    h_raw, w_raw = image.shape[:2]
    h, w = h_raw, w_raw
    max_side = conf["limits"]["max_side"]
    min_side = conf["limits"]["min_side"]
    scale_down = min(1.0, max_side / max(h, w))
    if scale_down < 1.0:
        image = cv2.resize(image, (int(w * scale_down), int(h * scale_down)), interpolation=cv2.INTER_AREA)
        h, w = image.shape[:2]
    min_dim = min(h, w)
    if min_dim < min_side:
        scale_up = min(min_side / float(min_dim), max_side / float(max(h, w)))
        if scale_up > 1.0:
            image = cv2.resize(image, (int(w * scale_up), int(h * scale_up)), interpolation=cv2.INTER_CUBIC)

    effective_mode = conf["mode"]
    if conf.get("mode") == "auto":
        longest = max(h_raw, w_raw)
        if longest <= 1800:
            conf["enhance"]["sharpen"] = False
            conf["quality"]["hough_max_side"] = min(conf["quality"]["hough_max_side"], 512)
            effective_mode = "auto-fast"
        else:
            conf["enhance"]["sharpen"] = True
            effective_mode = "auto-quality"
    return image, effective_mode
