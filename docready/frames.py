"""帧来源：摄像头、图片目录回放，以及检测帧下采样。"""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol

import cv2
import numpy as np

from docready import io_utils
from docready.context import Frame

log = logging.getLogger(__name__)


class FrameSource(Protocol):
    def read(self) -> Optional[np.ndarray]: ...


def downscale_frame(image: np.ndarray, max_dim: int = 320) -> Frame:
    """按最长边缩到 max_dim 以内，scale = 检测帧 / 原帧。"""
    h, w = image.shape[:2]
    scale = min(1.0, max_dim / float(max(h, w)))
    if scale < 1.0:
        pixels = cv2.resize(image, (max(1, int(round(w * scale))), max(1, int(round(h * scale)))), interpolation=cv2.INTER_AREA)
    else:
        pixels = image
    fh, fw = pixels.shape[:2]
    return Frame(pixels=pixels, width=fw, height=fh, scale=scale)


class VideoCaptureSource:
    """包装调用方持有的 cv2.VideoCapture，输出 RGB。"""

    def __init__(self, capture: "cv2.VideoCapture"):
        self.capture = capture

    def read(self) -> Optional[np.ndarray]:
        ok, frame = self.capture.read()
        if not ok or frame is None:
            return None
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)


class DirectoryFrameSource:
    """把图片逐张当作视频帧回放，每张重复 repeat 次。"""

    def __init__(self, input_path: str, repeat: int = 1):
        self.paths: List[str] = list(io_utils.list_images(input_path))
        self.repeat = max(1, int(repeat))
        self._index = 0
        self._current: Optional[np.ndarray] = None
        log.info("frames: 回放 %d 张图片 repeat=%d", len(self.paths), self.repeat)

    def read(self) -> Optional[np.ndarray]:
        pos, rep = divmod(self._index, self.repeat)
        if pos >= len(self.paths):
            return None
        if rep == 0:
            self._current = io_utils.load_image(self.paths[pos])
        self._index += 1
        return self._current
