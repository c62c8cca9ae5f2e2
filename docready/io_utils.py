"""文件与图像读写工具。"""

import base64
import io
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
from PIL import ExifTags, Image

_SIGNATURES = (
    (b"\xff\xd8\xff", "jpeg"),
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"RIFF", "webp"),
)


def _apply_exif_orientation(img: Image.Image) -> Image.Image:
    """根据 EXIF 方向信息旋转图片，避免手机竖拍的照片横躺。"""
    try:
        exif = img.getexif()
        if not exif:
            return img
        orientation_key = next((k for k, v in ExifTags.TAGS.items() if v == "Orientation"), None)
        if orientation_key is None or orientation_key not in exif:
            return img
        orientation = exif.get(orientation_key)
        if orientation == 3:
            return img.rotate(180, expand=True)
        if orientation == 6:
            return img.rotate(270, expand=True)
        if orientation == 8:
            return img.rotate(90, expand=True)
    except Exception:  # noqa: BLE001
        # EXIF 损坏时按原图处理
        return img
    return img


def load_image(path: str) -> np.ndarray:
    """读取图像为 RGB numpy 数组。"""
    with Image.open(path) as img:
        img = _apply_exif_orientation(img).convert("RGB")
        return np.array(img)


def save_image(array: np.ndarray, path: str) -> None:
    """将 numpy 数组保存为图片文件，创建父目录。"""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(array).save(path)


def encode_image(array: np.ndarray, quality: int = 92) -> bytes:
    """RGB 数组编码为 JPEG 字节，作为分析传输载荷。"""
    buf = io.BytesIO()
    img = Image.fromarray(np.ascontiguousarray(array.astype(np.uint8)))
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    img.save(buf, format="JPEG", quality=int(quality))
    return buf.getvalue()


def decode_image(payload: bytes) -> np.ndarray:
    """字节载荷解码为 RGB 数组，失败抛 PIL 的异常。"""
    with Image.open(io.BytesIO(payload)) as img:
        return np.array(_apply_exif_orientation(img).convert("RGB"))


def sniff_format(payload: bytes) -> Optional[str]:
    """按文件头判断图片格式，不认识返回 None。"""
    for magic, name in _SIGNATURES:
        if payload[: len(magic)] == magic:
            if name == "webp" and payload[8:12] != b"WEBP":
                continue
            return name
    return None


def to_data_url(payload: bytes) -> str:
    fmt = sniff_format(payload) or "jpeg"
    return f"data:image/{fmt};base64," + base64.b64encode(payload).decode("ascii")


def list_images(input_path: str) -> Tuple[str, ...]:
    """列出输入路径下的所有支持图片文件（简单按后缀过滤）。"""
    p = Path(input_path)
    exts = {".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff", ".webp"}
    if p.is_file() and p.suffix.lower() in exts:
        return (str(p),)
    if p.is_dir():
        return tuple(str(f) for f in sorted(p.iterdir()) if f.suffix.lower() in exts)
    return ()
