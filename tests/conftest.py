"""共享测试夹具：用 numpy + cv2 画出的合成文档照片。"""

from __future__ import annotations

import numpy as np
import pytest

from docready.context import Capture, Frame, Guidance, GuidanceHint, Page, PageStatus, ReadinessAssessment


def draw_document(
    width: int = 640,
    height: int = 480,
    page=(60, 40, 580, 440),
    background: int = 30,
    paper: int = 240,
    ink: int = 20,
    seed: int = 7,
) -> np.ndarray:
    """暗色桌面上的一张白纸，纸上是成行的深色“单词”块。"""
    rng = np.random.default_rng(seed)
    img = np.full((height, width, 3), background, dtype=np.uint8)
    x0, y0, x1, y1 = page
    img[y0:y1, x0:x1] = paper
    margin_x = max(8, (x1 - x0) // 13)
    margin_y = max(8, (y1 - y0) // 20)
    row_h = max(4, (y1 - y0) // 20)
    y = y0 + margin_y
    while y + row_h < y1 - margin_y:
        x = x0 + margin_x
        while True:
            w = int(rng.integers(row_h, row_h * 2 + 1))
            if x + w >= x1 - margin_x:
                break
            img[y : y + row_h, x : x + w] = ink
            x += w + int(rng.integers(row_h // 2 + 1, row_h + 1))
        y += row_h + int(row_h * 0.6)
    return img


def rect_quad(x0: float, y0: float, x1: float, y1: float):
    return [(x0, y0), (x1, y0), (x1, y1), (x0, y1)]


@pytest.fixture
def document_image() -> np.ndarray:
    return draw_document()


@pytest.fixture
def other_document_image() -> np.ndarray:
    """版面明显不同的另一页：小纸片压在左上角，文字排布不同。"""
    return draw_document(page=(20, 20, 300, 220), seed=99)


@pytest.fixture
def blank_frame() -> Frame:
    pixels = np.full((240, 320, 3), 30, dtype=np.uint8)
    return Frame(pixels=pixels, width=320, height=240, scale=1.0)


@pytest.fixture
def rect_frame() -> Frame:
    """320x240 暗底上一块白色矩形 (60,40)-(260,200)。"""
    pixels = np.full((240, 320, 3), 30, dtype=np.uint8)
    pixels[40:200, 60:260] = 220
    return Frame(pixels=pixels, width=320, height=240, scale=1.0)


@pytest.fixture
def make_capture(document_image):
    from docready import io_utils

    def _make(quad="default", image=None, timestamp=1000.0):
        img = document_image if image is None else image
        if quad == "default":
            quad = rect_quad(30, 20, 290, 220)
        return Capture(image=img, payload=io_utils.encode_image(img), quad=quad, timestamp=timestamp, readiness_score=0.8)

    return _make


def make_page(page_id: int, result: dict, status: PageStatus = PageStatus.COMPLETE) -> Page:
    quad = rect_quad(10, 10, 100, 100)
    return Page(id=page_id, first_seen=0.0, last_seen=0.0, last_quad=quad, status=status, analysis_result=result)


def worksheet(score: float, responses: list, strengths=None, confidence: float = 0.8) -> dict:
    return {
        "documentType": "WORKSHEET",
        "responses": responses,
        "overallAssessment": {"score": score, "grade": "B", "strengths": strengths or []},
        "confidence": {"overall": confidence},
    }


def readiness_snapshot(edge_density=0.2, timestamp=1000.0, stability_met=True, score=0.8) -> ReadinessAssessment:
    """拍摄时刻的就绪快照。"""
    hint = GuidanceHint(priority=0, message="Ready to capture", icon="ok")
    return ReadinessAssessment(
        ready=stability_met,
        score=score,
        factors={"edge_density": edge_density, "focus": 0.8, "stability": 1.0},
        blocking_reasons=[],
        guidance=Guidance(primary=hint, hints=[hint], is_ready=stability_met),
        quad=rect_quad(30, 20, 290, 220),
        timestamp=timestamp,
        stability_met=stability_met,
    )
