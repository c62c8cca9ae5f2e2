import pytest

from docready.detect import EdgeQuadDetector
from docready.frames import downscale_frame
from docready.readiness import ReadinessEngine
from docready.smoothing import TemporalSmoother
from conftest import rect_quad

SIZE = (320, 240)
GOOD = rect_quad(60, 40, 260, 200)


def _feed(engine, quad, times, confidence=0.9, frame_size=SIZE):
    out = None
    for ts in times:
        out = engine.assess(True, quad, confidence, timestamp=ts, frame_size=frame_size)
    return out


def test_no_document():
    out = ReadinessEngine().assess(False, None, 0.0, timestamp=1.0)
    assert not out.ready
    assert out.blocking_reasons[0].code == "NO_DOCUMENT"
    assert out.factors is None
    assert out.guidance.primary.message == "Position document in frame"


@pytest.mark.parametrize(
    "quad",
    [
        [(0, 0), (5, 0), (5, 5), (0, 5)],
        [(0, 0), (100, 100), (100, 0), (0, 100)],
        [(0, 0), (1, 1), (2, 2)],
        [(0, 0), (1, 1), (2, 2), (float("nan"), 3)],
    ],
)
def test_invalid_geometry(quad):
    out = ReadinessEngine().assess(True, quad, 0.9, timestamp=1.0, frame_size=SIZE)
    assert not out.ready
    assert out.blocking_reasons[0].code == "INVALID_GEOMETRY"


def test_becomes_ready_after_stability_duration():
    engine = ReadinessEngine()
    out = _feed(engine, GOOD, [0.0, 0.1, 0.2])
    assert out.factors["stability"] == pytest.approx(1.0)
    assert out.stable_since == 0.2
    assert not out.stability_met
    assert out.guidance.primary.message == "Almost there…"
    out = _feed(engine, GOOD, [0.5, 0.7])
    assert out.stability_met
    assert out.stability_progress == pytest.approx(1.0)
    assert out.ready
    assert out.quad == GOOD
    assert out.guidance.primary.message == "Ready to capture"


def test_stability_resets_immediately_on_motion():
    engine = ReadinessEngine()
    out = _feed(engine, GOOD, [0.0, 0.1, 0.2, 0.5, 0.8])
    assert out.stability_met
    moved = rect_quad(90, 40, 290, 200)
    out = engine.assess(True, moved, 0.9, timestamp=0.9, frame_size=SIZE)
    assert out.stable_since is None
    assert not out.stability_met
    assert out.stability_progress == 0.0
    assert not out.ready
    assert out.guidance.primary.message == "Hold steady"


def test_coverage_ten_percent_is_too_far():
    quad = rect_quad(0, 0, 40, 50)
    out = ReadinessEngine().assess(True, quad, 0.9, timestamp=0.0, frame_size=(200, 100))
    assert out.factors["coverage"] == pytest.approx(0.10)
    assert "TOO_FAR" in [b.code for b in out.blocking_reasons]
    assert not out.ready
    assert out.quad is None


def test_coverage_ninety_six_percent_is_too_close():
    quad = rect_quad(0, 0, 96, 100)
    out = ReadinessEngine().assess(True, quad, 0.9, timestamp=0.0, frame_size=(100, 100))
    assert out.factors["coverage"] == pytest.approx(0.96)
    assert "TOO_CLOSE" in [b.code for b in out.blocking_reasons]
    assert not out.ready


def test_critical_block_dominates_high_score():
    engine = ReadinessEngine()
    _feed(engine, GOOD, [0.0, 0.1, 0.2, 0.5, 0.8])
    out = engine.assess(True, GOOD, 0.2, timestamp=1.0, frame_size=SIZE)
    codes = [b.code for b in out.blocking_reasons]
    assert codes[0] == "LOW_CONFIDENCE"
    assert out.blocking_reasons[0].severity == "critical"
    assert not out.ready
    assert out.guidance.primary.priority == 0


def test_any_warning_block_prevents_ready():
    engine = ReadinessEngine()
    wide = rect_quad(10, 90, 310, 150)
    out = _feed(engine, wide, [0.0, 0.1, 0.2, 0.5, 0.8])
    assert "INVALID_SHAPE" in [b.code for b in out.blocking_reasons]
    assert not out.ready


def test_blank_surface_blocks_no_content(blank_frame):
    out = ReadinessEngine().assess(True, GOOD, 0.9, frame=blank_frame, timestamp=0.0)
    codes = [b.code for b in out.blocking_reasons]
    assert "NO_CONTENT" in codes
    assert out.factors["edge_density"] == 0.0


def test_document_frame_has_content(document_image):
    frame = downscale_frame(document_image, 320)
    quad = rect_quad(30, 20, 290, 220)
    out = ReadinessEngine().assess(True, quad, 0.9, frame=frame, timestamp=0.0)
    assert out.factors["edge_density"] > 0.1
    assert out.factors["focus_score"] > 0.4
    assert out.factors["coverage"] == pytest.approx(260 * 200 / (320 * 240))
    assert "NO_CONTENT" not in [b.code for b in out.blocking_reasons]


def test_coverage_fallback_without_frame_size():
    out = ReadinessEngine().assess(True, rect_quad(0, 0, 100, 100), 0.9, timestamp=0.0)
    assert out.factors["coverage"] == pytest.approx(10000 / (100 * 100 * 1.5))


def test_reset_clears_stability():
    engine = ReadinessEngine()
    _feed(engine, GOOD, [0.0, 0.1, 0.2])
    engine.reset()
    assert engine.stable_since is None
    out = engine.assess(True, GOOD, 0.9, timestamp=0.3, frame_size=SIZE)
    assert out.factors["stability"] == 0.0


def test_stability_duration_survives_accumulated_steps():
    engine = ReadinessEngine()
    times, t = [], 1000.0
    for _ in range(8):
        times.append(t)
        t += 0.1
    outs = [engine.assess(True, GOOD, 0.9, timestamp=ts, frame_size=SIZE) for ts in times]
    assert outs[2].stable_since == times[2]
    assert not outs[6].stability_met
    assert outs[7].stability_met
    assert outs[7].stability_progress == 1.0


@pytest.mark.parametrize("offset", [0.0, 1.0, 2.0, 3.0, -3e-15])
def test_edge_density_does_not_depend_on_pixel_phase(document_image, offset):
    frame = downscale_frame(document_image, 320)
    base = ReadinessEngine()._edge_density(frame.pixels, rect_quad(30, 20, 290, 220))
    quad = rect_quad(30 + offset, 20 + offset, 290 + offset, 220 + offset)
    density = ReadinessEngine()._edge_density(frame.pixels, quad)
    assert density > 0.1
    assert density == pytest.approx(base, abs=0.03)


def test_detected_and_smoothed_quad_has_content(document_image):
    frame = downscale_frame(document_image, 320)
    detector = EdgeQuadDetector()
    smoother = TemporalSmoother()
    for i in range(6):
        detection = smoother.update(detector.detect(frame), frame, timestamp=i * 0.2)
    assert detection.detected
    out = ReadinessEngine().assess(True, detection.quad, detection.confidence, frame=frame, timestamp=1.2)
    assert out.factors["edge_density"] > 0.1
    assert "NO_CONTENT" not in [b.code for b in out.blocking_reasons]
