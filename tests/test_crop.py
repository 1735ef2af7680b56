from __future__ import annotations

import numpy as np
import pytest
from PIL import Image

from resale_assistant.vision.crop import CropSession, CropSessionClosed, CropTool
from resale_assistant.vision.types import CanvasMetrics, CropMode, CropRect
from resale_assistant.vision.vis import render_crop_frame


def _session(w: int = 500, h: int = 500, canvas: tuple[int, int] = (500, 500)) -> CropSession:
    return CropSession(Image.new("RGB", (w, h), color=(120, 120, 120)), canvas)


def test_session_starts_idle_with_centered_crop_and_frame() -> None:
    s = _session()
    assert s.mode is CropMode.IDLE
    assert s.crop == CropRect(75.0, 75.0, 350.0, 350.0)
    assert s.frame is not None and s.frame.size == (500, 500)


def test_dragging_corner_resizes_from_gesture_baseline() -> None:
    s = _session()
    assert s.pointer_down(425, 425) is CropMode.RESIZE
    assert s.mode is CropMode.RESIZE
    s.pointer_move(440, 430)
    crop = s.pointer_move(475, 455)
    # Deltas are measured from pointer-down, not accumulated.
    assert crop == CropRect(75.0, 75.0, 400.0, 380.0)
    s.pointer_up()
    assert s.mode is CropMode.IDLE


def test_dragging_interior_moves_and_clamps() -> None:
    s = _session()
    assert s.pointer_down(250, 250) is CropMode.MOVE
    crop = s.pointer_move(1250, 1250)
    assert crop == CropRect(150.0, 150.0, 350.0, 350.0)
    s.pointer_leave()
    assert s.mode is CropMode.IDLE


def test_pointer_moves_are_scaled_to_image_pixels() -> None:
    # 1000x1000 image on a 500x500 canvas: ratio 0.5.
    s = _session(1000, 1000)
    assert s.pointer_down(250, 250) is CropMode.MOVE
    crop = s.pointer_move(260, 240)
    assert crop.x == pytest.approx(150.0 + 20.0)
    assert crop.y == pytest.approx(150.0 - 20.0)


def test_pointer_outside_crop_is_idle() -> None:
    s = _session()
    assert s.pointer_down(5, 5) is CropMode.IDLE
    before = s.crop
    assert s.pointer_move(300, 300) == before


def test_commit_scales_longest_side_to_1024() -> None:
    s = CropSession(Image.new("RGB", (300, 200)), (360, 480))
    out = s.commit()
    # Initial crop is 210x140 pixels.
    assert (out.width, out.height) == (1024, 683)
    assert out.mime == "image/jpeg"
    assert s.closed
    with pytest.raises(CropSessionClosed):
        s.pointer_down(0, 0)


def test_commit_upscales_small_crops() -> None:
    s = _session()
    s.pointer_down(425, 425)
    s.pointer_move(275, 325)  # se corner dragged in: 200x250 crop
    out = s.commit()
    assert max(out.width, out.height) == 1024
    assert out.width / out.height == pytest.approx(200 / 250, rel=0.01)


def test_cancel_closes_without_output() -> None:
    s = _session()
    s.cancel()
    assert s.closed
    assert s.frame is None
    with pytest.raises(CropSessionClosed):
        s.commit()


def test_rotate_resets_crop_for_new_orientation() -> None:
    s = CropSession(Image.new("RGB", (400, 200)), (500, 500))
    s.pointer_down(250, 250)
    s.rotate()
    assert s.image_size == (200, 400)
    assert s.crop == CropRect(30.0, 60.0, 140.0, 280.0)
    assert s.mode is CropMode.IDLE


def test_canvas_resize_recomputes_metrics() -> None:
    s = _session()
    assert s.metrics.ratio == pytest.approx(1.0)
    s.set_canvas_size((250, 500))
    assert s.metrics.ratio == pytest.approx(0.5)
    assert s.metrics.offset_y == pytest.approx(125.0)
    assert s.frame is not None and s.frame.size == (250, 500)


def test_tool_discards_previous_uncommitted_session() -> None:
    tool = CropTool(canvas_size=(200, 200))
    first = tool.start(Image.new("RGB", (100, 100)))
    second = tool.start(Image.new("RGB", (100, 100)))
    assert first.closed
    assert not second.closed
    assert tool.session is second


def test_frame_darkens_outside_and_keeps_inside() -> None:
    img = Image.new("RGB", (100, 100), color=(255, 255, 255))
    crop = CropRect(15, 15, 70, 70)
    m = CanvasMetrics(offset_x=0.0, offset_y=0.0, ratio=1.0)
    frame = np.asarray(render_crop_frame(img, crop, m, (100, 100), shade=0.5))
    assert frame[50, 50].tolist() == [255, 255, 255]
    assert frame[50, 5, 0] == 127
    # Border is drawn on the crop edge.
    assert frame[50, 15].tolist() == [255, 255, 255]


def test_frame_renders_crop_smaller_than_a_canvas_pixel() -> None:
    img = Image.new("RGB", (100, 100), color=(255, 255, 255))
    m = CanvasMetrics(offset_x=0.0, offset_y=0.0, ratio=0.001)
    frame = render_crop_frame(img, CropRect(10, 10, 50, 50), m, (40, 40))
    assert frame.size == (40, 40)
