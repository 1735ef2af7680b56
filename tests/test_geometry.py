from __future__ import annotations

import random

import pytest

from resale_assistant.vision.geometry import (
    canvas_metrics,
    fit_longest_side,
    fit_within,
    hit_test,
    initial_crop,
    move_crop,
    resize_crop,
)
from resale_assistant.vision.types import CanvasMetrics, CropMode, CropRect


def test_initial_crop_is_centered_at_seventy_percent() -> None:
    crop = initial_crop(1000, 500)
    assert crop == CropRect(x=150.0, y=75.0, width=700.0, height=350.0)


def test_initial_crop_respects_minimum_on_small_images() -> None:
    crop = initial_crop(50, 30)
    # 70% of 50 is 35 < 40; height is smaller than the minimum so it spans the image.
    assert crop.width == 40.0
    assert crop.height == 30.0
    assert crop.is_within(50, 30)


def test_canvas_metrics_letterboxes_and_centers() -> None:
    m = canvas_metrics(1000, 500, 400, 400)
    assert m.ratio == pytest.approx(0.4)
    assert m.offset_x == pytest.approx(0.0)
    assert m.offset_y == pytest.approx(100.0)
    assert m.to_canvas(500, 250) == pytest.approx((200.0, 200.0))
    assert m.to_image(200.0, 200.0) == pytest.approx((500.0, 250.0))
    assert m.delta_to_image(4.0, -8.0) == pytest.approx((10.0, -20.0))


def test_canvas_metrics_rejects_empty_sizes() -> None:
    with pytest.raises(ValueError):
        canvas_metrics(0, 10, 100, 100)
    with pytest.raises(ValueError):
        canvas_metrics(10, 10, 100, 0)


def test_hit_test_prefers_handles_then_interior() -> None:
    crop = CropRect(x=100, y=100, width=200, height=100)
    m = CanvasMetrics(offset_x=0.0, offset_y=0.0, ratio=1.0)

    assert hit_test(crop, m, 105, 95) == (CropMode.RESIZE, "nw")
    assert hit_test(crop, m, 310, 210) == (CropMode.RESIZE, "se")
    assert hit_test(crop, m, 300, 112) == (CropMode.RESIZE, "ne")
    assert hit_test(crop, m, 98, 200) == (CropMode.RESIZE, "sw")
    assert hit_test(crop, m, 200, 150) == (CropMode.MOVE, None)
    assert hit_test(crop, m, 50, 50) == (CropMode.IDLE, None)
    # Just outside the 16px radius and outside the rectangle.
    assert hit_test(crop, m, 100 - 12, 100 - 12) == (CropMode.IDLE, None)


def test_hit_test_uses_canvas_space_radius() -> None:
    crop = CropRect(x=100, y=100, width=200, height=200)
    m = CanvasMetrics(offset_x=10.0, offset_y=20.0, ratio=0.5)
    # nw handle is at canvas (60, 70)
    assert hit_test(crop, m, 70, 80) == (CropMode.RESIZE, "nw")


def test_resize_se_grows_against_far_edges() -> None:
    start = CropRect(x=10, y=10, width=100, height=100)
    assert resize_crop(start, "se", 50, 30, 500, 500) == CropRect(10, 10, 150, 130)


def test_resize_nw_stops_at_minimum_size() -> None:
    start = CropRect(x=10, y=10, width=100, height=100)
    out = resize_crop(start, "nw", 200, 200, 500, 500, min_size=40)
    assert out.x <= 70
    assert out.y <= 70
    assert out.right == pytest.approx(110)
    assert out.bottom == pytest.approx(110)
    assert out.width >= 40 and out.height >= 40


def test_resize_ne_moves_top_and_grows_width() -> None:
    start = CropRect(x=10, y=50, width=100, height=100)
    out = resize_crop(start, "ne", 20, -30, 500, 500)
    assert out == CropRect(x=10, y=20, width=120, height=130)


def test_resize_sw_moves_left_and_grows_height() -> None:
    start = CropRect(x=50, y=10, width=100, height=100)
    out = resize_crop(start, "sw", -30, 20, 500, 500)
    assert out == CropRect(x=20, y=10, width=130, height=120)


def test_resize_clamps_to_image_bounds() -> None:
    start = CropRect(x=10, y=10, width=100, height=100)
    assert resize_crop(start, "se", 1000, 1000, 300, 200) == CropRect(10, 10, 290, 190)
    assert resize_crop(start, "nw", -1000, -1000, 300, 200) == CropRect(0, 0, 110, 110)


def test_move_keeps_size_and_stays_inside() -> None:
    start = CropRect(x=10, y=10, width=100, height=100)
    assert move_crop(start, 50, 20, 500, 500) == CropRect(60, 30, 100, 100)
    assert move_crop(start, 1000, -1000, 500, 500) == CropRect(400, 0, 100, 100)


def test_random_gestures_preserve_crop_invariants() -> None:
    rng = random.Random(1234)
    w, h = 640, 480
    crop = initial_crop(w, h)
    for _ in range(500):
        dx = rng.uniform(-800, 800)
        dy = rng.uniform(-800, 800)
        if rng.random() < 0.3:
            crop = move_crop(crop, dx, dy, w, h)
        else:
            corner = rng.choice(["nw", "ne", "sw", "se"])
            crop = resize_crop(crop, corner, dx, dy, w, h)
        assert crop.is_within(w, h), crop


def test_fit_within_never_upscales() -> None:
    assert fit_within(200, 100, 1024, 1024) == (200, 100)
    assert fit_within(4000, 3000, 1024, 1024) == (1024, 768)
    assert fit_within(1000, 3000, 1024, 1024) == (341, 1024)


def test_fit_longest_side_scales_both_ways() -> None:
    assert fit_longest_side(350, 350, 1024) == (1024, 1024)
    assert fit_longest_side(2048, 1024, 1024) == (1024, 512)
    assert fit_longest_side(100, 400, 1024) == (256, 1024)
