"""Geometry helpers for the crop engine (letterboxing, hit testing, move/resize)."""

from __future__ import annotations

from math import hypot

from .types import (
    CORNERS,
    HANDLE_HIT_RADIUS,
    MIN_CROP_SIZE,
    CanvasMetrics,
    Corner,
    CropMode,
    CropRect,
)


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(v, hi))


def _min_extent(extent: float, min_size: float) -> float:
    # Images smaller than the minimum crop can only be cropped to their own size.
    return min(float(min_size), float(extent))


def initial_crop(
    w: int, h: int, *, fraction: float = 0.7, min_size: float = MIN_CROP_SIZE
) -> CropRect:
    """Centered crop covering ``fraction`` of each image dimension."""
    cw = _clamp(w * fraction, _min_extent(w, min_size), float(w))
    ch = _clamp(h * fraction, _min_extent(h, min_size), float(h))
    return CropRect(x=(w - cw) / 2.0, y=(h - ch) / 2.0, width=cw, height=ch)


def canvas_metrics(image_w: int, image_h: int, canvas_w: int, canvas_h: int) -> CanvasMetrics:
    """Fit the image inside the canvas preserving aspect, centered on both axes."""
    if image_w <= 0 or image_h <= 0:
        raise ValueError(f"Invalid image size: {image_w}x{image_h}")
    if canvas_w <= 0 or canvas_h <= 0:
        raise ValueError(f"Invalid canvas size: {canvas_w}x{canvas_h}")
    ratio = min(canvas_w / image_w, canvas_h / image_h)
    return CanvasMetrics(
        offset_x=(canvas_w - image_w * ratio) / 2.0,
        offset_y=(canvas_h - image_h * ratio) / 2.0,
        ratio=ratio,
    )


def corner_point(crop: CropRect, corner: Corner) -> tuple[float, float]:
    """Image-space position of a crop corner."""
    x = crop.x if corner in ("nw", "sw") else crop.right
    y = crop.y if corner in ("nw", "ne") else crop.bottom
    return x, y


def handle_positions(crop: CropRect, metrics: CanvasMetrics) -> dict[Corner, tuple[float, float]]:
    """Canvas-space positions of the four corner handles."""
    return {c: metrics.to_canvas(*corner_point(crop, c)) for c in CORNERS}


def hit_test(
    crop: CropRect,
    metrics: CanvasMetrics,
    cx: float,
    cy: float,
    *,
    radius: float = HANDLE_HIT_RADIUS,
) -> tuple[CropMode, Corner | None]:
    """Classify a pointer-down at canvas position (cx, cy).

    Handles win over the interior so a small crop can still be resized.
    """
    best: tuple[float, Corner] | None = None
    for corner, (hx, hy) in handle_positions(crop, metrics).items():
        d = hypot(cx - hx, cy - hy)
        if d <= radius and (best is None or d < best[0]):
            best = (d, corner)
    if best is not None:
        return CropMode.RESIZE, best[1]

    left, top = metrics.to_canvas(crop.x, crop.y)
    right, bottom = metrics.to_canvas(crop.right, crop.bottom)
    if left <= cx <= right and top <= cy <= bottom:
        return CropMode.MOVE, None
    return CropMode.IDLE, None


def move_crop(start: CropRect, dx: float, dy: float, image_w: int, image_h: int) -> CropRect:
    """Translate ``start`` by an image-space delta, keeping it inside the image."""
    x = _clamp(start.x + dx, 0.0, max(0.0, image_w - start.width))
    y = _clamp(start.y + dy, 0.0, max(0.0, image_h - start.height))
    return CropRect(x=x, y=y, width=start.width, height=start.height)


def resize_crop(
    start: CropRect,
    corner: Corner,
    dx: float,
    dy: float,
    image_w: int,
    image_h: int,
    *,
    min_size: float = MIN_CROP_SIZE,
) -> CropRect:
    """Resize ``start`` by dragging ``corner`` an image-space delta (dx, dy).

    The corner opposite to the dragged one stays fixed. Moving edges are
    clamped so the result never drops below the minimum size and never leaves
    the image.
    """
    min_w = _min_extent(image_w, min_size)
    min_h = _min_extent(image_h, min_size)
    right = start.right
    bottom = start.bottom

    if corner in ("nw", "sw"):
        x = _clamp(start.x + dx, 0.0, right - min_w)
        width = right - x
    else:
        x = start.x
        width = _clamp(start.width + dx, min_w, image_w - start.x)

    if corner in ("nw", "ne"):
        y = _clamp(start.y + dy, 0.0, bottom - min_h)
        height = bottom - y
    else:
        y = start.y
        height = _clamp(start.height + dy, min_h, image_h - start.y)

    return CropRect(x=x, y=y, width=width, height=height)


def fit_within(w: int, h: int, max_w: int, max_h: int) -> tuple[int, int]:
    """Scale (w, h) down to fit (max_w, max_h); never upscale."""
    scale = min(max_w / w, max_h / h, 1.0)
    if scale >= 1.0:
        return w, h
    return max(1, round(w * scale)), max(1, round(h * scale))


def fit_longest_side(w: int, h: int, target: int) -> tuple[int, int]:
    """Scale (w, h) so the longest side is exactly ``target``."""
    if w >= h:
        return target, max(1, round(h * target / w))
    return max(1, round(w * target / h)), target
