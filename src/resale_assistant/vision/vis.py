"""Rendering of the interactive crop overlay."""

from __future__ import annotations

import numpy as np
from PIL import Image, ImageDraw

from .geometry import handle_positions
from .types import CanvasMetrics, CropRect

BACKGROUND = (0, 0, 0)
BORDER_COLOR = (255, 255, 255)
HANDLE_COLOR = (255, 255, 255)


def render_crop_frame(
    img: Image.Image,
    crop: CropRect,
    metrics: CanvasMetrics,
    canvas_size: tuple[int, int],
    *,
    shade: float = 0.55,
    handle_size: int = 12,
    border_width: int = 2,
) -> Image.Image:
    """Draw one frame of the crop tool.

    The image is letterboxed into the canvas, everything outside the crop is
    darkened by ``shade``, then the crop border and the four corner handles
    are drawn on top.
    """
    canvas_w, canvas_h = canvas_size
    frame = Image.new("RGB", (canvas_w, canvas_h), BACKGROUND)
    w, h = img.size
    dw = max(1, round(w * metrics.ratio))
    dh = max(1, round(h * metrics.ratio))
    frame.paste(
        img.resize((dw, dh), Image.Resampling.BILINEAR),
        (round(metrics.offset_x), round(metrics.offset_y)),
    )

    left, top = metrics.to_canvas(crop.x, crop.y)
    right, bottom = metrics.to_canvas(crop.right, crop.bottom)
    l, t = max(0, round(left)), max(0, round(top))
    r, b = min(canvas_w, round(right)), min(canvas_h, round(bottom))
    r, b = max(r, l + 1), max(b, t + 1)

    arr = np.asarray(frame, dtype=np.float32)
    outside = np.ones((canvas_h, canvas_w), dtype=bool)
    outside[t:b, l:r] = False
    arr[outside] *= 1.0 - shade
    frame = Image.fromarray(arr.clip(0, 255).astype(np.uint8))

    dr = ImageDraw.Draw(frame)
    dr.rectangle([l, t, r - 1, b - 1], outline=BORDER_COLOR, width=border_width)
    half = handle_size / 2.0
    for hx, hy in handle_positions(crop, metrics).values():
        dr.rectangle(
            [round(hx - half), round(hy - half), round(hx + half), round(hy + half)],
            fill=HANDLE_COLOR,
        )
    return frame
