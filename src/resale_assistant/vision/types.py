"""Core crop-engine data types: crop rectangles, canvas metrics and drag sessions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final, Literal

MIN_CROP_SIZE: Final[int] = 40
HANDLE_HIT_RADIUS: Final[float] = 16.0

Corner = Literal["nw", "ne", "sw", "se"]
CORNERS: Final[tuple[Corner, ...]] = ("nw", "ne", "sw", "se")


class CropMode(str, Enum):
    """Interaction state of a crop session."""

    IDLE = "idle"
    MOVE = "dragging-move"
    RESIZE = "dragging-resize"


@dataclass(frozen=True)
class CropRect:
    """Crop rectangle in source-image pixel coordinates.

    Attributes:
        x, y: Top-left corner in image pixels.
        width, height: Extent in image pixels.
    """

    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def is_within(
        self, w: int, h: int, min_size: float = MIN_CROP_SIZE, *, eps: float = 1e-6
    ) -> bool:
        """Check every crop invariant against an image of size ``w`` x ``h``.

        ``eps`` absorbs float rounding from the canvas-to-image conversion.
        """
        min_w = min(float(min_size), float(w))
        min_h = min(float(min_size), float(h))
        return (
            self.x >= -eps
            and self.y >= -eps
            and self.width >= min_w - eps
            and self.height >= min_h - eps
            and self.right <= w + eps
            and self.bottom <= h + eps
        )

    def pixel_box(self, w: int, h: int) -> tuple[int, int, int, int]:
        """Round to an integer (left, top, right, bottom) box clipped to the image."""
        left = max(0, min(round(self.x), w - 1))
        top = max(0, min(round(self.y), h - 1))
        right = max(left + 1, min(round(self.right), w))
        bottom = max(top + 1, min(round(self.bottom), h))
        return left, top, right, bottom


@dataclass(frozen=True)
class CanvasMetrics:
    """Affine map from image space to a letterboxed canvas.

    ``canvas = offset + image * ratio`` on both axes.
    """

    offset_x: float
    offset_y: float
    ratio: float

    def to_canvas(self, x: float, y: float) -> tuple[float, float]:
        return self.offset_x + x * self.ratio, self.offset_y + y * self.ratio

    def to_image(self, cx: float, cy: float) -> tuple[float, float]:
        return (cx - self.offset_x) / self.ratio, (cy - self.offset_y) / self.ratio

    def delta_to_image(self, dx: float, dy: float) -> tuple[float, float]:
        """Convert a canvas-space pointer delta to image pixels."""
        return dx / self.ratio, dy / self.ratio


@dataclass(frozen=True)
class DragSession:
    """Baseline of one pointer gesture, fixed at pointer-down."""

    start_x: float
    start_y: float
    crop_at_start: CropRect
    kind: CropMode
    corner: Corner | None = None
