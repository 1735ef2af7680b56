"""Interactive crop session: pointer gestures over a letterboxed canvas."""

from __future__ import annotations

import logging
from typing import Final

from PIL import Image

from .geometry import (
    canvas_metrics,
    fit_longest_side,
    hit_test,
    initial_crop,
    move_crop,
    resize_crop,
)
from .image import EncodedImage, ImageSource, as_image, encode_jpeg, rotate90
from .types import (
    HANDLE_HIT_RADIUS,
    MIN_CROP_SIZE,
    CanvasMetrics,
    CropMode,
    CropRect,
    DragSession,
)
from .vis import render_crop_frame

LOG = logging.getLogger(__name__)

CROP_OUTPUT_SIDE: Final[int] = 1024
CROP_QUALITY: Final[int] = 85


class CropSessionClosed(RuntimeError):
    """Raised when a committed or cancelled session is used again."""


class CropSession:
    """Crop rectangle, canvas mapping and drag state for one photo.

    Pointer coordinates are canvas pixels; the crop rectangle is kept in
    source-image pixels. Every state change redraws the frame, which also
    refreshes :attr:`metrics`.
    """

    def __init__(
        self,
        source: ImageSource,
        canvas_size: tuple[int, int],
        *,
        min_size: float = MIN_CROP_SIZE,
        hit_radius: float = HANDLE_HIT_RADIUS,
    ) -> None:
        self._image = as_image(source)
        self._canvas_size = canvas_size
        self.min_size = min_size
        self.hit_radius = hit_radius
        w, h = self._image.size
        self.crop = initial_crop(w, h, min_size=min_size)
        self._drag: DragSession | None = None
        self._closed = False
        self.frame: Image.Image | None = None
        self.metrics: CanvasMetrics = canvas_metrics(w, h, *canvas_size)
        self.redraw()

    @property
    def image_size(self) -> tuple[int, int]:
        return self._image.size

    @property
    def mode(self) -> CropMode:
        return CropMode.IDLE if self._drag is None else self._drag.kind

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise CropSessionClosed("Crop session already ended.")

    def redraw(self) -> Image.Image:
        """Recompute canvas metrics and render the current frame."""
        w, h = self._image.size
        self.metrics = canvas_metrics(w, h, *self._canvas_size)
        self.frame = render_crop_frame(self._image, self.crop, self.metrics, self._canvas_size)
        return self.frame

    def set_canvas_size(self, canvas_size: tuple[int, int]) -> None:
        self._ensure_open()
        self._canvas_size = canvas_size
        self.redraw()

    def pointer_down(self, cx: float, cy: float) -> CropMode:
        """Start a move or resize gesture if the pointer hits the crop."""
        self._ensure_open()
        kind, corner = hit_test(self.crop, self.metrics, cx, cy, radius=self.hit_radius)
        if kind is CropMode.IDLE:
            self._drag = None
        else:
            self._drag = DragSession(
                start_x=cx, start_y=cy, crop_at_start=self.crop, kind=kind, corner=corner
            )
        self.redraw()
        return kind

    def pointer_move(self, cx: float, cy: float) -> CropRect:
        """Apply the pointer position relative to the gesture baseline."""
        self._ensure_open()
        drag = self._drag
        if drag is None:
            return self.crop
        dx, dy = self.metrics.delta_to_image(cx - drag.start_x, cy - drag.start_y)
        w, h = self._image.size
        if drag.kind is CropMode.MOVE:
            self.crop = move_crop(drag.crop_at_start, dx, dy, w, h)
        elif drag.corner is not None:
            self.crop = resize_crop(
                drag.crop_at_start, drag.corner, dx, dy, w, h, min_size=self.min_size
            )
        self.redraw()
        return self.crop

    def pointer_up(self) -> None:
        """End the current gesture (pointer released or left the canvas)."""
        self._ensure_open()
        if self._drag is not None:
            self._drag = None
            self.redraw()

    pointer_leave = pointer_up

    def rotate(self) -> None:
        """Rotate the source 90 degrees clockwise and reset the crop."""
        self._ensure_open()
        self._image = rotate90(self._image).open()
        w, h = self._image.size
        self.crop = initial_crop(w, h, min_size=self.min_size)
        self._drag = None
        self.redraw()

    def commit(self, *, output_side: int = CROP_OUTPUT_SIDE) -> EncodedImage:
        """Extract the crop, rescale its longest side to ``output_side`` and encode it."""
        self._ensure_open()
        w, h = self._image.size
        box = self.crop.pixel_box(w, h)
        region = self._image.crop(box)
        rw, rh = region.size
        target = fit_longest_side(rw, rh, output_side)
        if target != (rw, rh):
            region = region.resize(target, Image.Resampling.LANCZOS)
        out = encode_jpeg(region, CROP_QUALITY)
        LOG.info("Committed crop box=%s -> %dx%d", box, out.width, out.height)
        self._close()
        return out

    def cancel(self) -> None:
        """Discard the session; the source image is left untouched."""
        self._ensure_open()
        self._close()

    def _close(self) -> None:
        self._drag = None
        self._closed = True
        self.frame = None


class CropTool:
    """Owner of at most one active :class:`CropSession`."""

    def __init__(self, canvas_size: tuple[int, int] = (360, 480)) -> None:
        self.canvas_size = canvas_size
        self.session: CropSession | None = None

    def start(self, source: ImageSource) -> CropSession:
        """Open a session on a photo, discarding any uncommitted one."""
        if self.session is not None and not self.session.closed:
            LOG.info("Discarding uncommitted crop session")
            self.session.cancel()
        self.session = CropSession(source, self.canvas_size)
        return self.session
