"""Image decoding, normalization, rotation and data-URL encoding."""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from time import monotonic
from typing import Final

from PIL import Image, ImageOps, UnidentifiedImageError

from ..cancellation import CancellationToken, OperationCancelled, check
from .geometry import fit_within

LOG = logging.getLogger(__name__)

MAX_DIMENSION: Final[int] = 1024
NORMALIZE_QUALITY: Final[int] = 80
ROTATE_QUALITY: Final[int] = 90
DECODE_TIMEOUT_S: Final[float] = 20.0
POLL_INTERVAL_S: Final[float] = 0.05

_DATA_URL_RE = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^,;]*)*),(?P<data>.*)$", re.S
)


class ImageDecodeError(ValueError):
    """Raised when a payload is not a decodable image."""


@dataclass(frozen=True)
class EncodedImage:
    """An encoded image plus its decoded dimensions."""

    data: bytes
    mime: str
    width: int
    height: int

    def to_data_url(self) -> str:
        b64 = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime};base64,{b64}"

    def open(self) -> Image.Image:
        """Decode back into an RGB PIL image."""
        return decode_image(self.data)


ImageSource = str | bytes | EncodedImage | Image.Image


def parse_data_url(data_url: str) -> tuple[str, bytes]:
    """Split a base64 data URL into (mime type, raw bytes).

    Raises:
        ImageDecodeError: If the string is not a base64 data URL.
    """
    m = _DATA_URL_RE.match(data_url.strip())
    if m is None:
        raise ImageDecodeError("Invalid image: expected a data URL.")
    if ";base64" not in (m.group("params") or ""):
        raise ImageDecodeError("Invalid image: data URL is not base64 encoded.")
    mime = m.group("mime") or "image/jpeg"
    try:
        raw = base64.b64decode(m.group("data"), validate=False)
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeError("Invalid image: malformed base64 payload.") from e
    if not raw:
        raise ImageDecodeError("Invalid image: empty payload.")
    return mime, raw


def decode_image(payload: str | bytes) -> Image.Image:
    """Decode a data URL or raw bytes into an RGB image with EXIF orientation applied."""
    raw = parse_data_url(payload)[1] if isinstance(payload, str) else payload
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ImageDecodeError(f"Could not decode image: {e}") from e
    return ImageOps.exif_transpose(img).convert("RGB")


def as_image(source: ImageSource) -> Image.Image:
    """Return a PIL image for any supported source without mutating it."""
    if isinstance(source, Image.Image):
        return source.convert("RGB")
    if isinstance(source, EncodedImage):
        return source.open()
    return decode_image(source)


def img_to_jpeg_bytes(img: Image.Image, quality: int = 90) -> bytes:
    """Encode an image as JPEG bytes."""
    buf = io.BytesIO()
    img.convert("RGB").save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def encode_jpeg(img: Image.Image, quality: int) -> EncodedImage:
    """Encode an image as JPEG at ``quality`` (1-100)."""
    w, h = img.size
    data = img_to_jpeg_bytes(img, quality=quality)
    return EncodedImage(data=data, mime="image/jpeg", width=w, height=h)


def normalize(
    source: ImageSource,
    max_width: int = MAX_DIMENSION,
    max_height: int = MAX_DIMENSION,
    *,
    quality: int = NORMALIZE_QUALITY,
) -> EncodedImage:
    """Downscale to fit the bounds (never upscaling) and re-encode as lossy JPEG."""
    img = as_image(source)
    w, h = img.size
    tw, th = fit_within(w, h, max_width, max_height)
    if (tw, th) != (w, h):
        img = img.resize((tw, th), Image.Resampling.LANCZOS)
    return encode_jpeg(img, quality)


def rotate90(source: ImageSource, *, quality: int = ROTATE_QUALITY) -> EncodedImage:
    """Rotate 90 degrees clockwise, swapping width and height."""
    img = as_image(source)
    return encode_jpeg(img.transpose(Image.Transpose.ROTATE_270), quality)


def normalize_all(
    payloads: Sequence[ImageSource],
    *,
    max_width: int = MAX_DIMENSION,
    max_height: int = MAX_DIMENSION,
    token: CancellationToken | None = None,
    timeout_s: float = DECODE_TIMEOUT_S,
    max_workers: int = 4,
) -> list[EncodedImage]:
    """Normalize a batch in parallel, returning results in input order.

    Raises:
        ImageDecodeError: If any payload cannot be decoded.
        TimeoutError: If the batch does not finish within ``timeout_s``.
        OperationCancelled: If ``token`` is cancelled before the batch completes.
    """
    if not payloads:
        return []
    check(token, "image normalization")
    deadline = monotonic() + timeout_s
    executor = ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(payloads))))
    futures = [executor.submit(normalize, p, max_width, max_height) for p in payloads]
    out: list[EncodedImage] = []
    aborted = True
    try:
        for i, fut in enumerate(futures):
            # Token is checked between short waits, not only between futures.
            while not fut.done():
                check(token, "image normalization")
                remaining = deadline - monotonic()
                if remaining <= 0:
                    raise TimeoutError(
                        f"Image normalization timed out after {timeout_s:.0f}s "
                        f"(image {i + 1}/{len(futures)})"
                    )
                wait([fut], timeout=min(POLL_INTERVAL_S, remaining))
            out.append(fut.result())
        check(token, "image normalization")
        aborted = False
    except OperationCancelled:
        LOG.info("Image batch cancelled after %d/%d images", len(out), len(futures))
        raise
    finally:
        executor.shutdown(wait=not aborted, cancel_futures=aborted)
    LOG.info("Normalized %d images", len(out))
    return out
