"""Capture -> analyze -> review -> save/discard workflow for one listing."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Final, Protocol

import httpx

from .analysis.prompt import reestimate_context
from .analysis.service import analyze
from .analysis.types import (
    DETAIL_FIELDS,
    UNKNOWN_MARKERS,
    AnalysisError,
    AnalysisResponse,
    AnalysisResult,
    AnalysisUsage,
    is_missing,
)
from .cancellation import CancellationToken
from .settings import AppSettings, SettingsStore
from .storage.history import HistoryStore, ListingItem
from .vision.image import EncodedImage, ImageDecodeError, ImageSource, normalize_all

LOG = logging.getLogger(__name__)

MAX_DESCRIPTION_CHARS: Final[int] = 58
EDITABLE_FIELDS: Final[tuple[str, ...]] = ("description", "price", "price_new", "currency")


class Analyzer(Protocol):
    def __call__(
        self,
        images: Sequence[str],
        settings: AppSettings,
        context: str | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        token: CancellationToken | None = None,
    ) -> AnalysisResponse: ...


class ReviewState(str, Enum):
    CAPTURING = "capturing"
    ANALYZING = "analyzing"
    REVIEWING = "reviewing"
    SAVED = "saved"
    DISCARDED = "discarded"


class ReviewStateError(RuntimeError):
    """Raised when an action is not allowed in the session's current state."""


@dataclass(frozen=True)
class SessionError:
    """Last failure shown to the user.

    ``kind`` is an analysis error kind, ``timeout`` or ``storage``.
    """

    message: str
    kind: str


def generate_auto_description(details: Mapping[str, str]) -> str:
    """Build "<brand> <type> <color> str. <size>" from the known details, capped at 58 chars."""
    size = details.get("size", "")
    parts = [
        details.get("brand", ""),
        details.get("type", ""),
        details.get("color", ""),
        f"str. {size}" if not is_missing(size) else "",
    ]
    return " ".join(p.strip() for p in parts if not is_missing(p))[:MAX_DESCRIPTION_CHARS]


@dataclass
class DraftItem:
    """Working copy of a listing under review.

    ``edited`` holds the names of fields the user has changed by hand
    (``description``, ``price``, ``price_new``, ``currency`` or a detail name).
    """

    photos: list[str]
    currency: str
    description: str = ""
    price: float = 0.0
    price_new: float | None = None
    details: dict[str, str] = field(default_factory=dict)
    similar_links: list[str] = field(default_factory=list)
    id: str | None = None
    timestamp: int | None = None
    edited: set[str] = field(default_factory=set)

    @classmethod
    def from_result(cls, result: AnalysisResult, photos: Sequence[str], currency: str) -> DraftItem:
        return cls(
            photos=list(photos),
            currency=currency,
            description=result.description,
            price=result.price,
            price_new=result.price_new,
            details=result.details(),
            similar_links=list(result.similar_links),
        )

    @classmethod
    def from_item(cls, item: ListingItem) -> DraftItem:
        details = {k: item.details.get(k, "") for k in DETAIL_FIELDS}
        return cls(
            photos=list(item.photos),
            currency=item.currency,
            description=item.description,
            price=item.price,
            price_new=item.price_new,
            details=details,
            similar_links=list(item.similar_links),
            id=item.id,
            timestamp=item.timestamp,
        )

    def missing_fields(self) -> list[str]:
        return [k for k in DETAIL_FIELDS if is_missing(self.details.get(k))]

    def description_is_derived(self) -> bool:
        """True when the description may be regenerated from the detail fields."""
        desc = self.description.strip()
        if not desc or any(m in desc.lower() for m in UNKNOWN_MARKERS):
            return True
        return desc == generate_auto_description(self.details)

    def to_item(self, item_id: str, timestamp: int) -> ListingItem:
        return ListingItem(
            id=item_id,
            timestamp=timestamp,
            photos=tuple(self.photos),
            description=self.description,
            price=self.price,
            price_new=self.price_new,
            currency=self.currency,
            details={k: v for k, v in self.details.items() if v},
            similar_links=tuple(self.similar_links),
        )


def _now_ms() -> int:
    return int(time.time() * 1000)


class ReviewSession:
    """State machine driving one listing from capture to save.

    Failures never clear photos or draft edits; they are kept on
    :attr:`error` until :meth:`dismiss_error` or the next action.

    Args:
        settings: Provider and prompt settings used for analysis.
        store: Persistence collaborator receiving saved items.
        analyzer: Callable with the signature of :func:`analyze`; tests inject fakes.
        usage_store: Optional settings gateway whose usage totals are updated on save.
        clock: Millisecond clock used for new ids and timestamps.
        environ: Credential environment forwarded to the analyzer.
    """

    def __init__(
        self,
        settings: AppSettings,
        store: HistoryStore,
        *,
        analyzer: Analyzer = analyze,
        usage_store: SettingsStore | None = None,
        clock: Callable[[], int] = _now_ms,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.analyzer = analyzer
        self.usage_store = usage_store
        self.clock = clock
        self.environ = environ
        self.state = ReviewState.CAPTURING
        self.photos: list[str] = []
        self.draft: DraftItem | None = None
        self.error: SessionError | None = None
        self.saved_item: ListingItem | None = None
        self._usage: list[AnalysisUsage] = []
        self._token = CancellationToken()

    @classmethod
    def edit_existing(
        cls, item: ListingItem, settings: AppSettings, store: HistoryStore, **kwargs
    ) -> ReviewSession:
        """Reopen a saved item for review."""
        session = cls(settings, store, **kwargs)
        session.photos = list(item.photos)
        session.draft = DraftItem.from_item(item)
        session.state = ReviewState.REVIEWING
        return session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, *states: ReviewState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise ReviewStateError(f"Action not allowed in state {self.state.value!r} ({allowed})")

    def _require_draft(self) -> DraftItem:
        self._require(ReviewState.REVIEWING)
        if self.draft is None:
            raise ReviewStateError("No draft to edit")
        return self.draft

    def _fail(self, message: str, kind: str) -> None:
        LOG.warning("Review session error (%s): %s", kind, message)
        self.error = SessionError(message=message, kind=kind)

    def dismiss_error(self) -> None:
        self.error = None

    def close(self) -> None:
        """Tear down the view: cancel whatever is in flight."""
        self._token.cancel("review closed")

    @property
    def closed(self) -> bool:
        return self._token.cancelled

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def add_photos(self, payloads: Sequence[ImageSource]) -> list[str]:
        """Normalize and append photos in input order.

        Returns:
            The photos actually appended (empty on failure).

        Raises:
            OperationCancelled: If the session was closed while decoding.
        """
        self._require(ReviewState.CAPTURING)
        self.error = None
        try:
            encoded = normalize_all(payloads, token=self._token)
        except ImageDecodeError as e:
            self._fail(f"Could not read the image: {e}", "format")
            return []
        except TimeoutError as e:
            self._fail(f"Reading the photos took too long: {e}", "timeout")
            return []
        added = [img.to_data_url() for img in encoded]
        self.photos.extend(added)
        return added

    def remove_photo(self, index: int) -> None:
        self._require(ReviewState.CAPTURING)
        del self.photos[index]

    def replace_photo(self, index: int, image: EncodedImage) -> None:
        """Swap a photo for its cropped or rotated version."""
        self._require(ReviewState.CAPTURING)
        self.photos[index] = image.to_data_url()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _run(self, photos: Sequence[str], context: str | None) -> AnalysisResponse | None:
        try:
            resp = self.analyzer(
                photos, self.settings, context, environ=self.environ, token=self._token
            )
        except AnalysisError as e:
            self._fail(e.message, e.kind)
            return None
        self._usage.append(resp.usage)
        return resp

    def analyze(self, context: str | None = None) -> DraftItem | None:
        """Analyze the captured photos and enter review.

        Raises:
            OperationCancelled: If the session was closed during the call.
        """
        self._require(ReviewState.CAPTURING)
        self.error = None
        if not self.photos:
            self._fail("No images found to analyze.", "format")
            return None
        self.state = ReviewState.ANALYZING
        try:
            resp = self._run(self.photos, context)
        finally:
            self.state = ReviewState.CAPTURING
        if resp is None:
            return None
        self.draft = DraftItem.from_result(resp.result, self.photos, self.settings.currency)
        self.state = ReviewState.REVIEWING
        return self.draft

    def re_estimate(self) -> DraftItem | None:
        """Ask again with the edited fields as context; updates price, description and links.

        Raises:
            OperationCancelled: If the session was closed during the call.
        """
        draft = self._require_draft()
        self.error = None
        context = reestimate_context(draft.details, draft.description)
        self.state = ReviewState.ANALYZING
        try:
            resp = self._run(draft.photos, context)
        finally:
            self.state = ReviewState.REVIEWING
        if resp is None:
            return None
        draft.price = resp.result.price
        draft.description = resp.result.description
        draft.similar_links = list(resp.result.similar_links) or draft.similar_links
        draft.edited -= {"price", "description"}
        return draft

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def edit(self, name: str, value: str | float | None) -> None:
        """Set a top-level draft field and mark it user-owned."""
        draft = self._require_draft()
        if name not in EDITABLE_FIELDS:
            raise ValueError(f"Unknown field {name!r}; expected one of {EDITABLE_FIELDS}")
        if name == "description":
            value = str(value or "")[:MAX_DESCRIPTION_CHARS]
        elif name == "price":
            value = float(value or 0.0)
        elif name == "price_new":
            value = float(value) if value not in (None, "") else None
        setattr(draft, name, value)
        draft.edited.add(name)

    def set_description(self, text: str) -> None:
        self.edit("description", text)

    def set_detail(self, name: str, value: str) -> None:
        """Update one detail; regenerate the description while it is still derived."""
        draft = self._require_draft()
        if name not in DETAIL_FIELDS:
            raise ValueError(f"Unknown detail {name!r}; expected one of {DETAIL_FIELDS}")
        derived = draft.description_is_derived()
        draft.details[name] = value
        draft.edited.add(name)
        if derived:
            draft.description = generate_auto_description(draft.details)
            draft.edited.discard("description")

    def regenerate_description(self) -> str:
        draft = self._require_draft()
        draft.description = generate_auto_description(draft.details)
        draft.edited.discard("description")
        return draft.description

    def missing_fields(self) -> list[str]:
        return self.draft.missing_fields() if self.draft is not None else list(DETAIL_FIELDS)

    # ------------------------------------------------------------------
    # Finish
    # ------------------------------------------------------------------

    def save(self) -> ListingItem | None:
        """Upsert the draft into the store and record usage."""
        draft = self._require_draft()
        self.error = None
        now = self.clock()
        item = draft.to_item(draft.id or str(now), draft.timestamp or now)
        try:
            self.store.save(item)
        except (OSError, httpx.HTTPError, RuntimeError) as e:
            self._fail(f"Could not save the item: {e}", "storage")
            return None
        if self.usage_store is not None:
            for usage in self._usage:
                self.usage_store.record_usage(usage)
        self._usage.clear()
        self.saved_item = item
        self.state = ReviewState.SAVED
        LOG.info("Saved item %s (%d photos)", item.id, len(item.photos))
        return item

    def discard(self) -> None:
        self._require(ReviewState.CAPTURING, ReviewState.REVIEWING)
        self.state = ReviewState.DISCARDED
