"""Saved listings and the local JSON history store."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..analysis.types import DETAIL_FIELDS

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListingItem:
    """A saved listing.

    Attributes:
        id: Stable item id (millisecond timestamp string for new items).
        timestamp: Creation time in epoch milliseconds.
        photos: Photos as JPEG data URLs, in capture order.
        details: Detail fields keyed by name (brand, type, color, ...).
    """

    id: str
    timestamp: int
    photos: tuple[str, ...]
    description: str
    price: float
    currency: str
    price_new: float | None = None
    details: dict[str, str] = field(default_factory=dict)
    similar_links: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "photos": list(self.photos),
            "description": self.description,
            "price": self.price,
            "currency": self.currency,
            "details": {k: v for k, v in self.details.items() if v},
            "similarLinks": list(self.similar_links),
        }
        if self.price_new is not None:
            out["priceNew"] = self.price_new
        return out


class _ListingItemJson(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    timestamp: int = 0
    photos: list[str] = Field(default_factory=list)
    description: str = ""
    price: float = 0.0
    price_new: float | None = Field(default=None, alias="priceNew")
    currency: str = "DKK"
    details: dict[str, str] = Field(default_factory=dict)
    similar_links: list[str] = Field(default_factory=list, alias="similarLinks")
    similar_link: str | None = Field(default=None, alias="similarLink")

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @field_validator("details", mode="before")
    @classmethod
    def _known_details(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return {}
        return {k: str(v[k]) for k in DETAIL_FIELDS if v.get(k) is not None}

    @field_validator("similar_links", mode="before")
    @classmethod
    def _links_list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        return v

    def to_item(self) -> ListingItem:
        links = list(self.similar_links)
        if self.similar_link and self.similar_link not in links:
            links.append(self.similar_link)
        return ListingItem(
            id=self.id,
            timestamp=self.timestamp,
            photos=tuple(self.photos),
            description=self.description,
            price=self.price,
            price_new=self.price_new,
            currency=self.currency,
            details=dict(self.details),
            similar_links=tuple(links),
        )


def item_from_dict(raw: dict[str, Any]) -> ListingItem:
    """Parse a stored item, accepting the legacy single ``similarLink`` field.

    Raises:
        pydantic.ValidationError: If the payload is not an item.
    """
    return _ListingItemJson.model_validate(raw).to_item()


class HistoryStore(Protocol):
    """Persistence collaborator for saved listings."""

    def list_items(self) -> list[ListingItem]: ...

    def save(self, item: ListingItem) -> None: ...

    def delete(self, item_id: str) -> None: ...


def upsert(items: list[ListingItem], item: ListingItem) -> list[ListingItem]:
    """Replace the item with the same id, or prepend it."""
    for i, existing in enumerate(items):
        if existing.id == item.id:
            return [*items[:i], item, *items[i + 1 :]]
    return [item, *items]


@dataclass
class JsonHistoryStore:
    """History kept in a single JSON file, newest first."""

    path: Path

    def _read(self) -> list[dict[str, Any]]:
        if not self.path.is_file():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            LOG.warning("Ignoring unreadable history file %s: %s", self.path, e)
            return []
        return raw if isinstance(raw, list) else []

    def _write(self, items: list[ListingItem]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [it.to_dict() for it in items]
        self.path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def list_items(self) -> list[ListingItem]:
        items: list[ListingItem] = []
        for raw in self._read():
            try:
                items.append(item_from_dict(raw))
            except ValidationError as e:
                LOG.warning("Skipping malformed history entry: %s", e)
        return sorted(items, key=lambda it: it.timestamp, reverse=True)

    def save(self, item: ListingItem) -> None:
        self._write(upsert(self.list_items(), item))

    def delete(self, item_id: str) -> None:
        self._write([it for it in self.list_items() if it.id != item_id])

    def replace_all(self, items: list[ListingItem]) -> None:
        self._write(items)
