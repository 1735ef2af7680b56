"""PostgREST-backed history store (``user_items`` table) with best-effort audit events."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final, Literal

import httpx
from pydantic import ValidationError

from .history import ListingItem, item_from_dict

LOG = logging.getLogger(__name__)

DEFAULT_API_BASE_ENV: Final[str] = "RESALE_REST_URL"
DEFAULT_API_KEY_ENV: Final[str] = "RESALE_REST_KEY"
USER_ITEMS_TABLE: Final[str] = "user_items"
AUDIT_TABLE: Final[str] = "audit_events"

AuditEvent = Literal["item_created", "item_deleted"]


@dataclass(slots=True)
class RestHistoryStore:
    """History for one user, stored as ``{item_id, item_timestamp, item_data}`` rows.

    Attributes:
        user_id: Owner of the rows.
        api_base: REST root (for example, "https://xyz.supabase.co/rest/v1").
            Falls back to the ``RESALE_REST_URL`` environment variable.
        api_key_env: Name of the environment variable holding the API key.
        client_factory: Factory for the HTTP client; tests inject a mock transport.
    """

    user_id: str
    api_base: str | None = None
    api_key_env: str = DEFAULT_API_KEY_ENV
    timeout_s: float = 15.0
    client_factory: Callable[..., httpx.Client] = httpx.Client

    def get_api_key(self) -> str:
        """Return the API key from the configured environment variable.

        Raises:
            RuntimeError: If the environment variable is not set.
        """
        api_key = os.getenv(self.api_key_env)
        if not api_key:
            raise RuntimeError(f"{self.api_key_env} environment variable is not set")
        return api_key

    def _base(self) -> str:
        base = self.api_base or os.getenv(DEFAULT_API_BASE_ENV)
        if not base:
            raise RuntimeError(f"{DEFAULT_API_BASE_ENV} environment variable is not set")
        return base.rstrip("/")

    def _client(self) -> httpx.Client:
        key = self.get_api_key()
        return self.client_factory(
            base_url=self._base(),
            timeout=self.timeout_s,
            headers={"apikey": key, "Authorization": f"Bearer {key}"},
        )

    # ------------------------------------------------------------------
    # HistoryStore
    # ------------------------------------------------------------------

    def list_items(self) -> list[ListingItem]:
        """Fetch the user's items, newest first.

        Raises:
            httpx.HTTPError: If the request fails.
        """
        params = {
            "select": "item_id,item_timestamp,item_data",
            "user_id": f"eq.{self.user_id}",
            "order": "item_timestamp.desc",
        }
        with self._client() as client:
            resp = client.get(f"/{USER_ITEMS_TABLE}", params=params)
            resp.raise_for_status()
            rows = resp.json()

        items: list[ListingItem] = []
        for row in rows if isinstance(rows, list) else []:
            item = _row_to_item(row)
            if item is not None:
                items.append(item)
        return items

    def save(self, item: ListingItem) -> None:
        """Upsert one item on ``(user_id, item_id)``.

        Raises:
            httpx.HTTPError: If the request fails.
        """
        self.save_many([item])

    def save_many(self, items: list[ListingItem]) -> None:
        payload = [
            {
                "user_id": self.user_id,
                "item_id": it.id,
                "item_timestamp": int(it.timestamp or 0),
                "item_data": it.to_dict(),
            }
            for it in items
            if it.id
        ]
        if not payload:
            return
        with self._client() as client:
            resp = client.post(
                f"/{USER_ITEMS_TABLE}",
                params={"on_conflict": "user_id,item_id"},
                json=payload,
                headers={"Prefer": "resolution=merge-duplicates"},
            )
            resp.raise_for_status()

    def delete(self, item_id: str) -> None:
        """Delete one item.

        Raises:
            httpx.HTTPError: If the request fails.
        """
        if not item_id:
            return
        with self._client() as client:
            resp = client.delete(
                f"/{USER_ITEMS_TABLE}",
                params={"user_id": f"eq.{self.user_id}", "item_id": f"eq.{item_id}"},
            )
            resp.raise_for_status()

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def log_audit_event(self, event: AuditEvent, item: ListingItem) -> bool:
        """Record an audit event. Failures are logged and reported as ``False``."""
        body = {
            "user_id": self.user_id,
            "event_type": event,
            "entity_type": "item",
            "entity_id": item.id,
            "metadata": {
                "price": item.price,
                "currency": item.currency,
                "description": item.description,
            },
        }
        try:
            with self._client() as client:
                resp = client.post(f"/{AUDIT_TABLE}", json=body)
                resp.raise_for_status()
        except (httpx.HTTPError, RuntimeError) as e:
            LOG.warning("Could not log audit event %s for item %s: %s", event, item.id, e)
            return False
        return True


def _row_to_item(row: Any) -> ListingItem | None:
    if not isinstance(row, dict):
        return None
    data = row.get("item_data")
    item_id = row.get("item_id")
    if not isinstance(data, dict) or not item_id:
        return None
    data = dict(data)
    if not data.get("id"):
        data["id"] = item_id
    if not isinstance(data.get("timestamp"), int):
        data["timestamp"] = int(row.get("item_timestamp") or 0)
    try:
        return item_from_dict(data)
    except ValidationError as e:
        LOG.warning("Skipping malformed row %s: %s", item_id, e)
        return None
