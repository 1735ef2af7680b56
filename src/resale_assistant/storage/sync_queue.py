"""Offline-first history: local writes plus a queue of pending remote operations."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from .history import JsonHistoryStore, ListingItem, item_from_dict
from .remote import RestHistoryStore

LOG = logging.getLogger(__name__)

OpType = Literal["upsert", "delete"]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PendingOp:
    """One remote write that has not been acknowledged yet."""

    user_id: str
    type: OpType
    item_id: str
    queued_at: int
    attempts: int = 0
    item: ListingItem | None = None

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.item_id}"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "userId": self.user_id,
            "type": self.type,
            "itemId": self.item_id,
            "queuedAt": self.queued_at,
            "attempts": self.attempts,
        }
        if self.item is not None:
            out["item"] = self.item.to_dict()
        return out


class _PendingOpJson(BaseModel):
    model_config = ConfigDict(extra="ignore")

    userId: str
    type: OpType
    itemId: str
    queuedAt: int = 0
    attempts: int = 0
    item: dict[str, Any] | None = None

    def to_op(self) -> PendingOp:
        item = item_from_dict(self.item) if self.item is not None else None
        if self.type == "upsert" and item is None:
            raise ValueError(f"upsert for {self.itemId} has no item")
        return PendingOp(
            user_id=self.userId,
            type=self.type,
            item_id=self.itemId,
            queued_at=self.queuedAt,
            attempts=self.attempts,
            item=item,
        )


def compact(ops: list[PendingOp]) -> list[PendingOp]:
    """Keep only the latest op per ``user:item`` key, ordered by queue time."""
    latest: dict[str, PendingOp] = {}
    for op in ops:
        latest[op.key] = op
    return sorted(latest.values(), key=lambda o: o.queued_at)


@dataclass
class SyncQueue:
    """Pending remote operations persisted in a JSON file."""

    path: Path
    clock: Callable[[], int] = _now_ms

    def read(self) -> list[PendingOp]:
        if not self.path.is_file():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            LOG.warning("Ignoring unreadable sync queue %s: %s", self.path, e)
            return []
        ops: list[PendingOp] = []
        for entry in raw if isinstance(raw, list) else []:
            try:
                ops.append(_PendingOpJson.model_validate(entry).to_op())
            except (ValidationError, ValueError) as e:
                LOG.warning("Dropping malformed queued op: %s", e)
        return ops

    def write(self, ops: list[PendingOp]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps([op.to_dict() for op in ops]), encoding="utf-8")

    def _push(self, op: PendingOp) -> None:
        self.write(compact([*self.read(), op]))

    def enqueue_upsert(self, user_id: str, item: ListingItem) -> None:
        self._push(PendingOp(user_id, "upsert", item.id, self.clock(), item=item))

    def enqueue_delete(self, user_id: str, item_id: str) -> None:
        self._push(PendingOp(user_id, "delete", item_id, self.clock()))

    def pending_count(self, user_id: str) -> int:
        return sum(1 for op in self.read() if op.user_id == user_id)

    def flush(self, user_id: str, remote: RestHistoryStore) -> int:
        """Replay the user's ops against ``remote``; failed ops stay queued.

        Returns:
            Number of ops still pending for ``user_id``.
        """
        ops = self.read()
        if not ops:
            return 0
        keep = [op for op in ops if op.user_id != user_id]
        failed = 0
        for op in (o for o in ops if o.user_id == user_id):
            try:
                if op.type == "upsert" and op.item is not None:
                    remote.save(op.item)
                else:
                    remote.delete(op.item_id)
            except (httpx.HTTPError, RuntimeError) as e:
                LOG.warning(
                    "Sync of %s %s failed (attempt %d): %s", op.type, op.key, op.attempts + 1, e
                )
                keep.append(replace(op, attempts=op.attempts + 1))
                failed += 1
        self.write(compact(keep))
        return failed


@dataclass
class SyncedHistoryStore:
    """Writes land locally first; remote writes are queued and flushed opportunistically."""

    local: JsonHistoryStore
    remote: RestHistoryStore
    queue: SyncQueue
    audit: bool = True

    @property
    def user_id(self) -> str:
        return self.remote.user_id

    def list_items(self) -> list[ListingItem]:
        """Local items, refreshed from the remote when it is reachable."""
        self.flush()
        try:
            remote_items = self.remote.list_items()
        except (httpx.HTTPError, RuntimeError) as e:
            LOG.info("Remote history unavailable, using local copy: %s", e)
            return self.local.list_items()
        # Ops still queued after the flush win over the remote copy.
        pending = {op.item_id: op for op in self.queue.read() if op.user_id == self.user_id}
        merged = {it.id: it for it in remote_items}
        for it in self.local.list_items():
            if it.id in pending:
                merged[it.id] = it
        for item_id, op in pending.items():
            if op.type == "delete":
                merged.pop(item_id, None)
        items = sorted(merged.values(), key=lambda it: it.timestamp, reverse=True)
        self.local.replace_all(items)
        return items

    def save(self, item: ListingItem) -> None:
        is_new = all(it.id != item.id for it in self.local.list_items())
        self.local.save(item)
        self.queue.enqueue_upsert(self.user_id, item)
        self.flush()
        if is_new and self.audit:
            self.remote.log_audit_event("item_created", item)

    def delete(self, item_id: str) -> None:
        existing = next((it for it in self.local.list_items() if it.id == item_id), None)
        self.local.delete(item_id)
        self.queue.enqueue_delete(self.user_id, item_id)
        self.flush()
        if existing is not None and self.audit:
            self.remote.log_audit_event("item_deleted", existing)

    def flush(self) -> int:
        return self.queue.flush(self.user_id, self.remote)

    def pending_count(self) -> int:
        return self.queue.pending_count(self.user_id)
