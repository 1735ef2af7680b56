"""Explicit cancellation for decode batches and provider calls."""

from __future__ import annotations

import threading


class OperationCancelled(RuntimeError):
    """Raised when an operation observes that its token was cancelled."""


class CancellationToken:
    """Thread-safe flag shared between an operation and the view that started it.

    The owner calls :meth:`cancel` on teardown; the operation checks the token
    at every suspension point and raises :class:`OperationCancelled` so a late
    result is never applied.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str) -> None:
        """Raise :class:`OperationCancelled` if the token has been cancelled."""
        if self._event.is_set():
            raise OperationCancelled(f"{what} cancelled ({self.reason})")


def check(token: CancellationToken | None, what: str) -> None:
    """Check an optional token."""
    if token is not None:
        token.raise_if_cancelled(what)
