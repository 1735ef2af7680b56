"""Provider-agnostic analysis request/result types and the error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Final, Literal

ErrorKind = Literal["network", "api", "safety", "format", "parse"]

DETAIL_FIELDS: Final[tuple[str, ...]] = (
    "brand",
    "type",
    "color",
    "size",
    "material",
    "condition",
    "style",
)
UNKNOWN_MARKERS: Final[frozenset[str]] = frozenset({"ukendt", "unknown"})


def is_missing(value: str | None) -> bool:
    """True for empty values and the "unknown" placeholder models tend to emit."""
    if value is None:
        return True
    v = value.strip()
    return not v or v.lower() in UNKNOWN_MARKERS


class AnalysisError(RuntimeError):
    """A classified analysis failure.

    Attributes:
        kind: One of ``network``, ``api``, ``safety``, ``format``, ``parse``.
        status_code: HTTP status used when the error crosses the HTTP boundary;
            400 for caller errors, 500 for provider/config errors.
    """

    def __init__(self, message: str, kind: ErrorKind, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind: ErrorKind = kind
        self.status_code = status_code if status_code is not None else (
            400 if kind == "format" else 500
        )


@dataclass(frozen=True)
class AnalysisRequest:
    """One provider call: encoded images, the final prompt and the model id."""

    images: tuple[str, ...]
    prompt: str
    model: str


@dataclass(frozen=True)
class AnalysisResult:
    """Normalized listing analysis. Only ``description`` and ``price`` are guaranteed."""

    description: str
    price: float
    price_new: float | None = None
    brand: str = ""
    type: str = ""
    color: str = ""
    size: str = ""
    material: str = ""
    condition: str = ""
    style: str = ""
    similar_links: tuple[str, ...] = ()

    def details(self) -> dict[str, str]:
        return {k: getattr(self, k) for k in DETAIL_FIELDS}

    def missing_fields(self) -> list[str]:
        """Detail fields the user still has to fill in."""
        return [k for k in DETAIL_FIELDS if is_missing(getattr(self, k))]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"description": self.description, "price": self.price}
        if self.price_new is not None:
            out["priceNew"] = self.price_new
        out.update(self.details())
        out["similarLinks"] = list(self.similar_links)
        return out


@dataclass(frozen=True)
class AnalysisUsage:
    """Token/cost telemetry reported by the provider, when available."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    cost_usd: float | None = None

    def to_dict(self) -> dict[str, Any]:
        raw = {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
            "costUsd": self.cost_usd,
        }
        return {k: v for k, v in raw.items() if v is not None}


@dataclass(frozen=True)
class AnalysisResponse:
    """``{result, usage}`` envelope returned by :func:`analyze`."""

    result: AnalysisResult
    usage: AnalysisUsage = field(default_factory=AnalysisUsage)

    def to_dict(self) -> dict[str, Any]:
        return {"result": self.result.to_dict(), "usage": self.usage.to_dict()}
