"""Per-provider request shaping and response parsing, all routed through LiteLLM."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final, Protocol

import httpx
import litellm
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..settings import Provider
from .types import AnalysisError, AnalysisRequest, AnalysisResult, AnalysisUsage

LOG = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT: Final[str] = (
    "You are a resale pricing analyst. Respond ONLY with compact JSON containing the "
    "requested fields."
)
GROK_SYSTEM_PROMPT: Final[str] = (
    "You are Grok assisting resale experts. Always answer strictly with JSON using the "
    "provided fields."
)
OPENROUTER_REFERER: Final[str] = "https://wecircle-assistent.vercel.app"
OPENROUTER_TITLE: Final[str] = "WeCircle Assistent"


class _ListingOut(BaseModel):
    """Lenient parser for the model's JSON answer."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    description: str = Field(min_length=1)
    price: float
    price_new: float | None = Field(default=None, alias="priceNew")
    brand: str = ""
    type: str = ""
    color: str = ""
    size: str = ""
    material: str = ""
    condition: str = ""
    style: str = ""
    similar_links: list[str] = Field(default_factory=list, alias="similarLinks")

    @field_validator("description", mode="before")
    @classmethod
    def _strip_description(cls, v: Any) -> str:
        if v is None:
            return ""
        return str(v).strip()

    @field_validator("price", "price_new", mode="before")
    @classmethod
    def _coerce_price(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _parse_price_text(v)
        return v

    @field_validator(
        "brand", "type", "color", "size", "material", "condition", "style", mode="before"
    )
    @classmethod
    def _coerce_detail(cls, v: Any) -> str:
        if v is None:
            return ""
        if isinstance(v, list):
            return ", ".join(str(s).strip() for s in v if str(s).strip())
        return str(v).strip()

    @field_validator("similar_links", mode="before")
    @classmethod
    def _coerce_links(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        if isinstance(v, list):
            links: list[str] = []
            for item in v:
                # Some models return [{"title": ..., "url": ...}, ...].
                if isinstance(item, dict):
                    item = item.get("url") or item.get("link")
                if isinstance(item, str) and item.strip() and item.strip() not in links:
                    links.append(item.strip())
            return links
        return []

    def to_result(self) -> AnalysisResult:
        return AnalysisResult(
            description=self.description,
            price=float(self.price),
            price_new=self.price_new,
            brand=self.brand,
            type=self.type,
            color=self.color,
            size=self.size,
            material=self.material,
            condition=self.condition,
            style=self.style,
            similar_links=tuple(self.similar_links),
        )


_PRICE_RE = re.compile(r"-?\d[\d.,\s]*")


def _parse_price_text(text: str) -> float | None:
    """Parse prices such as "250 kr", "1.200,50" or "$1,200.50"."""
    m = _PRICE_RE.search(text)
    if m is None:
        return None
    num = m.group(0).replace(" ", "").strip(".,")
    if "," in num and "." in num:
        # The right-most separator is the decimal one.
        if num.rfind(",") > num.rfind("."):
            num = num.replace(".", "").replace(",", ".")
        else:
            num = num.replace(",", "")
    elif "," in num:
        head, _, tail = num.rpartition(",")
        num = f"{head.replace(',', '')}.{tail}" if len(tail) != 3 else num.replace(",", "")
    elif num.count(".") > 1 or (num.count(".") == 1 and len(num.rpartition(".")[2]) == 3):
        num = num.replace(".", "")
    try:
        return float(num)
    except ValueError:
        return None


LISTING_JSON_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {
        "description": {"type": "string"},
        "price": {"type": "number"},
        "priceNew": {"type": "number"},
        "brand": {"type": "string"},
        "type": {"type": "string"},
        "color": {"type": "string"},
        "size": {"type": "string"},
        "material": {"type": "string"},
        "condition": {"type": "string"},
        "style": {"type": "string"},
        "similarLinks": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["description", "price"],
}


def _response_format(schema: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {"name": "ListingAnalysis", "schema": schema},
    }


def _extract_json(text: str) -> str:
    """Extract a JSON object from a possibly noisy model response."""
    if not text:
        return text
    # Common case: fenced JSON block
    if "```" in text:
        for body in text.split("```")[1::2]:
            body = body.strip()
            first, _, rest = body.partition("\n")
            if first.strip().lower() in {"json", "application/json"}:
                body = rest.strip()
            if body.startswith("{") and body.endswith("}"):
                return body
    try:
        json.loads(text)
    except json.JSONDecodeError:
        pass
    else:
        return text
    i = text.find("{")
    j = text.rfind("}")
    if i != -1 and j != -1 and j > i:
        cand = text[i : j + 1]
        try:
            json.loads(cand)
        except json.JSONDecodeError:
            return text
        else:
            return cand
    return text


def _content_to_text(content: Any) -> str:
    """Best-effort normalization of provider message content to a single string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    # OpenAI-style content blocks: [{"type":"text","text":"..."} , ...]
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict):
                t = item.get("text")
                if isinstance(t, str):
                    chunks.append(t)
        return "\n".join(chunks).strip()
    if isinstance(content, dict):
        t = content.get("text")
        if isinstance(t, str):
            return t
    return str(content)


def _response_to_dict(resp: Any) -> dict[str, Any]:
    """Normalize a LiteLLM completion response object to a plain dict."""
    if isinstance(resp, dict):
        return resp
    if isinstance(resp, BaseModel):
        return resp.model_dump()
    raise TypeError(f"Unsupported completion response type: {type(resp)!r}")


def _extract_choice_text(resp: dict[str, Any]) -> tuple[str, str]:
    """Extract assistant content and finish_reason from a Chat Completions-style response."""
    choices = resp.get("choices") or []
    if not isinstance(choices, list) or not choices:
        return "", ""
    c0 = choices[0] or {}
    if not isinstance(c0, dict):
        return "", ""
    finish_reason = str(c0.get("finish_reason") or "")

    msg = c0.get("message") or {}
    if isinstance(msg, dict) and "content" in msg:
        return _content_to_text(msg.get("content")).strip(), finish_reason

    # Some providers put content at the choice level.
    if "text" in c0:
        return _content_to_text(c0.get("text")).strip(), finish_reason

    return "", finish_reason


def _as_int(v: Any) -> int | None:
    return v if isinstance(v, int) and not isinstance(v, bool) else None


def _extract_usage(resp: dict[str, Any], raw_resp: Any) -> AnalysisUsage:
    """Read token counts and cost; cost lookup is best effort."""
    usage = resp.get("usage")
    if not isinstance(usage, dict):
        return AnalysisUsage()
    cost = usage.get("cost")
    cost_usd = float(cost) if isinstance(cost, int | float) and not isinstance(cost, bool) else None
    if cost_usd is None:
        try:
            cost_usd = float(litellm.completion_cost(completion_response=raw_resp))
        except Exception as e:  # noqa: BLE001
            LOG.warning("Could not compute completion cost: %s", e)
    return AnalysisUsage(
        prompt_tokens=_as_int(usage.get("prompt_tokens")),
        completion_tokens=_as_int(usage.get("completion_tokens")),
        total_tokens=_as_int(usage.get("total_tokens")),
        cost_usd=cost_usd,
    )


def _with_prefix(prefix: str, model: str) -> str:
    """LiteLLM routes on a "<provider>/" prefix."""
    model = model.strip()
    return model if model.startswith(f"{prefix}/") else f"{prefix}/{model}"


@dataclass(frozen=True)
class ProviderReply:
    result: AnalysisResult
    usage: AnalysisUsage


class SupportsAnalysis(Protocol):
    """One provider backend."""

    def analyze(self, request: AnalysisRequest, *, api_key: str, timeout_s: float) -> ProviderReply:
        """Send the request and return the normalized result."""
        ...


@dataclass(frozen=True)
class _LiteLLMAdapter:
    """Shared call/parse flow; subclasses shape the request."""

    name: str
    litellm_prefix: str
    safety_finish_reasons: frozenset[str] = frozenset({"content_filter"})

    def build_kwargs(self, request: AnalysisRequest) -> dict[str, Any]:
        raise NotImplementedError

    def analyze(self, request: AnalysisRequest, *, api_key: str, timeout_s: float) -> ProviderReply:
        kwargs = self.build_kwargs(request)
        kwargs["model"] = _with_prefix(self.litellm_prefix, request.model)
        kwargs["api_key"] = api_key
        kwargs["timeout"] = timeout_s
        LOG.info(
            "Requesting listing analysis: provider=%s model=%s images=%d",
            self.name,
            kwargs["model"],
            len(request.images),
        )
        raw_resp = _call_litellm(kwargs)
        resp = _response_to_dict(raw_resp)
        text, finish_reason = _extract_choice_text(resp)
        usage = _extract_usage(resp, raw_resp)
        LOG.info(
            "Analysis response received: provider=%s finish_reason=%s usage=%s",
            self.name,
            finish_reason,
            usage,
        )
        if not text:
            if finish_reason.lower() in self.safety_finish_reasons:
                raise AnalysisError(
                    f"The request was blocked by {self.name}'s safety filters.", "safety"
                )
            raise AnalysisError(
                f"Empty response from {self.name} (finish_reason={finish_reason!r}).", "parse"
            )
        return ProviderReply(result=self.parse(text), usage=usage)

    def parse(self, text: str) -> AnalysisResult:
        try:
            parsed = _ListingOut.model_validate_json(_extract_json(text))
        except ValidationError as e:
            raise AnalysisError(
                f"{self.name} returned output that does not match the listing schema.", "parse"
            ) from e
        return parsed.to_result()


def _call_litellm(kwargs: dict[str, Any]) -> Any:
    """Invoke LiteLLM and classify transport/provider failures."""
    try:
        return litellm.completion(**kwargs)
    except litellm.ContentPolicyViolationError as e:
        raise AnalysisError(f"The request was blocked by content policy: {e}", "safety") from e
    except (litellm.Timeout, litellm.APIConnectionError, httpx.TransportError) as e:
        raise AnalysisError(
            "Network error. Check your internet connection and try again.", "network"
        ) from e
    except Exception as e:  # noqa: BLE001
        raise AnalysisError(f"Provider error during analysis: {e}", "api") from e


def _image_parts(images: tuple[str, ...]) -> list[dict[str, Any]]:
    return [{"type": "image_url", "image_url": {"url": img}} for img in images]


@dataclass(frozen=True)
class GeminiAdapter(_LiteLLMAdapter):
    """Google Gemini: inline parts (images, then text), strict schema, Google Search grounding."""

    name: str = "Google Gemini"
    litellm_prefix: str = "gemini"
    safety_finish_reasons: frozenset[str] = frozenset(
        {"content_filter", "safety", "prohibited_content", "blocklist", "spii"}
    )

    def build_kwargs(self, request: AnalysisRequest) -> dict[str, Any]:
        parts = [*_image_parts(request.images), {"type": "text", "text": request.prompt}]
        return {
            "messages": [{"role": "user", "content": parts}],
            "tools": [{"googleSearch": {}}],
            "response_format": _response_format(LISTING_JSON_SCHEMA),
        }


@dataclass(frozen=True)
class ChatCompletionsAdapter(_LiteLLMAdapter):
    """OpenAI-compatible chat completions (OpenAI, xAI, OpenRouter)."""

    api_base: str | None = None
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    use_schema: bool = False
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float = 0.1

    def build_kwargs(self, request: AnalysisRequest) -> dict[str, Any]:
        content = [{"type": "text", "text": request.prompt}, *_image_parts(request.images)]
        kwargs: dict[str, Any] = {
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": content},
            ],
            "temperature": self.temperature,
        }
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = dict(self.extra_headers)
        if self.use_schema:
            kwargs["response_format"] = _response_format(LISTING_JSON_SCHEMA)
        return kwargs


@dataclass(frozen=True)
class AnthropicAdapter(_LiteLLMAdapter):
    """Anthropic Messages: system prompt, images then text, fenced JSON answer."""

    name: str = "Anthropic"
    litellm_prefix: str = "anthropic"
    safety_finish_reasons: frozenset[str] = frozenset({"content_filter", "refusal"})
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_tokens: int = 2048

    def build_kwargs(self, request: AnalysisRequest) -> dict[str, Any]:
        content = [*_image_parts(request.images), {"type": "text", "text": request.prompt}]
        return {
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": content},
            ],
            "max_tokens": self.max_tokens,
            "temperature": 0.1,
        }


ADAPTERS: Final[dict[Provider, SupportsAnalysis]] = {
    Provider.GOOGLE: GeminiAdapter(),
    Provider.OPENAI: ChatCompletionsAdapter(
        name="OpenAI", litellm_prefix="openai", use_schema=True
    ),
    Provider.ANTHROPIC: AnthropicAdapter(),
    Provider.XAI: ChatCompletionsAdapter(
        name="xAI",
        litellm_prefix="xai",
        api_base="https://api.x.ai/v1",
        system_prompt=GROK_SYSTEM_PROMPT,
    ),
    Provider.OPENROUTER: ChatCompletionsAdapter(
        name="OpenRouter",
        litellm_prefix="openrouter",
        api_base="https://openrouter.ai/api/v1",
        extra_headers={"HTTP-Referer": OPENROUTER_REFERER, "X-Title": OPENROUTER_TITLE},
    ),
}


def get_adapter(provider: Provider) -> SupportsAnalysis:
    adapter = ADAPTERS.get(provider)
    if adapter is None:
        raise AnalysisError(
            f"Provider {provider.value!r} has no implemented handler yet.", "api", status_code=400
        )
    return adapter
