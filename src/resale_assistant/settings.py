"""Application settings, provider credentials and the YAML settings gateway."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Final, TypeVar

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from .analysis.types import AnalysisError, AnalysisUsage

LOG = logging.getLogger(__name__)


class Provider(str, Enum):
    """Supported multimodal backends."""

    GOOGLE = "google"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    XAI = "xai"
    OPENROUTER = "openrouter"

    @classmethod
    def parse(cls, value: str) -> Provider:
        """Parse a provider id, raising a caller-side :class:`AnalysisError` if unknown."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise AnalysisError(
                f"Provider {value!r} is not supported.", "api", status_code=400
            ) from None


PROVIDER_ENV_MAP: Final[dict[Provider, str]] = {
    Provider.GOOGLE: "GEMINI_API_KEY",
    Provider.OPENAI: "OPENAI_API_KEY",
    Provider.ANTHROPIC: "ANTHROPIC_API_KEY",
    Provider.XAI: "XAI_API_KEY",
    Provider.OPENROUTER: "OPENROUTER_API_KEY",
}

MODELS_BY_PROVIDER: Final[dict[Provider, tuple[str, ...]]] = {
    Provider.GOOGLE: ("gemini-2.5-flash", "gemini-2.5-pro"),
    Provider.OPENAI: ("gpt-4.1", "gpt-4.1-mini"),
    Provider.ANTHROPIC: ("claude-sonnet-4-20250514",),
    Provider.XAI: ("grok-4-fast",),
    Provider.OPENROUTER: (
        "nvidia/nemotron-nano-12b-v2-vl:free",
        "openai/gpt-4.1",
        "google/gemini-2.5-flash",
        "x-ai/grok-4.1-fast",
        "amazon/nova-2-lite-v1",
    ),
}

LANGUAGES: Final[tuple[str, ...]] = ("Dansk", "English", "Svenska", "Norsk", "Deutsch")
CURRENCIES: Final[tuple[str, ...]] = ("DKK", "EUR", "USD", "GBP", "SEK", "NOK")

DEFAULT_PROMPT_TEMPLATE: Final[str] = """\
Identify the item in the photos.
Suggest a fair secondhand price in {currency} in the field 'price'.
Find or estimate the item's original retail price in {currency} in the field 'priceNew'.
Write a one-line description (max 58 characters) in {language} in the field 'description'. \
The description MUST include brand, type, color and size when known \
(e.g. "Nike Air Max 90 Black Size 42").
Also identify brand, type, color, size, material, condition and style in their respective fields.
Use web search to verify prices and find similar listings.
Return the result as JSON with the keys: 'description', 'price', 'priceNew', 'brand', 'type', \
'color', 'size', 'material', 'condition', 'style', 'similarLinks'."""

DEFAULT_TIMEOUT_S: Final[float] = 30.0


@dataclass(frozen=True)
class AppSettings:
    """User-configurable analysis settings."""

    provider: str = Provider.OPENROUTER.value
    model: str = "nvidia/nemotron-nano-12b-v2-vl:free"
    language: str = "Dansk"
    currency: str = "DKK"
    custom_prompt: str = DEFAULT_PROMPT_TEMPLATE
    timeout_s: float = DEFAULT_TIMEOUT_S

    def with_provider(self, provider: str) -> AppSettings:
        """Switch provider and pick its first known model."""
        p = Provider.parse(provider)
        models = MODELS_BY_PROVIDER.get(p, ())
        return replace(self, provider=p.value, model=models[0] if models else "")


@dataclass(frozen=True)
class UsageTotals:
    """Running usage totals across analysis runs."""

    runs: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0

    def add(self, usage: AnalysisUsage) -> UsageTotals:
        return UsageTotals(
            runs=self.runs + 1,
            prompt_tokens=self.prompt_tokens + (usage.prompt_tokens or 0),
            completion_tokens=self.completion_tokens + (usage.completion_tokens or 0),
            total_tokens=self.total_tokens + (usage.total_tokens or 0),
            cost_usd=self.cost_usd + (usage.cost_usd or 0.0),
        )


@dataclass(frozen=True)
class ProviderStatus:
    provider: str
    has_key: bool


def provider_statuses(environ: Mapping[str, str] | None = None) -> list[ProviderStatus]:
    """Report, for each provider, whether its credential is configured."""
    env = os.environ if environ is None else environ
    return [
        ProviderStatus(provider=p.value, has_key=bool(env.get(k)))
        for p, k in PROVIDER_ENV_MAP.items()
    ]


def resolve_api_key(provider: Provider, environ: Mapping[str, str] | None = None) -> str:
    """Return the provider's API key from the environment.

    Raises:
        AnalysisError: If the environment variable is not set.
    """
    env = os.environ if environ is None else environ
    name = PROVIDER_ENV_MAP[provider]
    key = (env.get(name) or "").strip()
    if not key:
        raise AnalysisError(f"Environment variable {name} is not set.", "api", status_code=500)
    return key


class _SettingsYaml(BaseModel):
    model_config = ConfigDict(extra="ignore")

    provider: str = AppSettings.provider
    model: str = AppSettings.model
    language: str = AppSettings.language
    currency: str = AppSettings.currency
    custom_prompt: str = AppSettings.custom_prompt
    timeout_s: float = Field(default=DEFAULT_TIMEOUT_S, gt=0.0)

    @field_validator("provider", "model", "language", "currency", "custom_prompt", mode="before")
    @classmethod
    def _blank_to_default(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return cls.model_fields[info.field_name].default
        return v


class _UsageYaml(BaseModel):
    model_config = ConfigDict(extra="ignore")

    runs: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0


_Section = TypeVar("_Section", bound=BaseModel)


def _validate_section(model: type[_Section], raw: Any, section: str) -> _Section:
    """Validate one section field by field; invalid values fall back to their defaults."""
    if not isinstance(raw, dict):
        if raw is not None:
            LOG.warning("Ignoring invalid %s section in settings file", section)
        return model()
    kept: dict[str, Any] = {}
    for name, value in raw.items():
        if name not in model.model_fields:
            continue
        try:
            model.model_validate({name: value})
        except ValidationError as e:
            LOG.warning("Ignoring invalid setting %s.%s=%r: %s", section, name, value, e)
            continue
        kept[name] = value
    return model.model_validate(kept)


@dataclass
class SettingsStore:
    """Load/save :class:`AppSettings` and :class:`UsageTotals` from a YAML file."""

    path: Path
    _cache: tuple[AppSettings, UsageTotals] | None = field(default=None, repr=False)
    _unreadable: bool = field(default=False, repr=False)

    def load(self) -> tuple[AppSettings, UsageTotals]:
        """Read the file, falling back to defaults when it is missing or invalid.

        Invalid fields fall back one by one; the rest of the file is kept.
        """
        self._unreadable = False
        if not self.path.is_file():
            return AppSettings(), UsageTotals()
        try:
            raw = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            LOG.warning("Ignoring unreadable settings file %s: %s", self.path, e)
            self._unreadable = True
            return AppSettings(), UsageTotals()
        if not isinstance(raw, dict):
            LOG.warning("Ignoring settings file %s: expected a mapping", self.path)
            self._unreadable = True
            return AppSettings(), UsageTotals()
        stored = _validate_section(_SettingsYaml, raw.get("settings"), "settings")
        stored_usage = _validate_section(_UsageYaml, raw.get("usage"), "usage")
        settings = AppSettings(**stored.model_dump())
        usage = UsageTotals(**stored_usage.model_dump())
        self._cache = (settings, usage)
        return settings, usage

    def save(self, settings: AppSettings, usage: UsageTotals | None = None) -> None:
        if usage is None:
            usage = self._cache[1] if self._cache is not None else self.load()[1]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        dumped = yaml.safe_dump(
            {"settings": asdict(settings), "usage": asdict(usage)},
            sort_keys=False,
            allow_unicode=True,
        )
        self.path.write_text(dumped, encoding="utf-8")
        self._cache = (settings, usage)

    def record_usage(self, usage: AnalysisUsage) -> UsageTotals:
        """Add one run to the stored totals (best effort)."""
        settings, totals = self.load()
        totals = totals.add(usage)
        if self._unreadable:
            LOG.warning("Not updating usage totals: %s could not be read", self.path)
            return totals
        try:
            self.save(settings, totals)
        except OSError as e:
            LOG.warning("Could not persist usage totals: %s", e)
        return totals
