"""HTTP endpoints: ``POST /api/analyze`` and ``GET /api/provider-status``."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .analysis.prompt import build_prompt
from .analysis.service import run_analysis
from .analysis.types import AnalysisError
from .settings import DEFAULT_PROMPT_TEMPLATE, DEFAULT_TIMEOUT_S, AppSettings, provider_statuses

LOG = logging.getLogger(__name__)


class SettingsPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    provider: str = ""
    model: str = ""
    language: str = "Dansk"
    currency: str = "DKK"
    custom_prompt: str = Field(default=DEFAULT_PROMPT_TEMPLATE, alias="customPrompt")


class AnalyzePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    images: list[str] = Field(default_factory=list)
    settings: SettingsPayload = Field(default_factory=SettingsPayload)
    prompt: str = ""

    @field_validator("images", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v


def create_app(
    environ: Mapping[str, str] | None = None,
    runner: Callable[..., Any] = run_analysis,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> FastAPI:
    """Build the API app.

    Args:
        environ: Credential environment; defaults to ``os.environ`` at request time.
        runner: Callable with the signature of :func:`run_analysis`.
        timeout_s: Provider call timeout.
    """
    app = FastAPI(title="Resale Assistant API", version="0.1.0")

    @app.exception_handler(AnalysisError)
    async def _analysis_error(_: Request, exc: AnalysisError) -> PlainTextResponse:
        LOG.warning("Analyze failed (%s): %s", exc.kind, exc.message)
        return PlainTextResponse(exc.message, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _bad_body(_: Request, exc: RequestValidationError) -> PlainTextResponse:
        return PlainTextResponse(f"Invalid request body: {exc.errors()}", status_code=400)

    @app.post("/api/analyze")
    def analyze_endpoint(payload: AnalyzePayload) -> dict[str, Any]:
        if not payload.images:
            raise AnalysisError("No images found to analyze.", "format")
        s = payload.settings
        prompt = payload.prompt.strip() or build_prompt(
            AppSettings(
                provider=s.provider,
                model=s.model,
                language=s.language,
                currency=s.currency,
                custom_prompt=s.custom_prompt,
            )
        )
        response = runner(
            payload.images,
            s.provider,
            s.model,
            prompt,
            timeout_s=timeout_s,
            environ=environ,
        )
        return response.to_dict()

    @app.get("/api/provider-status")
    def provider_status() -> dict[str, Any]:
        return {
            "statuses": [
                {"provider": st.provider, "hasKey": st.has_key} for st in provider_statuses(environ)
            ]
        }

    return app


app = create_app()
