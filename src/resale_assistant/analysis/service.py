"""Listing analysis entry points: validate input, build the prompt, dispatch to a provider."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from time import perf_counter

from ..cancellation import CancellationToken, check
from ..settings import AppSettings, Provider, resolve_api_key
from ..vision.image import ImageDecodeError, parse_data_url
from .prompt import build_prompt
from .providers import get_adapter
from .types import AnalysisError, AnalysisRequest, AnalysisResponse

LOG = logging.getLogger(__name__)


def _validate_images(images: Sequence[str]) -> tuple[str, ...]:
    if not images:
        raise AnalysisError("No images found to analyze.", "format")
    for i, img in enumerate(images):
        if not isinstance(img, str):
            raise AnalysisError(f"Image {i + 1} is not a data URL.", "format")
        try:
            parse_data_url(img)
        except ImageDecodeError as e:
            raise AnalysisError(f"Image {i + 1}: {e}", "format") from e
    return tuple(images)


def run_analysis(
    images: Sequence[str],
    provider: str,
    model: str,
    prompt: str,
    *,
    timeout_s: float,
    environ: Mapping[str, str] | None = None,
    token: CancellationToken | None = None,
) -> AnalysisResponse:
    """Dispatch a prepared prompt to the configured provider.

    Input problems fail before any network call: no images or malformed data
    URLs raise ``format``; unknown providers and missing credentials raise
    ``api``.

    Raises:
        AnalysisError: Classified failure (network, api, safety, format, parse).
        OperationCancelled: If ``token`` is cancelled before or during the call.
    """
    valid = _validate_images(images)
    p = Provider.parse(provider)
    if not model.strip():
        raise AnalysisError("Missing model in settings.", "api", status_code=400)
    adapter = get_adapter(p)
    api_key = resolve_api_key(p, environ)
    request = AnalysisRequest(images=valid, prompt=prompt, model=model)

    check(token, "analysis")
    t0 = perf_counter()
    reply = adapter.analyze(request, api_key=api_key, timeout_s=timeout_s)
    # A late answer for a torn-down view is dropped here.
    check(token, "analysis")
    LOG.info(
        "Analysis finished: provider=%s model=%s elapsed=%.1fs missing=%s",
        p.value,
        model,
        perf_counter() - t0,
        reply.result.missing_fields(),
    )
    return AnalysisResponse(result=reply.result, usage=reply.usage)


def analyze(
    images: Sequence[str],
    settings: AppSettings,
    context: str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    token: CancellationToken | None = None,
) -> AnalysisResponse:
    """Analyze item photos with the provider selected in ``settings``.

    Args:
        images: Photos as base64 data URLs (normally produced by ``normalize``).
        settings: Provider, model, language, currency and prompt template.
        context: Optional free text (dictation or edited fields) appended to the prompt.
        environ: Environment used to look up credentials; defaults to ``os.environ``.
        token: Cancellation token checked before and after the provider call.

    Returns:
        The normalized result plus usage telemetry.
    """
    if not images:
        raise AnalysisError("No images found to analyze.", "format")
    return run_analysis(
        images,
        settings.provider,
        settings.model,
        build_prompt(settings, context),
        timeout_s=settings.timeout_s,
        environ=environ,
        token=token,
    )
