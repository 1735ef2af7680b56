"""Prompt assembly for listing analysis."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Final

from ..settings import AppSettings

SEARCH_INSTRUCTION: Final[str] = """\
SEARCH INSTRUCTION (IMPORTANT):
Use live web search to find 2-3 similar items for sale online to validate the price and find references.
You MUST prioritize links from the Danish resale platforms 'Trendsales' and 'DBA' (Den Blå Avis).
1. Search for the item on Trendsales and DBA first.
2. Only if you find no relevant match there may you include links from general web shops or international sites.
3. Always try to find and verify the item's current retail price (priceNew).
4. Include every link you find in the 'similarLinks' field."""


def build_prompt(settings: AppSettings, context: str | None = None) -> str:
    """Fill the user's template and append the search and context blocks."""
    prompt = settings.custom_prompt.replace("{language}", settings.language).replace(
        "{currency}", settings.currency
    )
    prompt += "\n\n" + SEARCH_INSTRUCTION
    if context and context.strip():
        prompt += f"\n\nUSER CONTEXT (important!): {context.strip()}"
    return prompt


def reestimate_context(details: Mapping[str, str], description: str) -> str:
    """Fold the user's edited fields back into the prompt for a re-estimate."""
    return (
        f"Brand: {details.get('brand', '')}, Type: {details.get('type', '')}, "
        f"Color: {details.get('color', '')}, Size: {details.get('size', '')}. "
        f"Description: {description}"
    )
