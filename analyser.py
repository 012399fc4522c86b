"""
Listing analyser: structured extraction per photo group.

Two stages per group:
  A) Call the analysis service with the group's image URLs (cover first)
  B) Map its payload into normalized ListingFields

A failed call yields Err; the orchestrator turns that into a default draft
titled with the group's suggested name, without touching sibling groups.
"""

import logging
import math
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

import taxonomy
from errors import ServiceError
from models import ItemType, ListingFields
from result import Err, Ok, Result

logger = logging.getLogger(__name__)

AnalyzeFn = Callable[[list[str], dict[str, Any]], Awaitable[dict]]


# ===== Main Entry Point =====


async def analyse_group(
    image_urls: list[str],
    analyze: AnalyzeFn,
    fallback_title: str,
    category: ItemType | None = None,
) -> Result[ListingFields]:
    """Analyse one group's images and map the result. Never raises for service failures."""
    try:
        analysis = await analyze(image_urls, build_hints(category))
    except ServiceError as e:
        return Err(str(e))

    try:
        return Ok(map_analysis(analysis, fallback_title, category))
    except (ValidationError, TypeError, ValueError) as e:
        return Err(f"Unusable analysis payload: {e}")


def build_hints(category: ItemType | None) -> dict[str, Any]:
    """userHints for the analysis service; an operator-selected category is passed through."""
    return {"item_type": category.value} if category else {}


def default_fields(title: str) -> ListingFields:
    """Near-empty form used when analysis fails."""
    return ListingFields(title=title)


# =====================================================================
# Stage B: Mapping
# =====================================================================


def map_analysis(
    analysis: dict[str, Any],
    fallback_title: str,
    category: ItemType | None = None,
) -> ListingFields:
    """Map an analysis payload to ListingFields.

    Only the taxonomy of the operator-selected (else detected) category is filled.
    """
    item_type = category or taxonomy.detect_item_type(analysis) or ItemType.BIKE

    brand = _text(analysis.get("brand"))
    model = _text(analysis.get("model"))
    title = " ".join(p for p in (brand, model) if p) or fallback_title

    low, high = price_band(analysis)
    fields: dict[str, Any] = {
        "title": title,
        "product_description": _text(analysis.get("description")),
        "seller_notes": _text(analysis.get("seller_notes")) or _text(analysis.get("condition_details")),
        "wear_notes": _text(analysis.get("wear_notes")),
        "usage_estimate": _text(analysis.get("usage_estimate")),
        "brand": brand,
        "model": model,
        "model_year": _text(analysis.get("model_year")),
        "item_type": item_type,
        "condition_rating": analysis.get("condition_rating"),
        "condition_details": _text(analysis.get("wear_notes")),
        "price": midpoint_price(low, high),
        "original_rrp": high or 0,
    }
    fields.update(taxonomy.category_details(analysis, item_type))
    return ListingFields(**fields)


def price_band(analysis: dict[str, Any]) -> tuple[float | None, float | None]:
    """(min, max) in AUD from price_estimate, or the flat price_min_aud/price_max_aud keys."""
    estimate = analysis.get("price_estimate")
    if isinstance(estimate, dict):
        low, high = estimate.get("min_aud"), estimate.get("max_aud")
    else:
        low, high = analysis.get("price_min_aud"), analysis.get("price_max_aud")
    return _number(low), _number(high)


def midpoint_price(low: float | None, high: float | None) -> int:
    """Midpoint of the band, halves rounded up. 0 when no minimum was estimated."""
    if not low:
        return 0
    if high is None:
        high = low
    return math.floor((low + high) / 2 + 0.5)


def _number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()
