"""
Photo grouping: partition uploaded assets into candidate products.

The clustering service's reply is sanitised so that every index is in range
and belongs to at most one group. When the service fails or returns nothing,
the orchestrator falls back to one group per photo.
"""

import logging
from collections.abc import Awaitable, Callable

from pydantic import ValidationError

from errors import ServiceError
from models import PhotoGroup
from result import Err, Ok, Result

logger = logging.getLogger(__name__)

GroupFn = Callable[[list[str]], Awaitable[list[dict]]]


async def request_groups(image_urls: list[str], group: GroupFn) -> Result[list[PhotoGroup]]:
    """One-shot clustering call. Ok may hold an empty list; the caller decides the fallback."""
    try:
        raw_groups = await group(image_urls)
    except ServiceError as e:
        return Err(str(e))
    return Ok(sanitize_groups(raw_groups, len(image_urls)))


def sanitize_groups(raw_groups: list[dict], photo_count: int) -> list[PhotoGroup]:
    """Validate raw groups; drop out-of-range and already-claimed indexes, then empty groups.

    The first group to claim an index keeps it.
    """
    claimed: set[int] = set()
    groups: list[PhotoGroup] = []

    for position, raw in enumerate(raw_groups):
        if not isinstance(raw, dict):
            logger.warning(f"  Ignoring malformed group at position {position}")
            continue
        raw = {"id": f"group-{position + 1}", **raw}
        try:
            candidate = PhotoGroup.model_validate(raw)
        except (ValidationError, TypeError) as e:
            logger.warning(f"  Ignoring invalid group {raw.get('id')}: {e}")
            continue

        indexes = [i for i in candidate.photo_indexes if 0 <= i < photo_count and i not in claimed]
        dropped = len(candidate.photo_indexes) - len(indexes)
        if dropped:
            logger.warning(f"  Group {candidate.id}: dropped {dropped} out-of-range or duplicate indexes")
        if not indexes:
            continue

        claimed.update(indexes)
        if not candidate.suggested_name:
            candidate.suggested_name = f"Product {len(groups) + 1}"
        candidate.photo_indexes = indexes
        groups.append(candidate)

    return groups


def fallback_groups(photo_count: int) -> list[PhotoGroup]:
    """One singleton group per photo, covering 0..photo_count-1 exactly once."""
    return [
        PhotoGroup(
            id=f"group-{i}",
            photo_indexes=[i],
            suggested_name=f"Product {i + 1}",
            confidence=1.0,
        )
        for i in range(photo_count)
    ]


def resolve_groups(result: Result[list[PhotoGroup]], photo_count: int) -> list[PhotoGroup]:
    """Degrade branch: a failed or empty grouping becomes the per-photo fallback."""
    if isinstance(result, Err):
        logger.warning(f"  Grouping failed ({result.error}), using one group per photo")
        return fallback_groups(photo_count)
    if not result.value:
        logger.warning("  Grouping returned no groups, using one group per photo")
        return fallback_groups(photo_count)
    return result.value
