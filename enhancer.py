"""Best-effort cover enhancement (background removal / studio backdrop)."""

import logging
from collections.abc import Awaitable, Callable

from errors import ServiceError
from models import EnhancedImage, ImageVariants
from result import Err, Ok, Result

logger = logging.getLogger(__name__)

EnhanceFn = Callable[[str, str], Awaitable[EnhancedImage]]


async def enhance_cover(image_url: str, enhance: EnhanceFn, run_id: str) -> Result[EnhancedImage]:
    """Ask the enhancement service for a cleaned-up cover. Never raises for service failures."""
    try:
        enhanced = await enhance(image_url, run_id)
    except ServiceError as e:
        return Err(str(e))
    return Ok(enhanced)


def apply_cover(images: list[ImageVariants], enhanced: EnhancedImage) -> list[ImageVariants]:
    """Replace position 0 with the enhanced cover; the rest keep their order."""
    return [enhanced, *images[1:]]
