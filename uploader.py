"""
Upload batcher: push payloads to asset storage under a concurrency bound.

Uses a continuously refilled pool (one semaphore, one task per item) rather
than fixed windows, so a slow upload never stalls the next free slot. Output
order always matches input order because results are gathered by position.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from functools import partial
from typing import TypeVar

from compressor import UploadPayload
from config import DEFAULT_UPLOAD_CONCURRENCY
from errors import ServiceError, UploadError
from models import UploadedAsset

logger = logging.getLogger(__name__)

T = TypeVar("T")

UploadFn = Callable[[UploadPayload, str, int], Awaitable[UploadedAsset]]


async def bounded_gather(factories: Sequence[Callable[[], Awaitable[T]]], concurrency: int) -> list[T]:
    """Run coroutine factories with at most `concurrency` in flight; results in input order.

    The first exception cancels everything still pending or running and is re-raised.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1, got {concurrency}")

    semaphore = asyncio.Semaphore(concurrency)

    async def _run(factory: Callable[[], Awaitable[T]]) -> T:
        async with semaphore:
            return await factory()

    tasks = [asyncio.create_task(_run(f)) for f in factories]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def upload_all(
    payloads: Sequence[UploadPayload],
    upload: UploadFn,
    run_id: str,
    concurrency: int = DEFAULT_UPLOAD_CONCURRENCY,
) -> list[UploadedAsset]:
    """Upload every payload; asset i corresponds to payload i.

    Any failure fails the whole call (no partial result, no retry).
    """
    total = len(payloads)
    logger.info(f"Uploading {total} photos (concurrency={concurrency})...")

    async def _one(index: int, payload: UploadPayload) -> UploadedAsset:
        asset = await upload(payload, run_id, index)
        logger.info(f"  Image {index + 1}/{total} uploaded")
        return asset

    try:
        assets = await bounded_gather([partial(_one, i, p) for i, p in enumerate(payloads)], concurrency)
    except ServiceError as e:
        raise UploadError(f"Upload failed: {e.message}") from e

    logger.info(f"  All {total} photos uploaded")
    return assets
