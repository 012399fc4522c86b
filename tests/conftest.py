import asyncio
import io
import struct
import zlib
from typing import Any

import pytest
from PIL import Image

from compressor import RawPhoto, UploadPayload
from config import Settings
from errors import ServiceError
from models import EnhancedImage, UploadedAsset


def make_jpeg(width: int = 64, height: int = 48, color: tuple[int, int, int] = (200, 30, 30), **save_kwargs) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, "JPEG", **save_kwargs)
    return buf.getvalue()


def make_oversized_png(width: int = 20_000, height: int = 10_000) -> bytes:
    """Tiny PNG whose header declares more pixels than Pillow will decode."""

    def chunk(kind: bytes, body: bytes) -> bytes:
        return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", zlib.crc32(kind + body))

    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IDAT", zlib.compress(b"")) + chunk(b"IEND", b"")


def make_noisy_jpeg(width: int, height: int) -> bytes:
    """High-entropy JPEG, so the file is large on disk."""
    img = Image.effect_noise((width, height), 100).convert("RGB")
    buf = io.BytesIO()
    img.save(buf, "JPEG", quality=100)
    return buf.getvalue()


def asset(index: int, prefix: str = "asset") -> UploadedAsset:
    return UploadedAsset(
        id=f"{prefix}-{index}",
        url=f"https://cdn.test/{prefix}-{index}.jpg",
        card_url=f"https://cdn.test/{prefix}-{index}-card.jpg",
        thumbnail_url=f"https://cdn.test/{prefix}-{index}-thumb.jpg",
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        functions_url="https://functions.test",
        api_url="https://api.test",
        access_token="test-token",
        timezone="Australia/Sydney",
    )


@pytest.fixture
def photos():
    def _make(n: int) -> list[RawPhoto]:
        return [RawPhoto(filename=f"IMG_{i:04d}.jpg", source_bytes=make_jpeg(color=(i * 20 % 255, 80, 120))) for i in range(n)]

    return _make


class FakeServices:
    """Stands in for ServiceClient: records calls and returns scripted responses."""

    def __init__(self):
        self.access_token = "test-token"
        self.groups: list[dict] | ServiceError = []
        self.analyses: dict[str, dict | ServiceError] = {}  # keyed by cover URL
        self.default_analysis: dict | ServiceError = {}
        self.enhance_error: ServiceError | None = None
        self.upload_errors: dict[int, ServiceError] = {}
        self.persist_error: ServiceError | None = None
        self.upload_delay = 0.0
        self.gate: asyncio.Event | None = None  # when set, analysis waits on it

        self.uploads: list[tuple[str, int]] = []
        self.enhanced: list[str] = []
        self.analyzed: list[tuple[list[str], dict]] = []
        self.persisted: list[dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True

    @property
    def has_session(self) -> bool:
        return bool(self.access_token)

    async def upload(self, payload: UploadPayload, run_id: str, index: int) -> UploadedAsset:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.upload_delay)
            if index in self.upload_errors:
                raise self.upload_errors[index]
            self.uploads.append((run_id, index))
            return asset(index)
        finally:
            self.in_flight -= 1

    async def enhance(self, image_url: str, run_id: str) -> EnhancedImage:
        await asyncio.sleep(0)
        if self.enhance_error:
            raise self.enhance_error
        self.enhanced.append(image_url)
        return EnhancedImage(
            url=image_url.replace(".jpg", "-studio.jpg"),
            card_url=image_url.replace(".jpg", "-studio-card.jpg"),
            thumbnail_url=image_url.replace(".jpg", "-studio-thumb.jpg"),
        )

    async def group(self, image_urls: list[str]) -> list[dict]:
        await asyncio.sleep(0)
        if isinstance(self.groups, ServiceError):
            raise self.groups
        return self.groups

    async def analyze(self, image_urls: list[str], hints: dict[str, Any]) -> dict:
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        self.analyzed.append((image_urls, hints))
        result = self.analyses.get(image_urls[0], self.default_analysis)
        if isinstance(result, ServiceError):
            raise result
        return result

    async def create_scheduled_listing(self, payload: dict[str, Any]) -> dict:
        await asyncio.sleep(0)
        if self.persist_error:
            raise self.persist_error
        self.persisted.append(payload)
        return {"id": f"listing-{len(self.persisted)}"}


@pytest.fixture
def services() -> FakeServices:
    return FakeServices()
