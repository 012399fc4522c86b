"""
Runtime settings for the listing ingest pipeline.

Everything is read from environment variables once, into an immutable
Settings object that callers pass around explicitly.
"""

import os
from dataclasses import dataclass

DEFAULT_UPLOAD_CONCURRENCY = 3
DEFAULT_ANALYSIS_CONCURRENCY = 3
DEFAULT_MAX_DIMENSION = 1920
DEFAULT_JPEG_QUALITY = 0.8
DEFAULT_COMPRESS_THRESHOLD = 300 * 1024  # bytes; smaller photos are sent as-is
DEFAULT_TIMEZONE = "Australia/Sydney"
DEFAULT_SCHEDULE_TIME = "09:00"


@dataclass(frozen=True)
class Settings:
    functions_url: str = "http://localhost:54321/functions/v1"
    api_url: str = "http://localhost:3000/api"
    access_token: str = ""
    upload_concurrency: int = DEFAULT_UPLOAD_CONCURRENCY
    analysis_concurrency: int = DEFAULT_ANALYSIS_CONCURRENCY
    request_timeout: float = 60.0
    timezone: str = DEFAULT_TIMEZONE
    max_dimension: int = DEFAULT_MAX_DIMENSION
    jpeg_quality: float = DEFAULT_JPEG_QUALITY
    compress_threshold: int = DEFAULT_COMPRESS_THRESHOLD

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from LISTING_* environment variables, falling back to defaults."""
        defaults = cls()
        return cls(
            functions_url=os.getenv("LISTING_FUNCTIONS_URL", defaults.functions_url).rstrip("/"),
            api_url=os.getenv("LISTING_API_URL", defaults.api_url).rstrip("/"),
            access_token=os.getenv("LISTING_ACCESS_TOKEN", "").strip(),
            upload_concurrency=int(os.getenv("LISTING_UPLOAD_CONCURRENCY", defaults.upload_concurrency)),
            analysis_concurrency=int(os.getenv("LISTING_ANALYSIS_CONCURRENCY", defaults.analysis_concurrency)),
            request_timeout=float(os.getenv("LISTING_REQUEST_TIMEOUT", defaults.request_timeout)),
            timezone=os.getenv("LISTING_TIMEZONE", defaults.timezone),
            max_dimension=int(os.getenv("LISTING_MAX_DIMENSION", defaults.max_dimension)),
            jpeg_quality=float(os.getenv("LISTING_JPEG_QUALITY", defaults.jpeg_quality)),
            compress_threshold=int(os.getenv("LISTING_COMPRESS_THRESHOLD", defaults.compress_threshold)),
        )
