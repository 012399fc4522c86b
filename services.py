"""
HTTP client for the external collaborators of the ingest pipeline.

- asset storage:   POST {functions}/upload-to-cloudinary   (multipart)
- enhancement:     POST {functions}/enhance-product-image
- grouping:        POST {functions}/group-photos-ai
- analysis:        POST {functions}/analyze-listing-ai
- listing store:   POST {api}/admin/scheduled-uploads

Every call carries the run's bearer token. Failures surface as ServiceError;
deciding what a failure means for the run is the orchestrator's job.
"""

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from compressor import UploadPayload
from config import Settings
from errors import ServiceError
from models import EnhancedImage, UploadedAsset

logger = logging.getLogger(__name__)


class ServiceClient:
    def __init__(
        self,
        settings: Settings,
        access_token: str | None = None,
        http: httpx.AsyncClient | None = None,
    ):
        self._settings = settings
        self.access_token = settings.access_token if access_token is None else access_token
        self._http = http or httpx.AsyncClient(timeout=settings.request_timeout)
        self._owns_http = http is None

    async def __aenter__(self) -> "ServiceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def has_session(self) -> bool:
        return bool(self.access_token)

    def _function_url(self, name: str) -> str:
        return f"{self._settings.functions_url}/{name}"

    async def _post(self, service: str, url: str, **kwargs: Any) -> dict:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            resp = await self._http.post(url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise ServiceError(service, str(e) or type(e).__name__) from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if not resp.is_success:
            message = body.get("error") if isinstance(body, dict) else None
            raise ServiceError(service, message or f"HTTP {resp.status_code}", resp.status_code)
        if not isinstance(body, dict):
            raise ServiceError(service, "Response was not a JSON object", resp.status_code)
        return body

    # ------------------------------------------------------------------
    # Pipeline services
    # ------------------------------------------------------------------

    async def upload(self, payload: UploadPayload, run_id: str, index: int) -> UploadedAsset:
        """Store one photo. (run_id, index) lets the service dedupe re-submissions."""
        body = await self._post(
            "upload",
            self._function_url("upload-to-cloudinary"),
            data={"listingId": run_id, "index": str(index)},
            files={"file": (payload.filename, payload.content, payload.content_type)},
        )
        try:
            return UploadedAsset.model_validate(body.get("data") or {})
        except ValidationError as e:
            raise ServiceError("upload", f"Malformed upload response: {e.error_count()} errors") from e

    async def enhance(self, image_url: str, run_id: str) -> EnhancedImage:
        body = await self._post(
            "enhance",
            self._function_url("enhance-product-image"),
            json={"imageUrl": image_url, "listingId": run_id},
        )
        try:
            return EnhancedImage.model_validate(body.get("data") or {})
        except ValidationError as e:
            raise ServiceError("enhance", f"Malformed enhancement response: {e.error_count()} errors") from e

    async def group(self, image_urls: list[str]) -> list[dict]:
        body = await self._post(
            "group",
            self._function_url("group-photos-ai"),
            json={"imageUrls": image_urls},
        )
        groups = body.get("groups") or []
        if not isinstance(groups, list):
            raise ServiceError("group", "groups was not a list")
        return groups

    async def analyze(self, image_urls: list[str], hints: dict[str, Any]) -> dict:
        body = await self._post(
            "analyze",
            self._function_url("analyze-listing-ai"),
            json={"imageUrls": image_urls, "userHints": hints},
        )
        analysis = body.get("analysis")
        if not isinstance(analysis, dict):
            raise ServiceError("analyze", "No analysis in response")
        return analysis

    # ------------------------------------------------------------------
    # Listing store
    # ------------------------------------------------------------------

    async def create_scheduled_listing(self, payload: dict[str, Any]) -> dict:
        body = await self._post(
            "listings",
            f"{self._settings.api_url}/admin/scheduled-uploads",
            json=payload,
        )
        listing = body.get("listing")
        return listing if isinstance(listing, dict) else body
