import httpx
import orjson
import pytest

from compressor import UploadPayload
from errors import ServiceError
from services import ServiceClient


def _client(settings, handler) -> ServiceClient:
    return ServiceClient(settings, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


async def test_upload_sends_bearer_and_multipart_fields(settings):
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = request.read()
        seen["content_type"] = request.headers["Content-Type"]
        return httpx.Response(200, json={"data": {
            "id": "cld-1",
            "url": "https://cdn.test/cld-1.jpg",
            "cardUrl": "https://cdn.test/cld-1-card.jpg",
            "thumbnailUrl": "https://cdn.test/cld-1-thumb.jpg",
        }})

    async with _client(settings, handler) as client:
        uploaded = await client.upload(UploadPayload("IMG_1.jpg", b"\xff\xd8jpeg", "image/jpeg"), "bulk-abc", 4)

    assert seen["url"] == "https://functions.test/upload-to-cloudinary"
    assert seen["auth"] == "Bearer test-token"
    assert seen["content_type"].startswith("multipart/form-data")
    assert b'name="listingId"' in seen["body"] and b"bulk-abc" in seen["body"]
    assert b'name="index"' in seen["body"]
    assert b'name="file"; filename="IMG_1.jpg"' in seen["body"]
    assert uploaded.id == "cld-1"
    assert uploaded.card_url == "https://cdn.test/cld-1-card.jpg"


async def test_error_message_comes_from_body(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "Target user does not exist"})

    async with _client(settings, handler) as client:
        with pytest.raises(ServiceError) as excinfo:
            await client.create_scheduled_listing({"targetUserId": "nobody"})

    assert excinfo.value.status == 400
    assert excinfo.value.message == "Target user does not exist"
    assert excinfo.value.service == "listings"


async def test_error_without_body_uses_status(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream unavailable")

    async with _client(settings, handler) as client:
        with pytest.raises(ServiceError, match="HTTP 503"):
            await client.group(["https://cdn.test/a.jpg"])


async def test_transport_failure_is_service_error(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(settings, handler) as client:
        with pytest.raises(ServiceError, match="connection refused"):
            await client.analyze(["https://cdn.test/a.jpg"], {})


async def test_analyze_and_group_payloads(settings):
    bodies: dict[str, dict] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit("/", 1)[-1]
        bodies[name] = orjson.loads(request.content)
        if name == "group-photos-ai":
            return httpx.Response(200, json={"groups": [{"id": "g", "photoIndexes": [0]}]})
        return httpx.Response(200, json={"analysis": {"brand": "Specialized"}})

    async with _client(settings, handler) as client:
        groups = await client.group(["u0"])
        analysis = await client.analyze(["u0"], {"item_type": "part"})

    assert groups == [{"id": "g", "photoIndexes": [0]}]
    assert analysis == {"brand": "Specialized"}
    assert bodies["group-photos-ai"] == {"imageUrls": ["u0"]}
    assert bodies["analyze-listing-ai"] == {"imageUrls": ["u0"], "userHints": {"item_type": "part"}}


async def test_enhanced_url_falls_back_to_card(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        assert orjson.loads(request.content) == {"imageUrl": "u0", "listingId": "quick-1"}
        return httpx.Response(200, json={"data": {"cardUrl": "https://cdn.test/e-card.jpg",
                                                  "thumbnailUrl": "https://cdn.test/e-thumb.jpg"}})

    async with _client(settings, handler) as client:
        enhanced = await client.enhance("u0", "quick-1")

    assert enhanced.url == "https://cdn.test/e-card.jpg"


async def test_listing_store_url(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        return httpx.Response(201, json={"listing": {"id": "lst-9"}})

    async with _client(settings, handler) as client:
        listing = await client.create_scheduled_listing({"targetUserId": "u"})

    assert seen["url"] == "https://api.test/admin/scheduled-uploads"
    assert listing == {"id": "lst-9"}


def test_session_depends_on_token(settings):
    assert ServiceClient(settings, http=httpx.AsyncClient()).has_session
    assert not ServiceClient(settings, access_token="", http=httpx.AsyncClient()).has_session
