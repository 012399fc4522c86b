import io
from dataclasses import replace

import pytest
from PIL import Image

from compressor import RawPhoto, compress_all, compress_bytes, compress_photo, make_preview, should_compress
from errors import CompressionError

from conftest import make_jpeg, make_noisy_jpeg, make_oversized_png


def _dims(data: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(data)) as img:
        return img.size


async def test_small_photo_is_sent_unchanged(settings):
    data = make_jpeg(320, 240)
    payload = await compress_photo(RawPhoto("small.jpg", data), settings)

    assert payload.content == data
    assert payload.compressed is False
    assert payload.filename == "small.jpg"


async def test_oversized_photo_is_bounded_and_keeps_aspect(settings):
    data = make_jpeg(3000, 2000)
    payload = await compress_photo(RawPhoto("wide.jpg", data), settings)

    assert payload.compressed is True
    assert payload.content_type == "image/jpeg"
    assert _dims(payload.content) == (1920, 1280)


async def test_heavy_photo_is_reencoded(settings):
    data = make_noisy_jpeg(400, 300)
    tight = replace(settings, compress_threshold=1024)
    assert len(data) > 1024

    payload = await compress_photo(RawPhoto("IMG_0001.HEIC.png", data, "image/png"), tight)

    assert payload.compressed is True
    assert payload.filename == "IMG_0001.HEIC.jpg"
    assert _dims(payload.content) == (400, 300)


def test_exif_orientation_applied_before_resize():
    exif = Image.Exif()
    exif[0x0112] = 6  # rotated 90 CW
    data = make_jpeg(60, 40, exif=exif.tobytes())

    out = compress_bytes(data, 1920, 0.8)

    assert _dims(out) == (40, 60)


def test_alpha_is_flattened_to_jpeg():
    buf = io.BytesIO()
    Image.new("RGBA", (50, 50), (0, 255, 0, 128)).save(buf, "PNG")

    out = compress_bytes(buf.getvalue(), 1920, 0.8)

    with Image.open(io.BytesIO(out)) as img:
        assert img.format == "JPEG"
        assert img.mode == "RGB"


def test_should_compress_ignores_non_images(settings):
    assert should_compress(b"x" * 10_000_000, "application/pdf", settings) is False


async def test_undecodable_photo_raises(settings):
    forced = replace(settings, compress_threshold=0)
    with pytest.raises(CompressionError):
        await compress_photo(RawPhoto("broken.jpg", b"not really a jpeg"), forced)


async def test_compress_all_keeps_order(settings):
    photos = [RawPhoto(f"p{i}.jpg", make_jpeg(10 + i, 10)) for i in range(4)]

    payloads = await compress_all(photos, settings)

    assert [p.filename for p in payloads] == ["p0.jpg", "p1.jpg", "p2.jpg", "p3.jpg"]


def test_preview_is_small_and_release_drops_it():
    photo = RawPhoto("big.jpg", make_jpeg(1200, 900))
    photo.preview = make_preview(photo.source_bytes)

    assert max(_dims(photo.preview)) == 256
    photo.release()
    assert photo.preview is None


def test_preview_of_garbage_is_none():
    assert make_preview(b"garbage") is None


async def test_oversized_header_raises_compression_error(settings):
    bomb = RawPhoto("huge.png", make_oversized_png(), content_type="image/png")

    with pytest.raises(CompressionError):
        await compress_photo(bomb, settings)
    with pytest.raises(CompressionError):
        compress_bytes(bomb.source_bytes, 1920, 0.8)
    assert make_preview(bomb.source_bytes) is None
