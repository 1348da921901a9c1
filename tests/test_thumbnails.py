"""Tests for thumbnail decoding and the placeholder image."""

import base64
import io

from PIL import Image

from thumbnails import (
    PNG_SIGNATURE,
    decode_base64,
    encode_base64,
    placeholder_png,
    thumbnail_png,
    to_png,
)
from tests.conftest import png_bytes


def test_png_passes_through_unchanged():
    data = png_bytes()
    assert to_png(data) == data
    assert thumbnail_png(encode_base64(data)) == data


def test_other_formats_are_converted_to_png():
    out = io.BytesIO()
    Image.new("RGB", (8, 8), (0, 128, 0)).save(out, format="JPEG")
    converted = to_png(out.getvalue())

    assert converted.startswith(PNG_SIGNATURE)
    with Image.open(io.BytesIO(converted)) as img:
        assert img.size == (8, 8)


def test_garbage_is_not_an_image():
    assert to_png(b"definitely not an image") is None


def test_decode_base64_tolerates_whitespace():
    encoded = base64.b64encode(b"abcdef").decode()
    assert decode_base64(f" {encoded[:4]}\n{encoded[4:]} ") == b"abcdef"
    assert decode_base64("not*base64") is None
    assert decode_base64("") is None
    assert decode_base64(None) is None


def test_placeholder_is_valid_png():
    data = placeholder_png()
    assert data.startswith(PNG_SIGNATURE)
    with Image.open(io.BytesIO(data)) as img:
        img.verify()


def test_undecodable_thumbnail_falls_back_to_placeholder():
    assert thumbnail_png(None) == placeholder_png()
    assert thumbnail_png(encode_base64(b"junk")) == placeholder_png()


def test_oversized_image_falls_back_to_placeholder(monkeypatch):
    data = png_bytes(size=(8, 8))
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 10)
    assert to_png(data) is None
    assert thumbnail_png(encode_base64(data)) == placeholder_png()
