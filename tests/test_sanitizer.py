"""Tests for upload metadata stripping and filename randomization."""
import asyncio
import io
import re

import pytest
from PIL import Image

from persona_veil.errors import ValidationError
from persona_veil.media.sanitizer import safe_extension


def _jpeg_with_exif() -> bytes:
    img = Image.new("RGB", (16, 8), color=(200, 30, 30))
    exif = Image.Exif()
    exif[0x010F] = "SecretCam"          # Make
    exif[0x0131] = "persona-tracker"    # Software
    exif[0x0112] = 6                    # Orientation: rotate 90 CW
    out = io.BytesIO()
    img.save(out, format="JPEG", exif=exif.tobytes())
    return out.getvalue()


def test_photo_jpg_scenario(sanitizer, settings):
    media = sanitizer.sanitize("photo.jpg", _jpeg_with_exif())
    name = media.media_url.rsplit("/", 1)[1]
    assert re.fullmatch(r"[0-9a-f]{32}\.jpg", name)
    assert media.media_type == "image"
    assert not media.metadata_stripping_skipped

    stored = (settings.upload_dir / name).read_bytes()
    assert b"SecretCam" not in stored
    assert b"persona-tracker" not in stored
    with Image.open(io.BytesIO(stored)) as img:
        assert not img.getexif()
        # orientation baked into pixels
        assert img.size == (8, 16)


def test_png_text_chunks_removed(sanitizer, settings):
    from PIL.PngImagePlugin import PngInfo

    info = PngInfo()
    info.add_text("Author", "Jane Roe")
    out = io.BytesIO()
    Image.new("RGBA", (4, 4), (0, 0, 0, 0)).save(out, format="PNG", pnginfo=info)
    media = sanitizer.sanitize("avatar.PNG", out.getvalue())
    stored = (settings.upload_dir / media.media_url.rsplit("/", 1)[1]).read_bytes()
    assert b"Jane Roe" not in stored
    assert media.media_url.endswith(".png")


def test_unknown_type_passes_through_flagged(sanitizer, settings):
    media = sanitizer.sanitize("clip.mp4", b"\x00\x00\x00\x18ftypmp42")
    assert media.metadata_stripping_skipped
    assert media.media_type == "video"
    assert (settings.upload_dir / media.media_url.rsplit("/", 1)[1]).read_bytes() == b"\x00\x00\x00\x18ftypmp42"


def test_strip_disabled_is_flagged(sanitizer):
    media = sanitizer.sanitize("photo.jpg", _jpeg_with_exif(), strip=False)
    assert media.metadata_stripping_skipped
    assert media.media_type == "image"


def test_corrupt_image_rejected(sanitizer):
    with pytest.raises(ValidationError):
        sanitizer.sanitize("broken.png", b"not really a png")


def test_empty_and_oversized_rejected(sanitizer):
    with pytest.raises(ValidationError):
        sanitizer.sanitize("a.jpg", b"")
    with pytest.raises(ValidationError):
        sanitizer.sanitize("a.bin", b"x" * (sanitizer.max_bytes + 1))


def test_no_partial_files_left(sanitizer, settings):
    sanitizer.sanitize("photo.jpg", _jpeg_with_exif())
    assert not [p for p in settings.upload_dir.iterdir() if p.name.endswith(".part")]


def test_unsafe_extensions_dropped():
    assert safe_extension("../../etc/passwd") == ""
    assert safe_extension("x.tar.gz") == ".gz"
    assert safe_extension("x.j p g") == ""


def test_is_sanitized_url(sanitizer):
    media = sanitizer.sanitize("photo.jpg", _jpeg_with_exif())
    assert sanitizer.is_sanitized_url(media.media_url)
    assert not sanitizer.is_sanitized_url("/uploads/anonymous/" + "0" * 32 + ".jpg")
    assert not sanitizer.is_sanitized_url("https://tracker.example/pixel.gif")
    assert not sanitizer.is_sanitized_url("/uploads/anonymous/../secret.jpg")


def test_sanitize_async(sanitizer):
    media = asyncio.run(sanitizer.sanitize_async("photo.jpg", _jpeg_with_exif()))
    assert sanitizer.is_sanitized_url(media.media_url)
