"""Upload sanitization: drop embedded metadata and give every file a random name.

Images are decoded and re-encoded from raw pixels only, so EXIF, XMP, ICC,
PNG text chunks and comments never reach disk. Formats that cannot be
re-encoded here (video, unknown types) are stored byte-for-byte and flagged
with metadata_stripping_skipped for downstream audit.
"""
from __future__ import annotations

import asyncio
import io
import logging
import os
import re
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from persona_veil.crypto import primitives
from persona_veil.errors import StorageError, ValidationError
from persona_veil.models import SanitizedMedia

_log = logging.getLogger(__name__)

FILENAME_BYTES = 16

# extension -> Pillow encoder
IMAGE_FORMATS = {
    ".jpg": "JPEG",
    ".jpeg": "JPEG",
    ".png": "PNG",
    ".gif": "GIF",
    ".webp": "WEBP",
}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".webm", ".avi"}

_EXTENSION_RE = re.compile(r"^\.[a-z0-9]{1,8}$")


def safe_extension(original_name: str) -> str:
    ext = os.path.splitext(original_name or "")[1].lower()
    return ext if _EXTENSION_RE.match(ext) else ""


def random_filename(original_name: str) -> str:
    return primitives.random_hex(FILENAME_BYTES) + safe_extension(original_name)


def strip_image(data: bytes, fmt: str) -> bytes:
    """Re-encode image pixels into a fresh container with no metadata."""
    try:
        with Image.open(io.BytesIO(data)) as src:
            src.load()
            transparency = src.info.get("transparency")
            # Bake the EXIF orientation into the pixels before the tag is dropped.
            img = ImageOps.exif_transpose(src)
            if fmt == "JPEG" and img.mode not in ("RGB", "L", "CMYK"):
                img = img.convert("RGB")
            clean = Image.frombytes(img.mode, img.size, img.tobytes())
            if img.mode == "P":
                clean.putpalette(img.getpalette())
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ValidationError("Uploaded image could not be processed") from exc

    out = io.BytesIO()
    save_kwargs: dict = {}
    if fmt in ("JPEG", "WEBP"):
        save_kwargs["quality"] = 95
    if transparency is not None and fmt in ("PNG", "GIF") and clean.mode in ("P", "L", "RGB"):
        save_kwargs["transparency"] = transparency
    clean.save(out, format=fmt, **save_kwargs)
    return out.getvalue()


class MetadataSanitizer:
    def __init__(self, upload_dir: Path, media_url_prefix: str, *,
                 max_bytes: int = 10 * 1024 * 1024, timeout_seconds: float = 10.0) -> None:
        self.upload_dir = Path(upload_dir)
        self.media_url_prefix = media_url_prefix.rstrip("/")
        self.max_bytes = max_bytes
        self.timeout_seconds = timeout_seconds
        self._url_re = re.compile(
            "^" + re.escape(self.media_url_prefix) + r"/([0-9a-f]{32}(?:\.[a-z0-9]{1,8})?)$"
        )

    def _write(self, name: str, payload: bytes) -> Path:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        final = self.upload_dir / name
        partial = self.upload_dir / f".{name}.part"
        try:
            partial.write_bytes(payload)
            os.replace(partial, final)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise StorageError("Could not store upload") from exc
        return final

    def sanitize(self, original_name: str, data: bytes, *, strip: bool = True) -> SanitizedMedia:
        if not data:
            raise ValidationError("No file uploaded")
        if len(data) > self.max_bytes:
            raise ValidationError(f"File exceeds the {self.max_bytes} byte upload limit")

        ext = safe_extension(original_name)
        name = random_filename(original_name)
        fmt = IMAGE_FORMATS.get(ext)
        if fmt is not None and strip:
            payload, skipped, media_type = strip_image(data, fmt), False, "image"
        else:
            media_type = "image" if fmt else "video" if ext in VIDEO_EXTENSIONS else "other"
            payload, skipped = data, True

        path = self._write(name, payload)
        if skipped:
            _log.info("metadata stripping skipped for %s upload", media_type)
        return SanitizedMedia(
            path=str(path),
            media_url=f"{self.media_url_prefix}/{name}",
            media_type=media_type,
            metadata_stripping_skipped=skipped,
        )

    async def sanitize_async(self, original_name: str, data: bytes, *, strip: bool = True) -> SanitizedMedia:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.sanitize, original_name, data, strip=strip),
                self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            _log.error("upload sanitization timed out after %.1fs", self.timeout_seconds)
            raise StorageError("Upload processing timed out") from exc

    def is_sanitized_url(self, url: str) -> bool:
        """True for URLs this sanitizer produced whose file is on disk."""
        match = self._url_re.match(url or "")
        return bool(match) and (self.upload_dir / match.group(1)).is_file()
