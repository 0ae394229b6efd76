"""Validation utilities for uploaded media and file integrity."""

import hashlib
import io
import re
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Union

from PIL import Image, UnidentifiedImageError

SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")
MAX_NAME_LENGTH = 128

VIDEO_EXTENSIONS = {".mp4", ".mov", ".m4v", ".avi", ".mkv", ".webm"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff", ".webp"}


def sanitize_filename(filename: str, fallback: str = "upload") -> str:
    """
    Reduce an untrusted upload name to a safe basename.

    Directory components (either separator style) are dropped, unusual
    characters collapse to ``_``, and leading dots are removed so nothing
    becomes hidden.
    """
    name = PureWindowsPath(PurePosixPath(filename or "").name).name
    name = SAFE_NAME.sub("_", name).lstrip("._")
    if len(name) > MAX_NAME_LENGTH:
        stem, dot, suffix = name.rpartition(".")
        if dot and len(suffix) <= 10:
            name = stem[:MAX_NAME_LENGTH - len(suffix) - 1] + "." + suffix
        else:
            name = name[:MAX_NAME_LENGTH]
    return name or fallback


def guess_content_type(path: Union[str, Path]) -> str:
    """Content type from the file extension, for files that did not come over HTTP."""
    suffix = Path(path).suffix.lower()
    if suffix in VIDEO_EXTENSIONS:
        return "video/quicktime" if suffix == ".mov" else "video/" + suffix.lstrip(".")
    if suffix in IMAGE_EXTENSIONS:
        return "image/jpeg" if suffix in {".jpg", ".jpeg"} else "image/" + suffix.lstrip(".")
    return "application/octet-stream"


def is_image(data: bytes) -> bool:
    """Check that the bytes decode as an image Pillow understands."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
        return True
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return False


def sha256_file(path: Path, chunk_size: int = 1 << 20) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()
