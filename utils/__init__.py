"""Utility functions for the Splat Engine."""

from .validation import (
    sanitize_filename,
    guess_content_type,
    is_image,
    sha256_file,
)

__all__ = [
    "sanitize_filename",
    "guess_content_type",
    "is_image",
    "sha256_file",
]
