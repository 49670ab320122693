"""Utility helpers for the dispatch pipeline."""

from .helpers import (
    get_extension_for_content_type,
    log_event,
    mask_secret,
    now_ms,
    sanitize_filename,
    truncate_error,
)

__all__ = [
    "get_extension_for_content_type",
    "log_event",
    "mask_secret",
    "now_ms",
    "sanitize_filename",
    "truncate_error",
]
