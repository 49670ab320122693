"""
General helper utilities shared across services.

These functions are intentionally dependency-light so they can be reused
by services, scripts and tests without pulling in database state.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any


def now_ms() -> int:
    """Current epoch milliseconds as int."""
    return int(time.time() * 1000)


def sanitize_filename(name: str) -> str:
    """Sanitize a filename/prefix for storage keys."""
    safe = re.sub(r"[^a-zA-Z0-9._-]+", "-", (name or "").strip())
    safe = re.sub(r"-{2,}", "-", safe).strip("-.")
    return safe[:120] or "file"


def get_extension_for_content_type(content_type: str) -> str:
    ct = (content_type or "").split(";", 1)[0].strip().lower()
    return {
        "video/mp4": ".mp4",
        "video/webm": ".webm",
        "video/quicktime": ".mov",
        "image/png": ".png",
        "image/jpeg": ".jpg",
        "image/webp": ".webp",
        "image/gif": ".gif",
    }.get(ct, "")


def mask_secret(value: str | None, head: int = 7, tail: int = 4) -> str:
    """Render a credential as ``sk-abcd...wxyz`` for logs and status output."""
    if not value:
        return ""
    if len(value) <= head + tail:
        return "*" * len(value)
    return f"{value[:head]}...{value[-tail:]}"


def truncate_error(message: Any, max_len: int = 1000) -> str:
    """Normalize an error or message into a bounded single string."""
    text = str(message or "").strip()
    if len(text) > max_len:
        return text[:max_len] + "…"
    return text


_logger = logging.getLogger("vidgen.helpers")


def _mask_value(val: Any, max_len: int = 400) -> str:
    try:
        s = json.dumps(val, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        s = str(val)
    if len(s) > max_len:
        return s[:max_len] + "…"
    return s


def _scrub_secrets(data: Any) -> Any:
    if isinstance(data, dict):
        cleaned = {}
        for k, v in data.items():
            key = str(k).lower()
            if any(t in key for t in ("key", "token", "secret", "auth", "credential")):
                cleaned[k] = "***"
            else:
                cleaned[k] = _scrub_secrets(v)
        return cleaned
    if isinstance(data, list):
        return [_scrub_secrets(x) for x in data]
    return data


def log_event(event_name: str, data: dict) -> None:
    """Lightweight structured logging that avoids leaking secrets."""
    try:
        safe_payload = _scrub_secrets(data)
        _logger.info("[event] %s :: %s", event_name, _mask_value(safe_payload))
    except Exception as e:
        _logger.warning("[event] %s :: failed to log (%s)", event_name, e)
