"""
Video generation provider client (Sora-2 via chat completions).

Submit Endpoint: POST {PROVIDER_API_BASE}/chat/completions
Poll Endpoint:   GET  {PROVIDER_API_BASE}/video/generations/{task_id}

Submit usually answers synchronously: the assistant message content carries
the finished video as a markdown link, a bare URL, or an AsyncData
"[原始数据](https://asyncdata.net/source/...)" link that resolves to JSON with
the real URLs. When only a task id comes back, the worker polls.

All HTTP failures are raised as classified ProviderError subclasses (see
error_classifier.error_from_status); transport timeouts and connection errors
are RetryableProviderError.

Normalized result dicts:
    submit -> {"id", "status", "video_url", "thumbnail_url"}
    poll   -> {"id", "status", "video_url", "thumbnail_url", "error"}
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
from typing import Any, Dict, Optional

import requests
from requests.exceptions import Timeout, ConnectionError as RequestsConnectionError

from vidgen.services.error_classifier import (
    ErrorKind,
    ProviderError,
    RetryableProviderError,
    error_from_status,
)
from vidgen.utils import mask_secret, truncate_error

logger = logging.getLogger("vidgen.provider")

# (connect_timeout, read_timeout)
DEFAULT_TIMEOUT = (15, 300)
ASYNCDATA_TIMEOUT = 30
DOWNLOAD_TIMEOUT = (15, 120)
FFPROBE_TIMEOUT = 30

STATUS_MAP = {
    "queued": "pending",
    "pending": "pending",
    "submitted": "pending",
    "processing": "processing",
    "in_progress": "processing",
    "running": "processing",
    "completed": "completed",
    "succeeded": "completed",
    "success": "completed",
    "failed": "failed",
    "failure": "failed",
    "error": "failed",
    "cancelled": "failed",
}

_TASK_ID_RE = re.compile(r"task_[a-z0-9]+", re.IGNORECASE)
_ASYNCDATA_RE = re.compile(r"\[原始数据\]\((https?://asyncdata\.net/source/[^)]+)\)")
_MD_VIDEO_RE = re.compile(r"\[[^\]]*\]\((https?://[^\s)]+\.(?:mp4|mov|webm)[^)]*)\)", re.IGNORECASE)
_BARE_VIDEO_RE = re.compile(r"https?://[^\s)\]]+\.(?:mp4|mov|avi|webm)", re.IGNORECASE)
_MD_IMAGE_RE = re.compile(r"!\[[^\]]*\]\((https?://[^\s)]+\.(?:webp|jpe?g|png)[^)]*)\)", re.IGNORECASE)
_BARE_IMAGE_RE = re.compile(r"https?://[^\s)\]]+\.(?:webp|jpe?g|png)", re.IGNORECASE)


def normalize_status(raw: Any) -> str:
    return STATUS_MAP.get(str(raw or "").strip().lower(), "processing")


def build_prompt(params: Dict[str, Any]) -> str:
    """Render job params into the text prompt the chat endpoint expects."""
    lines = [f"Generate a video: {params.get('prompt', '')}"]
    for label, key in (
        ("Duration", "duration"),
        ("Resolution", "resolution"),
        ("Aspect Ratio", "aspect_ratio"),
        ("Style", "style"),
        ("FPS", "fps"),
    ):
        value = params.get(key)
        if value not in (None, ""):
            suffix = "s" if key == "duration" else ""
            lines.append(f"{label}: {value}{suffix}")
    if params.get("negative_prompt"):
        lines.append(f"Negative: {params['negative_prompt']}")
    return "\n".join(lines)


def extract_media_urls(content: str) -> Dict[str, Optional[str]]:
    """Pull task id, video URL and thumbnail URL out of assistant message text."""
    content = content or ""
    task = _TASK_ID_RE.search(content)
    video = _MD_VIDEO_RE.search(content)
    video_url = video.group(1) if video else None
    if not video_url:
        bare = _BARE_VIDEO_RE.search(content)
        video_url = bare.group(0) if bare else None
    thumb = _MD_IMAGE_RE.search(content)
    thumbnail_url = thumb.group(1) if thumb else None
    if not thumbnail_url:
        bare = _BARE_IMAGE_RE.search(content)
        thumbnail_url = bare.group(0) if bare else None
    source = _ASYNCDATA_RE.search(content)
    return {
        "task_id": task.group(0) if task else None,
        "video_url": video_url,
        "thumbnail_url": thumbnail_url,
        "source_url": source.group(1) if source else None,
    }


def _error_message(r) -> str:
    text = (r.text or "")[:500] or "No error details"
    try:
        body = r.json()
    except ValueError:
        return text
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        if body.get("message"):
            return str(body["message"])
    return text


class VideoProvider:
    """Contract for external generation providers."""

    name = "base"

    def submit(self, params: Dict[str, Any], credential: str) -> Dict[str, Any]:
        raise NotImplementedError

    def poll(self, task_id: str, credential: str) -> Dict[str, Any]:
        raise NotImplementedError

    def download(self, artifact_url: str) -> bytes:
        raise NotImplementedError

    def probe_metadata(self, artifact_url: str, data: Optional[bytes] = None) -> Optional[Dict[str, Any]]:
        """Best-effort metadata; returns None on any failure."""
        return None


class SoraVideoProvider(VideoProvider):
    """HTTP client for an OpenAI-compatible Sora-2 endpoint."""

    name = "sora"

    def __init__(
        self,
        api_base: str,
        model: str = "sora-2",
        timeout: tuple = DEFAULT_TIMEOUT,
        http=None,
    ):
        self.api_base = api_base.rstrip("/")
        self.model = model
        self.timeout = timeout
        # Anything with requests' get/post signature (requests itself, a Session, a mock)
        self._http = http or requests

    # ── requests plumbing ─────────────────────────────────────
    def _request(self, method: str, url: str, action: str, **kwargs):
        try:
            r = getattr(self._http, method)(url, **kwargs)
        except Timeout as e:
            raise RetryableProviderError(f"{action} timed out: {e}", kind=ErrorKind.TIMEOUT) from e
        except RequestsConnectionError as e:
            raise RetryableProviderError(f"{action} network error: {e}", kind=ErrorKind.NETWORK) from e
        except requests.RequestException as e:
            raise ProviderError(f"{action} failed: {e}") from e

        if not r.ok:
            message = _error_message(r)
            logger.warning("[PROVIDER] %s failed: HTTP %s %s", action, r.status_code, truncate_error(message, 300))
            raise error_from_status(r.status_code, f"{action} failed (HTTP {r.status_code}): {message}")
        return r

    @staticmethod
    def _headers(credential: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credential}", "Content-Type": "application/json"}

    @staticmethod
    def _json(r, action: str) -> Dict[str, Any]:
        try:
            body = r.json()
        except ValueError as e:
            raise ProviderError(f"{action} returned invalid JSON") from e
        if not isinstance(body, dict):
            raise ProviderError(f"{action} returned unexpected payload")
        return body

    # ── contract ──────────────────────────────────────────────
    def submit(self, params: Dict[str, Any], credential: str) -> Dict[str, Any]:
        model = params.get("model") or self.model
        logger.info("[PROVIDER] Submitting %s request with %s", model, mask_secret(credential))

        r = self._request(
            "post",
            f"{self.api_base}/chat/completions",
            "submit",
            headers=self._headers(credential),
            json={
                "model": model,
                "messages": [{"role": "user", "content": build_prompt(params)}],
                "stream": False,
            },
            timeout=self.timeout,
        )
        body = self._json(r, "submit")

        response_id = body.get("id")
        # Structured responses win over text scraping
        if body.get("video_url"):
            return {
                "id": response_id,
                "status": normalize_status(body.get("status") or "completed"),
                "video_url": body["video_url"],
                "thumbnail_url": body.get("thumbnail_url"),
            }

        choices = body.get("choices") or []
        content = ""
        if choices and isinstance(choices[0], dict):
            content = (choices[0].get("message") or {}).get("content") or ""
        found = extract_media_urls(content)

        if found["source_url"]:
            resolved = self._resolve_asyncdata(found["source_url"])
            if resolved.get("video_url"):
                found["video_url"] = resolved["video_url"]
                found["thumbnail_url"] = resolved.get("thumbnail_url") or found["thumbnail_url"]

        if found["video_url"]:
            return {
                "id": response_id or found["task_id"],
                "status": "completed",
                "video_url": found["video_url"],
                "thumbnail_url": found["thumbnail_url"],
            }
        if found["task_id"]:
            return {"id": found["task_id"], "status": "pending", "video_url": None, "thumbnail_url": None}

        raise ProviderError("No video URL returned from API - unexpected response format")

    def _resolve_asyncdata(self, source_url: str) -> Dict[str, Optional[str]]:
        """Follow an AsyncData link; failures fall back to text scraping."""
        try:
            r = self._request("get", source_url, "asyncdata", timeout=ASYNCDATA_TIMEOUT)
            data = self._json(r, "asyncdata")
        except ProviderError as e:
            logger.warning("[PROVIDER] AsyncData lookup failed: %s", e)
            return {}
        return {
            "video_url": data.get("url") or data.get("video_url") or data.get("videoUrl"),
            "thumbnail_url": data.get("thumbnail_url") or data.get("thumbnailUrl"),
        }

    def poll(self, task_id: str, credential: str) -> Dict[str, Any]:
        r = self._request(
            "get",
            f"{self.api_base}/video/generations/{task_id}",
            "poll",
            headers={"Authorization": f"Bearer {credential}"},
            timeout=self.timeout,
        )
        body = self._json(r, "poll")
        error = body.get("error")
        if isinstance(error, dict):
            error = error.get("message") or str(error)
        return {
            "id": body.get("id") or task_id,
            "status": normalize_status(body.get("status")),
            "video_url": body.get("video_url") or body.get("videoUrl"),
            "thumbnail_url": body.get("thumbnail_url") or body.get("thumbnailUrl"),
            "error": error,
        }

    def download(self, artifact_url: str) -> bytes:
        logger.info("[PROVIDER] Downloading artifact %s", artifact_url[:100])
        r = self._request("get", artifact_url, "download", timeout=DOWNLOAD_TIMEOUT, allow_redirects=True)
        data = r.content
        if not data:
            raise RetryableProviderError("download returned an empty body", kind=ErrorKind.SERVER)
        logger.info("[PROVIDER] Downloaded %d bytes", len(data))
        return data

    def probe_metadata(self, artifact_url: str, data: Optional[bytes] = None) -> Optional[Dict[str, Any]]:
        """
        Probe duration with ffprobe. Downloads the artifact unless ``data``
        is supplied. Any failure (no ffprobe, bad file, network) returns None.
        """
        temp_video = None
        try:
            if data is None:
                data = self.download(artifact_url)
            with tempfile.NamedTemporaryFile(suffix=".mp4", delete=False) as f:
                f.write(data)
                temp_video = f.name

            result = subprocess.run(
                [
                    "ffprobe", "-v", "error",
                    "-show_entries", "format=duration",
                    "-of", "default=noprint_wrappers=1:nokey=1",
                    temp_video,
                ],
                capture_output=True,
                timeout=FFPROBE_TIMEOUT,
            )
            if result.returncode != 0:
                logger.warning(
                    "[PROVIDER] ffprobe failed: %s",
                    result.stderr.decode("utf-8", errors="ignore")[:200],
                )
                return None
            duration = float(result.stdout.decode("utf-8", errors="ignore").strip())
            return {"duration_seconds": int(round(duration)), "file_size": len(data)}
        except (ProviderError, OSError, subprocess.SubprocessError, ValueError) as e:
            logger.warning("[PROVIDER] Could not determine video duration: %s", e)
            return None
        finally:
            if temp_video and os.path.exists(temp_video):
                os.unlink(temp_video)
