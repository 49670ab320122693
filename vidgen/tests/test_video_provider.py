"""
Tests for the Sora provider client: response parsing and HTTP error mapping.

No network: a scripted stand-in replaces the requests module.

Run locally:
    python -m pytest vidgen/tests/test_video_provider.py -v
"""

from __future__ import annotations

import subprocess

import pytest
import requests

from vidgen.services import video_provider
from vidgen.services.error_classifier import (
    ErrorKind,
    ProviderError,
    RetryableProviderError,
    TerminalProviderError,
    is_retryable,
)
from vidgen.services.video_provider import (
    SoraVideoProvider,
    build_prompt,
    extract_media_urls,
    normalize_status,
)


API_BASE = "https://api.example.com/v1"
KEY = "sk-test-key-00000001"


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text="", content=b""):
        self.status_code = status_code
        self._json = json_data
        self.text = text
        self.content = content

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeHttp:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, **kwargs):
        return self._next("post", url, kwargs)

    def get(self, url, **kwargs):
        return self._next("get", url, kwargs)

    def _next(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


def chat(content, **extra):
    body = {"id": "chatcmpl-1", "choices": [{"message": {"role": "assistant", "content": content}}]}
    body.update(extra)
    return FakeResponse(200, body)


def provider_with(*responses):
    http = FakeHttp(*responses)
    return SoraVideoProvider(API_BASE, model="sora-2", http=http), http


class TestHelpers:
    def test_build_prompt(self):
        prompt = build_prompt({
            "prompt": "a lighthouse in a storm",
            "duration": 10,
            "resolution": "1080p",
            "aspect_ratio": "16:9",
            "negative_prompt": "text overlays",
        })
        assert prompt.splitlines() == [
            "Generate a video: a lighthouse in a storm",
            "Duration: 10s",
            "Resolution: 1080p",
            "Aspect Ratio: 16:9",
            "Negative: text overlays",
        ]

    def test_extract_markdown_links(self):
        found = extract_media_urls(
            "Done! [watch](https://cdn.example.com/out/v1.mp4) "
            "![cover](https://cdn.example.com/out/v1.webp) task_ab12cd"
        )
        assert found["video_url"] == "https://cdn.example.com/out/v1.mp4"
        assert found["thumbnail_url"] == "https://cdn.example.com/out/v1.webp"
        assert found["task_id"] == "task_ab12cd"
        assert found["source_url"] is None

    def test_extract_bare_url(self):
        found = extract_media_urls("Your video: https://cdn.example.com/v2.mp4")
        assert found["video_url"] == "https://cdn.example.com/v2.mp4"

    @pytest.mark.parametrize("raw, expected", [
        ("queued", "pending"),
        ("IN_PROGRESS", "processing"),
        ("succeeded", "completed"),
        ("error", "failed"),
        (None, "processing"),
        ("something-new", "processing"),
    ])
    def test_normalize_status(self, raw, expected):
        assert normalize_status(raw) == expected


class TestSubmit:
    def test_markdown_video_completes_immediately(self):
        provider, http = provider_with(chat("[video](https://cdn.example.com/out/v1.mp4)"))

        result = provider.submit({"prompt": "waves", "duration": 5}, KEY)

        assert result["status"] == "completed"
        assert result["video_url"] == "https://cdn.example.com/out/v1.mp4"
        method, url, kwargs = http.calls[0]
        assert method == "post"
        assert url == f"{API_BASE}/chat/completions"
        assert kwargs["headers"]["Authorization"] == f"Bearer {KEY}"
        assert kwargs["json"]["model"] == "sora-2"
        assert "waves" in kwargs["json"]["messages"][0]["content"]

    def test_model_from_params(self):
        provider, http = provider_with(chat("https://cdn.example.com/v.mp4"))
        provider.submit({"prompt": "x", "model": "sora-2-pro"}, KEY)
        assert http.calls[0][2]["json"]["model"] == "sora-2-pro"

    def test_structured_video_url_wins(self):
        provider, _ = provider_with(FakeResponse(200, {
            "id": "vid_1", "status": "succeeded", "video_url": "https://cdn.example.com/s.mp4",
        }))
        result = provider.submit({"prompt": "x"}, KEY)
        assert result == {
            "id": "vid_1",
            "status": "completed",
            "video_url": "https://cdn.example.com/s.mp4",
            "thumbnail_url": None,
        }

    def test_task_id_only_is_pending(self):
        provider, _ = provider_with(chat("Queued as task_9f8e7d, check back later"))
        result = provider.submit({"prompt": "x"}, KEY)
        assert result["status"] == "pending"
        assert result["id"] == "task_9f8e7d"
        assert result["video_url"] is None

    def test_asyncdata_link_is_resolved(self):
        provider, http = provider_with(
            chat("生成完成 [原始数据](https://asyncdata.net/source/abc123)"),
            FakeResponse(200, {"url": "https://cdn.example.com/a.mp4", "thumbnail_url": "https://cdn.example.com/a.png"}),
        )
        result = provider.submit({"prompt": "x"}, KEY)
        assert result["video_url"] == "https://cdn.example.com/a.mp4"
        assert result["thumbnail_url"] == "https://cdn.example.com/a.png"
        assert http.calls[1][1] == "https://asyncdata.net/source/abc123"

    def test_asyncdata_failure_falls_back_to_text(self):
        provider, _ = provider_with(
            chat("[原始数据](https://asyncdata.net/source/abc123) https://cdn.example.com/b.mp4"),
            FakeResponse(500, text="oops"),
        )
        result = provider.submit({"prompt": "x"}, KEY)
        assert result["video_url"] == "https://cdn.example.com/b.mp4"

    def test_unrecognised_content_raises(self):
        provider, _ = provider_with(chat("I cannot help with that."))
        with pytest.raises(ProviderError):
            provider.submit({"prompt": "x"}, KEY)

    def test_invalid_json_raises(self):
        provider, _ = provider_with(FakeResponse(200, None, text="<html>"))
        with pytest.raises(ProviderError):
            provider.submit({"prompt": "x"}, KEY)


class TestHttpErrors:
    def test_unauthorized_is_terminal(self):
        provider, _ = provider_with(FakeResponse(401, {"error": {"message": "Invalid API key"}}))
        with pytest.raises(TerminalProviderError) as exc_info:
            provider.submit({"prompt": "x"}, KEY)
        assert exc_info.value.kind == ErrorKind.AUTH
        assert "Invalid API key" in str(exc_info.value)

    def test_quota_body_is_terminal(self):
        provider, _ = provider_with(FakeResponse(429, {"error": "RemainQuota = 0"}))
        with pytest.raises(TerminalProviderError) as exc_info:
            provider.submit({"prompt": "x"}, KEY)
        assert exc_info.value.kind == ErrorKind.QUOTA

    def test_server_error_is_retryable(self):
        provider, _ = provider_with(FakeResponse(503, text="Service Unavailable"))
        with pytest.raises(RetryableProviderError) as exc_info:
            provider.submit({"prompt": "x"}, KEY)
        assert exc_info.value.status_code == 503
        assert is_retryable(exc_info.value)

    def test_timeout_is_retryable(self):
        provider, _ = provider_with(requests.Timeout("read timeout"))
        with pytest.raises(RetryableProviderError) as exc_info:
            provider.submit({"prompt": "x"}, KEY)
        assert exc_info.value.kind == ErrorKind.TIMEOUT

    def test_connection_error_is_retryable(self):
        provider, _ = provider_with(requests.ConnectionError("refused"))
        with pytest.raises(RetryableProviderError) as exc_info:
            provider.submit({"prompt": "x"}, KEY)
        assert exc_info.value.kind == ErrorKind.NETWORK


class TestPollAndDownload:
    def test_poll_normalizes(self):
        provider, http = provider_with(FakeResponse(200, {
            "id": "task_1", "status": "succeeded", "videoUrl": "https://cdn.example.com/p.mp4",
        }))
        result = provider.poll("task_1", KEY)
        assert result["status"] == "completed"
        assert result["video_url"] == "https://cdn.example.com/p.mp4"
        assert http.calls[0][1] == f"{API_BASE}/video/generations/task_1"

    def test_poll_failure_message(self):
        provider, _ = provider_with(FakeResponse(200, {"status": "failed", "error": {"message": "moderation"}}))
        result = provider.poll("task_2", KEY)
        assert result["status"] == "failed"
        assert result["error"] == "moderation"
        assert result["id"] == "task_2"

    def test_download_returns_bytes(self):
        provider, _ = provider_with(FakeResponse(200, content=b"\x00\x01video"))
        assert provider.download("https://cdn.example.com/v.mp4") == b"\x00\x01video"

    def test_empty_download_is_retryable(self):
        provider, _ = provider_with(FakeResponse(200, content=b""))
        with pytest.raises(RetryableProviderError):
            provider.download("https://cdn.example.com/v.mp4")


class TestProbeMetadata:
    def test_parses_ffprobe_duration(self, monkeypatch):
        def fake_run(cmd, **kwargs):
            assert cmd[0] == "ffprobe"
            return subprocess.CompletedProcess(cmd, 0, stdout=b"9.6\n", stderr=b"")

        monkeypatch.setattr(video_provider.subprocess, "run", fake_run)
        provider, _ = provider_with()

        assert provider.probe_metadata("https://cdn.example.com/v.mp4", b"abc") == {
            "duration_seconds": 10,
            "file_size": 3,
        }

    def test_missing_ffprobe_returns_none(self, monkeypatch):
        def fake_run(cmd, **kwargs):
            raise FileNotFoundError("ffprobe")

        monkeypatch.setattr(video_provider.subprocess, "run", fake_run)
        provider, _ = provider_with()

        assert provider.probe_metadata("https://cdn.example.com/v.mp4", b"abc") is None

    def test_download_failure_returns_none(self):
        provider, _ = provider_with(FakeResponse(404, text="gone"))
        assert provider.probe_metadata("https://cdn.example.com/v.mp4") is None
