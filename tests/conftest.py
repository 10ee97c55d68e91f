"""Pytest configuration and fixtures for rest-dispatch tests.

This file provides:
- RecordingQueue: SubmissionQueue that keeps contexts instead of running them
- make_settings / make_http_response: model builders with sensible defaults
- Fixtures: request builders and a callback recorder
"""

from __future__ import annotations

import threading
from typing import Any

import pytest

from rest_dispatch.models import HTTPResponse, RequestResult, TransferSettings
from rest_dispatch.request import RequestConfig


class RecordingQueue:
    """Captures submitted contexts without executing them.

    Lets tests inspect exactly what a perform operation built.
    """

    def __init__(self) -> None:
        self.submitted: list[Any] = []

    def submit(self, context: Any) -> None:
        self.submitted.append(context)


class CallbackRecorder:
    """Callable that records (result, value, thread id) for every delivery."""

    def __init__(self) -> None:
        self.calls: list[tuple[RequestResult, Any]] = []
        self.thread_ids: list[int] = []

    def __call__(self, result: RequestResult, value: Any) -> None:
        self.calls.append((result, value))
        self.thread_ids.append(threading.get_ident())


def make_settings(
    connect_timeout: int = 10,
    timeout: int = 30,
    max_redirects: int = 5,
    max_send_speed: int = 0,
    max_recv_speed: int = 0,
    basic_auth: tuple[str, str] | None = None,
) -> TransferSettings:
    """Create TransferSettings for testing.

    Prefer this over constructing TransferSettings directly - it provides
    sensible defaults and documents which fields are typically varied in tests.
    """
    return TransferSettings(
        connect_timeout=connect_timeout,
        timeout=timeout,
        max_redirects=max_redirects,
        max_send_speed=max_send_speed,
        max_recv_speed=max_recv_speed,
        use_basic_auth=basic_auth is not None,
        username=basic_auth[0] if basic_auth else "",
        password=basic_auth[1] if basic_auth else "",
    )


def make_http_response(
    status_code: int = 200,
    headers: dict[str, list[str]] | None = None,
    body: Any = None,
    text: str | None = None,
    elapsed_ms: float = 10.0,
) -> HTTPResponse:
    """Create an HTTPResponse for testing callbacks and result handling."""
    return HTTPResponse(
        status_code=status_code,
        headers=headers or {},
        body=body,
        text=text,
        elapsed_ms=elapsed_ms,
    )


@pytest.fixture
def recording_queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def make_request(recording_queue: RecordingQueue):
    """Factory for RequestConfig objects bound to the recording queue."""

    def _make(url: str = "https://api.example.com/items") -> RequestConfig:
        return RequestConfig(url, recording_queue)

    return _make


@pytest.fixture
def recorder() -> CallbackRecorder:
    return CallbackRecorder()
