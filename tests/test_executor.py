"""Tests for rest_dispatch.executor.HTTPTransport.

Tests cover:
- httpx.Client kwargs built from transfer settings (redirects, auth, timeouts)
- Wire-level header order: Accept, Content-Type, then caller headers
- JSON, form, download and upload execution against httpx.MockTransport
- Response conversion (JSON, text or base64 bodies; lowercase multi-value headers)
- Error mapping to TransportError / TransferTimeoutError / FileIOError, including
  unserializable bodies and consumed upload streams on 307 redirects
- Speed-cap pacing and total-timeout deadline
"""

import base64
import json
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from rest_dispatch.executor import (
    UNLIMITED_REDIRECTS,
    FileIOError,
    HTTPTransport,
    TransferTimeoutError,
    TransportError,
    _Deadline,
    _Throttle,
)
from rest_dispatch.models import (
    CompletionCallback,
    FileTransferContext,
    FormPostContext,
    JSONRequestContext,
    TransferDirection,
)
from tests.conftest import make_settings

BASE_URL = "https://api.example.com"


def _noop(result, value):
    pass


def _json_context(
    url: str = f"{BASE_URL}/items",
    method: str = "GET",
    body=None,
    headers=(("Accept", "application/json"), ("Content-Type", "application/json")),
    **settings,
) -> JSONRequestContext:
    return JSONRequestContext(
        method=method,
        body=body,
        url=url,
        headers=headers,
        settings=make_settings(**settings),
        callback=CompletionCallback(_noop),
    )


def _file_context(path: Path, direction: TransferDirection, **settings) -> FileTransferContext:
    return FileTransferContext(
        path=path,
        direction=direction,
        url=f"{BASE_URL}/files/data.bin",
        headers=(("Accept", "*/*"), ("Content-Type", "application/octet-stream")),
        settings=make_settings(**settings),
        callback=CompletionCallback(_noop),
    )


class RecordingHandler:
    """MockTransport handler that records requests and returns a fixed response."""

    def __init__(self, response: httpx.Response | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self._response = response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._response is not None:
            return self._response
        return httpx.Response(200, json={"ok": True})


class StreamingTransport(httpx.BaseTransport):
    """Consumes the request stream like a network transport.

    httpx.MockTransport calls request.read(), which swaps a generator body for
    a replayable buffer; this one iterates request.stream directly.
    """

    def __init__(self, handler) -> None:
        self._handler = handler

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        b"".join(request.stream)
        return self._handler(request)


def _transport(handler) -> HTTPTransport:
    return HTTPTransport(transport=httpx.MockTransport(handler))


# =============================================================================
# Client Configuration
# =============================================================================


class TestBuildClientKwargs:
    def test_zero_redirects_disables_following(self):
        kwargs = HTTPTransport()._build_client_kwargs(make_settings(max_redirects=0))
        assert kwargs["follow_redirects"] is False
        assert "max_redirects" not in kwargs

    def test_negative_redirects_is_unlimited(self):
        kwargs = HTTPTransport()._build_client_kwargs(make_settings(max_redirects=-1))
        assert kwargs["follow_redirects"] is True
        assert kwargs["max_redirects"] == UNLIMITED_REDIRECTS

    def test_positive_redirect_limit(self):
        kwargs = HTTPTransport()._build_client_kwargs(make_settings(max_redirects=3))
        assert kwargs["follow_redirects"] is True
        assert kwargs["max_redirects"] == 3

    def test_basic_auth(self):
        kwargs = HTTPTransport()._build_client_kwargs(make_settings(basic_auth=("alice", "secret")))
        assert kwargs["auth"] == ("alice", "secret")

    def test_no_auth_by_default(self):
        kwargs = HTTPTransport()._build_client_kwargs(make_settings())
        assert "auth" not in kwargs

    def test_timeouts(self):
        kwargs = HTTPTransport()._build_client_kwargs(make_settings(connect_timeout=5, timeout=60))
        timeout = kwargs["timeout"]
        assert timeout.connect == 5
        assert timeout.read == 60

    def test_zero_timeouts_mean_no_limit(self):
        kwargs = HTTPTransport()._build_client_kwargs(make_settings(connect_timeout=0, timeout=0))
        timeout = kwargs["timeout"]
        assert timeout.connect is None
        assert timeout.read is None

    def test_verify_passed_through(self):
        kwargs = HTTPTransport(verify=False)._build_client_kwargs(make_settings())
        assert kwargs["verify"] is False


# =============================================================================
# JSON Requests
# =============================================================================


class TestJSONRequests:
    def test_header_order_on_the_wire(self):
        handler = RecordingHandler()
        context = _json_context(
            headers=(
                ("Accept", "application/json"),
                ("Content-Type", "application/json"),
                ("X-Trace", "abc"),
                ("User-Agent", "custom"),
            )
        )

        _transport(handler).execute(context)

        sent = handler.requests[0]
        names = [name.decode() for name, _ in sent.headers.raw if name.lower() != b"host"]
        assert names[:4] == ["Accept", "Content-Type", "X-Trace", "User-Agent"]
        assert sent.headers["user-agent"] == "custom"

    def test_get_without_body(self):
        handler = RecordingHandler()
        _transport(handler).execute(_json_context(url=f"{BASE_URL}/items?q=a%20b"))

        sent = handler.requests[0]
        assert sent.method == "GET"
        assert str(sent.url) == f"{BASE_URL}/items?q=a%20b"
        assert sent.content == b""

    def test_post_sends_json_body(self):
        handler = RecordingHandler()
        _transport(handler).execute(_json_context(method="POST", body={"name": "widget"}))

        sent = handler.requests[0]
        assert sent.method == "POST"
        assert json.loads(sent.content) == {"name": "widget"}

    def test_basic_auth_header(self):
        handler = RecordingHandler()
        _transport(handler).execute(_json_context(basic_auth=("alice", "secret")))

        expected = "Basic " + base64.b64encode(b"alice:secret").decode("ascii")
        assert handler.requests[0].headers["authorization"] == expected

    def test_json_response_is_parsed(self):
        handler = RecordingHandler(httpx.Response(201, json={"id": 7}))

        response = _transport(handler).execute(_json_context(method="POST", body={}))

        assert response.status_code == 201
        assert response.body == {"id": 7}
        assert response.text is None
        assert response.bytes_transferred is None

    def test_text_response(self):
        handler = RecordingHandler(
            httpx.Response(200, text="hello", headers={"Content-Type": "text/plain"})
        )

        response = _transport(handler).execute(_json_context())

        assert response.body is None
        assert response.text == "hello"

    def test_invalid_json_falls_back_to_base64(self):
        handler = RecordingHandler(
            httpx.Response(200, content=b"{broken", headers={"Content-Type": "application/json"})
        )

        response = _transport(handler).execute(_json_context())

        assert response.body is None
        assert response.text is None
        assert base64.b64decode(response.body_base64) == b"{broken"

    def test_binary_response_is_base64(self):
        payload = bytes(range(256))
        handler = RecordingHandler(
            httpx.Response(200, content=payload, headers={"Content-Type": "application/octet-stream"})
        )

        response = _transport(handler).execute(_json_context())

        assert response.text is None
        assert base64.b64decode(response.body_base64) == payload

    def test_undecodable_text_is_base64(self):
        handler = RecordingHandler(
            httpx.Response(
                200, content=b"caf\xe9 \xff", headers={"Content-Type": "text/plain; charset=utf-8"}
            )
        )

        response = _transport(handler).execute(_json_context())

        assert response.text is None
        assert base64.b64decode(response.body_base64) == b"caf\xe9 \xff"

    def test_xml_response_is_text(self):
        handler = RecordingHandler(
            httpx.Response(200, content=b"<a>1</a>", headers={"Content-Type": "application/xml"})
        )

        response = _transport(handler).execute(_json_context())

        assert response.text == "<a>1</a>"
        assert response.body_base64 is None

    def test_unserializable_body_is_transport_error(self):
        context = JSONRequestContext(
            method="POST",
            body=None,
            body_error="cannot encode JSON body: Object of type Lock is not JSON serializable",
            url=f"{BASE_URL}/items",
            headers=(("Accept", "application/json"), ("Content-Type", "application/json")),
            settings=make_settings(),
            callback=CompletionCallback(_noop),
        )
        handler = RecordingHandler()

        with pytest.raises(TransportError, match="cannot encode JSON body"):
            _transport(handler).execute(context)

        assert handler.requests == []

    def test_response_headers_lowercase_multi_value(self):
        handler = RecordingHandler(
            httpx.Response(200, headers=[("Set-Cookie", "a=1"), ("Set-Cookie", "b=2"), ("X-Id", "9")])
        )

        response = _transport(handler).execute(_json_context())

        assert response.headers["set-cookie"] == ["a=1", "b=2"]
        assert response.get_header("X-Id") == "9"
        assert response.get_header("Missing") is None

    def test_send_speed_cap_keeps_content_length(self):
        handler = RecordingHandler()
        body = {"data": "x" * 100}

        with patch("rest_dispatch.executor.time.sleep"):
            _transport(handler).execute(_json_context(method="PUT", body=body, max_send_speed=10))

        sent = handler.requests[0]
        assert sent.headers["content-length"] == str(len(json.dumps(body)))
        assert "transfer-encoding" not in sent.headers
        assert json.loads(sent.content) == body


# =============================================================================
# Redirects
# =============================================================================


def _redirect_chain(length: int):
    """Handler redirecting /r/N -> /r/N-1 ... -> /r/0 which returns 200."""

    def handler(request: httpx.Request) -> httpx.Response:
        step = int(request.url.path.rsplit("/", 1)[-1])
        if step == 0:
            return httpx.Response(200, json={"done": True})
        return httpx.Response(302, headers={"Location": f"{BASE_URL}/r/{step - 1}"})

    return handler


class TestRedirects:
    def test_zero_redirects_returns_redirect_response(self):
        transport = _transport(_redirect_chain(2))
        response = transport.execute(_json_context(url=f"{BASE_URL}/r/2", max_redirects=0))
        assert response.status_code == 302

    def test_follows_within_limit(self):
        transport = _transport(_redirect_chain(2))
        response = transport.execute(_json_context(url=f"{BASE_URL}/r/2", max_redirects=2))
        assert response.status_code == 200

    def test_exceeding_limit_is_transport_error(self):
        transport = _transport(_redirect_chain(3))
        with pytest.raises(TransportError, match="redirect"):
            transport.execute(_json_context(url=f"{BASE_URL}/r/3", max_redirects=1))

    def test_negative_limit_follows_long_chains(self):
        transport = _transport(_redirect_chain(30))
        response = transport.execute(_json_context(url=f"{BASE_URL}/r/30", max_redirects=-1))
        assert response.status_code == 200


# =============================================================================
# Form Posts
# =============================================================================


class TestFormPost:
    def test_posts_encoded_body(self):
        handler = RecordingHandler()
        context = FormPostContext(
            body="name=%C3%A9&a=1",
            url=f"{BASE_URL}/form",
            headers=(
                ("Accept", "application/json"),
                ("Content-Type", "application/x-www-form-urlencoded"),
            ),
            settings=make_settings(),
            callback=CompletionCallback(_noop),
        )

        _transport(handler).execute(context)

        sent = handler.requests[0]
        assert sent.method == "POST"
        assert sent.content == b"name=%C3%A9&a=1"
        assert sent.headers["content-type"] == "application/x-www-form-urlencoded"


# =============================================================================
# File Transfers
# =============================================================================


class TestDownload:
    def test_writes_body_to_file(self, tmp_path):
        payload = bytes(range(256)) * 200
        handler = RecordingHandler(httpx.Response(200, content=payload))
        target = tmp_path / "out.bin"

        response = _transport(handler).execute(_file_context(target, TransferDirection.DOWNLOAD))

        assert handler.requests[0].method == "GET"
        assert target.read_bytes() == payload
        assert response.bytes_transferred == len(payload)
        assert response.body is None
        assert response.text is None

    def test_unwritable_path_is_file_io_error(self, tmp_path):
        handler = RecordingHandler()
        target = tmp_path / "missing-dir" / "out.bin"

        with pytest.raises(FileIOError):
            _transport(handler).execute(_file_context(target, TransferDirection.DOWNLOAD))

        assert handler.requests == []

    def test_partial_file_removed_on_failure(self, tmp_path):
        def handler(request):
            raise httpx.ReadError("connection reset", request=request)

        target = tmp_path / "out.bin"

        with pytest.raises(TransportError):
            _transport(handler).execute(_file_context(target, TransferDirection.DOWNLOAD))

        assert not target.exists()


class TestUpload:
    def test_puts_file_contents(self, tmp_path):
        source = tmp_path / "in.bin"
        source.write_bytes(b"x" * 50_000)
        handler = RecordingHandler(httpx.Response(204))

        response = _transport(handler).execute(_file_context(source, TransferDirection.UPLOAD))

        sent = handler.requests[0]
        assert sent.method == "PUT"
        assert sent.content == b"x" * 50_000
        assert sent.headers["content-length"] == "50000"
        assert response.status_code == 204
        assert response.bytes_transferred == 50_000

    def test_body_preserving_redirect_is_transport_error(self, tmp_path):
        """A 307 would re-send the streamed file body, which is already consumed."""
        source = tmp_path / "in.bin"
        source.write_bytes(b"x" * 1000)

        def handler(request):
            if request.url.path == "/files/data.bin":
                return httpx.Response(307, headers={"Location": f"{BASE_URL}/files/moved.bin"})
            return httpx.Response(201)

        transport = HTTPTransport(transport=StreamingTransport(handler))
        with pytest.raises(TransportError, match="cannot re-send request body"):
            transport.execute(_file_context(source, TransferDirection.UPLOAD))

    def test_missing_file_is_file_io_error(self, tmp_path):
        handler = RecordingHandler()

        with pytest.raises(FileIOError):
            _transport(handler).execute(
                _file_context(tmp_path / "nope.bin", TransferDirection.UPLOAD)
            )

        assert handler.requests == []


# =============================================================================
# Error Mapping
# =============================================================================


class TestErrorMapping:
    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransferTimeoutError):
            _transport(handler).execute(_json_context())

    def test_connect_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransportError, match="connection error"):
            _transport(handler).execute(_json_context())

    def test_non_ascii_header_is_transport_error(self):
        context = _json_context(
            headers=(
                ("Accept", "application/json"),
                ("Content-Type", "application/json"),
                ("X-Name", "café"),
            )
        )

        with pytest.raises(TransportError, match="encoding error"):
            _transport(RecordingHandler()).execute(context)

    def test_errors_chain_original_exception(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransportError) as exc_info:
            _transport(handler).execute(_json_context())

        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


# =============================================================================
# Pacing and Deadline
# =============================================================================


class TestThrottle:
    def test_no_pacing_when_unlimited(self):
        with patch("rest_dispatch.executor.time.sleep") as mock_sleep:
            throttle = _Throttle(0)
            throttle.pace(10_000_000)
            mock_sleep.assert_not_called()

    def test_sleeps_when_ahead_of_rate(self):
        with patch("rest_dispatch.executor.time.sleep") as mock_sleep, \
             patch("rest_dispatch.executor.time.monotonic") as mock_monotonic:
            base_time = 10000.0
            mock_monotonic.side_effect = [
                base_time,        # __init__: start
                base_time + 0.5,  # pace: 1000 bytes at 1000 B/s should take 1.0s
            ]

            throttle = _Throttle(1000)
            throttle.pace(1000)

            mock_sleep.assert_called_once()
            assert abs(mock_sleep.call_args[0][0] - 0.5) < 0.001

    def test_no_sleep_when_behind_rate(self):
        with patch("rest_dispatch.executor.time.sleep") as mock_sleep, \
             patch("rest_dispatch.executor.time.monotonic") as mock_monotonic:
            base_time = 10000.0
            mock_monotonic.side_effect = [base_time, base_time + 2.0]

            throttle = _Throttle(1000)
            throttle.pace(1000)

            mock_sleep.assert_not_called()

    def test_recv_cap_paces_download(self, tmp_path):
        handler = RecordingHandler(httpx.Response(200, content=b"y" * 40_000))

        with patch("rest_dispatch.executor.time.sleep") as mock_sleep:
            _transport(handler).execute(
                _file_context(tmp_path / "out.bin", TransferDirection.DOWNLOAD, max_recv_speed=1000)
            )

        assert mock_sleep.called


class TestDeadline:
    def test_no_deadline_when_zero(self):
        with patch("rest_dispatch.executor.time.monotonic", return_value=10000.0):
            deadline = _Deadline(0)
        with patch("rest_dispatch.executor.time.monotonic", return_value=99999.0):
            deadline.check()

    def test_expired_deadline_raises(self):
        with patch("rest_dispatch.executor.time.monotonic", return_value=10000.0):
            deadline = _Deadline(5)
        with patch("rest_dispatch.executor.time.monotonic", return_value=10006.0):
            with pytest.raises(TransferTimeoutError):
                deadline.check()

    def test_within_deadline_passes(self):
        with patch("rest_dispatch.executor.time.monotonic", return_value=10000.0):
            deadline = _Deadline(5)
        with patch("rest_dispatch.executor.time.monotonic", return_value=10004.0):
            deadline.check()
