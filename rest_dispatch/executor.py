"""Executor - Runs request contexts over HTTP with httpx.

HTTPTransport is the network side of the dispatch contract: it takes one
frozen request context, performs the transfer it describes and returns an
HTTPResponse. Failures are raised as TransferError subclasses; the dispatch
queue turns them into error results for the callback.

Each context gets its own httpx.Client because redirect limits, timeouts and
credentials are per request.
"""

from __future__ import annotations

import base64
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Iterator

import httpx

from rest_dispatch.models import (
    FileTransferContext,
    FormPostContext,
    HTTPResponse,
    JSONRequestContext,
    RequestContext,
    TransferDirection,
    TransferSettings,
)

logger = logging.getLogger(__name__)

# Chunk size for streamed bodies and speed-cap pacing.
CHUNK_SIZE = 16 * 1024

# httpx needs a number; negative max_redirects means "no limit".
UNLIMITED_REDIRECTS = sys.maxsize


class TransferError(Exception):
    """Base class for transfer errors."""


class TransportError(TransferError):
    """Raised when the HTTP exchange fails (connection, protocol, redirects)."""


class TransferTimeoutError(TransferError):
    """Raised when the connect or total timeout expires."""


class FileIOError(TransferError):
    """Raised when the local file of a transfer cannot be read or written."""


class _Throttle:
    """Paces a byte stream to at most `rate` bytes per second.

    rate <= 0 disables pacing.
    """

    def __init__(self, rate: int) -> None:
        self._rate = rate
        self._start = time.monotonic()
        self._sent = 0

    def pace(self, nbytes: int) -> None:
        """Account for nbytes and sleep until the average rate is within the cap."""
        if self._rate <= 0:
            return

        self._sent += nbytes
        expected = self._sent / self._rate
        elapsed = time.monotonic() - self._start
        if elapsed < expected:
            time.sleep(expected - elapsed)


class _Deadline:
    """Total-transfer deadline. timeout <= 0 means none."""

    def __init__(self, timeout: int) -> None:
        self._expires = time.monotonic() + timeout if timeout > 0 else None
        self._timeout = timeout

    def check(self) -> None:
        if self._expires is not None and time.monotonic() > self._expires:
            raise TransferTimeoutError(f"transfer exceeded total timeout of {self._timeout}s")


class HTTPTransport:
    """Executes request contexts with httpx.

    Usage:
        transport = HTTPTransport()
        response = transport.execute(context)

    Tests pass an httpx.MockTransport as `transport` to run without network.
    """

    def __init__(
        self,
        verify: bool | str = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            verify: TLS verification: True, False, or a CA bundle path.
            transport: Optional httpx transport used by every client.
        """
        self._verify = verify
        self._transport = transport

    def _build_client_kwargs(self, settings: TransferSettings) -> dict[str, Any]:
        """Build kwargs for httpx.Client from a context's transfer settings.

        Args:
            settings: Frozen settings from the request context.

        Returns:
            Dictionary of kwargs for httpx.Client constructor.
        """
        kwargs: dict[str, Any] = {
            "timeout": _build_timeout(settings),
            "verify": self._verify,
        }

        if settings.max_redirects == 0:
            kwargs["follow_redirects"] = False
        elif settings.max_redirects < 0:
            kwargs["follow_redirects"] = True
            kwargs["max_redirects"] = UNLIMITED_REDIRECTS
        else:
            kwargs["follow_redirects"] = True
            kwargs["max_redirects"] = settings.max_redirects

        if settings.basic_auth is not None:
            kwargs["auth"] = settings.basic_auth

        if self._transport is not None:
            kwargs["transport"] = self._transport

        return kwargs

    def execute(self, context: RequestContext) -> HTTPResponse:
        """Perform the transfer described by a request context.

        Args:
            context: JSON, file transfer or form post context.

        Returns:
            HTTPResponse for the final (post-redirect) response.

        Raises:
            TransportError: If the HTTP exchange fails.
            TransferTimeoutError: If a timeout expires.
            FileIOError: If the local file cannot be read or written.
        """
        logger.debug("Executing %s context: %s", context.kind, context.url)

        if context.kind == "json":
            return self._execute_json(context)
        elif context.kind == "form":
            return self._execute_form(context)
        elif context.direction == TransferDirection.DOWNLOAD:
            return self._execute_download(context)
        else:
            return self._execute_upload(context)

    def _execute_json(self, context: JSONRequestContext) -> HTTPResponse:
        if context.body_error is not None:
            raise TransportError(context.body_error)

        content = None
        if context.body is not None:
            content = json.dumps(context.body).encode("utf-8")
        return self._send_buffered(context, context.method, content)

    def _execute_form(self, context: FormPostContext) -> HTTPResponse:
        # Form body is already percent-encoded, so plain ASCII.
        return self._send_buffered(context, "POST", context.body.encode("ascii"))

    def _send_buffered(
        self,
        context: JSONRequestContext | FormPostContext,
        method: str,
        content: bytes | None,
    ) -> HTTPResponse:
        """Send an in-memory body and read the whole response into memory."""
        headers = list(context.headers)
        body: bytes | Iterator[bytes] | None = content

        # A generator body keeps Content-Length when it is set up front.
        if content is not None and context.settings.max_send_speed > 0:
            headers = _with_content_length(headers, len(content))
            body = _paced_chunks(content, context.settings.max_send_speed)

        chunks: list[bytes] = []
        response, elapsed_ms = self._exchange(context, method, headers, body, chunks.append)
        return self._convert_response(response, elapsed_ms, b"".join(chunks))

    def _execute_download(self, context: FileTransferContext) -> HTTPResponse:
        path = context.path
        try:
            handle = open(path, "wb")
        except OSError as e:
            raise FileIOError(f"cannot open {path} for writing: {e}") from e

        written = 0

        def write(chunk: bytes) -> None:
            nonlocal written
            try:
                handle.write(chunk)
            except OSError as e:
                raise FileIOError(f"cannot write to {path}: {e}") from e
            written += len(chunk)

        try:
            with handle:
                response, elapsed_ms = self._exchange(
                    context, "GET", list(context.headers), None, write
                )
        except TransferError:
            _remove_partial(path)
            raise
        except OSError as e:
            # close() flushing the last buffered bytes
            _remove_partial(path)
            raise FileIOError(f"cannot write to {path}: {e}") from e

        return self._convert_response(response, elapsed_ms, None, bytes_transferred=written)

    def _execute_upload(self, context: FileTransferContext) -> HTTPResponse:
        path = context.path
        try:
            size = path.stat().st_size
            handle = open(path, "rb")
        except OSError as e:
            raise FileIOError(f"cannot open {path} for reading: {e}") from e

        headers = _with_content_length(list(context.headers), size)
        chunks: list[bytes] = []

        with handle:
            body = _paced_file_chunks(handle, path, context.settings.max_send_speed)
            response, elapsed_ms = self._exchange(context, "PUT", headers, body, chunks.append)

        return self._convert_response(response, elapsed_ms, b"".join(chunks), bytes_transferred=size)

    def _exchange(
        self,
        context: RequestContext,
        method: str,
        headers: list[tuple[str, str]],
        content: bytes | Iterator[bytes] | None,
        sink: Any,
    ) -> tuple[httpx.Response, float]:
        """Send one request and stream the response body into sink.

        The response body is read chunk by chunk so the receive cap and the
        total timeout apply to it.

        Returns:
            (closed httpx.Response, elapsed milliseconds)
        """
        settings = context.settings
        deadline = _Deadline(settings.timeout)
        throttle = _Throttle(settings.max_recv_speed)

        try:
            with httpx.Client(**self._build_client_kwargs(settings)) as client:
                # Built directly rather than via client.stream() so httpx does not
                # merge its default headers in front of Accept and Content-Type.
                request = httpx.Request(
                    method,
                    context.url,
                    headers=headers,
                    content=content,
                    extensions={"timeout": _build_timeout(settings).as_dict()},
                )
                start_time = time.perf_counter()
                response = client.send(request, stream=True)
                try:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        sink(chunk)
                        throttle.pace(len(chunk))
                        deadline.check()
                finally:
                    response.close()
                elapsed_ms = (time.perf_counter() - start_time) * 1000

        except httpx.TimeoutException as e:
            raise TransferTimeoutError(f"request timeout: {e}") from e
        except httpx.TooManyRedirects as e:
            raise TransportError(f"too many redirects: {e}") from e
        except httpx.ConnectError as e:
            raise TransportError(f"connection error: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"request error: {e}") from e
        except httpx.InvalidURL as e:
            raise TransportError(f"invalid URL {context.url!r}: {e}") from e
        except httpx.StreamError as e:
            # A 307/308 redirect re-sends a streamed body that was already consumed.
            raise TransportError(f"cannot re-send request body: {e}") from e
        except UnicodeEncodeError as e:
            # httpx requires ASCII header names and values.
            raise TransportError(
                f"encoding error: non-ASCII character {e.object[e.start:e.end]!r} "
                f"in request headers or URL"
            ) from e

        return response, elapsed_ms

    def _convert_response(
        self,
        response: httpx.Response,
        elapsed_ms: float,
        content: bytes | None,
        bytes_transferred: int | None = None,
    ) -> HTTPResponse:
        """Convert httpx Response to HTTPResponse.

        Args:
            response: Closed httpx Response (body already consumed).
            elapsed_ms: Elapsed time in milliseconds.
            content: Response body, or None if it went to a file.
            bytes_transferred: File bytes written or sent.

        Returns:
            HTTPResponse model instance.
        """
        # Headers - lowercase keys, list values
        headers: dict[str, list[str]] = {}
        for key, value in response.headers.multi_items():
            headers.setdefault(key.lower(), []).append(value)

        # Parse body based on content-type:
        #   JSON            -> parsed value
        #   text/*, XML     -> str
        #   everything else -> base64
        # Anything that fails to parse or decode is kept as base64, never lossy.
        body: Any = None
        text: str | None = None
        body_base64: str | None = None

        if content:
            content_type = response.headers.get("content-type", "").lower()
            if "json" in content_type:
                try:
                    body = json.loads(content)
                except ValueError:
                    # Not valid JSON despite content-type
                    body_base64 = base64.b64encode(content).decode("ascii")
            elif content_type.startswith("text/") or "xml" in content_type:
                try:
                    text = content.decode(response.encoding or "utf-8")
                except (UnicodeDecodeError, LookupError):
                    body_base64 = base64.b64encode(content).decode("ascii")
            else:
                # Binary content
                body_base64 = base64.b64encode(content).decode("ascii")

        return HTTPResponse(
            status_code=response.status_code,
            headers=headers,
            body=body,
            text=text,
            body_base64=body_base64,
            elapsed_ms=elapsed_ms,
            http_version=response.http_version,
            bytes_transferred=bytes_transferred,
        )


def _with_content_length(headers: list[tuple[str, str]], length: int) -> list[tuple[str, str]]:
    """Append Content-Length unless the caller already set one."""
    if any(name.lower() == "content-length" for name, _ in headers):
        return headers
    return headers + [("Content-Length", str(length))]


def _paced_chunks(content: bytes, rate: int) -> Iterator[bytes]:
    throttle = _Throttle(rate)
    for offset in range(0, len(content), CHUNK_SIZE):
        chunk = content[offset:offset + CHUNK_SIZE]
        throttle.pace(len(chunk))
        yield chunk


def _paced_file_chunks(handle: Any, path: Path, rate: int) -> Iterator[bytes]:
    throttle = _Throttle(rate)
    while True:
        try:
            chunk = handle.read(CHUNK_SIZE)
        except OSError as e:
            raise FileIOError(f"cannot read {path}: {e}") from e
        if not chunk:
            return
        throttle.pace(len(chunk))
        yield chunk


def _remove_partial(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove partial download %s: %s", path, e)


def _build_timeout(settings: TransferSettings) -> httpx.Timeout:
    """Map connect/total timeouts onto httpx. Non-positive values mean no limit."""
    connect = settings.connect_timeout if settings.connect_timeout > 0 else None
    total = settings.timeout if settings.timeout > 0 else None
    return httpx.Timeout(total, connect=connect)
