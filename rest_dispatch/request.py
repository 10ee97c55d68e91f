"""RequestConfig - the mutable request builder.

A RequestConfig collects URL, parameters, headers, auth and transfer
settings. The perform operations freeze its current state into a request
context and hand that context to the dispatch queue; later changes to the
config never reach a context that has already been built.

Usage:
    with DispatchQueue(HTTPTransport()) as queue:
        request = RequestConfig("https://api.example.com/items", queue)
        request.append_query_param("q", "a b")
        request.set_header("X-Trace", "1")
        request.get(on_done, value=42)
        queue.wait_idle()
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from rest_dispatch.codec import encode_param
from rest_dispatch.headers import HeaderMap, compose_headers
from rest_dispatch.models import (
    CompletionCallback,
    FileTransferContext,
    FormPostContext,
    JSONRequestContext,
    RequestDefaults,
    RequestResult,
    TransferDirection,
    TransferSettings,
)

if TYPE_CHECKING:
    from rest_dispatch.dispatch_queue import SubmissionQueue

logger = logging.getLogger(__name__)

# (Accept, Content-Type) defaults per operation shape
JSON_CONTENT = ("application/json", "application/json")
FILE_CONTENT = ("*/*", "application/octet-stream")
FORM_CONTENT = ("application/json", "application/x-www-form-urlencoded")

CallbackLike = CompletionCallback | Callable[[RequestResult, Any], Any]


def _as_completion_callback(callback: CallbackLike) -> CompletionCallback:
    if isinstance(callback, CompletionCallback):
        return callback
    return CompletionCallback(callback)


def _snapshot_body(json_body: Any) -> tuple[Any, str | None]:
    """Deep-copy a JSON body and check that it serializes.

    Returns:
        (copied body, None) on success, (None, error message) otherwise.
    """
    try:
        body = copy.deepcopy(json_body)
        json.dumps(body)
    except Exception as e:
        logger.warning("JSON body cannot be sent: %s", e)
        return None, f"cannot encode JSON body: {e}"
    return body, None


class RequestConfig:
    """Builder for one HTTP endpoint.

    Not thread-safe: mutate from one call path only. The queue is shared and
    does its own locking.
    """

    def __init__(
        self,
        url: str,
        queue: SubmissionQueue,
        defaults: RequestDefaults | None = None,
    ) -> None:
        """Initialize the builder.

        Args:
            url: Base URL. The query string is appended to it verbatim.
            queue: Where perform operations submit their contexts.
            defaults: Initial timeouts, limits and headers. Built-in
                      defaults are used if None.
        """
        defaults = defaults or RequestDefaults()

        self._url = url
        self._queue = queue
        self._query = ""
        self._form_data = ""
        self._headers = HeaderMap(defaults.headers)

        self._use_basic_auth = False
        self._username = ""
        self._password = ""

        self._connect_timeout = defaults.connect_timeout
        self._timeout = defaults.timeout
        self._max_redirects = defaults.max_redirects
        self._max_send_speed = defaults.max_send_speed
        self._max_recv_speed = defaults.max_recv_speed

    # -------------------------------------------------------------------------
    # Perform operations
    # -------------------------------------------------------------------------

    def perform(
        self,
        method: str,
        json_body: Any,
        callback: CallbackLike,
        value: Any = None,
    ) -> JSONRequestContext:
        """Submit a JSON request with any HTTP method.

        Args:
            method: HTTP verb, sent as given.
            json_body: JSON-serializable body, or None for no body. Copied,
                       so later changes by the caller are not sent. A body
                       that cannot be copied or serialized does not raise
                       here; the request resolves with an error result.
            callback: Called once as callback(result, value).
            value: Opaque value handed back to the callback.

        Returns:
            The submitted context.
        """
        body, body_error = _snapshot_body(json_body)
        context = JSONRequestContext(
            method=method,
            body=body,
            body_error=body_error,
            url=self.build_url(),
            headers=self.build_headers(*JSON_CONTENT),
            settings=self.snapshot_settings(),
            callback=_as_completion_callback(callback),
            value=value,
        )
        self._queue.submit(context)
        return context

    def download_file(self, path: str | Path, callback: CallbackLike, value: Any = None) -> FileTransferContext:
        """Submit a GET whose response body is written to path."""
        return self._submit_file(TransferDirection.DOWNLOAD, path, callback, value)

    def upload_file(self, path: str | Path, callback: CallbackLike, value: Any = None) -> FileTransferContext:
        """Submit a PUT whose body is read from path."""
        return self._submit_file(TransferDirection.UPLOAD, path, callback, value)

    def post_form(self, callback: CallbackLike, value: Any = None) -> FormPostContext:
        """Submit a POST of the accumulated form parameters."""
        context = FormPostContext(
            body=self._form_data,
            url=self.build_url(),
            headers=self.build_headers(*FORM_CONTENT),
            settings=self.snapshot_settings(),
            callback=_as_completion_callback(callback),
            value=value,
        )
        self._queue.submit(context)
        return context

    def _submit_file(
        self,
        direction: TransferDirection,
        path: str | Path,
        callback: CallbackLike,
        value: Any,
    ) -> FileTransferContext:
        context = FileTransferContext(
            direction=direction,
            path=Path(path),
            url=self.build_url(),
            headers=self.build_headers(*FILE_CONTENT),
            settings=self.snapshot_settings(),
            callback=_as_completion_callback(callback),
            value=value,
        )
        self._queue.submit(context)
        return context

    # Verb shortcuts

    def get(self, callback: CallbackLike, value: Any = None) -> JSONRequestContext:
        return self.perform("GET", None, callback, value)

    def post(self, json_body: Any, callback: CallbackLike, value: Any = None) -> JSONRequestContext:
        return self.perform("POST", json_body, callback, value)

    def put(self, json_body: Any, callback: CallbackLike, value: Any = None) -> JSONRequestContext:
        return self.perform("PUT", json_body, callback, value)

    def patch(self, json_body: Any, callback: CallbackLike, value: Any = None) -> JSONRequestContext:
        return self.perform("PATCH", json_body, callback, value)

    def delete(self, callback: CallbackLike, value: Any = None) -> JSONRequestContext:
        return self.perform("DELETE", None, callback, value)

    # -------------------------------------------------------------------------
    # Snapshot helpers
    # -------------------------------------------------------------------------

    def build_url(self) -> str:
        """Return base URL + query string. No side effects."""
        return self._url + self._query

    def build_headers(self, default_accept: str, default_content_type: str) -> list[tuple[str, str]]:
        """Compose the ordered header list for one operation shape."""
        return compose_headers(self._headers, default_accept, default_content_type)

    def snapshot_settings(self) -> TransferSettings:
        """Copy the scalar transfer settings into a frozen model."""
        return TransferSettings(
            connect_timeout=self._connect_timeout,
            timeout=self._timeout,
            max_redirects=self._max_redirects,
            max_send_speed=self._max_send_speed,
            max_recv_speed=self._max_recv_speed,
            use_basic_auth=self._use_basic_auth,
            username=self._username,
            password=self._password,
        )

    # -------------------------------------------------------------------------
    # Mutation API
    # -------------------------------------------------------------------------

    def append_query_param(self, name: str, value: str) -> None:
        """Append name=value to the query string. Unencodable pairs are skipped."""
        encoded = encode_param(name, value)
        if encoded is None:
            return

        self._query += "&" if self._query else "?"
        self._query += f"{encoded[0]}={encoded[1]}"

    def append_form_param(self, name: str, value: str) -> None:
        """Append name=value to the form body. Unencodable pairs are skipped."""
        encoded = encode_param(name, value)
        if encoded is None:
            return

        if self._form_data:
            self._form_data += "&"
        self._form_data += f"{encoded[0]}={encoded[1]}"

    def set_header(self, name: str, value: str) -> None:
        """Set a header. Non-string names and values are stored as str()."""
        self._headers.replace(str(name), str(value))

    def set_basic_auth(self, username: str, password: str) -> None:
        """Enable basic auth. Credentials are stored verbatim."""
        self._use_basic_auth = True
        self._username = username
        self._password = password

    # Stored as given; the transport interprets 0 and negative values.

    def set_connect_timeout(self, connect_timeout: int) -> None:
        self._connect_timeout = connect_timeout

    def set_max_redirects(self, max_redirects: int) -> None:
        self._max_redirects = max_redirects

    def set_max_recv_speed(self, max_speed: int) -> None:
        self._max_recv_speed = max_speed

    def set_max_send_speed(self, max_speed: int) -> None:
        self._max_send_speed = max_speed

    def set_timeout(self, timeout: int) -> None:
        self._timeout = timeout

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def base_url(self) -> str:
        return self._url

    @property
    def query_string(self) -> str:
        return self._query

    @property
    def form_body(self) -> str:
        return self._form_data

    @property
    def headers(self) -> HeaderMap:
        """Caller-set headers. Returns a copy; use set_header() to change them."""
        return self._headers.copy()

    @property
    def use_basic_auth(self) -> bool:
        return self._use_basic_auth

    @property
    def username(self) -> str:
        return self._username

    @property
    def password(self) -> str:
        return self._password

    @property
    def connect_timeout(self) -> int:
        return self._connect_timeout

    @property
    def timeout(self) -> int:
        return self._timeout

    @property
    def max_redirects(self) -> int:
        return self._max_redirects

    @property
    def max_send_speed(self) -> int:
        return self._max_send_speed

    @property
    def max_recv_speed(self) -> int:
        return self._max_recv_speed
