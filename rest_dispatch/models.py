"""Internal data models for rest-dispatch.

All models use Pydantic v2. Request contexts are frozen: once a perform
operation has built one, nothing about it changes on its way through the
dispatch queue.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Callable, Literal, Self, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# Completion Callback
# =============================================================================


class CompletionCallback:
    """A callback function paired with a validity flag.

    The dispatch queue checks `valid` right before delivery. Once the owner
    of the callback goes away it calls invalidate(), and any result still in
    flight is dropped instead of delivered.

    Usage:
        callback = CompletionCallback(on_done)
        request.get(callback, value=42)
        ...
        callback.invalidate()  # pending results are discarded
    """

    def __init__(self, fn: Callable[[RequestResult, Any], Any]) -> None:
        self._fn = fn
        self._valid = True

    @property
    def valid(self) -> bool:
        return self._valid

    def invalidate(self) -> None:
        self._valid = False

    def __call__(self, result: RequestResult, value: Any) -> None:
        self._fn(result, value)

    def __repr__(self) -> str:
        state = "valid" if self._valid else "invalid"
        return f"CompletionCallback({self._fn!r}, {state})"


# =============================================================================
# Request Context Models
# =============================================================================


class TransferSettings(BaseModel):
    """Scalar transfer settings copied out of a RequestConfig.

    Values are passed through as set. 0 timeouts and 0 speed caps mean no
    limit; 0 redirects disables redirects and a negative limit means
    unlimited.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    connect_timeout: int = Field(description="Connect timeout in seconds (0 = no limit)")
    timeout: int = Field(description="Total transfer timeout in seconds (0 = no limit)")
    max_redirects: int = Field(description="Redirect limit (0 = none, negative = unlimited)")
    max_send_speed: int = Field(default=0, description="Upload cap in bytes/sec (0 = unlimited)")
    max_recv_speed: int = Field(default=0, description="Download cap in bytes/sec (0 = unlimited)")
    use_basic_auth: bool = Field(default=False, description="Send HTTP basic auth credentials")
    username: str = Field(default="", description="Basic auth username")
    password: str = Field(default="", description="Basic auth password")

    @property
    def basic_auth(self) -> tuple[str, str] | None:
        if not self.use_basic_auth:
            return None
        return self.username, self.password


class _BaseContext(BaseModel):
    """Fields shared by every request context variant."""

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    url: str = Field(description="Effective URL (base URL + query string)")
    headers: tuple[tuple[str, str], ...] = Field(
        description="Ordered header list; Accept first, Content-Type second"
    )
    settings: TransferSettings = Field(description="Timeouts, redirect limit, speed caps, auth")
    callback: CompletionCallback = Field(description="Invoked once with the result")
    value: Any = Field(default=None, description="Opaque caller value passed back to the callback")


class JSONRequestContext(_BaseContext):
    """A request with an optional JSON body and any HTTP method."""

    kind: Literal["json"] = "json"
    method: str = Field(description="HTTP method (GET, POST, etc.)")
    body: Any = Field(default=None, description="JSON body, None for no body")
    body_error: str | None = Field(
        default=None, description="Set when the body could not be copied or serialized"
    )


class TransferDirection(str, Enum):
    """Direction of a file transfer."""

    DOWNLOAD = "download"
    UPLOAD = "upload"


class FileTransferContext(_BaseContext):
    """A file download (GET into path) or upload (PUT from path)."""

    kind: Literal["file"] = "file"
    path: Path = Field(description="Local file path")
    direction: TransferDirection = Field(description="Download or upload")


class FormPostContext(_BaseContext):
    """A POST of an application/x-www-form-urlencoded body."""

    kind: Literal["form"] = "form"
    body: str = Field(description="Percent-encoded form body")


RequestContext = Annotated[
    Union[JSONRequestContext, FileTransferContext, FormPostContext],
    Field(discriminator="kind"),
]


# =============================================================================
# Result Models
# =============================================================================


class ErrorKind(str, Enum):
    """Why a request context resolved without a response."""

    TRANSPORT = "transport"  # Connection failure, protocol error, too many redirects
    TIMEOUT = "timeout"  # Connect or total timeout expired
    FILE_IO = "file_io"  # Local file could not be read or written
    SHUTDOWN = "shutdown"  # Queue not running, or cancelled by shutdown


class HTTPResponse(BaseModel):
    """One HTTP response received for a request context.

    Header keys are lowercase. Header values are arrays for repeated headers.
    At most one of body (JSON), text and body_base64 (binary) is set.
    """

    model_config = ConfigDict(extra="forbid")

    status_code: int = Field(description="HTTP status code")
    headers: dict[str, list[str]] = Field(
        default_factory=dict, description="Response headers (lowercase keys, array values)"
    )
    body: Any = Field(default=None, description="Body as JSON value if the response is JSON")
    text: str | None = Field(default=None, description="Body as text for text/* and XML responses")
    body_base64: str | None = Field(default=None, description="Body as base64 if binary")
    elapsed_ms: float = Field(description="Response time in milliseconds")
    http_version: str = Field(default="HTTP/1.1", description="Protocol version")
    bytes_transferred: int | None = Field(
        default=None, description="File bytes written or sent (file transfers only)"
    )

    def get_header(self, name: str) -> str | None:
        """Return the first value of a response header, case-insensitively."""
        values = self.headers.get(name.lower())
        return values[0] if values else None

    @model_validator(mode="after")
    def check_body_exclusivity(self) -> Self:
        set_fields = [self.body is not None, self.text is not None, self.body_base64 is not None]
        if sum(set_fields) > 1:
            raise ValueError("body, text and body_base64 are mutually exclusive")
        return self


class RequestResult(BaseModel):
    """What a callback receives: a response, or an error description."""

    model_config = ConfigDict(extra="forbid")

    response: HTTPResponse | None = Field(default=None, description="Response if the transfer completed")
    error: str | None = Field(default=None, description="Error message if it did not")
    error_kind: ErrorKind | None = Field(default=None, description="Error category")

    @model_validator(mode="after")
    def check_outcome_exclusivity(self) -> Self:
        if (self.response is None) == (self.error is None):
            raise ValueError("exactly one of response and error must be set")
        if self.error is not None and self.error_kind is None:
            raise ValueError("error_kind is required when error is set")
        return self

    @property
    def ok(self) -> bool:
        return self.response is not None

    @classmethod
    def success(cls, response: HTTPResponse) -> RequestResult:
        return cls(response=response)

    @classmethod
    def failure(cls, kind: ErrorKind, error: str) -> RequestResult:
        return cls(error=error, error_kind=kind)


# =============================================================================
# Runtime Configuration Models
# =============================================================================


class RequestDefaults(BaseModel):
    """Initial settings of every new RequestConfig."""

    model_config = ConfigDict(extra="forbid")

    connect_timeout: int = Field(default=10, description="Connect timeout in seconds")
    timeout: int = Field(default=30, description="Total transfer timeout in seconds")
    max_redirects: int = Field(default=5, description="Redirect limit")
    max_send_speed: int = Field(default=0, description="Upload cap in bytes/sec")
    max_recv_speed: int = Field(default=0, description="Download cap in bytes/sec")
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Headers seeded into every request (supports ${ENV_VAR} substitution)",
    )


class QueueConfig(BaseModel):
    """Dispatch queue sizing."""

    model_config = ConfigDict(extra="forbid")

    max_workers: int = Field(default=4, ge=1, description="Worker threads executing requests")


class ClientConfig(BaseModel):
    """Top-level configuration file structure."""

    model_config = ConfigDict(extra="forbid")

    defaults: RequestDefaults = Field(default_factory=RequestDefaults, description="Request defaults")
    queue: QueueConfig = Field(default_factory=QueueConfig, description="Queue settings")

