"""Dispatch queue - runs request contexts in the background.

Contexts submitted by RequestConfig are executed on a thread pool. Finished
(context, result) pairs go onto a thread-safe completion channel, and
callbacks run on whichever thread calls process_completions() (usually the
host's main loop). Callbacks never run on worker threads.

Every submitted context resolves exactly once. Transfer failures, unexpected
exceptions and submissions after shutdown all become error results; nothing
is raised back to the submitter.

Usage:
    queue = DispatchQueue(HTTPTransport(), max_workers=4)
    queue.start()
    ...
    queue.process_completions()  # once per main-loop iteration
    ...
    queue.shutdown()

Or with context manager:
    with DispatchQueue(HTTPTransport()) as queue:
        RequestConfig(url, queue).get(on_done)
        queue.wait_idle(timeout=30.0)
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol

from rest_dispatch.executor import FileIOError, TransferError, TransferTimeoutError
from rest_dispatch.models import (
    ErrorKind,
    HTTPResponse,
    RequestContext,
    RequestResult,
)

logger = logging.getLogger(__name__)


class SubmissionQueue(Protocol):
    """What a RequestConfig needs from a queue."""

    def submit(self, context: RequestContext) -> None:
        """Take ownership of a context and return immediately."""


class Transport(Protocol):
    """What the queue needs from a transport."""

    def execute(self, context: RequestContext) -> HTTPResponse:
        """Perform the transfer, raising TransferError on failure."""


class DispatchQueue:
    """Thread-pool queue with a completion channel for callback delivery."""

    def __init__(self, transport: Transport, max_workers: int = 4) -> None:
        """Initialize the queue (not started).

        Args:
            transport: Executes contexts on worker threads.
            max_workers: Maximum number of concurrent transfers.
        """
        self._transport = transport
        self._max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None
        self._completions: queue.Queue[tuple[RequestContext, RequestResult]] = queue.Queue()

        # Submitted but not yet delivered (or discarded)
        self._pending = 0
        self._lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> DispatchQueue:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.shutdown()

    @property
    def pending(self) -> int:
        """Contexts submitted whose callback has not been dealt with yet."""
        with self._lock:
            return self._pending

    def start(self) -> None:
        """Create the worker pool. Called once at startup."""
        with self._lock:
            if self._executor is not None:
                return
            self._closed = False
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="rest-dispatch"
            )
        logger.debug("Dispatch queue started with %d workers", self._max_workers)

    def submit(self, context: RequestContext) -> None:
        """Queue a context for background execution. Never blocks or raises."""
        with self._lock:
            self._pending += 1
            executor = None if self._closed else self._executor

        if executor is None:
            logger.warning("Dispatch queue is not running; failing request to %s", context.url)
            self._complete(
                context,
                RequestResult.failure(ErrorKind.SHUTDOWN, "dispatch queue is not running"),
            )
            return

        try:
            future = executor.submit(self._run, context)
        except RuntimeError:
            # Pool shut down between the check above and submit()
            self._complete(
                context,
                RequestResult.failure(ErrorKind.SHUTDOWN, "dispatch queue is not running"),
            )
            return

        future.add_done_callback(lambda f: self._on_cancelled(f, context))

    def process_completions(self, timeout: float | None = None) -> int:
        """Deliver finished results to their callbacks on the calling thread.

        Args:
            timeout: If set and nothing is ready, wait up to this many seconds
                     for the first completion.

        Returns:
            Number of completions handled (delivered or discarded).
        """
        handled = 0
        block = timeout is not None

        while True:
            try:
                context, result = self._completions.get(block=block, timeout=timeout)
            except queue.Empty:
                return handled

            block = False
            self._deliver(context, result)
            handled += 1

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Deliver completions until nothing is pending.

        Args:
            timeout: Maximum seconds to wait, None for no limit.

        Returns:
            True if every submitted context was resolved, False on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        while self.pending > 0:
            if deadline is None:
                wait = 0.1
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait = min(remaining, 0.1)
            self.process_completions(timeout=wait)

        return True

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work, finish running transfers and deliver results.

        Args:
            wait: Wait for queued transfers and deliver their callbacks. If
                  False, transfers not yet started are cancelled and resolve
                  with a shutdown error.
        """
        with self._lock:
            self._closed = True
            executor = self._executor
            self._executor = None

        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=not wait)

        if wait:
            self.wait_idle()
        logger.debug("Dispatch queue shut down")

    def _run(self, context: RequestContext) -> None:
        """Worker thread body: execute and post the result."""
        try:
            response = self._transport.execute(context)
            result = RequestResult.success(response)
        except TransferTimeoutError as e:
            result = RequestResult.failure(ErrorKind.TIMEOUT, str(e))
        except FileIOError as e:
            result = RequestResult.failure(ErrorKind.FILE_IO, str(e))
        except TransferError as e:
            result = RequestResult.failure(ErrorKind.TRANSPORT, str(e))
        except Exception as e:
            logger.exception("Unexpected error executing request to %s", context.url)
            result = RequestResult.failure(ErrorKind.TRANSPORT, f"unexpected error: {e}")

        self._complete(context, result)

    def _on_cancelled(self, future: Future, context: RequestContext) -> None:
        """Resolve contexts whose transfer never started (shutdown without wait)."""
        if future.cancelled():
            self._complete(
                context,
                RequestResult.failure(ErrorKind.SHUTDOWN, "dispatch queue shut down before the request ran"),
            )

    def _complete(self, context: RequestContext, result: RequestResult) -> None:
        self._completions.put((context, result))

    def _deliver(self, context: RequestContext, result: RequestResult) -> None:
        """Invoke a context's callback unless it has been invalidated."""
        try:
            if not context.callback.valid:
                logger.debug("Discarding result for %s: callback no longer valid", context.url)
                return
            context.callback(result, context.value)
        except Exception:
            logger.exception("Callback for %s raised", context.url)
        finally:
            with self._lock:
                self._pending -= 1
