"""Correlation of outgoing requests with their responses.

The tracker is the only hand-off point between the session's reader loop
("a response arrived") and the task awaiting that response. Timeouts are
enforced inside the awaiting task, so the tracker needs no timer of its own
and is only ever touched from the event loop that owns the session.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import anyio

from mcpwire.shared.exceptions import (
    McpError,
    RequestCancelledError,
    RequestTimeoutError,
    TransportClosedError,
)
from mcpwire.types import ErrorData, ProgressNotificationParams, ProgressToken, RequestId

logger = logging.getLogger(__name__)


class ProgressFnT(Protocol):
    """Protocol for progress notification callbacks."""

    async def __call__(self, progress: float, total: float | None, message: str | None) -> None: ...


class PendingRequest:
    """An outstanding request awaiting its response.

    Owned by the tracker that created it; callers only ``await wait()``.
    """

    def __init__(
        self,
        tracker: PendingRequestTracker,
        request_id: RequestId,
        method: str,
        timeout: float | None,
        progress_token: ProgressToken | None = None,
        progress_callback: ProgressFnT | None = None,
    ) -> None:
        self.id = request_id
        self.method = method
        self.timeout = timeout
        self.progress_token = progress_token
        self.progress_callback = progress_callback
        self.created_at = time.monotonic()
        self.deadline = None if timeout is None else self.created_at + timeout
        self._tracker = tracker
        self._event = anyio.Event()
        self._result: Any = None
        self._error: BaseException | None = None

    @property
    def done(self) -> bool:
        return self._event.is_set()

    def _complete(self, result: Any = None, error: BaseException | None = None) -> None:
        self._result = result
        self._error = error
        self._event.set()

    async def wait(self) -> Any:
        """Wait for the raw JSON result.

        Raises:
            McpError: the peer answered with an error response
            RequestCancelledError: the request was cancelled locally
            RequestTimeoutError: no response within the timeout window
            TransportClosedError: the transport closed first
        """
        while not self._event.is_set():
            if self.deadline is None:
                await self._event.wait()
                break
            remaining = self.deadline - time.monotonic()
            if remaining <= 0:
                self._tracker.expire(self.id)
                break
            # The deadline may move while we sleep (progress), so re-check on wake.
            with anyio.move_on_after(remaining):
                await self._event.wait()

        if self._error is not None:
            raise self._error
        return self._result


class PendingRequestTracker:
    """Issues request ids and completes the callers waiting on them.

    Args:
        reset_timeout_on_progress: a progress notification for a pending request
            restarts its timeout window
        max_total_timeout: upper bound, in seconds from creation, that progress
            can never extend a request past
    """

    def __init__(self, *, reset_timeout_on_progress: bool = True, max_total_timeout: float | None = None) -> None:
        self.reset_timeout_on_progress = reset_timeout_on_progress
        self.max_total_timeout = max_total_timeout
        self._next_id = 0
        self._pending: dict[RequestId, PendingRequest] = {}
        self._progress_tokens: dict[ProgressToken, RequestId] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def get(self, request_id: RequestId) -> PendingRequest | None:
        key = self._key(request_id)
        return None if key is None else self._pending[key]

    def register(
        self,
        method: str,
        timeout: float | None = None,
        progress_callback: ProgressFnT | None = None,
    ) -> tuple[RequestId, PendingRequest]:
        """Allocate a fresh id and a pending entry for an outgoing request.

        The request id doubles as the progress token when a progress callback
        is given.
        """
        if self._closed:
            raise TransportClosedError()

        request_id = self._next_id
        self._next_id += 1

        progress_token = request_id if progress_callback is not None else None
        pending = PendingRequest(self, request_id, method, timeout, progress_token, progress_callback)
        self._pending[request_id] = pending
        if progress_token is not None:
            self._progress_tokens[progress_token] = request_id
        return request_id, pending

    def _key(self, request_id: RequestId | None) -> RequestId | None:
        if request_id in self._pending:
            return request_id
        # Some peers echo integer ids back as strings.
        if isinstance(request_id, str) and request_id.lstrip("-").isdigit():
            numeric = int(request_id)
            if numeric in self._pending:
                return numeric
        return None

    def _pop(self, request_id: RequestId | None) -> PendingRequest | None:
        key = self._key(request_id)
        if key is None:
            return None
        pending = self._pending.pop(key)
        if pending.progress_token is not None:
            self._progress_tokens.pop(pending.progress_token, None)
        return pending

    def resolve(self, request_id: RequestId, result: Any) -> bool:
        """Complete a pending request with its result. Unknown ids are ignored."""
        pending = self._pop(request_id)
        if pending is None:
            return False
        pending._complete(result=result)  # type: ignore[reportPrivateUsage]
        return True

    def reject(self, request_id: RequestId | None, error: ErrorData) -> bool:
        """Complete a pending request with the peer's error. Unknown ids are ignored."""
        pending = self._pop(request_id)
        if pending is None:
            return False
        pending._complete(error=McpError(error))  # type: ignore[reportPrivateUsage]
        return True

    def cancel(self, request_id: RequestId, reason: str | None = None) -> PendingRequest | None:
        """Drop a pending request and fail its caller with RequestCancelledError.

        Returns the removed entry, or None if nothing was pending under that id.
        """
        pending = self._pop(request_id)
        if pending is None:
            return None
        pending._complete(error=RequestCancelledError(pending.id, pending.method, reason))  # type: ignore[reportPrivateUsage]
        return pending

    def expire(self, request_id: RequestId) -> PendingRequest | None:
        """Drop a pending request and fail its caller with RequestTimeoutError."""
        pending = self._pop(request_id)
        if pending is None:
            return None
        logger.debug("Request %s (%s) timed out after %ss", pending.id, pending.method, pending.timeout)
        pending._complete(error=RequestTimeoutError(pending.id, pending.method, pending.timeout or 0))  # type: ignore[reportPrivateUsage]
        return pending

    async def handle_progress(self, params: ProgressNotificationParams) -> bool:
        """Route a progress notification to the request that owns its token.

        The entry is never removed here; depending on policy its timeout
        window is restarted.
        """
        request_id = self._progress_tokens.get(params.progressToken)
        pending = None if request_id is None else self._pending.get(request_id)
        if pending is None:
            return False

        if self.reset_timeout_on_progress and pending.timeout is not None:
            deadline = time.monotonic() + pending.timeout
            if self.max_total_timeout is not None:
                deadline = min(deadline, pending.created_at + self.max_total_timeout)
            pending.deadline = deadline

        if pending.progress_callback is not None:
            try:
                await pending.progress_callback(params.progress, params.total, params.message)
            except Exception:
                logger.exception("Progress callback for request %s failed", pending.id)
        return True

    def close(self, error: BaseException | None = None) -> None:
        """Fail every pending request; no further requests can be registered."""
        self._closed = True
        pending, self._pending = self._pending, {}
        self._progress_tokens.clear()
        for entry in pending.values():
            entry._complete(error=error or TransportClosedError())  # type: ignore[reportPrivateUsage]
