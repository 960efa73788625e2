"""Session state machine shared by the client and server roles.

A session owns one transport (a pair of memory object streams), the capability
registry for both sides and the tracker of its outstanding requests. Entering
the session starts a single reader loop; inbound request handlers run as
independent tasks in the same task group, so the loop keeps dispatching while
handlers and outbound requests are suspended.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta
from enum import Enum
from types import TracebackType
from typing import Any, ClassVar, Literal, TypeVar

import anyio
import anyio.abc
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import BaseModel, ValidationError
from typing_extensions import Self

import mcpwire.types as types
from mcpwire.shared._exception_utils import collapse_exception_group
from mcpwire.shared.capabilities import CapabilityRegistry, Role
from mcpwire.shared.context import RequestContext
from mcpwire.shared.exceptions import (
    McpError,
    MessageDecodeError,
    RequestTimeoutError,
    SessionStateError,
    TransportClosedError,
)
from mcpwire.shared.message import MessageMetadata, ServerMessageMetadata, SessionMessage
from mcpwire.shared.pending import PendingRequest, PendingRequestTracker, ProgressFnT
from mcpwire.shared.settings import Settings

if sys.version_info < (3, 11):  # pragma: no cover
    from exceptiongroup import BaseExceptionGroup

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)
ModelT = TypeVar("ModelT", bound=BaseModel)

HandlerResult = BaseModel | Mapping[str, Any] | types.ErrorData | None
RequestHandler = Callable[[RequestContext[Any], dict[str, Any] | None], Awaitable[HandlerResult]]
NotificationHandler = Callable[[RequestContext[Any], dict[str, Any] | None], Awaitable[None]]

ParamsT = BaseModel | Mapping[str, Any] | None


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


_TERMINAL_STATES = frozenset({SessionState.CLOSED, SessionState.FAILED})


def _seconds(value: float | timedelta | None) -> float | None:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return value


def dump_params(params: ParamsT) -> dict[str, Any] | None:
    """Turn request or notification params into their wire dictionary."""
    if params is None:
        return None
    if isinstance(params, BaseModel):
        return params.model_dump(mode="json", by_alias=True, exclude_none=True)
    return dict(params)


def _dump_result(result: HandlerResult) -> dict[str, Any]:
    if result is None:
        return {}
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)
    return dict(result)


def parse_params(model: type[ModelT], params: dict[str, Any] | None) -> ModelT:
    """Validate request params, raising ``McpError`` with INVALID_PARAMS on failure.

    Request handlers parse their params with this so that only malformed input
    is reported as INVALID_PARAMS; other validation errors raised by a handler
    are faults of the handler itself.
    """
    try:
        return model.model_validate(params or {})
    except ValidationError as exc:
        raise McpError(types.ErrorData(code=types.INVALID_PARAMS, message="Invalid params", data=str(exc))) from exc


def _parse_meta(params: dict[str, Any] | None) -> types.RequestMeta | None:
    if not params or not isinstance(params.get("_meta"), dict):
        return None
    try:
        return types.RequestMeta.model_validate(params["_meta"])
    except ValidationError:
        logger.debug("Ignoring malformed _meta: %r", params["_meta"])
        return None


async def _handle_ping(ctx: RequestContext[Any], params: dict[str, Any] | None) -> types.EmptyResult:
    return types.EmptyResult()


class BaseSession:
    """Implements the lifecycle, dispatch and correlation rules of one MCP session.

    Subclasses fix the role and the handful of methods that are eligible
    before the handshake completes. All other behaviour is shared:

    * outbound requests and notifications are checked against the session
      state and the declared capabilities before anything is written, and
      violations raise locally (``SessionStateError`` or ``McpError``)
    * inbound requests that are not eligible yet are answered with
      ``INVALID_REQUEST``; requests for undeclared capabilities or without a
      handler are answered with ``METHOD_NOT_FOUND``
    * inbound notifications are dispatched in order and never answered

    The session is an async context manager; leaving it closes the session
    and fails every pending request with ``TransportClosedError``.
    """

    role: ClassVar[Role]

    # Methods allowed while the session is not READY yet.
    _early_outbound_requests: ClassVar[frozenset[str]] = frozenset({types.METHOD_PING})
    _early_outbound_notifications: ClassVar[frozenset[str]] = frozenset()
    _early_inbound_requests: ClassVar[frozenset[str]] = frozenset({types.METHOD_PING})
    _early_inbound_notifications: ClassVar[frozenset[str]] = frozenset()

    _task_group: anyio.abc.TaskGroup

    def __init__(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        *,
        read_timeout_seconds: float | timedelta | None = None,
        reset_timeout_on_progress: bool | None = None,
        max_total_timeout: float | None = None,
        implicit_completions: bool | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or Settings()
        self._read_stream = read_stream
        self._write_stream = write_stream
        self._session_read_timeout_seconds = (
            _seconds(read_timeout_seconds) if read_timeout_seconds is not None else settings.request_timeout
        )
        self._state = SessionState.UNINITIALIZED
        self._failure: BaseException | None = None
        self._protocol_version: str | None = None
        self.capabilities = CapabilityRegistry(
            self.role,
            implicit_completions=(
                settings.implicit_completions if implicit_completions is None else implicit_completions
            ),
        )
        self._pending = PendingRequestTracker(
            reset_timeout_on_progress=(
                settings.reset_timeout_on_progress if reset_timeout_on_progress is None else reset_timeout_on_progress
            ),
            max_total_timeout=max_total_timeout if max_total_timeout is not None else settings.max_total_timeout,
        )
        self._request_handlers: dict[str, RequestHandler] = {types.METHOD_PING: _handle_ping}
        self._notification_handlers: dict[str, NotificationHandler] = {}
        self._in_flight: dict[types.RequestId, RequestContext[Any]] = {}
        self._closed_event: anyio.Event | None = None
        self._initialize_sent = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def failure(self) -> BaseException | None:
        """Why the session entered FAILED, if it did."""
        return self._failure

    @property
    def protocol_version(self) -> str | None:
        return self._protocol_version

    @property
    def pending_requests(self) -> PendingRequestTracker:
        return self._pending

    @property
    def in_flight(self) -> Mapping[types.RequestId, RequestContext[Any]]:
        """Inbound requests whose handlers are still running."""
        return self._in_flight

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug("%s session state %s -> %s", self.role, self._state.value, state.value)
        self._state = state

    async def __aenter__(self) -> Self:
        self._closed_event = anyio.Event()
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self._receive_loop)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        await self.close()
        # Handlers still running have nobody left to answer to.
        self._task_group.cancel_scope.cancel()
        try:
            return await self._task_group.__aexit__(exc_type, exc_val, exc_tb)
        except BaseExceptionGroup as eg:
            collapsed = collapse_exception_group(eg)
            if collapsed is not eg:
                raise collapsed from eg
            raise

    async def close(self) -> None:
        """Close the session locally and release the transport.

        Pending requests are failed with ``TransportClosedError``. Calling
        ``close`` more than once is harmless.
        """
        if self._state not in _TERMINAL_STATES:
            self._set_state(SessionState.CLOSED)
        self._pending.close(TransportClosedError("Session closed"))
        await self._write_stream.aclose()

    async def fail(self, reason: BaseException) -> None:
        """Move to FAILED after an unrecoverable protocol violation and close the transport."""
        if self._state in _TERMINAL_STATES:
            return
        logger.error("%s session failed: %s", self.role, reason)
        self._failure = reason
        self._set_state(SessionState.FAILED)
        self._pending.close(TransportClosedError(f"Session failed: {reason}"))
        await self._write_stream.aclose()

    async def wait_closed(self) -> None:
        """Suspend until the reader loop has finished."""
        if self._closed_event is None:
            raise RuntimeError("Session has not been entered")
        await self._closed_event.wait()

    def set_request_handler(self, method: str, handler: RequestHandler) -> None:
        self._request_handlers[method] = handler

    def set_notification_handler(self, method: str, handler: NotificationHandler) -> None:
        self._notification_handlers[method] = handler

    def _check_outbound(self, method: str, kind: Literal["request", "notification"]) -> None:
        if method == types.METHOD_INITIALIZE and (self.role != "client" or self._initialize_sent):
            raise SessionStateError("initialize is sent exactly once per session, by the client")
        if self._state in _TERMINAL_STATES:
            raise SessionStateError(f"Cannot send {method!r}: session is {self._state.value}")
        if self._state is not SessionState.READY:
            early = self._early_outbound_requests if kind == "request" else self._early_outbound_notifications
            if method not in early:
                raise SessionStateError(
                    f"Cannot send {method!r} while the session is {self._state.value}; "
                    "finish initialization first"
                )
        if not self.capabilities.is_permitted(method, "outbound"):
            raise McpError(
                types.ErrorData(
                    code=types.METHOD_NOT_FOUND,
                    message=f"Method not found: {method!r} needs a capability that was not declared",
                )
            )
        if method == types.METHOD_INITIALIZE:
            self._initialize_sent = True

    async def _write(
        self,
        message: types.JSONRPCRequest | types.JSONRPCNotification,
        metadata: MessageMetadata = None,
    ) -> None:
        try:
            await self._write_stream.send(SessionMessage(message=types.JSONRPCMessage(message), metadata=metadata))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as exc:
            raise TransportClosedError() from exc

    async def start_request(
        self,
        method: str,
        params: ParamsT = None,
        *,
        request_read_timeout_seconds: float | timedelta | None = None,
        progress_callback: ProgressFnT | None = None,
        metadata: MessageMetadata = None,
    ) -> tuple[types.RequestId, PendingRequest]:
        """Send a request without waiting for its response.

        Returns the request id and the pending entry to ``await .wait()`` on.
        """
        self._check_outbound(method, "request")

        timeout = _seconds(request_read_timeout_seconds)
        if timeout is None:
            timeout = self._session_read_timeout_seconds
        request_id, pending = self._pending.register(method, timeout, progress_callback)

        data = dump_params(params)
        if pending.progress_token is not None:
            data = dict(data or {})
            data["_meta"] = {**(data.get("_meta") or {}), "progressToken": pending.progress_token}

        fields: dict[str, Any] = {"jsonrpc": types.JSONRPC_VERSION, "id": request_id, "method": method}
        if data is not None:
            fields["params"] = data

        try:
            await self._write(types.JSONRPCRequest(**fields), metadata)
        except BaseException:
            self._pending.cancel(request_id)
            raise
        return request_id, pending

    async def send_request(
        self,
        method: str,
        params: ParamsT = None,
        result_type: type[ResultT] | None = None,
        *,
        request_read_timeout_seconds: float | timedelta | None = None,
        progress_callback: ProgressFnT | None = None,
        metadata: MessageMetadata = None,
    ) -> Any:
        """Send a request and wait for its result.

        The raw JSON result is validated into ``result_type`` when one is given.

        Raises:
            SessionStateError: the request is not eligible in the current state
            McpError: the peer answered with an error, or the capability is missing
            RequestTimeoutError: no response in time; the peer is told to cancel
            TransportClosedError: the session closed before a response arrived
        """
        request_id, pending = await self.start_request(
            method,
            params,
            request_read_timeout_seconds=request_read_timeout_seconds,
            progress_callback=progress_callback,
            metadata=metadata,
        )
        try:
            result = await pending.wait()
        except RequestTimeoutError:
            await self._notify_cancelled(request_id, method, "Request timed out")
            raise
        except anyio.get_cancelled_exc_class():
            with anyio.CancelScope(shield=True):
                if self._pending.cancel(request_id, "Caller cancelled") is not None:
                    await self._notify_cancelled(request_id, method, "Caller cancelled")
            raise

        if result_type is None:
            return result
        return result_type.model_validate(result)

    async def cancel_request(self, request_id: types.RequestId, reason: str | None = None) -> bool:
        """Cancel an outstanding request and tell the peer about it.

        The waiting caller gets ``RequestCancelledError``. A response that still
        arrives for the id afterwards is dropped.
        """
        pending = self._pending.cancel(request_id, reason)
        if pending is None:
            return False
        await self._notify_cancelled(pending.id, pending.method, reason)
        return True

    async def _notify_cancelled(self, request_id: types.RequestId, method: str, reason: str | None) -> None:
        if method == types.METHOD_INITIALIZE:
            # The initialize request is never cancelled on the wire.
            return
        params = types.CancelledNotificationParams(requestId=request_id, reason=reason)
        try:
            await self.send_notification(types.NOTIFICATION_CANCELLED, params)
        except (SessionStateError, TransportClosedError) as exc:
            logger.debug("Could not notify peer about cancelled request %s: %s", request_id, exc)

    async def send_notification(
        self,
        method: str,
        params: ParamsT = None,
        related_request_id: types.RequestId | None = None,
    ) -> None:
        """Emit a notification. Never waits for anything but the transport."""
        self._check_outbound(method, "notification")
        fields: dict[str, Any] = {"jsonrpc": types.JSONRPC_VERSION, "method": method}
        data = dump_params(params)
        if data is not None:
            fields["params"] = data
        metadata = None
        if related_request_id is not None:
            metadata = ServerMessageMetadata(related_request_id=related_request_id)
        await self._write(types.JSONRPCNotification(**fields), metadata)

    async def send_ping(self) -> types.EmptyResult:
        return await self.send_request(types.METHOD_PING, None, types.EmptyResult)

    async def send_progress_notification(
        self,
        progress_token: types.ProgressToken,
        progress: float,
        total: float | None = None,
        message: str | None = None,
        related_request_id: types.RequestId | None = None,
    ) -> None:
        await self.send_notification(
            types.NOTIFICATION_PROGRESS,
            types.ProgressNotificationParams(
                progressToken=progress_token,
                progress=progress,
                total=total,
                message=message,
            ),
            related_request_id=related_request_id,
        )

    async def _send_response(self, request_id: types.RequestId | None, response: HandlerResult) -> None:
        message: types.JSONRPCResponse | types.JSONRPCError
        if isinstance(response, types.ErrorData):
            message = types.JSONRPCError(jsonrpc=types.JSONRPC_VERSION, id=request_id, error=response)
        else:
            assert request_id is not None
            message = types.JSONRPCResponse(jsonrpc=types.JSONRPC_VERSION, id=request_id, result=_dump_result(response))
        metadata = ServerMessageMetadata(related_request_id=request_id) if request_id is not None else None
        try:
            await self._write_stream.send(SessionMessage(message=types.JSONRPCMessage(message), metadata=metadata))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug("Transport closed before the response to %s could be sent", request_id)

    async def _receive_loop(self) -> None:
        try:
            async with self._read_stream:
                async for message in self._read_stream:
                    if isinstance(message, Exception):
                        await self._handle_transport_exception(message)
                    else:
                        await self._handle_message(message)
                    if self._state in _TERMINAL_STATES:
                        break
        except anyio.ClosedResourceError:
            logger.debug("Read stream closed")
        except Exception as exc:
            logger.exception("Unhandled exception in receive loop")
            await self.fail(exc)
        finally:
            if self._state not in _TERMINAL_STATES:
                logger.debug("Transport closed; closing %s session", self.role)
                self._set_state(SessionState.CLOSED)
            self._pending.close(TransportClosedError())
            for ctx in list(self._in_flight.values()):
                ctx.cancel_scope.cancel()
            if self._closed_event is not None:
                self._closed_event.set()

    async def _handle_message(self, message: SessionMessage) -> None:
        match message.message.root:
            case types.JSONRPCRequest() as request:
                await self._handle_request(request, message.metadata)
            case types.JSONRPCNotification() as notification:
                await self._handle_notification(notification)
            case types.JSONRPCResponse() as response:
                if not self._pending.resolve(response.id, response.result):
                    logger.debug("Dropping response for unknown request id %r", response.id)
            case types.JSONRPCError() as error:
                if error.id is None:
                    logger.warning("Peer reported an error without a request id: %s", error.error.message)
                elif not self._pending.reject(error.id, error.error):
                    logger.debug("Dropping error for unknown request id %r", error.id)

    async def _handle_transport_exception(self, exc: Exception) -> None:
        if isinstance(exc, MessageDecodeError):
            logger.warning("Received malformed message: %s", exc)
            # Only requests can be answered; a parse error is addressed to id null.
            if exc.request_id is not None or exc.error.code == types.PARSE_ERROR:
                await self._send_response(exc.request_id, exc.error)
            return
        logger.error("Transport reported an error: %s", exc)
        await self._handle_incoming(exc)

    async def _handle_incoming(self, item: Exception | types.JSONRPCNotification) -> None:
        """Receive transport errors and notifications nobody handled. No-op by default."""

    def _is_early_inbound(self, method: str, kind: Literal["request", "notification"]) -> bool:
        if self._state is SessionState.READY:
            return True
        early = self._early_inbound_requests if kind == "request" else self._early_inbound_notifications
        return method in early

    async def _handle_request(self, request: types.JSONRPCRequest, metadata: MessageMetadata) -> None:
        method = request.method
        if not self._is_early_inbound(method, "request"):
            logger.warning("Rejecting %r request received while %s", method, self._state.value)
            await self._send_response(
                request.id,
                types.ErrorData(
                    code=types.INVALID_REQUEST,
                    message=f"Received {method!r} request before initialization was complete",
                ),
            )
            return

        if request.id in self._in_flight:
            await self._send_response(
                request.id,
                types.ErrorData(code=types.INVALID_REQUEST, message=f"Request id {request.id!r} is already in use"),
            )
            return

        ctx: RequestContext[Any] = RequestContext(
            session=self,
            method=method,
            request_id=request.id,
            meta=_parse_meta(request.params),
            request=metadata.request_context if isinstance(metadata, ServerMessageMetadata) else None,
        )

        # The handshake is handled inline so no later message races it.
        if await self._received_request(ctx, request.params):
            return

        handler = self._request_handlers.get(method)
        if not self.capabilities.is_permitted(method, "inbound") or handler is None:
            logger.debug("No permitted handler for %r", method)
            await self._send_response(
                request.id, types.ErrorData(code=types.METHOD_NOT_FOUND, message="Method not found")
            )
            return

        self._in_flight[request.id] = ctx
        self._task_group.start_soon(self._run_request_handler, handler, ctx, request.params)

    async def _received_request(self, ctx: RequestContext[Any], params: dict[str, Any] | None) -> bool:
        """Hook for requests the session handles itself. Return True when handled."""
        return False

    async def _run_request_handler(
        self,
        handler: RequestHandler,
        ctx: RequestContext[Any],
        params: dict[str, Any] | None,
    ) -> None:
        response: HandlerResult = None
        try:
            with ctx.cancel_scope:
                try:
                    response = await handler(ctx, params)
                except McpError as err:
                    response = err.error
                except Exception:
                    logger.exception("Handler for %r (id %r) failed", ctx.method, ctx.request_id)
                    response = types.ErrorData(code=types.INTERNAL_ERROR, message="Internal error")
        finally:
            self._in_flight.pop(ctx.request_id, None)

        if ctx.cancel_scope.cancel_called:
            logger.debug("Request %r (%s) was cancelled; no response sent", ctx.request_id, ctx.method)
            return
        await self._send_response(ctx.request_id, response)

    async def _handle_notification(self, notification: types.JSONRPCNotification) -> None:
        method = notification.method
        if not self._is_early_inbound(method, "notification"):
            logger.debug("Ignoring %r notification received while %s", method, self._state.value)
            return
        if not self.capabilities.is_permitted(method, "inbound"):
            logger.debug("Ignoring %r notification: capability was not declared", method)
            return

        params = notification.params
        try:
            if method == types.NOTIFICATION_CANCELLED:
                cancelled = types.CancelledNotificationParams.model_validate(params or {})
                ctx = self._in_flight.get(cancelled.requestId)
                if ctx is not None:
                    logger.debug("Peer cancelled request %r: %s", cancelled.requestId, cancelled.reason)
                    ctx.cancel_scope.cancel()
                return
            if method == types.NOTIFICATION_PROGRESS:
                await self._pending.handle_progress(types.ProgressNotificationParams.model_validate(params or {}))
        except ValidationError as exc:
            logger.warning("Ignoring malformed %r notification: %s", method, exc)
            return

        if await self._received_notification(method, params):
            return

        handler = self._notification_handlers.get(method)
        if handler is None:
            await self._handle_incoming(notification)
            return
        try:
            await handler(RequestContext(session=self, method=method), params)
        except Exception:
            logger.exception("Notification handler for %r failed", method)

    async def _received_notification(self, method: str, params: dict[str, Any] | None) -> bool:
        """Hook for notifications the session handles itself. Return True when handled."""
        return False


