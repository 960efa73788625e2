"""
StreamableHTTP Client Transport Module

This module implements the StreamableHTTP transport for MCP clients,
providing support for HTTP POST requests with optional SSE streaming responses
and session management.
"""

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

import anyio
import httpx
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from httpx_sse import EventSource, ServerSentEvent, aconnect_sse

from mcpwire.shared import codec
from mcpwire.shared._httpx_utils import (
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_SSE_READ_TIMEOUT,
    McpHttpClientFactory,
    create_mcp_http_client,
)
from mcpwire.shared.exceptions import MessageDecodeError
from mcpwire.shared.message import ClientMessageMetadata, SessionMessage
from mcpwire.types import (
    CONNECTION_CLOSED,
    METHOD_INITIALIZE,
    NOTIFICATION_INITIALIZED,
    ErrorData,
    InitializeResult,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
)

logger = logging.getLogger(__name__)


SessionMessageOrError = SessionMessage | Exception
StreamWriter = MemoryObjectSendStream[SessionMessageOrError]
StreamReader = MemoryObjectReceiveStream[SessionMessage]
GetSessionIdCallback = Callable[[], str | None]

MCP_SESSION_ID = "mcp-session-id"
MCP_PROTOCOL_VERSION = "mcp-protocol-version"
LAST_EVENT_ID = "last-event-id"
CONTENT_TYPE = "content-type"
ACCEPT = "accept"


JSON = "application/json"
SSE = "text/event-stream"


class StreamableHTTPError(Exception):
    """Base exception for StreamableHTTP transport errors."""


class ResumptionError(StreamableHTTPError):
    """Raised when resumption request is invalid."""


@dataclass
class StreamableHTTPReconnectionOptions:
    """Configuration options for reconnection behavior of StreamableHTTPTransport.

    Attributes:
        initial_reconnection_delay: Initial backoff time in seconds. Default is 1.0.
        max_reconnection_delay: Maximum backoff time in seconds. Default is 30.0.
        reconnection_delay_grow_factor: Factor by which delay increases. Default is 1.5.
        max_retries: Maximum reconnection attempts. Default is 2.
    """

    initial_reconnection_delay: float = 1.0
    max_reconnection_delay: float = 30.0
    reconnection_delay_grow_factor: float = 1.5
    max_retries: int = 2

    def __post_init__(self) -> None:
        if self.initial_reconnection_delay > self.max_reconnection_delay:
            raise ValueError("initial_reconnection_delay cannot exceed max_reconnection_delay")
        if self.reconnection_delay_grow_factor < 1:
            raise ValueError("reconnection_delay_grow_factor must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Backoff before reconnection attempt ``attempt`` (counted from 0)."""
        delay = self.initial_reconnection_delay * (self.reconnection_delay_grow_factor**attempt)
        return min(delay, self.max_reconnection_delay)


@dataclass
class RequestContext:
    """Context for a request operation."""

    client: httpx.AsyncClient
    headers: dict[str, str]
    session_id: str | None
    session_message: SessionMessage
    metadata: ClientMessageMetadata | None
    read_stream_writer: StreamWriter
    sse_read_timeout: float


def _seconds(value: float | timedelta) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else value


class StreamableHTTPTransport:
    """StreamableHTTP client transport implementation."""

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float | timedelta = DEFAULT_HTTP_TIMEOUT,
        sse_read_timeout: float | timedelta = DEFAULT_SSE_READ_TIMEOUT,
        auth: httpx.Auth | None = None,
        reconnection_options: StreamableHTTPReconnectionOptions | None = None,
    ) -> None:
        """Initialize the StreamableHTTP transport."""
        self.url = url
        self.headers = headers or {}
        self.timeout = _seconds(timeout)
        self.sse_read_timeout = _seconds(sse_read_timeout)
        self.auth = auth
        self.session_id: str | None = None
        self.protocol_version: str | None = None
        self.reconnection_options = reconnection_options or StreamableHTTPReconnectionOptions()
        self._server_retry_seconds: float | None = None
        self.request_headers = {
            ACCEPT: f"{JSON}, {SSE}",
            CONTENT_TYPE: JSON,
            **self.headers,
        }

    def _prepare_request_headers(self, base_headers: dict[str, str]) -> dict[str, str]:
        """Update headers with session ID and protocol version if available."""
        headers = base_headers.copy()
        if self.session_id:
            headers[MCP_SESSION_ID] = self.session_id
        if self.protocol_version:
            headers[MCP_PROTOCOL_VERSION] = self.protocol_version
        return headers

    def _is_initialization_request(self, message: JSONRPCMessage) -> bool:
        return isinstance(message.root, JSONRPCRequest) and message.root.method == METHOD_INITIALIZE

    def _is_initialized_notification(self, message: JSONRPCMessage) -> bool:
        return isinstance(message.root, JSONRPCNotification) and message.root.method == NOTIFICATION_INITIALIZED

    def _maybe_extract_session_id_from_response(self, response: httpx.Response) -> None:
        new_session_id = response.headers.get(MCP_SESSION_ID)
        if new_session_id:
            self.session_id = new_session_id
            logger.info("Received session ID: %s", self.session_id)

    def _maybe_extract_protocol_version_from_message(self, message: JSONRPCMessage) -> None:
        """Remember the negotiated version so later requests can announce it."""
        if not isinstance(message.root, JSONRPCResponse):
            return
        try:
            init_result = InitializeResult.model_validate(message.root.result)
        except ValueError as exc:
            logger.warning("Failed to parse initialization response as InitializeResult: %s", exc)
            return
        self.protocol_version = init_result.protocolVersion
        logger.info("Negotiated protocol version: %s", self.protocol_version)

    def _get_next_reconnection_delay(self, attempt: int) -> float:
        """Server-provided SSE retry wins over the configured backoff."""
        if self._server_retry_seconds is not None:
            return self._server_retry_seconds
        return self.reconnection_options.delay_for(attempt)

    async def _send_decoded(
        self,
        data: bytes | str,
        read_stream_writer: StreamWriter,
        original_request_id: RequestId | None = None,
        is_initialization: bool = False,
    ) -> bool:
        """Decode one payload and forward its messages; True once a response was among them."""
        is_complete = False
        for message in codec.decode_all(data):
            if isinstance(message, MessageDecodeError):
                logger.warning("Failed to decode message from server: %s", message)
                await read_stream_writer.send(message)
                continue
            if is_initialization:
                self._maybe_extract_protocol_version_from_message(message)
            if isinstance(message.root, JSONRPCResponse | JSONRPCError):
                # Replayed responses keep the id of the request being resumed
                if original_request_id is not None:
                    message.root.id = original_request_id
                is_complete = True
            await read_stream_writer.send(SessionMessage(message))
        return is_complete

    async def _handle_sse_event(
        self,
        sse: ServerSentEvent,
        read_stream_writer: StreamWriter,
        original_request_id: RequestId | None = None,
        resumption_callback: Callable[[str], Awaitable[None]] | None = None,
        is_initialization: bool = False,
    ) -> tuple[bool, bool]:
        """Handle an SSE event.

        Returns:
            Tuple of (is_complete, has_event_id) where:
            - is_complete: True if the response stream is complete (got response/error)
            - has_event_id: True if this event had an ID (indicating resumability)
        """
        event_id = sse.id
        has_event_id = bool(event_id)

        if sse.retry is not None:
            self._server_retry_seconds = sse.retry / 1000.0

        if sse.event != "message" or not sse.data or not sse.data.strip():
            # Priming or unknown event: only the id matters
            if has_event_id and resumption_callback:
                await resumption_callback(event_id)
            return False, has_event_id

        is_complete = await self._send_decoded(sse.data, read_stream_writer, original_request_id, is_initialization)

        if has_event_id and resumption_callback:
            await resumption_callback(event_id)

        return is_complete, has_event_id

    async def handle_get_stream(
        self,
        client: httpx.AsyncClient,
        read_stream_writer: StreamWriter,
    ) -> None:
        """Handle GET stream for server-initiated messages, reconnecting when it drops."""
        last_event_id: str | None = None
        attempt = 0

        while self.session_id:
            headers = self._prepare_request_headers(self.request_headers)
            if last_event_id:
                headers[LAST_EVENT_ID] = last_event_id

            try:
                async with aconnect_sse(
                    client,
                    "GET",
                    self.url,
                    headers=headers,
                    timeout=httpx.Timeout(self.timeout, read=self.sse_read_timeout),
                ) as event_source:
                    if event_source.response.status_code == 405:
                        logger.debug("Server does not offer a standalone SSE stream")
                        return
                    event_source.response.raise_for_status()
                    logger.debug("GET SSE connection established")
                    attempt = 0

                    async for sse in event_source.aiter_sse():
                        await self._handle_sse_event(sse, read_stream_writer)
                        if sse.id:
                            last_event_id = sse.id
            except httpx.HTTPError as exc:
                logger.debug("GET stream error (non-fatal): %s", exc)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                logger.debug("Session closed; stopping GET stream")
                return

            if not last_event_id or attempt >= self.reconnection_options.max_retries:
                return

            delay = self._get_next_reconnection_delay(attempt)
            attempt += 1
            logger.info("GET stream closed, reconnecting in %.1fs (attempt %d)", delay, attempt)
            await anyio.sleep(delay)

    async def _handle_resumption_request(self, ctx: RequestContext) -> None:
        """Handle a resumption request using GET with SSE."""
        headers = self._prepare_request_headers(ctx.headers)
        if ctx.metadata and ctx.metadata.resumption_token:
            headers[LAST_EVENT_ID] = ctx.metadata.resumption_token
        else:
            raise ResumptionError("Resumption request requires a resumption token")

        original_request_id = None
        if isinstance(ctx.session_message.message.root, JSONRPCRequest):
            original_request_id = ctx.session_message.message.root.id

        async with aconnect_sse(
            ctx.client,
            "GET",
            self.url,
            headers=headers,
            timeout=httpx.Timeout(self.timeout, read=self.sse_read_timeout),
        ) as event_source:
            event_source.response.raise_for_status()
            logger.debug("Resumption GET SSE connection established")

            async for sse in event_source.aiter_sse():
                is_complete, _has_event_id = await self._handle_sse_event(
                    sse,
                    ctx.read_stream_writer,
                    original_request_id,
                    ctx.metadata.on_resumption_token_update if ctx.metadata else None,
                )
                if is_complete:
                    await event_source.response.aclose()
                    break

    async def _handle_post_request(self, ctx: RequestContext) -> None:
        """Handle a POST request with response processing."""
        headers = self._prepare_request_headers(ctx.headers)
        message = ctx.session_message.message
        is_initialization = self._is_initialization_request(message)

        async with ctx.client.stream(
            "POST",
            self.url,
            content=codec.encode(message),
            headers=headers,
        ) as response:
            if response.status_code == 202:
                logger.debug("Received 202 Accepted")
                return

            if response.status_code == 404:
                if isinstance(message.root, JSONRPCRequest):
                    await self._send_session_terminated_error(ctx.read_stream_writer, message.root.id)
                return

            # Transport-level rejections carry a JSON-RPC error body
            if (
                response.status_code >= 400
                and isinstance(message.root, JSONRPCRequest)
                and response.headers.get(CONTENT_TYPE, "").lower().startswith(JSON)
            ):
                await self._forward_error_body(response, ctx.read_stream_writer, message.root.id)
                return

            response.raise_for_status()
            if is_initialization:
                self._maybe_extract_session_id_from_response(response)

            # The server never answers notifications or responses
            if isinstance(message.root, JSONRPCRequest):
                content_type = response.headers.get(CONTENT_TYPE, "").lower()
                if content_type.startswith(JSON):
                    await self._handle_json_response(response, ctx.read_stream_writer, is_initialization)
                elif content_type.startswith(SSE):
                    await self._handle_sse_response(response, ctx, is_initialization)
                else:
                    await self._handle_unexpected_content_type(content_type, ctx.read_stream_writer)

    async def _forward_error_body(
        self,
        response: httpx.Response,
        read_stream_writer: StreamWriter,
        request_id: RequestId,
    ) -> None:
        """Deliver an HTTP error's JSON-RPC body as the error response of ``request_id``."""
        content = await response.aread()
        try:
            decoded = codec.decode(content)
        except MessageDecodeError:
            decoded = None

        if isinstance(decoded, JSONRPCMessage) and isinstance(decoded.root, JSONRPCError):
            error = decoded.root.error
        else:
            error = ErrorData(code=CONNECTION_CLOSED, message=f"HTTP {response.status_code}")

        jsonrpc_error = JSONRPCError(jsonrpc="2.0", id=request_id, error=error)
        await read_stream_writer.send(SessionMessage(JSONRPCMessage(jsonrpc_error)))

    async def _handle_json_response(
        self,
        response: httpx.Response,
        read_stream_writer: StreamWriter,
        is_initialization: bool = False,
    ) -> None:
        """Handle JSON response from the server."""
        content = await response.aread()
        await self._send_decoded(content, read_stream_writer, is_initialization=is_initialization)

    async def _handle_sse_response(
        self,
        response: httpx.Response,
        ctx: RequestContext,
        is_initialization: bool = False,
    ) -> None:
        """Handle SSE response from the server, resuming if it drops before the response."""
        last_event_id: str | None = None
        is_complete = False

        try:
            event_source = EventSource(response)
            async for sse in event_source.aiter_sse():
                is_complete, has_event_id = await self._handle_sse_event(
                    sse,
                    ctx.read_stream_writer,
                    resumption_callback=(ctx.metadata.on_resumption_token_update if ctx.metadata else None),
                    is_initialization=is_initialization,
                )
                if has_event_id:
                    last_event_id = sse.id
                if is_complete:
                    await response.aclose()
                    break
        except httpx.HTTPError as exc:
            logger.warning("Error reading SSE stream: %s", exc)
            if not last_event_id:
                await ctx.read_stream_writer.send(exc)
                return

        if not is_complete and last_event_id:
            await self._attempt_sse_reconnection(ctx, last_event_id)

    async def _attempt_sse_reconnection(self, ctx: RequestContext, last_event_id: str) -> None:
        """Resume a response stream that ended without a response, with backoff."""
        max_retries = self.reconnection_options.max_retries
        token_callback = ctx.metadata.on_resumption_token_update if ctx.metadata else None

        for attempt in range(max_retries):
            delay = self._get_next_reconnection_delay(attempt)
            logger.info("SSE stream closed, reconnecting in %.1fs (attempt %d/%d)", delay, attempt + 1, max_retries)
            await anyio.sleep(delay)

            async def track(event_id: str) -> None:
                nonlocal last_event_id
                last_event_id = event_id
                if token_callback is not None:
                    await token_callback(event_id)

            resumption_ctx = RequestContext(
                client=ctx.client,
                headers=ctx.headers,
                session_id=ctx.session_id,
                session_message=ctx.session_message,
                metadata=ClientMessageMetadata(resumption_token=last_event_id, on_resumption_token_update=track),
                read_stream_writer=ctx.read_stream_writer,
                sse_read_timeout=ctx.sse_read_timeout,
            )
            try:
                await self._handle_resumption_request(resumption_ctx)
                return
            except httpx.HTTPError as exc:
                logger.warning("Reconnection attempt %d failed: %s", attempt + 1, exc)

        error_msg = f"Max reconnection attempts ({max_retries}) exceeded"
        logger.error(error_msg)
        await ctx.read_stream_writer.send(StreamableHTTPError(error_msg))

    async def _handle_unexpected_content_type(
        self,
        content_type: str,
        read_stream_writer: StreamWriter,
    ) -> None:
        error_msg = f"Unexpected content type: {content_type}"
        logger.error(error_msg)
        await read_stream_writer.send(ValueError(error_msg))

    async def _send_session_terminated_error(
        self,
        read_stream_writer: StreamWriter,
        request_id: RequestId,
    ) -> None:
        """Answer a request locally once the server has forgotten the session."""
        jsonrpc_error = JSONRPCError(
            jsonrpc="2.0",
            id=request_id,
            error=ErrorData(code=CONNECTION_CLOSED, message="Session terminated"),
        )
        await read_stream_writer.send(SessionMessage(JSONRPCMessage(jsonrpc_error)))

    async def post_writer(
        self,
        client: httpx.AsyncClient,
        write_stream_reader: StreamReader,
        read_stream_writer: StreamWriter,
        write_stream: MemoryObjectSendStream[SessionMessage],
        start_get_stream: Callable[[], None],
        tg: TaskGroup,
    ) -> None:
        """Handle writing requests to the server."""
        try:
            async with write_stream_reader:
                async for session_message in write_stream_reader:
                    message = session_message.message
                    metadata = (
                        session_message.metadata
                        if isinstance(session_message.metadata, ClientMessageMetadata)
                        else None
                    )
                    is_resumption = bool(metadata and metadata.resumption_token)

                    logger.debug("Sending client message: %s", message)

                    ctx = RequestContext(
                        client=client,
                        headers=self.request_headers,
                        session_id=self.session_id,
                        session_message=session_message,
                        metadata=metadata,
                        read_stream_writer=read_stream_writer,
                        sse_read_timeout=self.sse_read_timeout,
                    )

                    async def handle_request_async(ctx: RequestContext = ctx, is_resumption: bool = is_resumption):
                        try:
                            if is_resumption:
                                await self._handle_resumption_request(ctx)
                            else:
                                await self._handle_post_request(ctx)
                        except httpx.HTTPError as exc:
                            logger.warning("HTTP request failed: %s", exc)
                            try:
                                await read_stream_writer.send(exc)
                            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                                pass
                        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                            logger.debug("Session closed before the reply to %s was delivered", ctx.session_message)

                    # Requests run concurrently; everything else keeps its order
                    if isinstance(message.root, JSONRPCRequest) and not self._is_initialization_request(message):
                        tg.start_soon(handle_request_async)
                    else:
                        await handle_request_async()

                    if self._is_initialized_notification(message):
                        start_get_stream()

        except anyio.ClosedResourceError:
            logger.debug("Read stream closed; stopping post writer")
        finally:
            await read_stream_writer.aclose()
            await write_stream.aclose()

    async def terminate_session(self, client: httpx.AsyncClient) -> None:
        """Terminate the session by sending a DELETE request."""
        if not self.session_id:
            return

        try:
            headers = self._prepare_request_headers(self.request_headers)
            response = await client.delete(self.url, headers=headers)

            if response.status_code == 405:
                logger.debug("Server does not allow session termination")
            elif response.status_code not in (200, 204):
                logger.warning("Session termination failed: %s", response.status_code)
        except httpx.HTTPError as exc:
            logger.warning("Session termination failed: %s", exc)

    def get_session_id(self) -> str | None:
        """Get the current session ID."""
        return self.session_id


@asynccontextmanager
async def streamablehttp_client(
    url: str,
    headers: dict[str, str] | None = None,
    timeout: float | timedelta = DEFAULT_HTTP_TIMEOUT,
    sse_read_timeout: float | timedelta = DEFAULT_SSE_READ_TIMEOUT,
    terminate_on_close: bool = True,
    httpx_client_factory: McpHttpClientFactory = create_mcp_http_client,
    auth: httpx.Auth | None = None,
    reconnection_options: StreamableHTTPReconnectionOptions | None = None,
) -> AsyncGenerator[
    tuple[
        MemoryObjectReceiveStream[SessionMessage | Exception],
        MemoryObjectSendStream[SessionMessage],
        GetSessionIdCallback,
    ],
    None,
]:
    """
    Client transport for StreamableHTTP.

    `sse_read_timeout` determines how long (in seconds) the client will wait for a new
    event before disconnecting. All other HTTP operations are controlled by `timeout`.
    """
    transport = StreamableHTTPTransport(url, headers, timeout, sse_read_timeout, auth, reconnection_options)

    read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)

    async with anyio.create_task_group() as tg:
        try:
            logger.debug("Connecting to StreamableHTTP endpoint: %s", url)

            async with httpx_client_factory(
                headers=transport.request_headers,
                timeout=httpx.Timeout(transport.timeout, read=transport.sse_read_timeout),
                auth=transport.auth,
            ) as client:

                def start_get_stream() -> None:
                    tg.start_soon(transport.handle_get_stream, client, read_stream_writer)

                tg.start_soon(
                    transport.post_writer,
                    client,
                    write_stream_reader,
                    read_stream_writer,
                    write_stream,
                    start_get_stream,
                    tg,
                )

                try:
                    yield (
                        read_stream,
                        write_stream,
                        transport.get_session_id,
                    )
                finally:
                    if transport.session_id and terminate_on_close:
                        await transport.terminate_session(client)
                    tg.cancel_scope.cancel()
        finally:
            await read_stream_writer.aclose()
            await write_stream.aclose()
