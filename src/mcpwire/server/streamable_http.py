"""
StreamableHTTP Server Transport Module

This module implements an HTTP transport layer with Streamable HTTP.

The transport handles bidirectional communication using HTTP requests and
responses, with streaming support for long-running operations. One transport
serves one MCP session: POST carries client messages, GET opens the standalone
server-to-client SSE stream, DELETE ends the session.
"""

import logging
import re
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Any

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from mcpwire.server.event_store import EventId, EventMessage, EventStore, StreamId
from mcpwire.shared import codec
from mcpwire.shared.exceptions import MessageDecodeError
from mcpwire.shared.message import ServerMessageMetadata, SessionMessage
from mcpwire.types import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    METHOD_INITIALIZE,
    PARSE_ERROR,
    SUPPORTED_PROTOCOL_VERSIONS,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
)

logger = logging.getLogger(__name__)

# Maximum size for incoming messages
MAXIMUM_MESSAGE_SIZE = 4 * 1024 * 1024  # 4MB

# Header names
MCP_SESSION_ID_HEADER = "mcp-session-id"
MCP_PROTOCOL_VERSION_HEADER = "mcp-protocol-version"
LAST_EVENT_ID_HEADER = "last-event-id"

# Content types
CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_SSE = "text/event-stream"

# Key of the standalone GET stream in the stream registry
GET_STREAM_KEY = "_GET_stream"

# Session ids must be visible ASCII
SESSION_ID_PATTERN = re.compile(r"^[\x21-\x7E]+$")


def create_error_response(
    error_message: str,
    status_code: HTTPStatus,
    error_code: int = INVALID_REQUEST,
    headers: dict[str, str] | None = None,
    request_id: RequestId | None = None,
) -> Response:
    """Create an HTTP error response whose body is a JSON-RPC error."""
    response_headers = {"Content-Type": CONTENT_TYPE_JSON, **(headers or {})}
    error_response = JSONRPCError(
        jsonrpc="2.0",
        id=request_id,
        error=ErrorData(code=error_code, message=error_message),
    )
    return Response(
        codec.encode(error_response),
        status_code=status_code,
        headers=response_headers,
    )


class StreamableHTTPServerTransport:
    """
    HTTP server transport with event streaming support for MCP.

    Handles POST requests containing JSON-RPC messages and provides
    Server-Sent Events (SSE) responses for streaming communication.
    Messages written by the session are routed to the stream of the request
    they answer or relate to, and to the standalone GET stream otherwise.
    """

    _read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception] | None
    # Open SSE (or JSON collection) streams keyed by request id or GET_STREAM_KEY
    _request_streams: dict[StreamId, MemoryObjectSendStream[EventMessage]]

    def __init__(
        self,
        mcp_session_id: str | None,
        is_json_response_enabled: bool = False,
        event_store: EventStore | None = None,
    ) -> None:
        """
        Initialize a new StreamableHTTP server transport.

        Args:
            mcp_session_id: Session identifier for this connection, or None for a
                transport that does not track a session
            is_json_response_enabled: Answer requests with one JSON body
                instead of an SSE stream
            event_store: Records SSE events so clients can resume with
                Last-Event-ID

        Raises:
            ValueError: If the session ID contains invalid characters.
        """
        if mcp_session_id is not None and not SESSION_ID_PATTERN.fullmatch(mcp_session_id):
            raise ValueError("Session ID must only contain visible ASCII characters (0x21-0x7E)")

        self.mcp_session_id = mcp_session_id
        self.is_json_response_enabled = is_json_response_enabled
        self._event_store = event_store
        self._request_streams = {}
        self._read_stream_writer = None
        self._initialized = False
        self._terminated = False

    @property
    def is_initialized(self) -> bool:
        """Whether this transport has accepted an initialize request."""
        return self._initialized

    @property
    def is_terminated(self) -> bool:
        """Check if this transport has been explicitly terminated."""
        return self._terminated

    def _create_error_response(
        self,
        error_message: str,
        status_code: HTTPStatus,
        error_code: int = INVALID_REQUEST,
        headers: dict[str, str] | None = None,
        request_id: RequestId | None = None,
    ) -> Response:
        response_headers = {**(headers or {}), **self._session_headers()}
        return create_error_response(error_message, status_code, error_code, response_headers, request_id)

    def _session_headers(self) -> dict[str, str]:
        return {MCP_SESSION_ID_HEADER: self.mcp_session_id} if self.mcp_session_id else {}

    def _create_json_response(self, payload: Any) -> Response:
        return JSONResponse(payload, headers=self._session_headers())

    def _sse_headers(self) -> dict[str, str]:
        headers = {
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "Content-Type": CONTENT_TYPE_SSE,
        }
        if self.mcp_session_id:
            headers[MCP_SESSION_ID_HEADER] = self.mcp_session_id
        return headers

    def _create_event_data(self, event_message: EventMessage) -> dict[str, str]:
        """Create event data dictionary from an EventMessage."""
        event_data = {
            "event": "message",
            "data": codec.encode(event_message.message).decode("utf-8"),
        }
        if event_message.event_id:
            event_data["id"] = event_message.event_id
        return event_data

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI application entry point that handles all HTTP requests

        Args:
            scope: ASGI scope
            receive: ASGI receive function
            send: ASGI send function
        """
        request = Request(scope, receive)

        if self._terminated:
            response = self._create_error_response(
                "Not Found: Session has been terminated",
                HTTPStatus.NOT_FOUND,
            )
            await response(scope, receive, send)
            return

        if request.method == "POST":
            await self._handle_post_request(scope, request, receive, send)
        elif request.method == "GET":
            await self._handle_get_request(request, send)
        elif request.method == "DELETE":
            await self._handle_delete_request(request, send)
        else:
            await self._handle_unsupported_request(request, send)

    def _check_accept_headers(self, request: Request) -> tuple[bool, bool]:
        """Check if the request accepts the required media types."""
        accept_header = request.headers.get("accept", "")
        accept_types = [media_type.strip().split(";")[0].lower() for media_type in accept_header.split(",")]

        has_json = any(media_type.startswith(CONTENT_TYPE_JSON) for media_type in accept_types)
        has_sse = any(media_type.startswith(CONTENT_TYPE_SSE) for media_type in accept_types)
        return has_json, has_sse

    def _check_content_type(self, request: Request) -> bool:
        """Check if the request has the correct Content-Type."""
        content_type = request.headers.get("content-type", "")
        content_type_parts = [part.strip() for part in content_type.split(";")[0].split(",")]
        return any(part.lower() == CONTENT_TYPE_JSON for part in content_type_parts)

    async def _handle_post_request(self, scope: Scope, request: Request, receive: Receive, send: Send) -> None:
        """Handles POST requests containing JSON-RPC messages"""
        writer = self._read_stream_writer
        if writer is None:
            raise ValueError("No read stream writer available. Ensure connect() is called first.")

        try:
            has_json, has_sse = self._check_accept_headers(request)
            if not (has_json and has_sse):
                response = self._create_error_response(
                    "Not Acceptable: Client must accept both application/json and text/event-stream",
                    HTTPStatus.NOT_ACCEPTABLE,
                )
                await response(scope, receive, send)
                return

            if not self._check_content_type(request):
                response = self._create_error_response(
                    "Unsupported Media Type: Content-Type must be application/json",
                    HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
                )
                await response(scope, receive, send)
                return

            body = await request.body()
            if len(body) > MAXIMUM_MESSAGE_SIZE:
                response = self._create_error_response(
                    "Payload Too Large: Message exceeds maximum size",
                    HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
                )
                await response(scope, receive, send)
                return

            try:
                decoded = codec.decode(body)
            except MessageDecodeError as exc:
                message = "Parse error" if exc.error.code == PARSE_ERROR else exc.error.message
                response = self._create_error_response(
                    message,
                    HTTPStatus.BAD_REQUEST,
                    error_code=exc.error.code,
                    request_id=exc.request_id,
                )
                await response(scope, receive, send)
                return

            is_batch = isinstance(decoded, list)
            items = decoded if isinstance(decoded, list) else [decoded]
            failures = [item for item in items if isinstance(item, MessageDecodeError)]
            if failures:
                # A POST is accepted or rejected as a whole
                response = self._create_error_response(
                    failures[0].error.message,
                    HTTPStatus.BAD_REQUEST,
                    error_code=failures[0].error.code,
                    request_id=failures[0].request_id,
                )
                await response(scope, receive, send)
                return
            messages = [item for item in items if isinstance(item, JSONRPCMessage)]
            requests = [message.root for message in messages if isinstance(message.root, JSONRPCRequest)]
            is_initialization_request = any(req.method == METHOD_INITIALIZE for req in requests)

            if is_initialization_request:
                if len(messages) > 1:
                    response = self._create_error_response(
                        "Invalid Request: Only one initialization request is allowed",
                        HTTPStatus.BAD_REQUEST,
                    )
                    await response(scope, receive, send)
                    return
                if self._initialized:
                    response = self._create_error_response(
                        "Invalid Request: Server already initialized",
                        HTTPStatus.BAD_REQUEST,
                    )
                    await response(scope, receive, send)
                    return
                self._initialized = True
            elif not await self._validate_request_headers(request, send):
                return

            metadata = ServerMessageMetadata(request_context=request)

            # Notifications and responses only: accept and forward
            if not requests:
                response = Response(status_code=HTTPStatus.ACCEPTED, headers=self._session_headers())
                await response(scope, receive, send)
                for message in messages:
                    await writer.send(SessionMessage(message, metadata=metadata))
                return

            request_stream_ids = [str(req.id) for req in requests]
            if any(stream_id in self._request_streams for stream_id in request_stream_ids):
                response = self._create_error_response(
                    "Conflict: A request with this id is already in progress",
                    HTTPStatus.CONFLICT,
                )
                await response(scope, receive, send)
                return

            # Register before forwarding so no reply can race the stream setup
            request_stream_writer, request_stream_reader = anyio.create_memory_object_stream[EventMessage](0)
            for stream_id in request_stream_ids:
                self._request_streams[stream_id] = request_stream_writer

            if self.is_json_response_enabled:
                await self._respond_with_json(
                    scope,
                    receive,
                    send,
                    messages,
                    metadata,
                    request_stream_ids,
                    request_stream_reader,
                    is_batch,
                )
            else:
                await self._respond_with_sse(
                    scope,
                    receive,
                    send,
                    messages,
                    metadata,
                    request_stream_ids,
                    request_stream_reader,
                )

        except Exception as err:
            logger.exception("Error handling POST request")
            response = self._create_error_response(
                f"Error handling POST request: {err}",
                HTTPStatus.INTERNAL_SERVER_ERROR,
                INTERNAL_ERROR,
            )
            await response(scope, receive, send)
            if self._read_stream_writer is not None:
                try:
                    await self._read_stream_writer.send(err)
                except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                    pass

    async def _respond_with_json(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        messages: list[JSONRPCMessage],
        metadata: ServerMessageMetadata,
        request_stream_ids: list[StreamId],
        request_stream_reader: MemoryObjectReceiveStream[EventMessage],
        is_batch: bool,
    ) -> None:
        """Forward the messages and answer with the collected responses as one JSON body."""
        assert self._read_stream_writer is not None
        pending = set(request_stream_ids)
        responses: list[dict[str, Any]] = []

        try:
            for message in messages:
                await self._read_stream_writer.send(SessionMessage(message, metadata=metadata))

            async with request_stream_reader:
                async for event_message in request_stream_reader:
                    root = event_message.message.root
                    # Related notifications have no place in a JSON body
                    if isinstance(root, JSONRPCResponse | JSONRPCError):
                        responses.append(codec.to_jsonable(event_message.message))
                        pending.discard(str(root.id))
                        if not pending:
                            break
        finally:
            self._close_request_streams(request_stream_ids)

        if pending:
            response = self._create_error_response(
                "Error processing request: No response received",
                HTTPStatus.INTERNAL_SERVER_ERROR,
                INTERNAL_ERROR,
            )
        else:
            response = self._create_json_response(responses if is_batch else responses[0])
        await response(scope, receive, send)

    async def _respond_with_sse(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        messages: list[JSONRPCMessage],
        metadata: ServerMessageMetadata,
        request_stream_ids: list[StreamId],
        request_stream_reader: MemoryObjectReceiveStream[EventMessage],
    ) -> None:
        """Forward the messages and stream everything related to them back as SSE."""
        assert self._read_stream_writer is not None
        sse_stream_writer, sse_stream_reader = anyio.create_memory_object_stream[dict[str, str]](0)
        pending = set(request_stream_ids)

        async def sse_writer():
            try:
                async with sse_stream_writer, request_stream_reader:
                    async for event_message in request_stream_reader:
                        await sse_stream_writer.send(self._create_event_data(event_message))

                        root = event_message.message.root
                        if isinstance(root, JSONRPCResponse | JSONRPCError):
                            pending.discard(str(root.id))
                            if not pending:
                                break
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                logger.debug("SSE stream closed before all responses were sent")
            except Exception:
                logger.exception("Error in SSE writer")
            finally:
                logger.debug("Closing SSE writer")
                self._close_request_streams(request_stream_ids)

        response = EventSourceResponse(
            content=sse_stream_reader,
            data_sender_callable=sse_writer,
            headers=self._sse_headers(),
        )

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(response, scope, receive, send)
                for message in messages:
                    await self._read_stream_writer.send(SessionMessage(message, metadata=metadata))
        except Exception:
            logger.exception("SSE response error")
            self._close_request_streams(request_stream_ids)
            raise

    def _close_request_streams(self, stream_ids: list[StreamId]) -> None:
        for stream_id in stream_ids:
            stream = self._request_streams.pop(stream_id, None)
            if stream is not None:
                stream.close()

    async def _handle_get_request(self, request: Request, send: Send) -> None:
        """
        Handle GET request to establish SSE.

        This allows the server to communicate to the client without the client
        first sending data via HTTP POST. The server can send JSON-RPC requests
        and notifications on this stream.
        """
        _, has_sse = self._check_accept_headers(request)
        if not has_sse:
            response = self._create_error_response(
                "Not Acceptable: Client must accept text/event-stream",
                HTTPStatus.NOT_ACCEPTABLE,
            )
            await response(request.scope, request.receive, send)
            return

        if not await self._validate_request_headers(request, send):
            return

        last_event_id = request.headers.get(LAST_EVENT_ID_HEADER)
        if last_event_id and self._event_store:
            await self._replay_events(last_event_id, request, send)
            return

        if GET_STREAM_KEY in self._request_streams:
            response = self._create_error_response(
                "Conflict: Only one SSE stream is allowed per session",
                HTTPStatus.CONFLICT,
            )
            await response(request.scope, request.receive, send)
            return

        stream_writer, stream_reader = anyio.create_memory_object_stream[EventMessage](0)
        self._request_streams[GET_STREAM_KEY] = stream_writer
        await self._stream_to_client(request, send, [GET_STREAM_KEY], stream_reader)

    async def _stream_to_client(
        self,
        request: Request,
        send: Send,
        stream_ids: list[StreamId],
        stream_reader: MemoryObjectReceiveStream[EventMessage],
        replayed: list[EventMessage] | None = None,
    ) -> None:
        """Serve an open-ended SSE stream fed from ``stream_reader``."""
        sse_stream_writer, sse_stream_reader = anyio.create_memory_object_stream[dict[str, str]](0)

        async def standalone_sse_writer():
            try:
                async with sse_stream_writer, stream_reader:
                    for event_message in replayed or ():
                        await sse_stream_writer.send(self._create_event_data(event_message))
                    async for event_message in stream_reader:
                        await sse_stream_writer.send(self._create_event_data(event_message))
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                logger.debug("Standalone SSE stream closed")
            except Exception:
                logger.exception("Error in standalone SSE writer")
            finally:
                logger.debug("Closing standalone SSE writer")
                self._close_request_streams(stream_ids)

        response = EventSourceResponse(
            content=sse_stream_reader,
            data_sender_callable=standalone_sse_writer,
            headers=self._sse_headers(),
        )

        try:
            await response(request.scope, request.receive, send)
        except Exception:
            logger.exception("Error in standalone SSE response")
            self._close_request_streams(stream_ids)

    async def _replay_events(self, last_event_id: EventId, request: Request, send: Send) -> None:
        """
        Replays events that would have been sent after the specified event ID.
        Only used when resumability is enabled.
        """
        assert self._event_store is not None
        replayed: list[EventMessage] = []

        async def collect(event_message: EventMessage) -> None:
            replayed.append(event_message)

        stream_id = await self._event_store.replay_events_after(last_event_id, collect)
        if stream_id is None:
            response = self._create_error_response(
                "Bad Request: Unknown Last-Event-ID",
                HTTPStatus.BAD_REQUEST,
            )
            await response(request.scope, request.receive, send)
            return

        # Keep following the stream if it is still open on our side
        stream_writer, stream_reader = anyio.create_memory_object_stream[EventMessage](0)
        stream_ids: list[StreamId] = []
        if stream_id not in self._request_streams:
            self._request_streams[stream_id] = stream_writer
            stream_ids.append(stream_id)
        else:
            stream_writer.close()

        logger.debug("Resuming stream %s with %d replayed events", stream_id, len(replayed))
        await self._stream_to_client(request, send, stream_ids, stream_reader, replayed)

    async def _handle_delete_request(self, request: Request, send: Send) -> None:
        """Handle DELETE requests for explicit session termination."""
        if not self.mcp_session_id:
            response = self._create_error_response(
                "Method Not Allowed: Session termination not supported",
                HTTPStatus.METHOD_NOT_ALLOWED,
            )
            await response(request.scope, request.receive, send)
            return

        if not await self._validate_request_headers(request, send):
            return

        await self.terminate()

        response = Response(status_code=HTTPStatus.OK, headers=self._session_headers())
        await response(request.scope, request.receive, send)

    async def terminate(self) -> None:
        """
        Terminate the current session, closing all streams.

        Once terminated, all requests with this session ID will receive 404 Not Found.
        """
        if self._terminated:
            return
        self._terminated = True
        logger.info("Terminating session: %s", self.mcp_session_id)

        self._close_request_streams(list(self._request_streams))
        if self._read_stream_writer is not None:
            await self._read_stream_writer.aclose()

    async def _handle_unsupported_request(self, request: Request, send: Send) -> None:
        """Handle unsupported HTTP methods."""
        response = self._create_error_response(
            "Method Not Allowed",
            HTTPStatus.METHOD_NOT_ALLOWED,
            headers={"Allow": "GET, POST, DELETE"},
        )
        await response(request.scope, request.receive, send)

    async def _validate_request_headers(self, request: Request, send: Send) -> bool:
        if not await self._validate_session(request, send):
            return False
        return await self._validate_protocol_version(request, send)

    async def _validate_session(self, request: Request, send: Send) -> bool:
        """Validate the session ID in the request."""
        if not self.mcp_session_id:
            return True

        request_session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if not request_session_id:
            response = self._create_error_response(
                "Bad Request: Missing session ID",
                HTTPStatus.BAD_REQUEST,
            )
            await response(request.scope, request.receive, send)
            return False

        if request_session_id != self.mcp_session_id:
            response = self._create_error_response(
                "Not Found: Invalid or expired session ID",
                HTTPStatus.NOT_FOUND,
            )
            await response(request.scope, request.receive, send)
            return False

        return True

    async def _validate_protocol_version(self, request: Request, send: Send) -> bool:
        """Reject a protocol version header this server cannot speak; a missing header is allowed."""
        protocol_version = request.headers.get(MCP_PROTOCOL_VERSION_HEADER)
        if protocol_version is None or protocol_version in SUPPORTED_PROTOCOL_VERSIONS:
            return True

        supported_versions = ", ".join(SUPPORTED_PROTOCOL_VERSIONS)
        response = self._create_error_response(
            f"Bad Request: Unsupported protocol version: {protocol_version}. "
            f"Supported versions: {supported_versions}",
            HTTPStatus.BAD_REQUEST,
        )
        await response(request.scope, request.receive, send)
        return False

    @asynccontextmanager
    async def connect(
        self,
    ) -> AsyncGenerator[
        tuple[
            MemoryObjectReceiveStream[SessionMessage | Exception],
            MemoryObjectSendStream[SessionMessage],
        ],
        None,
    ]:
        """
        Context manager that provides read and write streams for a connection

        Yields:
            Tuple of (read_stream, write_stream) for bidirectional communication
        """
        read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)

        self._read_stream_writer = read_stream_writer

        async with anyio.create_task_group() as tg:

            async def message_router():
                try:
                    async with write_stream_reader:
                        async for session_message in write_stream_reader:
                            await self._route_message(session_message)
                except anyio.ClosedResourceError:
                    if not self._terminated:
                        logger.exception("Message router stream closed unexpectedly")

            tg.start_soon(message_router)

            try:
                yield read_stream, write_stream
            finally:
                self._close_request_streams(list(self._request_streams))
                await read_stream_writer.aclose()
                await write_stream.aclose()
                tg.cancel_scope.cancel()

    async def _route_message(self, session_message: SessionMessage) -> None:
        """Deliver one outgoing message to the stream it belongs to."""
        message = session_message.message
        target_request_id: RequestId | None = None

        if isinstance(message.root, JSONRPCResponse | JSONRPCError):
            target_request_id = message.root.id
        elif (
            isinstance(session_message.metadata, ServerMessageMetadata)
            and session_message.metadata.related_request_id is not None
        ):
            target_request_id = session_message.metadata.related_request_id

        stream_id = str(target_request_id) if target_request_id is not None else GET_STREAM_KEY

        event_id = None
        if self._event_store:
            event_id = await self._event_store.store_event(stream_id, message)
            logger.debug("Stored event %s on stream %s", event_id, stream_id)

        stream = self._request_streams.get(stream_id)
        if stream is None:
            logger.debug("No open stream %s for message; dropped unless stored", stream_id)
            return

        try:
            await stream.send(EventMessage(message, event_id))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            self._request_streams.pop(stream_id, None)
