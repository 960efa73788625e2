"""StreamableHTTP Session Manager for MCP servers."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from http import HTTPStatus
from typing import Any
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup, TaskStatus
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from mcpwire.server.event_store import EventStore
from mcpwire.server.lowlevel.server import Server
from mcpwire.server.streamable_http import (
    MCP_SESSION_ID_HEADER,
    StreamableHTTPServerTransport,
    create_error_response,
)
from mcpwire.shared.settings import Settings

logger = logging.getLogger(__name__)


class StreamableHTTPSessionManager:
    """
    Manages StreamableHTTP sessions with optional resumability via event store.

    Every session gets its own StreamableHTTPServerTransport and a background
    task running ``Server.run`` against it. Sessions are created by an
    ``initialize`` POST without a session id, found again through the
    ``Mcp-Session-Id`` header, and dropped once their server task ends (after
    a DELETE or when the session closes).

    Important: Only one StreamableHTTPSessionManager instance should be created
    per application. The instance cannot be reused after its run() context has
    completed. If you need to restart the manager, create a new instance.

    Args:
        app: The MCP server instance
        event_store: Optional event store for resumability. If provided,
                     SSE events carry ids and clients can resume with
                     Last-Event-ID.
        json_response: Whether to use JSON responses instead of SSE streams
        session_options: Keyword arguments passed to every ServerSession
    """

    def __init__(
        self,
        app: Server,
        event_store: EventStore | None = None,
        json_response: bool = False,
        session_options: dict[str, Any] | None = None,
    ):
        self.app = app
        self.event_store = event_store
        self.json_response = json_response
        self.session_options = session_options or {}

        self._session_creation_lock = anyio.Lock()
        self._server_instances: dict[str, StreamableHTTPServerTransport] = {}

        # The task group will be set during lifespan
        self._task_group: TaskGroup | None = None
        self._run_lock = anyio.Lock()
        self._has_started = False

    @property
    def session_ids(self) -> list[str]:
        return list(self._server_instances)

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """
        Run the session manager with proper lifecycle management.

        This creates and manages the task group for all session operations.

        Use this in the lifespan context manager of your Starlette app:

        @contextlib.asynccontextmanager
        async def lifespan(app: Starlette) -> AsyncIterator[None]:
            async with session_manager.run():
                yield
        """
        async with self._run_lock:
            if self._has_started:
                raise RuntimeError(
                    "StreamableHTTPSessionManager .run() can only be called "
                    "once per instance. Create a new instance if you need to run again."
                )
            self._has_started = True

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("StreamableHTTP session manager started")
            try:
                yield
            finally:
                logger.info("StreamableHTTP session manager shutting down")
                for transport in list(self._server_instances.values()):
                    await transport.terminate()
                tg.cancel_scope.cancel()
                self._task_group = None
                self._server_instances.clear()

    async def handle_request(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        """
        Process ASGI request with proper session handling and transport setup.

        Args:
            scope: ASGI scope
            receive: ASGI receive function
            send: ASGI send function
        """
        if self._task_group is None:
            raise RuntimeError("Task group is not initialized. Make sure to use run().")

        request = Request(scope, receive)
        request_mcp_session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if request_mcp_session_id is not None:
            transport = self._server_instances.get(request_mcp_session_id)
            if transport is None:
                response = create_error_response(
                    "Not Found: Session not found",
                    HTTPStatus.NOT_FOUND,
                )
                await response(scope, receive, send)
                return
            logger.debug("Session already exists, handling request directly")
            await transport.handle_request(scope, receive, send)
            return

        if request.method != "POST":
            response = create_error_response(
                "Bad Request: Missing session ID",
                HTTPStatus.BAD_REQUEST,
            )
            await response(scope, receive, send)
            return

        # New session case
        logger.debug("Creating new transport")
        async with self._session_creation_lock:
            new_session_id = uuid4().hex
            http_transport = StreamableHTTPServerTransport(
                mcp_session_id=new_session_id,
                is_json_response_enabled=self.json_response,
                event_store=self.event_store,
            )
            self._server_instances[new_session_id] = http_transport
            await self._start_transport_server(http_transport)

        await http_transport.handle_request(scope, receive, send)

        # A POST without a session id that was not an initialize created nothing
        if not http_transport.is_initialized:
            logger.debug("Discarding transport %s: request was not an initialization", new_session_id)
            self._server_instances.pop(new_session_id, None)
            await http_transport.terminate()
        else:
            logger.info("Created new transport with session ID: %s", new_session_id)

    async def _transport_server_task(
        self,
        http_transport: StreamableHTTPServerTransport,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        """Background task that runs the MCP server for a transport."""
        session_id = http_transport.mcp_session_id
        async with http_transport.connect() as streams:
            read_stream, write_stream = streams
            task_status.started()
            try:
                await self.app.run(
                    read_stream,
                    write_stream,
                    self.app.create_initialization_options(),
                    **self.session_options,
                )
            except Exception:
                logger.exception("Session %s crashed", session_id)
            finally:
                if session_id is not None and self._server_instances.get(session_id) is http_transport:
                    logger.debug("Removing session %s from active instances", session_id)
                    del self._server_instances[session_id]

    async def _start_transport_server(self, http_transport: StreamableHTTPServerTransport) -> None:
        assert self._task_group is not None
        await self._task_group.start(self._transport_server_task, http_transport)


class StreamableHTTPASGIApp:
    """ASGI application that hands every request to the session manager."""

    def __init__(self, session_manager: StreamableHTTPSessionManager):
        self.session_manager = session_manager

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.session_manager.handle_request(scope, receive, send)


def create_streamable_http_app(
    server: Server,
    *,
    event_store: EventStore | None = None,
    json_response: bool | None = None,
    path: str | None = None,
    settings: Settings | None = None,
    debug: bool = False,
    **session_options: Any,
) -> Starlette:
    """Return a Starlette app serving ``server`` over Streamable HTTP on one path.

    The session manager is available as ``app.state.session_manager`` and is
    started by the app's lifespan.
    """
    settings = settings or Settings()
    session_manager = StreamableHTTPSessionManager(
        app=server,
        event_store=event_store,
        json_response=settings.json_response if json_response is None else json_response,
        session_options=session_options,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with session_manager.run():
            yield

    app = Starlette(
        debug=debug,
        routes=[
            Route(
                path or settings.streamable_http_path,
                endpoint=StreamableHTTPASGIApp(session_manager),
                methods=["GET", "POST", "DELETE"],
            )
        ],
        lifespan=lifespan,
    )
    app.state.session_manager = session_manager
    return app


async def serve_streamable_http(
    server: Server,
    *,
    host: str | None = None,
    port: int | None = None,
    settings: Settings | None = None,
    **app_options: Any,
) -> None:
    """Serve ``server`` over Streamable HTTP with uvicorn until cancelled."""
    import uvicorn

    settings = settings or Settings()
    starlette_app = create_streamable_http_app(server, settings=settings, **app_options)

    config = uvicorn.Config(
        starlette_app,
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )
    await uvicorn.Server(config).serve()
