"""
In-memory transports for running a client and a server in one process.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from mcpwire.shared._exception_utils import open_task_group
from mcpwire.shared.message import SessionMessage

if TYPE_CHECKING:
    from mcpwire.client.session import ClientSession
    from mcpwire.server.lowlevel import Server

MessageStream = tuple[MemoryObjectReceiveStream[SessionMessage | Exception], MemoryObjectSendStream[SessionMessage]]


@asynccontextmanager
async def create_client_server_memory_streams() -> AsyncGenerator[tuple[MessageStream, MessageStream], None]:
    """
    Creates a pair of bidirectional memory streams for client-server communication.

    Returns:
        A tuple of (client_streams, server_streams) where each is a tuple of
        (read_stream, write_stream)
    """
    server_to_client_send, server_to_client_receive = anyio.create_memory_object_stream[SessionMessage | Exception](1)
    client_to_server_send, client_to_server_receive = anyio.create_memory_object_stream[SessionMessage | Exception](1)

    client_streams = (server_to_client_receive, client_to_server_send)
    server_streams = (client_to_server_receive, server_to_client_send)

    async with (
        server_to_client_receive,
        client_to_server_send,
        client_to_server_receive,
        server_to_client_send,
    ):
        yield client_streams, server_streams  # type: ignore[misc]


@asynccontextmanager
async def create_connected_server_and_client_session(
    server: Server,
    *,
    initialize: bool = True,
    read_timeout_seconds: float | timedelta | None = None,
    server_session_options: dict[str, Any] | None = None,
    **client_options: Any,
) -> AsyncGenerator[ClientSession, None]:
    """Run ``server`` in a background task and yield a client session connected to it.

    The client is initialized unless ``initialize`` is False. Extra keyword
    arguments are passed to ``ClientSession``.
    """
    from mcpwire.client.session import ClientSession

    async with create_client_server_memory_streams() as (client_streams, server_streams):
        client_read, client_write = client_streams
        server_read, server_write = server_streams

        async with open_task_group() as tg:
            tg.start_soon(
                lambda: server.run(
                    server_read,
                    server_write,
                    server.create_initialization_options(),
                    **(server_session_options or {}),
                )
            )

            try:
                async with ClientSession(
                    client_read,
                    client_write,
                    read_timeout_seconds=read_timeout_seconds,
                    **client_options,
                ) as client_session:
                    if initialize:
                        await client_session.initialize()
                    yield client_session
            finally:
                tg.cancel_scope.cancel()
