"""Stdio Server Transport Module

Newline-delimited JSON-RPC over the current process' stdin and stdout.
Diagnostics must never go to stdout; use ``configure_logging`` which logs to
stderr.

Example:
    ```python
    async def run_server():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())

    anyio.run(run_server)
    ```
"""

import logging
import sys
from contextlib import asynccontextmanager
from io import TextIOWrapper
from typing import BinaryIO

import anyio
import anyio.lowlevel
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from mcpwire.shared import codec
from mcpwire.shared.exceptions import MessageDecodeError
from mcpwire.shared.message import SessionMessage

logger = logging.getLogger(__name__)


class _NonClosingTextIOWrapper(TextIOWrapper):
    """Text wrapper that leaves the process' real stdio handle open on close."""

    def close(self) -> None:
        if self.closed:
            return
        if self.writable():
            self.flush()


def _wrap_process_stdio(binary_stream: BinaryIO) -> anyio.AsyncFile[str]:
    return anyio.wrap_file(_NonClosingTextIOWrapper(binary_stream, encoding="utf-8"))


def decode_line(line: str) -> list[SessionMessage | MessageDecodeError]:
    """Decode one framed line; a batch yields one item per element, in order.

    Elements that fail to decode are returned as their ``MessageDecodeError``.
    """
    return [
        item if isinstance(item, MessageDecodeError) else SessionMessage(item) for item in codec.decode_all(line)
    ]


@asynccontextmanager
async def stdio_server(stdin: anyio.AsyncFile[str] | None = None, stdout: anyio.AsyncFile[str] | None = None):
    """Server transport for stdio: this communicates with an MCP client by reading
    from the current process' stdin and writing to stdout.

    Lines that fail to decode are forwarded to the session as
    ``MessageDecodeError`` items so it can answer them; the reader keeps going.
    """
    # stdin/stdout are re-wrapped as UTF-8 regardless of the platform default.
    if not stdin:
        stdin = _wrap_process_stdio(sys.stdin.buffer)
    if not stdout:
        stdout = _wrap_process_stdio(sys.stdout.buffer)

    read_stream: MemoryObjectReceiveStream[SessionMessage | Exception]
    read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception]

    write_stream: MemoryObjectSendStream[SessionMessage]
    write_stream_reader: MemoryObjectReceiveStream[SessionMessage]

    read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

    async def stdin_reader():
        try:
            async with read_stream_writer:
                async for line in stdin:
                    if not line.strip():
                        continue
                    for item in decode_line(line):
                        await read_stream_writer.send(item)
            logger.debug("stdin closed")
        except anyio.ClosedResourceError:
            await anyio.lowlevel.checkpoint()

    async def stdout_writer():
        try:
            async with write_stream_reader:
                async for session_message in write_stream_reader:
                    await stdout.write(codec.encode(session_message.message).decode("utf-8") + "\n")
                    await stdout.flush()
        except anyio.ClosedResourceError:
            await anyio.lowlevel.checkpoint()

    async with anyio.create_task_group() as tg:
        tg.start_soon(stdin_reader)
        tg.start_soon(stdout_writer)
        yield read_stream, write_stream
