import logging
import os
import signal
import subprocess
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Literal, TextIO

import anyio
import anyio.lowlevel
from anyio.abc import Process
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from anyio.streams.text import TextReceiveStream
from pydantic import BaseModel, Field

from mcpwire.shared import codec
from mcpwire.shared.exceptions import MessageDecodeError
from mcpwire.shared.message import SessionMessage

logger = logging.getLogger(__name__)

# Environment variables to inherit by default
DEFAULT_INHERITED_ENV_VARS = (
    [
        "APPDATA",
        "HOMEDRIVE",
        "HOMEPATH",
        "LOCALAPPDATA",
        "PATH",
        "PATHEXT",
        "PROCESSOR_ARCHITECTURE",
        "SYSTEMDRIVE",
        "SYSTEMROOT",
        "TEMP",
        "USERNAME",
        "USERPROFILE",
    ]
    if sys.platform == "win32"
    else ["HOME", "LOGNAME", "PATH", "SHELL", "TERM", "USER"]
)

# Seconds the server gets to exit on its own after stdin closes
PROCESS_TERMINATION_TIMEOUT = 2.0


def get_default_environment() -> dict[str, str]:
    """
    Returns a default environment object including only environment variables deemed
    safe to inherit.
    """
    env: dict[str, str] = {}

    for key in DEFAULT_INHERITED_ENV_VARS:
        value = os.environ.get(key)
        if value is None:
            continue

        if value.startswith("()"):
            # Skip shell functions
            continue

        env[key] = value

    return env


class StdioServerParameters(BaseModel):
    command: str
    """The executable to run to start the server."""

    args: list[str] = Field(default_factory=list)
    """Command line arguments to pass to the executable."""

    env: dict[str, str] | None = None
    """
    Extra environment variables, layered over get_default_environment().
    """

    cwd: str | Path | None = None
    """The working directory to use when spawning the process."""

    encoding: str = "utf-8"
    """The text encoding used when sending/receiving messages to the server."""

    encoding_error_handler: Literal["strict", "ignore", "replace"] = "strict"
    """
    The text encoding error handler.

    See https://docs.python.org/3/library/codecs.html#codec-base-classes for
    explanations of possible values
    """


async def _stdout_reader(
    process: Process,
    read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception],
    encoding: str,
    encoding_error_handler: str,
):
    """Split the server's stdout into lines and decode each into messages."""
    assert process.stdout, "Opened process is missing stdout"

    try:
        async with read_stream_writer:
            buffer = ""
            async for chunk in TextReceiveStream(
                process.stdout,
                encoding=encoding,
                errors=encoding_error_handler,
            ):
                lines = (buffer + chunk).split("\n")
                buffer = lines.pop()

                for line in lines:
                    if not line.strip():
                        continue
                    for item in codec.decode_all(line):
                        if isinstance(item, MessageDecodeError):
                            logger.warning("Failed to decode message from server: %s", item)
                            await read_stream_writer.send(item)
                        else:
                            await read_stream_writer.send(SessionMessage(item))
    except anyio.ClosedResourceError:
        await anyio.lowlevel.checkpoint()


async def _stdin_writer(
    process: Process,
    write_stream_reader: MemoryObjectReceiveStream[SessionMessage],
    encoding: str,
    encoding_error_handler: str,
):
    """Write session messages to the process stdin, one line each."""
    assert process.stdin, "Opened process is missing stdin"

    try:
        async with write_stream_reader:
            async for session_message in write_stream_reader:
                line = codec.encode(session_message.message).decode("utf-8") + "\n"
                await process.stdin.send(line.encode(encoding=encoding, errors=encoding_error_handler))
    except (anyio.ClosedResourceError, anyio.BrokenResourceError):
        await anyio.lowlevel.checkpoint()


async def _stderr_reader(
    process: Process,
    errlog: TextIO,
    encoding: str,
    encoding_error_handler: str,
):
    """Copy the server's stderr to ``errlog`` line by line."""
    if not process.stderr:
        return

    try:
        buffer = ""
        async for chunk in TextReceiveStream(
            process.stderr,
            encoding=encoding,
            errors=encoding_error_handler,
        ):
            lines = (buffer + chunk).split("\n")
            buffer = lines.pop()
            for line in lines:
                if line.strip():
                    print(line, file=errlog)

        if buffer.strip():
            print(buffer, file=errlog)
    except anyio.ClosedResourceError:
        await anyio.lowlevel.checkpoint()
    except Exception:
        # stderr is diagnostics only
        logger.debug("Error reading stderr", exc_info=True)


@asynccontextmanager
async def stdio_client(server: StdioServerParameters, errlog: TextIO = sys.stderr):
    """
    Client transport for stdio: this will connect to a server by spawning a
    process and communicating with it over stdin/stdout.

    On exit the server's stdin is closed, the server gets
    PROCESS_TERMINATION_TIMEOUT seconds to exit, and its process group is
    terminated otherwise.

    Args:
        server: Parameters for the server process to spawn
        errlog: where the server's stderr is copied to
    """
    read_stream: MemoryObjectReceiveStream[SessionMessage | Exception]
    read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception]

    write_stream: MemoryObjectSendStream[SessionMessage]
    write_stream_reader: MemoryObjectReceiveStream[SessionMessage]

    read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

    try:
        process = await anyio.open_process(
            [server.command, *server.args],
            env={**get_default_environment(), **(server.env or {})},
            stderr=subprocess.PIPE,
            cwd=server.cwd,
            start_new_session=sys.platform != "win32",
        )
    except OSError:
        await read_stream.aclose()
        await write_stream.aclose()
        await read_stream_writer.aclose()
        await write_stream_reader.aclose()
        raise

    logger.debug("Started server process %s: %s", process.pid, server.command)

    async with (
        anyio.create_task_group() as tg,
        process,
    ):
        tg.start_soon(_stdout_reader, process, read_stream_writer, server.encoding, server.encoding_error_handler)
        tg.start_soon(_stdin_writer, process, write_stream_reader, server.encoding, server.encoding_error_handler)
        tg.start_soon(_stderr_reader, process, errlog, server.encoding, server.encoding_error_handler)
        try:
            yield read_stream, write_stream
        finally:
            # Shutdown: close stdin, wait, then SIGTERM and SIGKILL the group.
            if process.stdin:
                try:
                    await process.stdin.aclose()
                except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                    pass

            try:
                with anyio.fail_after(PROCESS_TERMINATION_TIMEOUT):
                    await process.wait()
            except TimeoutError:
                logger.warning("Server process %s did not exit after stdin closed; terminating", process.pid)
                await terminate_process_tree(process)
            except ProcessLookupError:
                pass
            await read_stream.aclose()
            await write_stream.aclose()
            await read_stream_writer.aclose()
            await write_stream_reader.aclose()


async def terminate_process_tree(process: Process, timeout_seconds: float = PROCESS_TERMINATION_TIMEOUT) -> None:
    """
    Terminate a process and all its children.

    On POSIX the whole process group gets SIGTERM, then SIGKILL if it is
    still alive after ``timeout_seconds``. Elsewhere only the process itself
    is terminated.
    """
    if sys.platform == "win32":
        await _terminate_single(process, timeout_seconds)
        return

    try:
        pgid = os.getpgid(process.pid)
        os.killpg(pgid, signal.SIGTERM)

        with anyio.move_on_after(timeout_seconds):
            while True:
                try:
                    # Signal 0 only checks that the group still exists
                    os.killpg(pgid, 0)
                    await anyio.sleep(0.1)
                except ProcessLookupError:
                    return

        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    except (ProcessLookupError, PermissionError, OSError) as e:
        logger.warning("Process group termination failed for PID %s: %s, falling back to terminate", process.pid, e)
        await _terminate_single(process, timeout_seconds)


async def _terminate_single(process: Process, timeout_seconds: float) -> None:
    try:
        process.terminate()
        with anyio.fail_after(timeout_seconds):
            await process.wait()
    except TimeoutError:
        logger.warning("Process %s ignored terminate, killing it", process.pid)
        process.kill()
    except ProcessLookupError:
        pass
