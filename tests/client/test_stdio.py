import io
import sys
import textwrap
import time

import anyio
import pytest

import mcpwire.types as types
from mcpwire.client.session import ClientSession
from mcpwire.client.stdio import StdioServerParameters, get_default_environment, stdio_client
from mcpwire.shared.exceptions import MessageDecodeError
from mcpwire.shared.message import SessionMessage

ECHO_SCRIPT = textwrap.dedent(
    """
    import sys
    for line in sys.stdin:
        sys.stdout.write(line)
        sys.stdout.flush()
    """
)

SERVER_SCRIPT = textwrap.dedent(
    """
    import anyio

    import mcpwire.types as types
    from mcpwire.server.lowlevel import Server
    from mcpwire.server.stdio import stdio_server
    from mcpwire.utilities.logging import configure_logging

    configure_logging("WARNING")
    server = Server("stdio-test", "1.0")

    @server.list_tools()
    async def list_tools(ctx):
        return [types.Tool(name="echo")]

    async def main():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())

    anyio.run(main)
    """
)


def _python(script: str) -> StdioServerParameters:
    return StdioServerParameters(command=sys.executable, args=["-c", script])


@pytest.mark.anyio
async def test_stdio_client_round_trip():
    messages = [
        types.JSONRPCMessage(types.JSONRPCRequest(jsonrpc="2.0", id=1, method="ping")),
        types.JSONRPCMessage(types.JSONRPCResponse(jsonrpc="2.0", id=2, result={})),
    ]

    async with stdio_client(_python(ECHO_SCRIPT)) as (read_stream, write_stream):
        async with write_stream:
            for message in messages:
                await write_stream.send(SessionMessage(message))

        read_messages = []
        with anyio.fail_after(10):
            async for message in read_stream:
                assert isinstance(message, SessionMessage)
                read_messages.append(message.message)
                if len(read_messages) == 2:
                    break

    assert read_messages == messages


@pytest.mark.anyio
async def test_stdio_client_forwards_decode_errors_and_batches():
    script = textwrap.dedent(
        """
        import sys
        sys.stdout.write("this is not json\\n")
        sys.stdout.write('[{"jsonrpc":"2.0","id":1,"result":{}},{"jsonrpc":"2.0","method":"notifications/x"}]\\n')
        sys.stdout.flush()
        sys.stdin.read()
        """
    )

    async with stdio_client(_python(script)) as (read_stream, write_stream):
        with anyio.fail_after(10):
            first = await read_stream.receive()
            second = await read_stream.receive()
            third = await read_stream.receive()

    assert isinstance(first, MessageDecodeError)
    assert first.error.code == types.PARSE_ERROR
    assert isinstance(second, SessionMessage) and isinstance(second.message.root, types.JSONRPCResponse)
    assert isinstance(third, SessionMessage) and isinstance(third.message.root, types.JSONRPCNotification)


@pytest.mark.anyio
async def test_stdio_client_copies_stderr_to_errlog():
    script = "import sys; sys.stderr.write('diagnostics here\\n'); sys.stderr.flush()"
    errlog = io.StringIO()

    async with stdio_client(_python(script), errlog=errlog):
        with anyio.fail_after(10):
            while "diagnostics here" not in errlog.getvalue():
                await anyio.sleep(0.05)


@pytest.mark.anyio
async def test_stdio_client_with_server_process():
    async with stdio_client(_python(SERVER_SCRIPT)) as (read_stream, write_stream):
        async with ClientSession(read_stream, write_stream, read_timeout_seconds=10) as session:
            result = await session.initialize()
            tools = await session.list_tools()

    assert result.serverInfo.name == "stdio-test"
    assert [tool.name for tool in tools.tools] == ["echo"]


@pytest.mark.anyio
async def test_stdio_client_terminates_unresponsive_server():
    script = "import time; time.sleep(60)"
    start = time.monotonic()

    with anyio.fail_after(15):
        async with stdio_client(_python(script)):
            pass

    assert time.monotonic() - start < 15


@pytest.mark.anyio
async def test_stdio_client_bad_command():
    with pytest.raises(OSError):
        async with stdio_client(StdioServerParameters(command="/nonexistent/definitely-not-a-command")):
            pass


def test_default_environment_only_inherits_safe_variables(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PATH", "/usr/bin")
    monkeypatch.setenv("SECRET_TOKEN", "hunter2")

    env = get_default_environment()

    assert env["PATH"] == "/usr/bin"
    assert "SECRET_TOKEN" not in env
