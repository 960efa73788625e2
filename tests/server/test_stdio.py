import io
import json

import anyio
import pytest

import mcpwire.types as types
from mcpwire.server.lowlevel import Server
from mcpwire.server.stdio import decode_line, stdio_server
from mcpwire.shared import codec
from mcpwire.shared.exceptions import MessageDecodeError
from mcpwire.shared.message import SessionMessage


@pytest.mark.anyio
async def test_stdio_server():
    stdin = io.StringIO()
    stdout = io.StringIO()

    messages = [
        types.JSONRPCMessage(types.JSONRPCRequest(jsonrpc="2.0", id=1, method="ping")),
        types.JSONRPCMessage(types.JSONRPCResponse(jsonrpc="2.0", id=2, result={})),
    ]

    for message in messages:
        stdin.write(codec.encode(message).decode() + "\n")
    stdin.seek(0)

    async with stdio_server(stdin=anyio.AsyncFile(stdin), stdout=anyio.AsyncFile(stdout)) as (
        read_stream,
        write_stream,
    ):
        received_messages = []
        async with read_stream:
            async for message in read_stream:
                if isinstance(message, Exception):
                    raise message
                received_messages.append(message.message)
                if len(received_messages) == 2:
                    break

        assert received_messages == messages

        responses = [
            types.JSONRPCMessage(types.JSONRPCRequest(jsonrpc="2.0", id=3, method="ping")),
            types.JSONRPCMessage(types.JSONRPCResponse(jsonrpc="2.0", id=4, result={})),
        ]

        async with write_stream:
            for response in responses:
                await write_stream.send(SessionMessage(response))

    stdout.seek(0)
    output_lines = stdout.readlines()
    assert [json.loads(line) for line in output_lines] == [
        {"jsonrpc": "2.0", "id": 3, "method": "ping"},
        {"jsonrpc": "2.0", "id": 4, "result": {}},
    ]


@pytest.mark.anyio
async def test_stdio_server_reports_bad_lines_and_keeps_reading():
    stdin = io.StringIO("not json\n\n" + '{"jsonrpc":"2.0","id":1,"method":"ping"}\n')
    stdout = io.StringIO()

    async with stdio_server(stdin=anyio.AsyncFile(stdin), stdout=anyio.AsyncFile(stdout)) as (read_stream, write_stream):
        with anyio.fail_after(5):
            first = await read_stream.receive()
            second = await read_stream.receive()
        await write_stream.aclose()

    assert isinstance(first, MessageDecodeError)
    assert first.error.code == types.PARSE_ERROR
    assert isinstance(second, SessionMessage)
    assert isinstance(second.message.root, types.JSONRPCRequest)


def test_decode_line_splits_batches_in_order():
    session_messages = decode_line(
        '[{"jsonrpc":"2.0","method":"notifications/initialized"},{"jsonrpc":"2.0","id":9,"method":"ping"}]'
    )

    assert [type(message.message.root) for message in session_messages] == [
        types.JSONRPCNotification,
        types.JSONRPCRequest,
    ]


def test_decode_line_keeps_malformed_batch_elements_in_order():
    items = decode_line('[{"jsonrpc":"2.0","id":1,"method":"ping"},{"jsonrpc":"1.0","id":2,"method":"ping"}]')

    assert isinstance(items[0], SessionMessage)
    assert isinstance(items[1], MessageDecodeError)
    assert items[1].request_id == 2


@pytest.mark.anyio
async def test_server_over_stdio_answers_until_stdin_closes():
    lines = [
        json.dumps(
            {
                "jsonrpc": "2.0",
                "id": 1,
                "method": "initialize",
                "params": {
                    "protocolVersion": types.LATEST_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": "c", "version": "1"},
                },
            }
        ),
        "{broken",
        '{"jsonrpc":"2.0","id":2,"method":"tools/list"}',
    ]
    stdin = io.StringIO("\n".join(lines) + "\n")
    stdout = io.StringIO()
    server = Server("stdio")

    with anyio.fail_after(5):
        async with stdio_server(stdin=anyio.AsyncFile(stdin), stdout=anyio.AsyncFile(stdout)) as (
            read_stream,
            write_stream,
        ):
            await server.run(read_stream, write_stream, server.create_initialization_options())

    replies = [json.loads(line) for line in stdout.getvalue().splitlines()]
    assert replies[0]["result"]["serverInfo"]["name"] == "stdio"
    assert replies[1]["id"] is None
    assert replies[1]["error"]["code"] == types.PARSE_ERROR
    assert replies[2]["id"] == 2
    assert replies[2]["error"]["code"] == types.INVALID_REQUEST
