"""End-to-end exchanges between a client and a server, checked at the wire."""

import json
from typing import Any

import anyio
import pytest

import mcpwire.types as types
from mcpwire.client.session import ClientSession
from mcpwire.server.lowlevel import Server
from mcpwire.server.session import ServerSession
from mcpwire.shared import codec
from mcpwire.shared.context import RequestContext
from mcpwire.shared.exceptions import McpError, MessageDecodeError
from mcpwire.shared.memory import create_connected_server_and_client_session
from mcpwire.shared.message import SessionMessage
from mcpwire.shared.session import SessionState

Ctx = RequestContext[ServerSession]


def tools_server() -> Server:
    server = Server("scenario-server", "1.0")

    @server.list_tools()
    async def list_tools(ctx: Ctx) -> list[types.Tool]:
        return [types.Tool(name="add", description="Add two numbers")]

    @server.call_tool()
    async def call_tool(ctx: Ctx, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        return {"sum": arguments["a"] + arguments["b"]}

    return server


class Wire:
    """One end of a pair of memory streams, spoken in raw JSON."""

    def __init__(self, send_stream: Any, receive_stream: Any):
        self.send_stream = send_stream
        self.receive_stream = receive_stream

    async def send_raw(self, data: str) -> None:
        for item in codec.decode_all(data):
            await self.send_stream.send(item if isinstance(item, MessageDecodeError) else SessionMessage(item))

    async def receive(self) -> dict[str, Any]:
        with anyio.fail_after(5):
            session_message = await self.receive_stream.receive()
        return codec.to_jsonable(session_message.message)


@pytest.mark.anyio
async def test_server_handshake_with_legacy_initialized_notification():
    server = tools_server()
    to_server, server_read = anyio.create_memory_object_stream[SessionMessage | Exception](10)
    server_write, from_server = anyio.create_memory_object_stream[SessionMessage](10)
    wire = Wire(to_server, from_server)

    async with to_server, from_server:
        async with server.create_session(server_read, server_write, server.create_initialization_options()) as session:
            await wire.send_raw(
                '{"jsonrpc":"2.0","id":1,"method":"initialize","params":{"protocolVersion":"2025-03-26",'
                '"capabilities":{},"clientInfo":{"name":"c","version":"1"}}}'
            )
            response = await wire.receive()
            assert response["id"] == 1
            assert response["result"]["protocolVersion"] == "2025-03-26"
            assert response["result"]["serverInfo"] == {"name": "scenario-server", "version": "1.0"}

            await wire.send_raw('{"jsonrpc":"2.0","method":"initialized"}')
            await wire.send_raw('{"jsonrpc":"2.0","id":2,"method":"tools/list"}')
            tools = await wire.receive()

            assert session.state is SessionState.READY
            assert session.client_params is not None
            assert session.client_params.clientInfo.name == "c"

    assert tools["id"] == 2
    assert tools["result"]["tools"][0]["name"] == "add"


@pytest.mark.anyio
async def test_client_handshake_against_literal_server_response():
    to_client, client_read = anyio.create_memory_object_stream[SessionMessage | Exception](10)
    client_write, from_client = anyio.create_memory_object_stream[SessionMessage](10)
    wire = Wire(to_client, from_client)

    async def script():
        request = await wire.receive()
        assert request["id"] == 0
        assert request["method"] == "initialize"
        await wire.send_raw(
            '{"jsonrpc":"2.0","id":0,"result":{"protocolVersion":"2025-03-26",'
            '"capabilities":{"tools":{}},"serverInfo":{"name":"s","version":"1"}}}'
        )
        assert await wire.receive() == {"jsonrpc": "2.0", "method": "notifications/initialized"}

        request = await wire.receive()
        assert request == {"jsonrpc": "2.0", "id": 1, "method": "tools/list"}
        await wire.send_raw('{"jsonrpc":"2.0","id":1,"result":{"tools":[{"name":"t","inputSchema":{"type":"object"}}]}}')

    async with to_client, from_client, ClientSession(client_read, client_write) as session:
        async with anyio.create_task_group() as tg:
            tg.start_soon(script)
            result = await session.initialize()
            tools = await session.list_tools()

        assert result.protocolVersion == "2025-03-26"
        assert session.protocol_version == "2025-03-26"
        assert session.state is SessionState.READY

    assert [tool.name for tool in tools.tools] == ["t"]


@pytest.mark.anyio
async def test_batch_is_answered_per_message():
    server = tools_server()
    to_server, server_read = anyio.create_memory_object_stream[SessionMessage | Exception](10)
    server_write, from_server = anyio.create_memory_object_stream[SessionMessage](10)
    wire = Wire(to_server, from_server)

    async with to_server, from_server:
        async with server.create_session(server_read, server_write, server.create_initialization_options()):
            await wire.send_raw(
                json.dumps(
                    [
                        {"jsonrpc": "2.0", "id": 1, "method": "ping"},
                        {"jsonrpc": "2.0", "id": 2, "method": "tools/list"},
                    ]
                )
            )
            responses = [await wire.receive(), await wire.receive()]

    by_id = {response["id"]: response for response in responses}
    assert by_id[1] == {"jsonrpc": "2.0", "id": 1, "result": {}}
    assert by_id[2]["error"]["code"] == types.INVALID_REQUEST


@pytest.mark.anyio
async def test_malformed_batch_element_does_not_lose_its_siblings():
    server = tools_server()
    to_server, server_read = anyio.create_memory_object_stream[SessionMessage | Exception](10)
    server_write, from_server = anyio.create_memory_object_stream[SessionMessage](10)
    wire = Wire(to_server, from_server)

    async with to_server, from_server:
        async with server.create_session(server_read, server_write, server.create_initialization_options()):
            await wire.send_raw(
                '[{"jsonrpc":"2.0","id":1,"method":"ping"},{"jsonrpc":"1.0","id":2,"method":"ping"}]'
            )
            responses = [await wire.receive(), await wire.receive()]

    by_id = {response["id"]: response for response in responses}
    assert by_id[1] == {"jsonrpc": "2.0", "id": 1, "result": {}}
    assert by_id[2]["error"]["code"] == types.INVALID_REQUEST


@pytest.mark.anyio
async def test_tool_round_trip_over_memory():
    async with create_connected_server_and_client_session(tools_server()) as client:
        assert client.state is SessionState.READY
        tools = await client.list_tools()
        result = await client.call_tool("add", {"a": 2, "b": 3})

    assert [tool.name for tool in tools.tools] == ["add"]
    assert result.isError is False
    assert result.structuredContent == {"sum": 5}


@pytest.mark.anyio
async def test_undeclared_server_capability_fails_before_sending():
    async with create_connected_server_and_client_session(tools_server()) as client:
        with pytest.raises(McpError) as exc_info:
            await client.list_prompts()

        assert exc_info.value.error.code == types.METHOD_NOT_FOUND
        assert len(client.pending_requests) == 0
        # The session is still usable afterwards.
        await client.send_ping()


@pytest.mark.anyio
async def test_cancelled_call_leaves_session_usable():
    server = Server("slow-server")
    started = anyio.Event()
    cancelled = anyio.Event()

    @server.list_tools()
    async def list_tools(ctx: Ctx) -> list[types.Tool]:
        return [types.Tool(name="slow")]

    @server.call_tool()
    async def call_tool(ctx: Ctx, name: str, arguments: dict[str, Any]) -> str:
        started.set()
        try:
            await anyio.sleep_forever()
        except anyio.get_cancelled_exc_class():
            cancelled.set()
            raise

    async with create_connected_server_and_client_session(server) as client:
        with anyio.CancelScope() as call_scope:

            async def cancel_once_started():
                await started.wait()
                call_scope.cancel()

            async with anyio.create_task_group() as tg:
                tg.start_soon(cancel_once_started)
                await client.call_tool("slow", {})

        with anyio.fail_after(5):
            await cancelled.wait()

        assert len(client.pending_requests) == 0
        await client.send_ping()
        assert client.state is SessionState.READY
