import base64
from typing import Any

import anyio
import pytest

import mcpwire.types as types
from mcpwire.server.lowlevel import NotificationOptions, Server
from mcpwire.server.session import ServerSession
from mcpwire.shared.context import RequestContext
from mcpwire.shared.exceptions import McpError
from mcpwire.shared.memory import create_connected_server_and_client_session

Ctx = RequestContext[ServerSession]


def test_capabilities_follow_registered_handlers():
    server = Server("test")
    assert server.get_capabilities(NotificationOptions()) == types.ServerCapabilities()

    @server.list_tools()
    async def list_tools(ctx: Ctx) -> list[types.Tool]:
        return []

    @server.list_resources()
    async def list_resources(ctx: Ctx) -> list[types.Resource]:
        return []

    @server.subscribe_resource()
    async def subscribe(ctx: Ctx, uri: str) -> None:
        pass

    @server.completion()
    async def complete(ctx: Ctx, ref: dict[str, Any], argument: dict[str, Any], context: dict[str, Any] | None):
        return None

    capabilities = server.get_capabilities(NotificationOptions(tools_changed=True), {"feature": {"on": True}})

    assert capabilities.tools == types.ToolsCapability(listChanged=True)
    assert capabilities.resources == types.ResourcesCapability(subscribe=True, listChanged=False)
    assert capabilities.completions == types.CompletionsCapability()
    assert capabilities.prompts is None
    assert capabilities.logging is None
    assert capabilities.experimental == {"feature": {"on": True}}


def test_initialization_options():
    server = Server("named", "3.1", instructions="Use wisely", title="Named Server")
    options = server.create_initialization_options()

    assert options.server_name == "named"
    assert options.server_version == "3.1"
    assert options.server_title == "Named Server"
    assert options.instructions == "Use wisely"
    assert Server("bare").create_initialization_options().server_version == "unknown"


@pytest.fixture
def tool_server() -> Server:
    server = Server("tools")

    @server.list_tools()
    async def list_tools(ctx: Ctx) -> list[types.Tool]:
        return [types.Tool(name="structured"), types.Tool(name="text"), types.Tool(name="fails")]

    @server.call_tool()
    async def call_tool(ctx: Ctx, name: str, arguments: dict[str, Any]) -> Any:
        if name == "structured":
            return {"sum": arguments["a"] + arguments["b"]}
        if name == "text":
            return "plain text"
        if name == "blocks":
            return [types.TextContent(text="one"), {"type": "text", "text": "two"}]
        if name == "fails":
            raise ValueError("tool exploded")
        if name == "protocol_error":
            raise McpError(types.ErrorData(code=types.INVALID_PARAMS, message="Unknown tool"))
        return 42

    return server


@pytest.mark.anyio
async def test_call_tool_result_shapes(tool_server: Server):
    async with create_connected_server_and_client_session(tool_server) as client:
        tools = await client.list_tools()
        structured = await client.call_tool("structured", {"a": 1, "b": 2})
        text = await client.call_tool("text")
        blocks = await client.call_tool("blocks")
        unexpected = await client.call_tool("unexpected")

    assert [tool.name for tool in tools.tools] == ["structured", "text", "fails"]
    assert tools.tools[0].inputSchema == {"type": "object"}
    assert structured.structuredContent == {"sum": 3}
    assert structured.isError is False
    assert text.content == [{"type": "text", "text": "plain text"}]
    assert blocks.content == [{"type": "text", "text": "one"}, {"type": "text", "text": "two"}]
    assert unexpected.isError is True


@pytest.mark.anyio
async def test_tool_exception_becomes_error_result(tool_server: Server):
    async with create_connected_server_and_client_session(tool_server) as client:
        result = await client.call_tool("fails")

    assert result.isError is True
    assert result.content == [{"type": "text", "text": "tool exploded"}]


@pytest.mark.anyio
async def test_tool_mcp_error_is_protocol_error(tool_server: Server):
    async with create_connected_server_and_client_session(tool_server) as client:
        with pytest.raises(McpError) as exc_info:
            await client.call_tool("protocol_error")

    assert exc_info.value.error.code == types.INVALID_PARAMS


@pytest.mark.anyio
async def test_resources_prompts_and_completion():
    server = Server("everything")

    @server.list_resources()
    async def list_resources(ctx: Ctx) -> list[types.Resource]:
        return [types.Resource(uri="file:///data.bin", name="data")]

    @server.list_resource_templates()
    async def list_templates(ctx: Ctx) -> list[types.ResourceTemplate]:
        return [types.ResourceTemplate(uriTemplate="file:///{name}", name="files")]

    @server.read_resource()
    async def read_resource(ctx: Ctx, uri: str) -> bytes:
        return b"\x00\x01"

    @server.list_prompts()
    async def list_prompts(ctx: Ctx) -> list[types.Prompt]:
        return [types.Prompt(name="greet", arguments=[types.PromptArgument(name="who", required=True)])]

    @server.get_prompt()
    async def get_prompt(ctx: Ctx, name: str, arguments: dict[str, str] | None) -> types.GetPromptResult:
        who = (arguments or {})["who"]
        return types.GetPromptResult(messages=[{"role": "user", "content": {"type": "text", "text": f"Hi {who}"}}])

    @server.completion()
    async def complete(ctx: Ctx, ref: dict[str, Any], argument: dict[str, Any], context: dict[str, Any] | None):
        prefix = argument["value"]
        values = [value for value in ("alice", "albert", "bob") if value.startswith(prefix)]
        return types.Completion(values=values, total=len(values))

    async with create_connected_server_and_client_session(server) as client:
        resources = await client.list_resources()
        templates = await client.list_resource_templates()
        contents = await client.read_resource("file:///data.bin")
        prompts = await client.list_prompts()
        prompt = await client.get_prompt("greet", {"who": "Ada"})
        completion = await client.complete({"type": "ref/prompt", "name": "greet"}, {"name": "who", "value": "al"})

    assert resources.resources[0].name == "data"
    assert templates.resourceTemplates[0].uriTemplate == "file:///{name}"
    assert contents.contents == [{"uri": "file:///data.bin", "blob": base64.b64encode(b"\x00\x01").decode()}]
    assert prompts.prompts[0].name == "greet"
    assert prompt.messages[0]["content"]["text"] == "Hi Ada"
    assert completion.completion.values == ["alice", "albert"]


@pytest.mark.anyio
async def test_completion_without_handler_is_not_declared():
    server = Server("no-completions")

    @server.list_prompts()
    async def list_prompts(ctx: Ctx) -> list[types.Prompt]:
        return []

    async with create_connected_server_and_client_session(server) as client:
        capabilities = client.get_server_capabilities()
        assert capabilities is not None and capabilities.completions is None
        with pytest.raises(McpError) as exc_info:
            await client.complete({"type": "ref/prompt", "name": "x"}, {"name": "a", "value": ""})

    assert exc_info.value.error.code == types.METHOD_NOT_FOUND


@pytest.mark.anyio
async def test_set_logging_level_and_log_messages():
    server = Server("logging")
    levels: list[str] = []
    received: list[types.LoggingMessageNotificationParams] = []
    got_log = anyio.Event()

    @server.set_logging_level()
    async def set_level(ctx: Ctx, level: types.LoggingLevel) -> None:
        levels.append(level)
        await ctx.session.send_log_message("warning", {"detail": "level changed"}, logger="test")

    async def logging_callback(params: types.LoggingMessageNotificationParams) -> None:
        received.append(params)
        got_log.set()

    async with create_connected_server_and_client_session(server, logging_callback=logging_callback) as client:
        await client.set_logging_level("debug")
        with anyio.fail_after(5):
            await got_log.wait()

    assert levels == ["debug"]
    assert received[0].level == "warning"
    assert received[0].logger == "test"
    assert received[0].data == {"detail": "level changed"}


@pytest.mark.anyio
async def test_progress_notification_handler():
    server = Server("progress")
    seen: list[tuple[types.ProgressToken, float, float | None, str | None]] = []
    got_progress = anyio.Event()

    @server.progress_notification()
    async def on_progress(
        ctx: Ctx, token: types.ProgressToken, progress: float, total: float | None, message: str | None
    ) -> None:
        seen.append((token, progress, total, message))
        got_progress.set()

    async with create_connected_server_and_client_session(server) as client:
        await client.send_progress_notification("upload", 3, 4, "almost")
        with anyio.fail_after(5):
            await got_progress.wait()

    assert seen == [("upload", 3, 4, "almost")]


@pytest.mark.anyio
async def test_notification_handler_receives_roots_list_changed():
    server = Server("roots")
    changed = anyio.Event()

    @server.notification_handler(types.NOTIFICATION_ROOTS_LIST_CHANGED)
    async def roots_changed(ctx: Ctx, params: dict[str, Any] | None) -> None:
        changed.set()

    async def list_roots_callback(context: RequestContext[Any]) -> types.ListRootsResult:
        return types.ListRootsResult(roots=[])

    async with create_connected_server_and_client_session(server, list_roots_callback=list_roots_callback) as client:
        await client.send_roots_list_changed()
        with anyio.fail_after(5):
            await changed.wait()


@pytest.mark.anyio
async def test_server_requests_reach_client_callbacks():
    server = Server("asks-client")

    @server.list_tools()
    async def list_tools(ctx: Ctx) -> list[types.Tool]:
        return []

    @server.call_tool()
    async def call_tool(ctx: Ctx, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        roots = await ctx.session.list_roots()
        sample = await ctx.session.create_message(
            [{"role": "user", "content": {"type": "text", "text": "hello"}}],
            max_tokens=10,
            related_request_id=ctx.request_id,
        )
        answer = await ctx.session.elicit("Name?", {"type": "object"}, related_request_id=ctx.request_id)
        return {"roots": len(roots.roots), "model": sample.model, "action": answer.action}

    async def list_roots_callback(context: RequestContext[Any]) -> types.ListRootsResult:
        return types.ListRootsResult(roots=[types.Root(uri="file:///a"), types.Root(uri="file:///b")])

    async def sampling_callback(context: RequestContext[Any], params: types.CreateMessageRequestParams):
        return types.CreateMessageResult(role="assistant", content={"type": "text", "text": "hi"}, model="m1")

    async def elicitation_callback(context: RequestContext[Any], params: types.ElicitRequestParams):
        return types.ElicitResult(action="decline")

    async with create_connected_server_and_client_session(
        server,
        list_roots_callback=list_roots_callback,
        sampling_callback=sampling_callback,
        elicitation_callback=elicitation_callback,
    ) as client:
        result = await client.call_tool("ask")

    assert result.structuredContent == {"roots": 2, "model": "m1", "action": "decline"}


@pytest.mark.anyio
async def test_malformed_params_and_handler_validation_faults_are_distinguished():
    server = Server("test")

    @server.list_tools()
    async def list_tools(ctx: Ctx) -> list[types.Tool]:
        return [types.Tool.model_validate({"description": "missing a name"})]

    @server.call_tool()
    async def call_tool(ctx: Ctx, name: str, arguments: dict[str, Any]) -> str:
        return name

    async with create_connected_server_and_client_session(server) as client:
        with pytest.raises(McpError) as invalid_params:
            await client.send_request(types.METHOD_TOOLS_CALL, {"arguments": {}}, types.CallToolResult)
        with pytest.raises(McpError) as handler_fault:
            await client.list_tools()

    assert invalid_params.value.error.code == types.INVALID_PARAMS
    assert invalid_params.value.error.message == "Invalid params"
    assert handler_fault.value.error.code == types.INTERNAL_ERROR
