"""
MCP Server Module

A table of method handlers plus the decorators that fill it. Every handler
receives an explicit ``RequestContext`` as its first argument; there is no
ambient "current request" state.

Usage:
1. Create a Server instance:
   server = Server("your_server_name")

2. Define request handlers using decorators:
   @server.list_tools()
   async def handle_list_tools(ctx: RequestContext[ServerSession]) -> list[types.Tool]:
       ...

   @server.call_tool()
   async def handle_call_tool(ctx: RequestContext[ServerSession], name: str, arguments: dict[str, Any]):
       ...

3. Run the server:
   async def main():
       async with mcpwire.server.stdio.stdio_server() as (read_stream, write_stream):
           await server.run(read_stream, write_stream, server.create_initialization_options())

   anyio.run(main)
"""

from __future__ import annotations as _annotations

import base64
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

import mcpwire.types as types
from mcpwire.server.models import InitializationOptions
from mcpwire.server.session import ServerSession
from mcpwire.shared.context import RequestContext
from mcpwire.shared.exceptions import McpError
from mcpwire.shared.message import SessionMessage
from mcpwire.shared.session import HandlerResult, NotificationHandler, RequestHandler, parse_params

logger = logging.getLogger(__name__)

ServerRequestContext = RequestContext[ServerSession]


class NotificationOptions:
    def __init__(
        self,
        prompts_changed: bool = False,
        resources_changed: bool = False,
        tools_changed: bool = False,
    ):
        self.prompts_changed = prompts_changed
        self.resources_changed = resources_changed
        self.tools_changed = tools_changed


def _content_block(item: Any) -> dict[str, Any]:
    if isinstance(item, str):
        return types.TextContent(text=item).model_dump()
    if isinstance(item, types.MCPModel):
        return item.model_dump(mode="json", by_alias=True, exclude_none=True)
    return dict(item)


class Server:
    def __init__(
        self,
        name: str,
        version: str | None = None,
        instructions: str | None = None,
        title: str | None = None,
    ):
        self.name = name
        self.version = version
        self.instructions = instructions
        self.title = title
        self.request_handlers: dict[str, RequestHandler] = {}
        self.notification_handlers: dict[str, NotificationHandler] = {}
        logger.debug("Initializing server %r", name)

    def create_initialization_options(
        self,
        notification_options: NotificationOptions | None = None,
        experimental_capabilities: dict[str, dict[str, Any]] | None = None,
    ) -> InitializationOptions:
        """Create initialization options from this server instance."""
        return InitializationOptions(
            server_name=self.name,
            server_version=self.version or "unknown",
            server_title=self.title,
            capabilities=self.get_capabilities(
                notification_options or NotificationOptions(),
                experimental_capabilities or {},
            ),
            instructions=self.instructions,
        )

    def get_capabilities(
        self,
        notification_options: NotificationOptions,
        experimental_capabilities: dict[str, dict[str, Any]] | None = None,
    ) -> types.ServerCapabilities:
        """Convert existing handlers to a ServerCapabilities object."""
        prompts_capability = None
        resources_capability = None
        tools_capability = None
        logging_capability = None
        completions_capability = None

        if types.METHOD_PROMPTS_LIST in self.request_handlers:
            prompts_capability = types.PromptsCapability(listChanged=notification_options.prompts_changed)

        if types.METHOD_RESOURCES_LIST in self.request_handlers:
            resources_capability = types.ResourcesCapability(
                subscribe=types.METHOD_RESOURCES_SUBSCRIBE in self.request_handlers,
                listChanged=notification_options.resources_changed,
            )

        if types.METHOD_TOOLS_LIST in self.request_handlers:
            tools_capability = types.ToolsCapability(listChanged=notification_options.tools_changed)

        if types.METHOD_LOGGING_SET_LEVEL in self.request_handlers:
            logging_capability = types.LoggingCapability()

        # Declared whenever a handler exists, so strict peers accept completion/complete.
        if types.METHOD_COMPLETION_COMPLETE in self.request_handlers:
            completions_capability = types.CompletionsCapability()

        return types.ServerCapabilities(
            prompts=prompts_capability,
            resources=resources_capability,
            tools=tools_capability,
            logging=logging_capability,
            experimental=experimental_capabilities or None,
            completions=completions_capability,
        )

    def request_handler(self, method: str):
        """Register a raw handler receiving ``(ctx, params)`` for any request method."""

        def decorator(func: Callable[[ServerRequestContext, dict[str, Any] | None], Awaitable[HandlerResult]]):
            logger.debug("Registering handler for %s", method)
            self.request_handlers[method] = func
            return func

        return decorator

    def notification_handler(self, method: str):
        """Register a handler receiving ``(ctx, params)`` for a client notification."""

        def decorator(func: Callable[[ServerRequestContext, dict[str, Any] | None], Awaitable[None]]):
            logger.debug("Registering notification handler for %s", method)
            self.notification_handlers[method] = func
            return func

        return decorator

    def list_prompts(self):
        def decorator(func: Callable[[ServerRequestContext], Awaitable[list[types.Prompt] | types.ListPromptsResult]]):
            async def handler(ctx: ServerRequestContext, params: dict[str, Any] | None):
                result = await func(ctx)
                if isinstance(result, types.ListPromptsResult):
                    return result
                return types.ListPromptsResult(prompts=result)

            logger.debug("Registering handler for %s", types.METHOD_PROMPTS_LIST)
            self.request_handlers[types.METHOD_PROMPTS_LIST] = handler
            return func

        return decorator

    def get_prompt(self):
        def decorator(
            func: Callable[[ServerRequestContext, str, dict[str, str] | None], Awaitable[types.GetPromptResult]],
        ):
            async def handler(ctx: ServerRequestContext, params: dict[str, Any] | None):
                request = parse_params(types.GetPromptRequestParams, params)
                return await func(ctx, request.name, request.arguments)

            logger.debug("Registering handler for %s", types.METHOD_PROMPTS_GET)
            self.request_handlers[types.METHOD_PROMPTS_GET] = handler
            return func

        return decorator

    def list_resources(self):
        def decorator(
            func: Callable[[ServerRequestContext], Awaitable[list[types.Resource] | types.ListResourcesResult]],
        ):
            async def handler(ctx: ServerRequestContext, params: dict[str, Any] | None):
                result = await func(ctx)
                if isinstance(result, types.ListResourcesResult):
                    return result
                return types.ListResourcesResult(resources=result)

            logger.debug("Registering handler for %s", types.METHOD_RESOURCES_LIST)
            self.request_handlers[types.METHOD_RESOURCES_LIST] = handler
            return func

        return decorator

    def list_resource_templates(self):
        def decorator(func: Callable[[ServerRequestContext], Awaitable[list[types.ResourceTemplate]]]):
            async def handler(ctx: ServerRequestContext, params: dict[str, Any] | None):
                return types.ListResourceTemplatesResult(resourceTemplates=await func(ctx))

            logger.debug("Registering handler for %s", types.METHOD_RESOURCES_TEMPLATES_LIST)
            self.request_handlers[types.METHOD_RESOURCES_TEMPLATES_LIST] = handler
            return func

        return decorator

    def read_resource(self):
        """Register a resources/read handler.

        The function may return text, bytes (sent base64 encoded), a list of
        content dictionaries or a complete ``ReadResourceResult``.
        """

        def decorator(
            func: Callable[
                [ServerRequestContext, str],
                Awaitable[str | bytes | Iterable[dict[str, Any]] | types.ReadResourceResult],
            ],
        ):
            async def handler(ctx: ServerRequestContext, params: dict[str, Any] | None):
                uri = parse_params(types.ResourceRequestParams, params).uri
                result = await func(ctx, uri)
                if isinstance(result, types.ReadResourceResult):
                    return result
                if isinstance(result, str):
                    contents = [{"uri": uri, "text": result}]
                elif isinstance(result, bytes):
                    contents = [{"uri": uri, "blob": base64.b64encode(result).decode()}]
                else:
                    contents = [dict(item) for item in result]
                return types.ReadResourceResult(contents=contents)

            logger.debug("Registering handler for %s", types.METHOD_RESOURCES_READ)
            self.request_handlers[types.METHOD_RESOURCES_READ] = handler
            return func

        return decorator

    def subscribe_resource(self):
        def decorator(func: Callable[[ServerRequestContext, str], Awaitable[None]]):
            async def handler(ctx: ServerRequestContext, params: dict[str, Any] | None):
                await func(ctx, parse_params(types.ResourceRequestParams, params).uri)
                return types.EmptyResult()

            logger.debug("Registering handler for %s", types.METHOD_RESOURCES_SUBSCRIBE)
            self.request_handlers[types.METHOD_RESOURCES_SUBSCRIBE] = handler
            return func

        return decorator

    def unsubscribe_resource(self):
        def decorator(func: Callable[[ServerRequestContext, str], Awaitable[None]]):
            async def handler(ctx: ServerRequestContext, params: dict[str, Any] | None):
                await func(ctx, parse_params(types.ResourceRequestParams, params).uri)
                return types.EmptyResult()

            logger.debug("Registering handler for %s", types.METHOD_RESOURCES_UNSUBSCRIBE)
            self.request_handlers[types.METHOD_RESOURCES_UNSUBSCRIBE] = handler
            return func

        return decorator

    def set_logging_level(self):
        def decorator(func: Callable[[ServerRequestContext, types.LoggingLevel], Awaitable[None]]):
            async def handler(ctx: ServerRequestContext, params: dict[str, Any] | None):
                await func(ctx, parse_params(types.SetLevelRequestParams, params).level)
                return types.EmptyResult()

            logger.debug("Registering handler for %s", types.METHOD_LOGGING_SET_LEVEL)
            self.request_handlers[types.METHOD_LOGGING_SET_LEVEL] = handler
            return func

        return decorator

    def list_tools(self):
        def decorator(func: Callable[[ServerRequestContext], Awaitable[list[types.Tool] | types.ListToolsResult]]):
            async def handler(ctx: ServerRequestContext, params: dict[str, Any] | None):
                result = await func(ctx)
                if isinstance(result, types.ListToolsResult):
                    return result
                return types.ListToolsResult(tools=result)

            logger.debug("Registering handler for %s", types.METHOD_TOOLS_LIST)
            self.request_handlers[types.METHOD_TOOLS_LIST] = handler
            return func

        return decorator

    def _make_error_result(self, error_message: str) -> types.CallToolResult:
        """Create a CallToolResult with an error."""
        return types.CallToolResult(
            content=[types.TextContent(text=error_message).model_dump()],
            isError=True,
        )

    def call_tool(self):
        """Register a tool call handler.

        The function's return value becomes a ``CallToolResult``:
        - a ``CallToolResult`` is sent as is
        - a dict is sent as structured content, with its JSON as text content
        - a string or an iterable of content blocks is sent as content

        Exceptions raised by the tool become a result with ``isError`` set;
        only ``McpError`` is sent back as a JSON-RPC error.
        """

        def decorator(func: Callable[[ServerRequestContext, str, dict[str, Any]], Awaitable[Any]]):
            async def handler(ctx: ServerRequestContext, params: dict[str, Any] | None):
                request = parse_params(types.CallToolRequestParams, params)
                try:
                    results = await func(ctx, request.name, request.arguments or {})
                except McpError:
                    raise
                except Exception as e:
                    logger.info("Tool %r failed: %s", request.name, e)
                    return self._make_error_result(str(e))

                if isinstance(results, types.CallToolResult):
                    return results
                if isinstance(results, dict):
                    return types.CallToolResult(
                        content=[types.TextContent(text=json.dumps(results, indent=2)).model_dump()],
                        structuredContent=results,
                    )
                if isinstance(results, str):
                    return types.CallToolResult(content=[_content_block(results)])
                if isinstance(results, Iterable):
                    return types.CallToolResult(content=[_content_block(item) for item in results])
                return self._make_error_result(f"Unexpected return type from tool: {type(results).__name__}")

            logger.debug("Registering handler for %s", types.METHOD_TOOLS_CALL)
            self.request_handlers[types.METHOD_TOOLS_CALL] = handler
            return func

        return decorator

    def completion(self):
        """Provides completions for prompts and resource templates"""

        def decorator(
            func: Callable[
                [ServerRequestContext, dict[str, Any], dict[str, Any], dict[str, Any] | None],
                Awaitable[types.Completion | None],
            ],
        ):
            async def handler(ctx: ServerRequestContext, params: dict[str, Any] | None):
                request = parse_params(types.CompleteRequestParams, params)
                context = (params or {}).get("context")
                completion = await func(ctx, request.ref, request.argument, context)
                return types.CompleteResult(completion=completion or types.Completion(values=[]))

            logger.debug("Registering handler for %s", types.METHOD_COMPLETION_COMPLETE)
            self.request_handlers[types.METHOD_COMPLETION_COMPLETE] = handler
            return func

        return decorator

    def progress_notification(self):
        def decorator(
            func: Callable[
                [ServerRequestContext, types.ProgressToken, float, float | None, str | None],
                Awaitable[None],
            ],
        ):
            async def handler(ctx: ServerRequestContext, params: dict[str, Any] | None):
                progress = types.ProgressNotificationParams.model_validate(params or {})
                await func(ctx, progress.progressToken, progress.progress, progress.total, progress.message)

            logger.debug("Registering notification handler for %s", types.NOTIFICATION_PROGRESS)
            self.notification_handlers[types.NOTIFICATION_PROGRESS] = handler
            return func

        return decorator

    def create_session(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        initialization_options: InitializationOptions,
        **session_options: Any,
    ) -> ServerSession:
        """Create a session for one connection with this server's handlers installed."""
        session = ServerSession(read_stream, write_stream, initialization_options, **session_options)
        for method, handler in self.request_handlers.items():
            session.set_request_handler(method, handler)
        for method, handler in self.notification_handlers.items():
            session.set_notification_handler(method, handler)
        return session

    async def run(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        initialization_options: InitializationOptions,
        **session_options: Any,
    ) -> None:
        """Serve one session until the client goes away."""
        session = self.create_session(read_stream, write_stream, initialization_options, **session_options)
        async with session:
            await session.wait_closed()
        logger.debug("Session for %r ended (%s)", self.name, session.state.value)
