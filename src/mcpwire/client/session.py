from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, ClassVar, Protocol

import anyio.lowlevel
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import AnyUrl, ValidationError

import mcpwire.types as types
from mcpwire.shared.context import RequestContext
from mcpwire.shared.exceptions import (
    McpError,
    RequestTimeoutError,
    SessionStateError,
    UnsupportedProtocolVersionError,
)
from mcpwire.shared.message import SessionMessage
from mcpwire.shared.pending import ProgressFnT
from mcpwire.shared.session import BaseSession, SessionState, parse_params
from mcpwire.shared.settings import Settings

DEFAULT_CLIENT_INFO = types.Implementation(name="mcpwire", version="0.1.0")

logger = logging.getLogger(__name__)


class SamplingFnT(Protocol):
    async def __call__(
        self,
        context: RequestContext[ClientSession],
        params: types.CreateMessageRequestParams,
    ) -> types.CreateMessageResult | types.ErrorData: ...


class ElicitationFnT(Protocol):
    async def __call__(
        self,
        context: RequestContext[ClientSession],
        params: types.ElicitRequestParams,
    ) -> types.ElicitResult | types.ErrorData: ...


class ListRootsFnT(Protocol):
    async def __call__(self, context: RequestContext[ClientSession]) -> types.ListRootsResult | types.ErrorData: ...


class LoggingFnT(Protocol):
    async def __call__(self, params: types.LoggingMessageNotificationParams) -> None: ...


class MessageHandlerFnT(Protocol):
    async def __call__(self, message: types.JSONRPCNotification | Exception) -> None: ...


async def _default_message_handler(message: types.JSONRPCNotification | Exception) -> None:
    await anyio.lowlevel.checkpoint()


async def _default_logging_callback(params: types.LoggingMessageNotificationParams) -> None:
    pass


def _cursor_params(cursor: str | None) -> dict[str, Any] | None:
    return {"cursor": cursor} if cursor is not None else None


class ClientSession(BaseSession):
    """The client side of an MCP session.

    ``initialize()`` must complete before anything but ``ping`` can be sent.
    Capabilities are declared from the callbacks given here: ``sampling``,
    ``roots`` and ``elicitation`` are only announced to the server when the
    corresponding callback exists, so requests for an undeclared capability
    are answered with ``METHOD_NOT_FOUND`` without reaching any code.
    """

    role = "client"

    _early_outbound_requests: ClassVar[frozenset[str]] = frozenset({types.METHOD_INITIALIZE, types.METHOD_PING})
    _early_outbound_notifications: ClassVar[frozenset[str]] = frozenset({types.NOTIFICATION_INITIALIZED})
    _early_inbound_requests: ClassVar[frozenset[str]] = frozenset({types.METHOD_PING})
    _early_inbound_notifications: ClassVar[frozenset[str]] = frozenset({types.NOTIFICATION_MESSAGE})

    def __init__(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        read_timeout_seconds: float | timedelta | None = None,
        sampling_callback: SamplingFnT | None = None,
        elicitation_callback: ElicitationFnT | None = None,
        list_roots_callback: ListRootsFnT | None = None,
        logging_callback: LoggingFnT | None = None,
        message_handler: MessageHandlerFnT | None = None,
        client_info: types.Implementation | None = None,
        *,
        protocol_version: str = types.LATEST_PROTOCOL_VERSION,
        settings: Settings | None = None,
        **session_options: Any,
    ) -> None:
        super().__init__(
            read_stream,
            write_stream,
            read_timeout_seconds=read_timeout_seconds,
            settings=settings,
            **session_options,
        )
        self._client_info = client_info or DEFAULT_CLIENT_INFO
        self._requested_protocol_version = protocol_version
        self._sampling_callback = sampling_callback
        self._elicitation_callback = elicitation_callback
        self._list_roots_callback = list_roots_callback
        self._logging_callback = logging_callback or _default_logging_callback
        self._message_handler = message_handler or _default_message_handler
        self._initialize_result: types.InitializeResult | None = None

        if sampling_callback is not None:
            self.set_request_handler(types.METHOD_SAMPLING_CREATE_MESSAGE, self._handle_sampling)
        if elicitation_callback is not None:
            self.set_request_handler(types.METHOD_ELICITATION_CREATE, self._handle_elicitation)
        if list_roots_callback is not None:
            self.set_request_handler(types.METHOD_ROOTS_LIST, self._handle_list_roots)
        self.set_notification_handler(types.NOTIFICATION_MESSAGE, self._handle_log_message)

    def _client_capabilities(self) -> types.ClientCapabilities:
        return types.ClientCapabilities(
            sampling=types.SamplingCapability() if self._sampling_callback is not None else None,
            elicitation=types.ElicitationCapability() if self._elicitation_callback is not None else None,
            roots=types.RootsCapability(listChanged=True) if self._list_roots_callback is not None else None,
        )

    async def initialize(self) -> types.InitializeResult:
        """Run the handshake and move the session to READY.

        Raises:
            SessionStateError: the session was already initialized
            UnsupportedProtocolVersionError: the server answered with a protocol
                version this client cannot speak; the session is FAILED and the
                transport closed
            McpError: the server rejected the handshake; the session is FAILED
            ValidationError: the server's answer is not an initialize result;
                the session is FAILED and the transport closed
        """
        if self.state is not SessionState.UNINITIALIZED:
            raise SessionStateError(f"initialize() may only be called once; session is {self.state.value}")

        capabilities = self._client_capabilities()
        self.capabilities.declare_local(capabilities)
        self._set_state(SessionState.INITIALIZING)

        try:
            result = await self.send_request(
                types.METHOD_INITIALIZE,
                types.InitializeRequestParams(
                    protocolVersion=self._requested_protocol_version,
                    capabilities=capabilities,
                    clientInfo=self._client_info,
                ),
                types.InitializeResult,
            )
        except (McpError, RequestTimeoutError, ValidationError) as exc:
            await self.fail(exc)
            raise

        if result.protocolVersion not in types.SUPPORTED_PROTOCOL_VERSIONS:
            error = UnsupportedProtocolVersionError(result.protocolVersion)
            await self.fail(error)
            raise error

        self._protocol_version = result.protocolVersion
        self.capabilities.record_remote(result.capabilities)
        self._initialize_result = result

        await self.send_notification(types.NOTIFICATION_INITIALIZED)
        self._set_state(SessionState.READY)
        return result

    def get_server_capabilities(self) -> types.ServerCapabilities | None:
        """Return the server capabilities received during initialization.

        Returns None if the session has not been initialized yet.
        """
        return self._initialize_result.capabilities if self._initialize_result else None

    @property
    def server_info(self) -> types.Implementation | None:
        return self._initialize_result.serverInfo if self._initialize_result else None

    @property
    def instructions(self) -> str | None:
        return self._initialize_result.instructions if self._initialize_result else None

    async def set_logging_level(self, level: types.LoggingLevel) -> types.EmptyResult:
        """Send a logging/setLevel request."""
        return await self.send_request(
            types.METHOD_LOGGING_SET_LEVEL,
            types.SetLevelRequestParams(level=level),
            types.EmptyResult,
        )

    async def list_resources(self, cursor: str | None = None) -> types.ListResourcesResult:
        """Send a resources/list request."""
        return await self.send_request(types.METHOD_RESOURCES_LIST, _cursor_params(cursor), types.ListResourcesResult)

    async def list_resource_templates(self, cursor: str | None = None) -> types.ListResourceTemplatesResult:
        """Send a resources/templates/list request."""
        return await self.send_request(
            types.METHOD_RESOURCES_TEMPLATES_LIST,
            _cursor_params(cursor),
            types.ListResourceTemplatesResult,
        )

    async def read_resource(self, uri: str | AnyUrl) -> types.ReadResourceResult:
        """Send a resources/read request."""
        return await self.send_request(
            types.METHOD_RESOURCES_READ,
            types.ResourceRequestParams(uri=str(uri)),
            types.ReadResourceResult,
        )

    async def subscribe_resource(self, uri: str | AnyUrl) -> types.EmptyResult:
        """Send a resources/subscribe request."""
        return await self.send_request(
            types.METHOD_RESOURCES_SUBSCRIBE,
            types.ResourceRequestParams(uri=str(uri)),
            types.EmptyResult,
        )

    async def unsubscribe_resource(self, uri: str | AnyUrl) -> types.EmptyResult:
        """Send a resources/unsubscribe request."""
        return await self.send_request(
            types.METHOD_RESOURCES_UNSUBSCRIBE,
            types.ResourceRequestParams(uri=str(uri)),
            types.EmptyResult,
        )

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        read_timeout_seconds: float | timedelta | None = None,
        progress_callback: ProgressFnT | None = None,
        *,
        meta: dict[str, Any] | None = None,
    ) -> types.CallToolResult:
        """Send a tools/call request with optional progress callback support.

        A tool that failed comes back as a result with ``isError`` set, not as
        an exception.
        """
        params = types.CallToolRequestParams(name=name, arguments=arguments).model_dump(exclude_none=True)
        if meta is not None:
            params["_meta"] = dict(meta)
        return await self.send_request(
            types.METHOD_TOOLS_CALL,
            params,
            types.CallToolResult,
            request_read_timeout_seconds=read_timeout_seconds,
            progress_callback=progress_callback,
        )

    async def list_prompts(self, cursor: str | None = None) -> types.ListPromptsResult:
        """Send a prompts/list request."""
        return await self.send_request(types.METHOD_PROMPTS_LIST, _cursor_params(cursor), types.ListPromptsResult)

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> types.GetPromptResult:
        """Send a prompts/get request."""
        return await self.send_request(
            types.METHOD_PROMPTS_GET,
            types.GetPromptRequestParams(name=name, arguments=arguments),
            types.GetPromptResult,
        )

    async def complete(
        self,
        ref: dict[str, Any],
        argument: dict[str, str],
        context_arguments: dict[str, str] | None = None,
    ) -> types.CompleteResult:
        """Send a completion/complete request."""
        params: dict[str, Any] = types.CompleteRequestParams(ref=ref, argument=argument).model_dump()
        if context_arguments is not None:
            params["context"] = {"arguments": context_arguments}
        return await self.send_request(types.METHOD_COMPLETION_COMPLETE, params, types.CompleteResult)

    async def list_tools(self, cursor: str | None = None) -> types.ListToolsResult:
        """Send a tools/list request."""
        return await self.send_request(types.METHOD_TOOLS_LIST, _cursor_params(cursor), types.ListToolsResult)

    async def send_roots_list_changed(self) -> None:
        """Send a roots/list_changed notification."""
        await self.send_notification(types.NOTIFICATION_ROOTS_LIST_CHANGED)

    async def _handle_sampling(self, ctx: RequestContext[ClientSession], params: dict[str, Any] | None) -> Any:
        assert self._sampling_callback is not None
        return await self._sampling_callback(ctx, parse_params(types.CreateMessageRequestParams, params))

    async def _handle_elicitation(self, ctx: RequestContext[ClientSession], params: dict[str, Any] | None) -> Any:
        assert self._elicitation_callback is not None
        return await self._elicitation_callback(ctx, parse_params(types.ElicitRequestParams, params))

    async def _handle_list_roots(self, ctx: RequestContext[ClientSession], params: dict[str, Any] | None) -> Any:
        assert self._list_roots_callback is not None
        return await self._list_roots_callback(ctx)

    async def _handle_log_message(self, ctx: RequestContext[ClientSession], params: dict[str, Any] | None) -> None:
        await self._logging_callback(types.LoggingMessageNotificationParams.model_validate(params or {}))

    async def _handle_incoming(self, item: types.JSONRPCNotification | Exception) -> None:
        await self._message_handler(item)
