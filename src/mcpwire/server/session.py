"""
ServerSession Module

The server side of an MCP session. It answers the client's ``initialize``
request itself, becomes READY once the client's ``initialized`` notification
arrives, and offers helpers for the notifications and requests a server sends
to its client.

Most servers never create one directly; ``Server.run`` does:
```
    server = Server("example")

    @server.call_tool()
    async def handle_call(ctx: RequestContext[ServerSession], name: str, arguments: dict[str, Any]):
        if ctx.session.check_client_capability(types.ClientCapabilities(sampling=types.SamplingCapability())):
            ...
```
"""

import logging
from typing import Any, ClassVar

from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import AnyUrl, ValidationError

import mcpwire.types as types
from mcpwire.server.models import InitializationOptions
from mcpwire.shared.context import RequestContext
from mcpwire.shared.message import ServerMessageMetadata, SessionMessage
from mcpwire.shared.session import BaseSession, SessionState, dump_params

logger = logging.getLogger(__name__)


class ServerSession(BaseSession):
    role = "server"

    _early_outbound_requests: ClassVar[frozenset[str]] = frozenset({types.METHOD_PING})
    _early_outbound_notifications: ClassVar[frozenset[str]] = frozenset({types.NOTIFICATION_MESSAGE})
    _early_inbound_requests: ClassVar[frozenset[str]] = frozenset({types.METHOD_INITIALIZE, types.METHOD_PING})
    _early_inbound_notifications: ClassVar[frozenset[str]] = frozenset(
        {types.NOTIFICATION_INITIALIZED, types.NOTIFICATION_INITIALIZED_LEGACY}
    )

    def __init__(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        init_options: InitializationOptions,
        **session_options: Any,
    ) -> None:
        super().__init__(read_stream, write_stream, **session_options)
        self._init_options = init_options
        self._client_params: types.InitializeRequestParams | None = None
        self.capabilities.declare_local(init_options.capabilities)

    @property
    def client_params(self) -> types.InitializeRequestParams | None:
        return self._client_params

    def check_client_capability(self, capability: types.ClientCapabilities) -> bool:
        """Check if the client declared every capability in ``capability``."""
        requested = capability.model_dump(exclude_none=True)
        for namespace, options in requested.items():
            if namespace == "experimental":
                declared = self.capabilities.remote or {}
                experimental = declared.get("experimental") or {}
                if any(key not in experimental or experimental[key] != value for key, value in options.items()):
                    return False
                continue
            if not self.capabilities.supports("client", namespace):
                return False
            for option, value in (options or {}).items():
                if value and not self.capabilities.supports("client", namespace, option):
                    return False
        return True

    async def _received_request(self, ctx: RequestContext[Any], params: dict[str, Any] | None) -> bool:
        if ctx.method != types.METHOD_INITIALIZE:
            return False

        if self.state is not SessionState.UNINITIALIZED:
            logger.warning("Rejecting a second initialize request (session is %s)", self.state.value)
            await self._send_response(
                ctx.request_id,
                types.ErrorData(code=types.INVALID_REQUEST, message="Session is already initialized"),
            )
            return True

        try:
            client_params = types.InitializeRequestParams.model_validate(params or {})
        except ValidationError as exc:
            await self._send_response(
                ctx.request_id,
                types.ErrorData(code=types.INVALID_PARAMS, message="Invalid initialize params", data=str(exc)),
            )
            return True

        requested_version = client_params.protocolVersion
        self._protocol_version = (
            requested_version
            if requested_version in types.SUPPORTED_PROTOCOL_VERSIONS
            else types.LATEST_PROTOCOL_VERSION
        )
        self._client_params = client_params
        self.capabilities.record_remote(client_params.capabilities)
        self._set_state(SessionState.INITIALIZING)
        logger.debug(
            "Client %s %s requested protocol %s, answering with %s",
            client_params.clientInfo.name,
            client_params.clientInfo.version,
            requested_version,
            self._protocol_version,
        )

        await self._send_response(
            ctx.request_id,
            types.InitializeResult(
                protocolVersion=self._protocol_version,
                capabilities=self._init_options.capabilities,
                serverInfo=types.Implementation(
                    name=self._init_options.server_name,
                    version=self._init_options.server_version,
                    title=self._init_options.server_title,
                ),
                instructions=self._init_options.instructions,
            ),
        )
        return True

    async def _received_notification(self, method: str, params: dict[str, Any] | None) -> bool:
        if method not in (types.NOTIFICATION_INITIALIZED, types.NOTIFICATION_INITIALIZED_LEGACY):
            return False
        if self.state is SessionState.INITIALIZING:
            self._set_state(SessionState.READY)
        else:
            logger.debug("Ignoring %r notification while %s", method, self.state.value)
        return True

    async def send_log_message(
        self,
        level: types.LoggingLevel,
        data: Any,
        logger: str | None = None,
        related_request_id: types.RequestId | None = None,
    ) -> None:
        """Send a log message notification."""
        await self.send_notification(
            types.NOTIFICATION_MESSAGE,
            types.LoggingMessageNotificationParams(level=level, data=data, logger=logger),
            related_request_id,
        )

    async def send_resource_updated(self, uri: str | AnyUrl) -> None:
        """Send a resource updated notification."""
        await self.send_notification(
            types.NOTIFICATION_RESOURCES_UPDATED,
            types.ResourceUpdatedNotificationParams(uri=str(uri)),
        )

    async def create_message(
        self,
        messages: list[dict[str, Any]],
        *,
        max_tokens: int,
        system_prompt: str | None = None,
        temperature: float | None = None,
        related_request_id: types.RequestId | None = None,
        **extra: Any,
    ) -> types.CreateMessageResult:
        """Send a sampling/create_message request."""
        params = dump_params(
            types.CreateMessageRequestParams(
                messages=messages,
                maxTokens=max_tokens,
                systemPrompt=system_prompt,
                temperature=temperature,
                **extra,
            )
        )
        return await self.send_request(
            types.METHOD_SAMPLING_CREATE_MESSAGE,
            params,
            types.CreateMessageResult,
            metadata=_related(related_request_id),
        )

    async def list_roots(self) -> types.ListRootsResult:
        """Send a roots/list request."""
        return await self.send_request(types.METHOD_ROOTS_LIST, None, types.ListRootsResult)

    async def elicit(
        self,
        message: str,
        requested_schema: dict[str, Any],
        related_request_id: types.RequestId | None = None,
    ) -> types.ElicitResult:
        """Send an elicitation/create request."""
        return await self.send_request(
            types.METHOD_ELICITATION_CREATE,
            types.ElicitRequestParams(message=message, requestedSchema=requested_schema),
            types.ElicitResult,
            metadata=_related(related_request_id),
        )

    async def send_resources_list_changed(self) -> None:
        """Send a resource list changed notification."""
        await self.send_notification(types.NOTIFICATION_RESOURCES_LIST_CHANGED)

    async def send_tools_list_changed(self) -> None:
        """Send a tool list changed notification."""
        await self.send_notification(types.NOTIFICATION_TOOLS_LIST_CHANGED)

    async def send_prompts_list_changed(self) -> None:
        """Send a prompt list changed notification."""
        await self.send_notification(types.NOTIFICATION_PROMPTS_LIST_CHANGED)


def _related(request_id: types.RequestId | None) -> ServerMessageMetadata | None:
    return ServerMessageMetadata(related_request_id=request_id) if request_id is not None else None
