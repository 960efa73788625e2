"""Wire types for the Model Context Protocol.

The JSON-RPC envelope models mirror the JSON-RPC 2.0 shapes one-to-one. The MCP
payload models only describe what the session layer itself needs to look at
(handshake, cancellation, progress, logging); capability-family payloads are
typed loosely and allow extra fields so newer peers remain readable.
"""

from typing import Annotated, Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Field, RootModel

JSONRPC_VERSION: Final[str] = "2.0"

LATEST_PROTOCOL_VERSION: Final[str] = "2025-06-18"

SUPPORTED_PROTOCOL_VERSIONS: Final[list[str]] = ["2024-11-05", "2025-03-26", LATEST_PROTOCOL_VERSION]

# Standard JSON-RPC error codes
PARSE_ERROR: Final[int] = -32700
INVALID_REQUEST: Final[int] = -32600
METHOD_NOT_FOUND: Final[int] = -32601
INVALID_PARAMS: Final[int] = -32602
INTERNAL_ERROR: Final[int] = -32603

# Application-defined error codes
CONNECTION_CLOSED: Final[int] = -32000
REQUEST_TIMEOUT: Final[int] = -32001
RESOURCE_NOT_FOUND: Final[int] = -32002
VALIDATION_FAILED: Final[int] = -32003

RequestId = Annotated[int, Field(strict=True)] | str
ProgressToken = str | int
LoggingLevel = Literal["debug", "info", "notice", "warning", "error", "critical", "alert", "emergency"]

# Method names. These are part of the wire contract and must match exactly.
METHOD_INITIALIZE: Final[str] = "initialize"
METHOD_PING: Final[str] = "ping"
METHOD_TOOLS_LIST: Final[str] = "tools/list"
METHOD_TOOLS_CALL: Final[str] = "tools/call"
METHOD_RESOURCES_LIST: Final[str] = "resources/list"
METHOD_RESOURCES_TEMPLATES_LIST: Final[str] = "resources/templates/list"
METHOD_RESOURCES_READ: Final[str] = "resources/read"
METHOD_RESOURCES_SUBSCRIBE: Final[str] = "resources/subscribe"
METHOD_RESOURCES_UNSUBSCRIBE: Final[str] = "resources/unsubscribe"
METHOD_PROMPTS_LIST: Final[str] = "prompts/list"
METHOD_PROMPTS_GET: Final[str] = "prompts/get"
METHOD_COMPLETION_COMPLETE: Final[str] = "completion/complete"
METHOD_LOGGING_SET_LEVEL: Final[str] = "logging/setLevel"
METHOD_SAMPLING_CREATE_MESSAGE: Final[str] = "sampling/createMessage"
METHOD_ROOTS_LIST: Final[str] = "roots/list"
METHOD_ELICITATION_CREATE: Final[str] = "elicitation/create"

NOTIFICATION_INITIALIZED: Final[str] = "notifications/initialized"
# Older peers send the handshake notification without the namespace.
NOTIFICATION_INITIALIZED_LEGACY: Final[str] = "initialized"
NOTIFICATION_CANCELLED: Final[str] = "notifications/cancelled"
NOTIFICATION_PROGRESS: Final[str] = "notifications/progress"
NOTIFICATION_MESSAGE: Final[str] = "notifications/message"
NOTIFICATION_RESOURCES_UPDATED: Final[str] = "notifications/resources/updated"
NOTIFICATION_RESOURCES_LIST_CHANGED: Final[str] = "notifications/resources/list_changed"
NOTIFICATION_TOOLS_LIST_CHANGED: Final[str] = "notifications/tools/list_changed"
NOTIFICATION_PROMPTS_LIST_CHANGED: Final[str] = "notifications/prompts/list_changed"
NOTIFICATION_ROOTS_LIST_CHANGED: Final[str] = "notifications/roots/list_changed"


class MCPModel(BaseModel):
    """Base class for MCP payload types. Allows extra fields for forward compatibility."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


# ---------------------------------------------------------------------------
# JSON-RPC envelopes
# ---------------------------------------------------------------------------


class JSONRPCRequest(MCPModel):
    """A request that expects a response."""

    jsonrpc: Literal["2.0"]
    id: RequestId
    method: str
    params: dict[str, Any] | None = None


class JSONRPCNotification(MCPModel):
    """A notification which does not expect a response."""

    jsonrpc: Literal["2.0"]
    method: str
    params: dict[str, Any] | None = None


class JSONRPCResponse(MCPModel):
    """A successful (non-error) response to a request."""

    jsonrpc: Literal["2.0"]
    id: RequestId
    result: Any


class ErrorData(MCPModel):
    """Error information for JSON-RPC error responses."""

    code: int
    """The error type that occurred."""

    message: str
    """
    A short description of the error. The message SHOULD be limited to a concise single
    sentence.
    """

    data: Any | None = None
    """
    Additional information about the error. The value of this member is defined by the
    sender (e.g. detailed error information, nested errors etc.).
    """


class JSONRPCError(MCPModel):
    """A response to a request that indicates an error occurred.

    The id is null only when the offending request could not be identified,
    e.g. in reply to unparseable JSON.
    """

    jsonrpc: Literal["2.0"]
    id: RequestId | None
    error: ErrorData


class JSONRPCMessage(RootModel[JSONRPCRequest | JSONRPCNotification | JSONRPCResponse | JSONRPCError]):
    pass


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


class Implementation(MCPModel):
    """Describes the name and version of an MCP implementation."""

    name: str
    version: str
    title: str | None = None


class RootsCapability(MCPModel):
    listChanged: bool | None = None


class SamplingCapability(MCPModel):
    pass


class ElicitationCapability(MCPModel):
    pass


class ClientCapabilities(MCPModel):
    """Capabilities a client may support."""

    experimental: dict[str, dict[str, Any]] | None = None
    sampling: SamplingCapability | None = None
    elicitation: ElicitationCapability | None = None
    roots: RootsCapability | None = None


class PromptsCapability(MCPModel):
    listChanged: bool | None = None


class ResourcesCapability(MCPModel):
    subscribe: bool | None = None
    listChanged: bool | None = None


class ToolsCapability(MCPModel):
    listChanged: bool | None = None


class LoggingCapability(MCPModel):
    pass


class CompletionsCapability(MCPModel):
    pass


class ServerCapabilities(MCPModel):
    """Capabilities that a server may support."""

    experimental: dict[str, dict[str, Any]] | None = None
    logging: LoggingCapability | None = None
    prompts: PromptsCapability | None = None
    resources: ResourcesCapability | None = None
    tools: ToolsCapability | None = None
    completions: CompletionsCapability | None = None


class InitializeRequestParams(MCPModel):
    protocolVersion: str
    capabilities: ClientCapabilities
    clientInfo: Implementation


class InitializeResult(MCPModel):
    """After receiving an initialize request from the client, the server sends this response."""

    protocolVersion: str
    capabilities: ServerCapabilities
    serverInfo: Implementation
    instructions: str | None = None


# ---------------------------------------------------------------------------
# Utility notifications and results
# ---------------------------------------------------------------------------


class RequestMeta(MCPModel):
    progressToken: ProgressToken | None = None


class CancelledNotificationParams(MCPModel):
    requestId: RequestId
    reason: str | None = None


class ProgressNotificationParams(MCPModel):
    progressToken: ProgressToken
    progress: float
    total: float | None = None
    message: str | None = None


class LoggingMessageNotificationParams(MCPModel):
    level: LoggingLevel
    logger: str | None = None
    data: Any


class SetLevelRequestParams(MCPModel):
    level: LoggingLevel


class EmptyResult(MCPModel):
    """A response that indicates success but carries no data."""


# ---------------------------------------------------------------------------
# Capability families. The session routes these without interpreting them.
# ---------------------------------------------------------------------------


class PaginatedResult(MCPModel):
    nextCursor: str | None = None


class Tool(MCPModel):
    name: str
    description: str | None = None
    inputSchema: dict[str, Any] = Field(default_factory=lambda: {"type": "object"})
    outputSchema: dict[str, Any] | None = None


class ListToolsResult(PaginatedResult):
    tools: list[Tool]


class CallToolRequestParams(MCPModel):
    name: str
    arguments: dict[str, Any] | None = None


class TextContent(MCPModel):
    type: Literal["text"] = "text"
    text: str


class CallToolResult(MCPModel):
    """Result of a tool call.

    Tool failures are reported here with ``isError`` set instead of as a
    JSON-RPC error, so the protocol layer only ever carries protocol faults.
    """

    content: list[dict[str, Any]] = Field(default_factory=list)
    structuredContent: dict[str, Any] | None = None
    isError: bool = False


class Resource(MCPModel):
    uri: str
    name: str
    description: str | None = None
    mimeType: str | None = None


class ResourceTemplate(MCPModel):
    uriTemplate: str
    name: str
    description: str | None = None
    mimeType: str | None = None


class ListResourcesResult(PaginatedResult):
    resources: list[Resource]


class ListResourceTemplatesResult(PaginatedResult):
    resourceTemplates: list[ResourceTemplate]


class ResourceRequestParams(MCPModel):
    uri: str


class ReadResourceResult(MCPModel):
    contents: list[dict[str, Any]]


class ResourceUpdatedNotificationParams(MCPModel):
    uri: str


class PromptArgument(MCPModel):
    name: str
    description: str | None = None
    required: bool | None = None


class Prompt(MCPModel):
    name: str
    description: str | None = None
    arguments: list[PromptArgument] | None = None


class ListPromptsResult(PaginatedResult):
    prompts: list[Prompt]


class GetPromptRequestParams(MCPModel):
    name: str
    arguments: dict[str, str] | None = None


class GetPromptResult(MCPModel):
    description: str | None = None
    messages: list[dict[str, Any]]


class CompleteRequestParams(MCPModel):
    ref: dict[str, Any]
    argument: dict[str, Any]


class Completion(MCPModel):
    values: list[str]
    total: int | None = None
    hasMore: bool | None = None


class CompleteResult(MCPModel):
    completion: Completion


class Root(MCPModel):
    uri: str
    name: str | None = None


class ListRootsResult(MCPModel):
    roots: list[Root]


class CreateMessageRequestParams(MCPModel):
    messages: list[dict[str, Any]]
    maxTokens: int
    systemPrompt: str | None = None
    temperature: float | None = None


class CreateMessageResult(MCPModel):
    role: Literal["user", "assistant"]
    content: dict[str, Any]
    model: str
    stopReason: str | None = None


class ElicitRequestParams(MCPModel):
    message: str
    requestedSchema: dict[str, Any]


class ElicitResult(MCPModel):
    action: Literal["accept", "decline", "cancel"]
    content: dict[str, Any] | None = None
