from mcpwire.types import CONNECTION_CLOSED, INVALID_REQUEST, ErrorData, RequestId


class McpError(Exception):
    """Exception raised for an MCP protocol error.

    Raised when the remote peer answers a request with an error response, and
    raised by request handlers that want a specific error sent back to the
    peer. It wraps the ErrorData carried on the wire.

    Attributes:
        error: The ErrorData object containing error code, message, and
               optional additional data
    """

    error: ErrorData

    def __init__(self, error: ErrorData):
        super().__init__(error.message)
        self.error = error


class MessageDecodeError(McpError):
    """A framed unit of transport data could not be turned into a message.

    ``request_id`` is set when the payload was recognizably a request, so an
    error response can be addressed to it.
    """

    def __init__(self, error: ErrorData, request_id: RequestId | None = None):
        super().__init__(error)
        self.request_id = request_id


class UnsupportedProtocolVersionError(McpError):
    """The peer negotiated a protocol version this implementation cannot speak."""

    def __init__(self, version: str):
        super().__init__(
            ErrorData(
                code=INVALID_REQUEST,
                message=f"Unsupported protocol version from the server: {version}",
                data={"protocolVersion": version},
            )
        )
        self.version = version


class SessionStateError(RuntimeError):
    """A message was not eligible to be sent in the session's current state.

    This is a local programming error: nothing was written to the transport.
    """


class TransportClosedError(Exception):
    """The transport closed before a response arrived.

    There is no partner left to answer, so this is never a JSON-RPC error
    object; ``code`` is provided for callers that want to report it uniformly.
    """

    code = CONNECTION_CLOSED

    def __init__(self, message: str = "Connection closed"):
        super().__init__(message)


class RequestAbortedError(Exception):
    """Base class for requests that ended locally without a response."""

    def __init__(self, request_id: RequestId, method: str, message: str):
        super().__init__(message)
        self.request_id = request_id
        self.method = method


class RequestCancelledError(RequestAbortedError):
    """The request was cancelled by the local side."""

    def __init__(self, request_id: RequestId, method: str, reason: str | None = None):
        super().__init__(request_id, method, f"Request {request_id} ({method}) cancelled")
        self.reason = reason


class RequestTimeoutError(RequestAbortedError):
    """No response arrived within the request's timeout window."""

    def __init__(self, request_id: RequestId, method: str, timeout: float):
        super().__init__(
            request_id,
            method,
            f"Timed out while waiting for response to {method} (id {request_id}). Waited {timeout} seconds.",
        )
        self.timeout = timeout
