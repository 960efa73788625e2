"""A JSON-RPC connection engine for the [Model Context Protocol](https://modelcontextprotocol.io/specification/latest).

## Example - serve tools over stdio

```python
from mcpwire import Server, stdio_server, types

server = Server("Demo")

@server.list_tools()
async def list_tools(ctx):
    return [types.Tool(name="add", inputSchema={"type": "object"})]

@server.call_tool()
async def call_tool(ctx, name, arguments):
    return str(arguments["a"] + arguments["b"])

async def main():
    async with stdio_server() as (read, write):
        await server.run(read, write, server.create_initialization_options())
```

## Example - create a client

```python
from mcpwire import ClientSession, StdioServerParameters, stdio_client

server_params = StdioServerParameters(command="python", args=["server.py"])

async with stdio_client(server_params) as (read, write):
    async with ClientSession(read, write) as session:
        await session.initialize()
        tools = await session.list_tools()
        result = await session.call_tool("add", {"a": 5, "b": 3})
```
"""

from . import types
from .client.session import ClientSession
from .client.stdio import StdioServerParameters, stdio_client
from .server.lowlevel import NotificationOptions, Server
from .server.models import InitializationOptions
from .server.session import ServerSession
from .server.stdio import stdio_server
from .shared.capabilities import CapabilityRegistry
from .shared.context import RequestContext
from .shared.exceptions import (
    McpError,
    MessageDecodeError,
    RequestAbortedError,
    RequestCancelledError,
    RequestTimeoutError,
    SessionStateError,
    TransportClosedError,
    UnsupportedProtocolVersionError,
)
from .shared.message import SessionMessage
from .shared.session import BaseSession, SessionState
from .shared.settings import Settings

__all__ = [
    "BaseSession",
    "CapabilityRegistry",
    "ClientSession",
    "InitializationOptions",
    "McpError",
    "MessageDecodeError",
    "NotificationOptions",
    "RequestAbortedError",
    "RequestCancelledError",
    "RequestContext",
    "RequestTimeoutError",
    "Server",
    "ServerSession",
    "SessionMessage",
    "SessionState",
    "SessionStateError",
    "Settings",
    "StdioServerParameters",
    "TransportClosedError",
    "UnsupportedProtocolVersionError",
    "stdio_client",
    "stdio_server",
    "types",
]
