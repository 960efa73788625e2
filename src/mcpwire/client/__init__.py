"""MCP client sessions and transports."""

from mcpwire.client.session import ClientSession

__all__ = ["ClientSession"]
