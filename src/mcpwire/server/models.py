"""
Options a server hands to each new session it serves.
"""

from pydantic import BaseModel

from mcpwire.types import ServerCapabilities


class InitializationOptions(BaseModel):
    server_name: str
    server_version: str
    capabilities: ServerCapabilities
    server_title: str | None = None
    instructions: str | None = None
