"""Capability bookkeeping for one session.

Each side declares its capabilities exactly once during the handshake. The
registry answers whether a method may travel in a given direction, based on a
static table mapping every capability-gated method to the namespace (and
optional sub-option) that must have been declared, and to the side that must
have declared it.

For requests the declaring side is the one expected to *handle* the request:
a server may only send ``sampling/createMessage`` if the client declared
``sampling``. For notifications it is the sender: a server may only emit
``notifications/tools/list_changed`` if it declared ``tools.listChanged``.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Final, Literal

from pydantic import BaseModel

import mcpwire.types as types
from mcpwire.shared.exceptions import SessionStateError

logger = logging.getLogger(__name__)

Role = Literal["client", "server"]
Direction = Literal["outbound", "inbound"]


@dataclass(frozen=True)
class MethodCapability:
    namespace: str
    declared_by: Role
    kind: Literal["request", "notification"]
    option: str | None = None


def _request(namespace: str, declared_by: Role, option: str | None = None) -> MethodCapability:
    return MethodCapability(namespace, declared_by, "request", option)


def _notification(namespace: str, declared_by: Role, option: str | None = None) -> MethodCapability:
    return MethodCapability(namespace, declared_by, "notification", option)


METHOD_CAPABILITIES: Final[Mapping[str, MethodCapability]] = MappingProxyType(
    {
        types.METHOD_TOOLS_LIST: _request("tools", "server"),
        types.METHOD_TOOLS_CALL: _request("tools", "server"),
        types.METHOD_RESOURCES_LIST: _request("resources", "server"),
        types.METHOD_RESOURCES_TEMPLATES_LIST: _request("resources", "server"),
        types.METHOD_RESOURCES_READ: _request("resources", "server"),
        types.METHOD_RESOURCES_SUBSCRIBE: _request("resources", "server", "subscribe"),
        types.METHOD_RESOURCES_UNSUBSCRIBE: _request("resources", "server", "subscribe"),
        types.METHOD_PROMPTS_LIST: _request("prompts", "server"),
        types.METHOD_PROMPTS_GET: _request("prompts", "server"),
        types.METHOD_COMPLETION_COMPLETE: _request("completions", "server"),
        types.METHOD_LOGGING_SET_LEVEL: _request("logging", "server"),
        types.METHOD_SAMPLING_CREATE_MESSAGE: _request("sampling", "client"),
        types.METHOD_ROOTS_LIST: _request("roots", "client"),
        types.METHOD_ELICITATION_CREATE: _request("elicitation", "client"),
        types.NOTIFICATION_TOOLS_LIST_CHANGED: _notification("tools", "server", "listChanged"),
        types.NOTIFICATION_PROMPTS_LIST_CHANGED: _notification("prompts", "server", "listChanged"),
        types.NOTIFICATION_RESOURCES_LIST_CHANGED: _notification("resources", "server", "listChanged"),
        types.NOTIFICATION_RESOURCES_UPDATED: _notification("resources", "server", "subscribe"),
        types.NOTIFICATION_ROOTS_LIST_CHANGED: _notification("roots", "client", "listChanged"),
    }
)

# Always available, independent of any declared capability.
UTILITY_METHODS: Final[frozenset[str]] = frozenset(
    {
        types.METHOD_INITIALIZE,
        types.METHOD_PING,
        types.NOTIFICATION_INITIALIZED,
        types.NOTIFICATION_INITIALIZED_LEGACY,
        types.NOTIFICATION_CANCELLED,
        types.NOTIFICATION_PROGRESS,
        types.NOTIFICATION_MESSAGE,
    }
)

# Which side owns each namespace.
NAMESPACE_OWNERS: Final[Mapping[str, Role]] = MappingProxyType(
    {
        "tools": "server",
        "resources": "server",
        "prompts": "server",
        "logging": "server",
        "completions": "server",
        "sampling": "client",
        "roots": "client",
        "elicitation": "client",
    }
)

CapabilityDeclaration = Mapping[str, Any]


def _freeze(capabilities: BaseModel | Mapping[str, Any]) -> CapabilityDeclaration:
    if isinstance(capabilities, BaseModel):
        data = capabilities.model_dump(mode="json", by_alias=True, exclude_none=True)
    else:
        data = copy.deepcopy(dict(capabilities))
    return MappingProxyType(data)


def _other(role: Role) -> Role:
    return "server" if role == "client" else "client"


class CapabilityRegistry:
    """Holds both sides' capability declarations for one session.

    Args:
        role: whether the owning session acts as client or server
        implicit_completions: when True, ``completion/complete`` is permitted
            without a declared ``completions`` capability; whether it succeeds
            then only depends on a handler being registered
    """

    def __init__(self, role: Role, *, implicit_completions: bool = False) -> None:
        self.role: Role = role
        self.implicit_completions = implicit_completions
        self._local: CapabilityDeclaration | None = None
        self._remote: CapabilityDeclaration | None = None

    @property
    def remote_role(self) -> Role:
        return _other(self.role)

    @property
    def local(self) -> CapabilityDeclaration | None:
        return self._local

    @property
    def remote(self) -> CapabilityDeclaration | None:
        return self._remote

    def declare_local(self, capabilities: BaseModel | Mapping[str, Any]) -> None:
        if self._local is not None:
            raise SessionStateError("Local capabilities were already declared for this session")
        self._local = _freeze(capabilities)
        logger.debug("Declared %s capabilities: %s", self.role, sorted(self._local))

    def record_remote(self, capabilities: BaseModel | Mapping[str, Any]) -> None:
        if self._remote is not None:
            raise SessionStateError("Remote capabilities were already recorded for this session")
        self._remote = _freeze(capabilities)
        logger.debug("Recorded %s capabilities: %s", self.remote_role, sorted(self._remote))

    def declared_by(self, role: Role) -> CapabilityDeclaration | None:
        return self._local if role == self.role else self._remote

    def supports(self, role: Role, namespace: str, option: str | None = None) -> bool:
        declaration = self.declared_by(role)
        if declaration is None or declaration.get(namespace) is None:
            return False
        if option is None:
            return True
        options = declaration[namespace]
        return isinstance(options, Mapping) and bool(options.get(option))

    def is_permitted(self, method: str, direction: Direction) -> bool:
        """Whether ``method`` may be sent (outbound) or handled (inbound).

        Methods that are neither utilities nor in the capability table are not
        gated here; they succeed or fail on whether a handler exists.
        """
        if method in UTILITY_METHODS:
            return True
        entry = METHOD_CAPABILITIES.get(method)
        if entry is None:
            return True

        if entry.kind == "request":
            # The receiver handles a request.
            acting = self.role if direction == "inbound" else self.remote_role
        else:
            acting = self.remote_role if direction == "inbound" else self.role
        if acting != entry.declared_by:
            return False

        if entry.namespace == "completions" and self.implicit_completions:
            return True
        return self.supports(entry.declared_by, entry.namespace, entry.option)

    def list_changed_supported(self, namespace: str) -> bool:
        return self.supports(NAMESPACE_OWNERS.get(namespace, "server"), namespace, "listChanged")

    def subscribe_supported(self, namespace: str = "resources") -> bool:
        return self.supports(NAMESPACE_OWNERS.get(namespace, "server"), namespace, "subscribe")
