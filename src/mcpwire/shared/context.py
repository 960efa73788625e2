"""Request context for MCP handlers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import anyio

import mcpwire.types as types

if TYPE_CHECKING:
    from mcpwire.shared.session import BaseSession

SessionT = TypeVar("SessionT", bound="BaseSession")


@dataclass(kw_only=True)
class RequestContext(Generic[SessionT]):
    """Context handed to every request and notification handler.

    Passed explicitly on each invocation; handlers never reach for ambient
    state. For notification handlers ``request_id`` is None.
    """

    session: SessionT
    method: str
    request_id: types.RequestId | None = None
    meta: types.RequestMeta | None = None
    cancel_scope: anyio.CancelScope = field(default_factory=anyio.CancelScope)
    # Transport-specific request object (e.g. starlette Request), if any.
    request: Any = None

    @property
    def progress_token(self) -> types.ProgressToken | None:
        return self.meta.progressToken if self.meta else None

    @property
    def cancelled(self) -> bool:
        return self.cancel_scope.cancel_called

    async def report_progress(self, progress: float, total: float | None = None, message: str | None = None) -> None:
        """Send a progress notification for this request, if the caller asked for progress."""
        if self.progress_token is None:
            return
        await self.session.send_progress_notification(
            self.progress_token,
            progress,
            total=total,
            message=message,
            related_request_id=self.request_id,
        )
