"""httpx client factory shared by the HTTP transports."""

from typing import Any, Protocol

import httpx

__all__ = ["McpHttpClientFactory", "create_mcp_http_client"]

DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_SSE_READ_TIMEOUT = 300.0


class McpHttpClientFactory(Protocol):
    def __call__(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        auth: httpx.Auth | None = None,
    ) -> httpx.AsyncClient: ...


def create_mcp_http_client(
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    auth: httpx.Auth | None = None,
    **kwargs: Any,
) -> httpx.AsyncClient:
    """Create an ``httpx.AsyncClient`` with the defaults the transports expect.

    Redirects are always followed. Without an explicit ``timeout`` the client
    waits 30 seconds for connects and writes and five minutes between reads,
    which keeps long-lived SSE streams open.

    The returned client must be used as an async context manager.
    """
    if timeout is None:
        timeout = httpx.Timeout(DEFAULT_HTTP_TIMEOUT, read=DEFAULT_SSE_READ_TIMEOUT)
    client_kwargs: dict[str, Any] = {"follow_redirects": True, "timeout": timeout}
    if headers is not None:
        client_kwargs["headers"] = headers
    if auth is not None:
        client_kwargs["auth"] = auth
    client_kwargs.update(kwargs)
    return httpx.AsyncClient(**client_kwargs)
