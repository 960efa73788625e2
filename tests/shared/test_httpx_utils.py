import httpx

from mcpwire.shared._httpx_utils import DEFAULT_HTTP_TIMEOUT, DEFAULT_SSE_READ_TIMEOUT, create_mcp_http_client


def test_default_client_follows_redirects_with_long_read_timeout():
    client = create_mcp_http_client()

    assert client.follow_redirects is True
    assert client.timeout.connect == DEFAULT_HTTP_TIMEOUT
    assert client.timeout.read == DEFAULT_SSE_READ_TIMEOUT


def test_custom_headers_and_timeout():
    client = create_mcp_http_client(headers={"Authorization": "Bearer t"}, timeout=httpx.Timeout(5.0))

    assert client.headers["Authorization"] == "Bearer t"
    assert client.timeout.read == 5.0
