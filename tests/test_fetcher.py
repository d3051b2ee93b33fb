import pytest
import httpx
from unittest.mock import AsyncMock, patch
from kb_indexer.core.fetcher import ContentFetcher
from kb_indexer.exceptions import FetchError, EmptyContentError, UnsafeUrlError
from kb_indexer.config import settings

PAGE_HTML = """
<html>
    <head><title>Pricing | Example</title><script>var tracking = 1;</script></head>
    <body>
        <nav>Home About Contact</nav>
        <main>
            <h1>Plans</h1>
            <p>The Pro plan costs   $20 per month.</p>
            <style>.hidden { display: none; }</style>
        </main>
        <footer>Copyright</footer>
    </body>
</html>
"""

@pytest.fixture
def mock_httpx_client():
    """Mocks httpx.AsyncClient for ContentFetcher."""
    with patch('httpx.AsyncClient') as MockAsyncClient:
        mock_instance = MockAsyncClient.return_value
        mock_instance.get = AsyncMock()
        mock_instance.aclose = AsyncMock()
        yield mock_instance

@pytest.fixture
def fetcher(mock_httpx_client):
    """Provides a ContentFetcher instance with a mocked httpx client."""
    return ContentFetcher(
        user_agent=settings.FETCHER_USER_AGENT,
        request_timeout=settings.FETCHER_REQUEST_TIMEOUT,
        max_content_chars=settings.FETCHER_MAX_CONTENT_CHARS
    )

@pytest.mark.asyncio
async def test_fetch_success_extracts_main_content(fetcher, mock_httpx_client):
    """Test successful fetch returns title, main content and cache headers."""
    mock_httpx_client.get.return_value = httpx.Response(
        200, text=PAGE_HTML, headers={"ETag": '"v1"', "Last-Modified": "Wed, 21 Oct 2026 07:28:00 GMT"}
    )

    result = await fetcher.fetch("https://example.com/pricing")

    assert result.url == "https://example.com/pricing"
    assert result.title == "Pricing | Example"
    assert "The Pro plan costs $20 per month." in result.content
    assert "Home About Contact" not in result.content
    assert "tracking" not in result.content
    assert "display" not in result.content
    assert result.etag == '"v1"'
    assert result.last_modified == "Wed, 21 Oct 2026 07:28:00 GMT"
    mock_httpx_client.get.assert_called_once_with("https://example.com/pricing")

@pytest.mark.asyncio
async def test_fetch_http_error_carries_status(fetcher, mock_httpx_client):
    """Test a non-2xx response raises FetchError with status code and reason."""
    mock_httpx_client.get.return_value = httpx.Response(404, text="missing")

    with pytest.raises(FetchError) as exc_info:
        await fetcher.fetch("https://example.com/gone")

    assert str(exc_info.value) == "HTTP 404: Not Found"
    assert exc_info.value.status_code == 404
    assert exc_info.value.is_client_error
    assert exc_info.value.retryable

@pytest.mark.asyncio
async def test_fetch_server_error_is_not_client_error(fetcher, mock_httpx_client):
    mock_httpx_client.get.return_value = httpx.Response(503, text="busy")

    with pytest.raises(FetchError) as exc_info:
        await fetcher.fetch("https://example.com/busy")

    assert exc_info.value.status_code == 503
    assert not exc_info.value.is_client_error

@pytest.mark.asyncio
async def test_fetch_request_error(fetcher, mock_httpx_client):
    """Test transport errors surface as FetchError without a status code."""
    mock_httpx_client.get.side_effect = httpx.RequestError(
        "Connection Error", request=httpx.Request("GET", "https://example.com")
    )

    with pytest.raises(FetchError) as exc_info:
        await fetcher.fetch("https://example.com")

    assert exc_info.value.status_code is None
    assert "Connection Error" in str(exc_info.value)

@pytest.mark.asyncio
async def test_fetch_timeout(fetcher, mock_httpx_client):
    mock_httpx_client.get.side_effect = httpx.ReadTimeout(
        "timed out", request=httpx.Request("GET", "https://example.com")
    )

    with pytest.raises(FetchError) as exc_info:
        await fetcher.fetch("https://example.com")

    assert "timed out" in str(exc_info.value)

@pytest.mark.asyncio
async def test_fetch_empty_content(fetcher, mock_httpx_client):
    mock_httpx_client.get.return_value = httpx.Response(
        200, text="<html><body><script>only();</script></body></html>"
    )

    with pytest.raises(EmptyContentError):
        await fetcher.fetch("https://example.com/blank")

@pytest.mark.asyncio
async def test_fetch_truncates_long_content(mock_httpx_client):
    fetcher = ContentFetcher(user_agent="test-agent", request_timeout=5.0, max_content_chars=100)
    mock_httpx_client.get.return_value = httpx.Response(
        200, text=f"<html><body><p>{'word ' * 500}</p></body></html>"
    )

    result = await fetcher.fetch("https://example.com/long")

    assert len(result.content) <= 100

@pytest.mark.asyncio
async def test_fetch_falls_back_to_h1_title(fetcher, mock_httpx_client):
    mock_httpx_client.get.return_value = httpx.Response(
        200, text="<html><body><h1>Getting Started</h1><p>Install the widget.</p></body></html>"
    )

    result = await fetcher.fetch("https://example.com/start")

    assert result.title == "Getting Started"
    assert "Install the widget." in result.content

@pytest.mark.asyncio
@pytest.mark.parametrize("url", [
    "http://localhost:8080/admin",
    "http://127.0.0.1/",
    "http://169.254.169.254/latest/meta-data/",
    "http://10.0.0.5/internal",
    "file:///etc/passwd",
])
async def test_fetch_rejects_non_public_urls(fetcher, mock_httpx_client, url):
    """Test private and non-http URLs are rejected before any request is made."""
    with pytest.raises(UnsafeUrlError) as exc_info:
        await fetcher.fetch(url)

    assert not exc_info.value.retryable
    mock_httpx_client.get.assert_not_called()

@pytest.mark.asyncio
async def test_fetcher_closes_client(mock_httpx_client):
    async with ContentFetcher(user_agent="test-agent", request_timeout=5.0):
        pass

    mock_httpx_client.aclose.assert_awaited_once()

def _redirecting_transport(location: str) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "example.com":
            return httpx.Response(302, headers={"Location": location})
        return httpx.Response(200, text="<html><body><main>Landing page</main></body></html>")
    return httpx.MockTransport(handler)

@pytest.mark.asyncio
async def test_fetch_rejects_redirect_to_metadata_address():
    """A public page redirecting into private infrastructure is refused at the hop."""
    transport = _redirecting_transport("http://169.254.169.254/latest/meta-data/")
    async with ContentFetcher(user_agent="test-agent", request_timeout=5.0, transport=transport) as fetcher:
        with pytest.raises(UnsafeUrlError):
            await fetcher.fetch("https://example.com/")

@pytest.mark.asyncio
async def test_fetch_follows_redirect_to_public_host():
    transport = _redirecting_transport("https://www.example.org/landing")
    async with ContentFetcher(user_agent="test-agent", request_timeout=5.0, transport=transport) as fetcher:
        result = await fetcher.fetch("https://example.com/")

    assert result.content == "Landing page"

@pytest.mark.asyncio
async def test_fetch_uses_first_content_container_in_document_order(fetcher, mock_httpx_client):
    mock_httpx_client.get.return_value = httpx.Response(
        200, text="<html><body><article>Article first</article><main>Main later</main></body></html>"
    )

    result = await fetcher.fetch("https://example.com/post")

    assert result.content == "Article first"

@pytest.mark.asyncio
async def test_fetch_collects_outgoing_links(fetcher, mock_httpx_client):
    mock_httpx_client.get.return_value = httpx.Response(200, text="""
        <html><body><main>
            <a href="/docs#setup">Docs</a>
            <a href="https://other.org/page">Partner</a>
            <a href="mailto:hello@example.com">Mail</a>
            <a href="/docs">Docs again</a>
            <p>Welcome.</p>
        </main></body></html>
    """)

    result = await fetcher.fetch("https://example.com/start")

    assert result.links == ["https://example.com/docs", "https://other.org/page"]
