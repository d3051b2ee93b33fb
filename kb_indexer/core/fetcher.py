import httpx
import logging
from typing import Optional

from kb_indexer.exceptions import FetchError, EmptyContentError
from kb_indexer.models.document import FetchResult
from kb_indexer.utils.text_utils import extract_links, extract_main_content
from kb_indexer.utils.url_safety import validate_public_url

logger = logging.getLogger(__name__)

class ContentFetcher:
    """
    Fetches a single web page and extracts its title and main text content.
    """
    def __init__(
        self,
        user_agent: str,
        request_timeout: float,
        max_content_chars: int = 50000,
        block_private_urls: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_content_chars = max_content_chars
        self.block_private_urls = block_private_urls
        self.client = httpx.AsyncClient(
            headers={"User-Agent": self.user_agent},
            timeout=self.request_timeout,
            follow_redirects=True,
            event_hooks={"request": [self._check_request_url]},
            transport=transport,
        )

    async def _check_request_url(self, request: httpx.Request):
        # Runs for the first request and for every redirect hop.
        if self.block_private_urls:
            validate_public_url(str(request.url))

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetches ``url`` and returns its cleaned text.

        Raises:
            UnsafeUrlError: the URL targets a non-public address.
            FetchError: the request failed or returned a non-2xx status.
            EmptyContentError: no text could be extracted from the page.
        """
        if self.block_private_urls:
            validate_public_url(url)

        try:
            response = await self.client.get(url)
        except httpx.TimeoutException as e:
            logger.warning(f"Timed out fetching {url} after {self.request_timeout}s: {e}")
            raise FetchError(f"Request timed out after {self.request_timeout}s") from e
        except httpx.RequestError as e:
            logger.warning(f"Request error fetching {url}: {e}")
            raise FetchError(f"Request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            logger.warning(f"HTTP {response.status_code} fetching {url}")
            raise FetchError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code
            )

        title, content = extract_main_content(response.text)
        content = content[:self.max_content_chars].strip()

        if not content:
            raise EmptyContentError("No content could be extracted from the page")

        logger.info(f"Fetched {url}: {len(content)} characters, title '{title}'.")
        return FetchResult(
            url=url,
            content=content,
            title=title,
            etag=response.headers.get("etag"),
            last_modified=response.headers.get("last-modified"),
            links=extract_links(response.text, url),
        )

    async def aclose(self):
        await self.client.aclose()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def __aenter__(self):
        return self


def build_fetcher(settings) -> ContentFetcher:
    return ContentFetcher(
        user_agent=settings.FETCHER_USER_AGENT,
        request_timeout=settings.FETCHER_REQUEST_TIMEOUT,
        max_content_chars=settings.FETCHER_MAX_CONTENT_CHARS,
        block_private_urls=settings.FETCHER_BLOCK_PRIVATE_URLS,
    )
