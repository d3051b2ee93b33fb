import asyncio
import logging
from typing import List, Set, Tuple
from urllib.parse import urlparse

from kb_indexer.core.change_detector import normalize_url
from kb_indexer.core.fetcher import ContentFetcher
from kb_indexer.exceptions import FetchError, EmptyContentError
from kb_indexer.models.job import TaskSpec

logger = logging.getLogger(__name__)

class SiteCrawler:
    """
    Discovers the pages of a website by following links breadth-first from a start
    URL, bounded by link depth and page count.

    Discovery only collects page URLs. Each page is fetched again by its own
    indexing task, so retries, quota and change detection apply per page.
    """
    def __init__(
        self,
        fetcher: ContentFetcher,
        max_depth: int = 2,
        max_pages: int = 50,
        same_domain_only: bool = True,
        delay_seconds: float = 0.1,
    ):
        self.fetcher = fetcher
        self.max_depth = max_depth
        self.max_pages = max_pages
        self.same_domain_only = same_domain_only
        self.delay_seconds = delay_seconds

    async def discover(self, start_url: str) -> List[str]:
        """
        Returns the normalized URLs of up to ``max_pages`` reachable pages, start page
        first. The start page is always included, even when it cannot be fetched, so
        its failure surfaces on its indexing task.
        """
        start_url = normalize_url(start_url)
        start_host = urlparse(start_url).hostname
        visited: Set[str] = set()
        urls_to_visit: List[Tuple[str, int]] = [(start_url, 0)]
        pages: List[str] = []

        while urls_to_visit and len(pages) < self.max_pages:
            current_url, current_depth = urls_to_visit.pop(0)
            if current_url in visited or current_depth > self.max_depth:
                continue
            visited.add(current_url)

            try:
                result = await self.fetcher.fetch(current_url)
            except (FetchError, EmptyContentError) as e:
                logger.warning(f"Discovery skipped {current_url} (depth {current_depth}): {e}")
                if current_depth == 0:
                    pages.append(current_url)
                continue

            pages.append(current_url)
            if current_depth < self.max_depth:
                for link in result.links:
                    link = normalize_url(link)
                    if link in visited:
                        continue
                    if self.same_domain_only and urlparse(link).hostname != start_host:
                        continue
                    urls_to_visit.append((link, current_depth + 1))

            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)

        logger.info(f"Discovered {len(pages)} pages from {start_url} (max depth {self.max_depth}, max pages {self.max_pages}).")
        return pages

    async def expand_sources(self, sources: List[TaskSpec]) -> List[TaskSpec]:
        """
        Replaces every website source with one source per discovered page. Document
        sources pass through unchanged. A page reached from several sources is kept once.
        """
        expanded: List[TaskSpec] = []
        seen: Set[str] = set()
        for source in sources:
            if source.source_type != "website":
                expanded.append(source)
                continue
            start_url = normalize_url(source.source_url)
            for page_url in await self.discover(source.source_url):
                if page_url in seen:
                    continue
                seen.add(page_url)
                title = source.title if page_url == start_url else None
                expanded.append(TaskSpec(source_type="website", source_url=page_url, title=title))
        return expanded


def build_site_crawler(settings, fetcher: ContentFetcher, max_depth=None, max_pages=None, same_domain_only=None) -> SiteCrawler:
    return SiteCrawler(
        fetcher,
        max_depth=settings.CRAWL_MAX_DEPTH if max_depth is None else max_depth,
        max_pages=settings.CRAWL_MAX_PAGES if max_pages is None else max_pages,
        same_domain_only=settings.CRAWL_SAME_DOMAIN_ONLY if same_domain_only is None else same_domain_only,
        delay_seconds=settings.CRAWL_DELAY_SECONDS,
    )
