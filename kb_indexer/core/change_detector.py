import hashlib
import logging
from datetime import datetime
from typing import Optional
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

from kb_indexer.models.document import UrlCrawlMetadata

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"http": 80, "https": 443}
TRACKING_PARAMS = frozenset({"gclid", "fbclid", "mc_cid", "mc_eid", "msclkid"})


def content_hash(content: str) -> str:
    """128-bit MD5 hex fingerprint of the UTF-8 content."""
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def _is_tracking_param(name: str) -> bool:
    return name.lower().startswith("utm_") or name.lower() in TRACKING_PARAMS


def normalize_url(url: str) -> str:
    """
    Canonical form of a URL for change detection.

    Lower-cases scheme and host, strips default ports, the fragment, a trailing
    slash on non-root paths and tracking query parameters, and sorts the rest
    of the query. Strings that do not parse as absolute URLs come back stripped
    but otherwise unchanged.
    """
    url = url.strip()
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return url
    if not parts.scheme or not parts.hostname:
        return url

    scheme = parts.scheme.lower()
    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"

    netloc = host
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"
    if parts.username:
        userinfo = parts.username if parts.password is None else f"{parts.username}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    path = parts.path or "/"
    if path != "/":
        path = path.rstrip("/") or "/"

    query_params = [
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(name)
    ]
    query = urlencode(sorted(query_params))

    return urlunsplit((scheme, netloc, path, query, ""))


class ChangeDetector:
    """
    Persists the latest content fingerprint per (chatbot, normalized url).

    Deciding whether to skip re-indexing unchanged pages belongs to whoever
    schedules refresh jobs; ``has_changed`` is provided for them.
    """
    def __init__(self, store):
        self.store = store

    def record(
        self,
        chatbot_id: str,
        url: str,
        content: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> UrlCrawlMetadata:
        metadata = UrlCrawlMetadata(
            chatbot_id=chatbot_id,
            url=normalize_url(url),
            content_hash=content_hash(content),
            last_crawled_at=datetime.utcnow(),
            etag=etag,
            last_modified=last_modified,
        )
        self.store.upsert_crawl_metadata(metadata)
        logger.debug(f"Recorded crawl fingerprint {metadata.content_hash} for {metadata.url} (chatbot {chatbot_id}).")
        return metadata

    def has_changed(self, chatbot_id: str, url: str, content: str) -> bool:
        previous = self.store.get_crawl_metadata(chatbot_id, normalize_url(url))
        if previous is None:
            return True
        return previous.content_hash != content_hash(content)
