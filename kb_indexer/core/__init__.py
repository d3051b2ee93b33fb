"""
Core pipeline components
"""
from .fetcher import ContentFetcher
from .change_detector import ChangeDetector
from .chunker import Chunker
from .embedder import EmbeddingService
from .quota import QuotaGuard
from .site_crawler import SiteCrawler
from .worker import IndexingWorker

__all__ = [
    "ContentFetcher",
    "ChangeDetector",
    "Chunker",
    "EmbeddingService",
    "QuotaGuard",
    "SiteCrawler",
    "IndexingWorker",
]
