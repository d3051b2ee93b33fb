from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from kb_indexer.models.job import SourceType


class FetchResult(BaseModel):
    """
    Clean text extracted from a single fetched web page.
    """
    url: str
    content: str
    title: str = ""
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    links: List[str] = []  # Outgoing http(s) links, used for site discovery


class ChunkMetadata(BaseModel):
    title: Optional[str] = None
    headings: List[str] = []
    keywords: List[str] = []


class ContentChunk(BaseModel):
    """
    A size-bounded piece of source text produced by the chunker.
    """
    text: str
    index: int # Position within the source, contiguous after quality filtering
    content_hash: str
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)


class KnowledgeChunk(BaseModel):
    """
    A persisted, optionally embedded chunk belonging to a chatbot's knowledge base.
    """
    chunk_id: str
    chatbot_id: str
    source_type: SourceType
    source_url: str
    source_title: Optional[str] = None
    chunk_text: str
    chunk_index: int
    content_hash: str
    embedding: Optional[List[float]] = None # None when generation failed; unavailable for vector search
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class UrlCrawlMetadata(BaseModel):
    """
    Latest content fingerprint for one (chatbot, normalized url) pair.
    """
    chatbot_id: str
    url: str
    content_hash: str
    last_crawled_at: datetime = Field(default_factory=datetime.utcnow)
    etag: Optional[str] = None
    last_modified: Optional[str] = None
