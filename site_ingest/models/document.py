from enum import Enum
from typing import FrozenSet, List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class DocumentStatus(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class ValidatedUrl(BaseModel):
    """
    A URL that passed SSRF validation, together with the IP addresses its
    hostname resolved to at validation time. Every fetch of the crawl must
    connect to one of these addresses.
    """
    model_config = ConfigDict(frozen=True)

    url: str
    hostname: str
    resolved_ips: FrozenSet[str]


class CrawlPage(BaseModel):
    """
    A fetched page with its normalized text. Produced by the crawler and
    consumed immediately by the orchestrator; not persisted as-is.
    """
    url: str
    title: Optional[str] = None
    content: str
    word_count: int = 0
    depth: int = 0
    status_code: int = 200


class CrawlResult(BaseModel):
    pages: List[CrawlPage] = []
    skipped_pages: int = 0
    failed_pages: int = 0
    root_url: str
    hostname: str


class TextChunk(BaseModel):
    """
    A bounded slice of page text prepared for embedding.
    """
    chunk_index: int
    content: str
    page_number: Optional[int] = None
    token_count: int


class DocumentCreate(BaseModel):
    """Fields supplied when a page document is first inserted."""
    user_id: str
    source_url: str
    crawl_job_id: Optional[str] = None
    title: Optional[str] = None
    word_count: int = 0
    content_size: int = 0
    status: DocumentStatus = DocumentStatus.PROCESSING


class DocumentRecord(DocumentCreate):
    """
    One ingested page as persisted. (user_id, source_url) is unique.
    """
    id: str
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    processed_at: Optional[datetime] = None


class ChunkRecord(BaseModel):
    """
    A persisted chunk with its embedding. Owned by its document: deleting the
    document deletes its chunks.
    """
    document_id: str
    user_id: str
    chunk_index: int
    content: str
    embedding: List[float]
    token_count: int
    page_number: Optional[int] = None
