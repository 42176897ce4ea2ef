from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from site_ingest.models.document import DocumentStatus

# --- API Request/Response Schemas ---

class ImportUrlRequest(BaseModel):
    """
    Schema for the POST /rag/import-url request body.
    """
    url: str = Field(
        ...,
        min_length=1,
        description="Seed URL of the site to crawl and index.",
        examples=["https://www.example.com/docs"]
    )
    max_pages: Optional[int] = Field(
        None,
        gt=0,
        description="Optional page budget. Capped by plan quota and the crawler's hard ceiling.",
        examples=[10]
    )

class ErrorResponse(BaseModel):
    """
    Schema for rejection responses returned before any stream begins.
    """
    detail: str = Field(..., description="Human-readable reason the request was rejected.")

class DocumentResponse(BaseModel):
    """
    Schema for a single ingested document.
    """
    id: str
    source_url: str
    crawl_job_id: Optional[str] = None
    title: Optional[str] = None
    status: DocumentStatus
    word_count: int = 0
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None
    chunk_count: Optional[int] = Field(None, description="Number of stored chunks, on single-document reads.")

class DocumentListResponse(BaseModel):
    documents: List[DocumentResponse] = Field(default_factory=list)
    total: int = 0

class HealthCheckResponse(BaseModel):
    """
    Schema for the GET /health response body.
    """
    status: str = Field("ok", description="Status of the API service.")
    timestamp: datetime = Field(..., description="Current server time.")
    version: str = Field(..., description="Application version.")
