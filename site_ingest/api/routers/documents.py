import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from site_ingest.dependencies import get_current_user_id, get_document_store
from site_ingest.models.document import DocumentRecord
from site_ingest.models.schemas import DocumentListResponse, DocumentResponse, ErrorResponse
from site_ingest.services.document_store import DocumentStore

logger = logging.getLogger(__name__)
router = APIRouter()


def _to_response(record: DocumentRecord, chunk_count: Optional[int] = None) -> DocumentResponse:
    return DocumentResponse(chunk_count=chunk_count, **record.model_dump(exclude={"user_id", "content_size"}))


async def _get_owned_document(document_id: str, user_id: str, store: DocumentStore) -> DocumentRecord:
    record = await store.get_document(document_id)
    if record is None or record.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    return record


@router.get("/rag/documents", response_model=DocumentListResponse, summary="List imported documents")
async def list_documents(
    crawl_job_id: Optional[str] = Query(None, description="Only documents created by this crawl job."),
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_document_store),
):
    records = await store.list_documents(user_id, crawl_job_id=crawl_job_id)
    return DocumentListResponse(documents=[_to_response(r) for r in records], total=len(records))


@router.get(
    "/rag/documents/{document_id}",
    response_model=DocumentResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get one imported document",
)
async def get_document(
    document_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_document_store),
):
    record = await _get_owned_document(document_id, user_id, store)
    return _to_response(record, chunk_count=await store.count_chunks(document_id))


@router.delete(
    "/rag/documents/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete a document and its chunks",
)
async def delete_document(
    document_id: str,
    user_id: str = Depends(get_current_user_id),
    store: DocumentStore = Depends(get_document_store),
):
    await _get_owned_document(document_id, user_id, store)
    await store.delete_document(document_id)
    logger.info(f"User {user_id} deleted document {document_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
