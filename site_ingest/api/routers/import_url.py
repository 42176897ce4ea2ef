import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from site_ingest.core.errors import IngestionRejected
from site_ingest.core.orchestrator import IngestionOrchestrator
from site_ingest.dependencies import get_current_user_id, get_orchestrator, get_request_context
from site_ingest.models.events import CrawlErrorEvent, ProgressCounters, event_to_json
from site_ingest.models.schemas import ErrorResponse, ImportUrlRequest
from site_ingest.utils.logger import get_request_logger

logger = logging.getLogger(__name__)
router = APIRouter()

DONE_SENTINEL = "[DONE]"


def format_sse(data: str) -> str:
    return f"data: {data}\n\n"


async def sse_events(events: AsyncIterator[ProgressCounters]) -> AsyncIterator[str]:
    """
    Frames progress events as Server-Sent Events. The stream always ends
    with exactly one ``[DONE]`` line, including after an unexpected failure.
    """
    try:
        async for event in events:
            yield format_sse(event_to_json(event))
    except Exception as e:
        logger.error(f"Import stream failed: {e}", exc_info=True)
        yield format_sse(event_to_json(CrawlErrorEvent(error="Import failed unexpectedly")))
    yield format_sse(DONE_SENTINEL)


@router.post(
    "/rag/import-url",
    summary="Crawl a website and index its pages",
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def import_url(
    body: ImportUrlRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    """
    Validates the request, then streams crawl progress as Server-Sent Events
    (``data: {json}`` lines terminated by ``data: [DONE]``). Requests that
    fail validation, quota or plan checks get a JSON error instead and no
    stream is opened.
    """
    context = await get_request_context(request)
    request_logger = get_request_logger({"path": context["path"], "user": user_id})

    try:
        plan = await orchestrator.prepare(body.url, user_id, body.max_pages)
    except IngestionRejected as e:
        request_logger.info(f"Import of {body.url!r} rejected ({e.status_code}): {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)

    request_logger.info(f"Starting crawl job {plan.crawl_job_id} for {plan.source_url} (budget {plan.page_budget})")
    return StreamingResponse(
        sse_events(orchestrator.stream(plan)),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "X-Crawl-Job-Id": plan.crawl_job_id,
        },
    )
