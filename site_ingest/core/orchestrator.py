"""
Runs a URL import end to end.

``prepare`` applies every admission check and returns a plan (or raises
IngestionRejected before anything is crawled or stored). ``run`` crawls the
site and pushes each page through chunking, embedding and storage as soon as
it is fetched, reporting progress through a callback. ``stream`` exposes the
same events as an async iterator for the HTTP layer.
"""
import uuid
import asyncio
import logging
from contextlib import aclosing
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Optional, Tuple

from pydantic import BaseModel

from site_ingest.config import settings
from site_ingest.core.chunker import chunk_text
from site_ingest.core.crawler import CrawlStats, SiteCrawler
from site_ingest.core.embedder import BaseEmbedder, generate_embeddings_in_batches
from site_ingest.core.errors import (
    CrawlBlockedError,
    DuplicateDocumentError,
    IngestionRejected,
    PageProcessingError,
)
from site_ingest.core.url_validator import UrlValidationResult, normalize_url, validate_url
from site_ingest.models.document import ChunkRecord, CrawlPage, DocumentCreate, DocumentStatus, ValidatedUrl
from site_ingest.models.events import (
    CrawlCompleteEvent,
    CrawlErrorEvent,
    PageErrorEvent,
    PageReadyEvent,
    ProgressCounters,
)
from site_ingest.services.billing import BillingClient
from site_ingest.services.document_store import DocumentStore
from site_ingest.services.rate_limiter import InFlightTracker, RateLimiter

logger = logging.getLogger(__name__)

EmitCallback = Callable[[ProgressCounters], None]

LIMIT_REACHED_NOTE = "Reached document limit"

_END = object()


class IngestionPlan(BaseModel):
    user_id: str
    crawl_job_id: str
    source_url: str
    seed: ValidatedUrl
    page_budget: int


class ProgressTracker:
    """
    Merges crawler counters with indexing results into the counters sent to
    the client: processed counts indexed pages, failed counts fetch and
    indexing failures together.
    """

    def __init__(self):
        self.indexed = 0
        self.index_failed = 0
        self.crawl_skipped = 0
        self.crawl_failed = 0
        self.crawl_total = 0
        self._last_total = 0

    def absorb(self, event: ProgressCounters) -> None:
        self.crawl_skipped = max(self.crawl_skipped, event.pages_skipped)
        self.crawl_failed = max(self.crawl_failed, event.pages_failed)
        self.crawl_total = max(self.crawl_total, event.pages_total)

    @property
    def failed(self) -> int:
        return self.crawl_failed + self.index_failed

    @property
    def accounted(self) -> int:
        return self.indexed + self.crawl_skipped + self.failed

    def counters(self) -> dict:
        self._last_total = max(self._last_total, self.crawl_total, self.accounted)
        return {
            "pages_processed": self.indexed,
            "pages_total": self._last_total,
            "pages_skipped": self.crawl_skipped,
            "pages_failed": self.failed,
        }

    def final_counters(self) -> dict:
        return {
            "pages_processed": self.indexed,
            "pages_total": self.accounted,
            "pages_skipped": self.crawl_skipped,
            "pages_failed": self.failed,
        }

    def stamp(self, event: ProgressCounters) -> ProgressCounters:
        return event.model_copy(update=self.counters())


class IngestionOrchestrator:
    def __init__(
        self,
        store: DocumentStore,
        embedder: BaseEmbedder,
        billing: BillingClient,
        rate_limiter: RateLimiter,
        crawler: Optional[SiteCrawler] = None,
        in_flight: Optional[InFlightTracker] = None,
        validator: Callable[[str], Any] = validate_url,
        document_limit: int = settings.RAG_DOCUMENT_LIMIT,
        daily_limit: int = settings.RAG_DAILY_UPLOAD_LIMIT,
        rate_limit: int = settings.IMPORT_RATE_LIMIT,
        rate_window_seconds: int = settings.IMPORT_RATE_WINDOW_SECONDS,
        max_pages_ceiling: int = settings.CRAWL_MAX_PAGES,
        stale_after_seconds: int = settings.INGEST_STALE_AFTER_SECONDS,
        chunk_size: int = settings.RAG_CHUNK_SIZE,
        chunk_overlap: int = settings.RAG_CHUNK_OVERLAP,
        embedding_batch_size: int = settings.EMBEDDING_BATCH_SIZE,
        embedding_concurrency: int = settings.EMBEDDING_MAX_CONCURRENCY,
    ):
        self.store = store
        self.embedder = embedder
        self.billing = billing
        self.rate_limiter = rate_limiter
        self.crawler = crawler or SiteCrawler()
        self.in_flight = in_flight or InFlightTracker()
        self.validator = validator
        self.document_limit = document_limit
        self.daily_limit = daily_limit
        self.rate_limit = rate_limit
        self.rate_window_seconds = rate_window_seconds
        self.max_pages_ceiling = max_pages_ceiling
        self.stale_after_seconds = stale_after_seconds
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.embedding_batch_size = embedding_batch_size
        self.embedding_concurrency = embedding_concurrency

    # --- Admission ---

    async def prepare(self, raw_url: str, user_id: str, requested_max: Optional[int] = None) -> IngestionPlan:
        """
        Validates the request and computes the page budget.
        Raises IngestionRejected with the HTTP status to return; nothing is
        persisted and no page is fetched in that case.
        """
        validation: UrlValidationResult = await self.validator(raw_url)
        if not validation.valid or validation.url is None:
            raise IngestionRejected(400, validation.error or "Invalid URL")
        seed = validation.url

        decision = await self.billing.get_plan(user_id)
        if not decision.allowed:
            plans = " or ".join(p.capitalize() for p in settings.IMPORT_ALLOWED_PLANS)
            raise IngestionRejected(403, f"{plans} plan required for URL import")

        existing = await self.store.find_document_by_source_url(user_id, seed.url)
        if existing is not None:
            stale_before = datetime.utcnow() - timedelta(seconds=self.stale_after_seconds)
            if existing.status == DocumentStatus.PROCESSING and existing.updated_at < stale_before:
                logger.warning(f"Removing abandoned import of {seed.url} for user {user_id} (document {existing.id})")
                await self.store.delete_document(existing.id)
            else:
                raise IngestionRejected(409, "This URL has already been imported. Delete the existing import first.")

        if not await self.in_flight.has_capacity(user_id):
            raise IngestionRejected(429, "An import is already running. Please wait for it to finish.")

        window_start = datetime.utcnow() - timedelta(seconds=self.rate_window_seconds)
        recent_jobs = await self.store.count_crawl_jobs_since(user_id, window_start)
        if recent_jobs >= self.rate_limit:
            raise IngestionRejected(429, "Too many imports. Please try again later.")

        total_documents = await self.store.count_documents_for_user(user_id)
        remaining_documents = self.document_limit - total_documents
        if remaining_documents <= 0:
            raise IngestionRejected(400, f"Document limit reached ({self.document_limit}). Delete documents to import more.")

        today_start = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        today_documents = await self.store.count_documents_for_user(user_id, since=today_start)
        remaining_today = self.daily_limit - today_documents
        if remaining_today <= 0:
            raise IngestionRejected(400, f"Daily upload limit reached ({self.daily_limit}). Try again tomorrow.")

        if not self.embedder.credentials_configured():
            raise IngestionRejected(503, "Embedding service is not configured.")

        if not await self.rate_limiter.try_admit(user_id):
            raise IngestionRejected(429, "Too many imports. Please try again later.")

        budget = min(remaining_documents, remaining_today, self.max_pages_ceiling)
        if requested_max is not None:
            budget = min(budget, requested_max)

        return IngestionPlan(
            user_id=user_id,
            crawl_job_id=str(uuid.uuid4()),
            source_url=seed.url,
            seed=seed,
            page_budget=budget,
        )

    # --- Per-page pipeline ---

    async def _mark_failed(self, document_id: str, message: str) -> None:
        try:
            await self.store.delete_chunks(document_id)
        except Exception as e:
            logger.error(f"Could not remove chunks of document {document_id}: {e}")
        try:
            await self.store.update_document_status(document_id, DocumentStatus.FAILED, error_message=message)
        except Exception as e:
            logger.error(f"Could not mark document {document_id} as failed: {e}")

    async def index_page(self, page: CrawlPage, plan: IngestionPlan) -> Tuple[Optional[str], Optional[str]]:
        """
        Stores one page: document row, chunks, embeddings, status.
        Returns (document_id, None) on success or (None, error message); a
        failed page never leaves chunks behind.
        """
        source_url = normalize_url(page.url) or page.url
        try:
            document = await self.store.insert_document(
                DocumentCreate(
                    user_id=plan.user_id,
                    source_url=source_url,
                    crawl_job_id=plan.crawl_job_id,
                    title=page.title,
                    word_count=page.word_count,
                    content_size=len(page.content.encode("utf-8")),
                )
            )
        except DuplicateDocumentError:
            return None, "Page already imported"
        except Exception as e:
            logger.error(f"Job {plan.crawl_job_id}: Could not create document for {source_url}: {e}")
            return None, f"Could not save page: {e}"

        try:
            chunks = chunk_text(
                page.content,
                start_index=0,
                page_number=1,
                chunk_size=self.chunk_size,
                chunk_overlap=self.chunk_overlap,
            )
            if not chunks:
                raise PageProcessingError("No content to chunk")

            embeddings = await generate_embeddings_in_batches(
                [c.content for c in chunks],
                self.embedder,
                batch_size=self.embedding_batch_size,
                max_concurrency=self.embedding_concurrency,
            )
            records = [
                ChunkRecord(
                    document_id=document.id,
                    user_id=plan.user_id,
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    embedding=embedding,
                    token_count=chunk.token_count,
                    page_number=chunk.page_number,
                )
                for chunk, embedding in zip(chunks, embeddings)
            ]
            await self.store.insert_chunks(document.id, records)
            await self.store.update_document_status(document.id, DocumentStatus.READY)
        except asyncio.CancelledError:
            logger.warning(f"Job {plan.crawl_job_id}: Import cancelled while indexing {source_url}")
            await self._mark_failed(document.id, "Import cancelled")
            raise
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.warning(f"Job {plan.crawl_job_id}: Failed to index {source_url}: {message}")
            await self._mark_failed(document.id, message)
            return None, message

        logger.info(f"Job {plan.crawl_job_id}: Indexed {source_url} as {document.id} ({len(records)} chunks)")
        return document.id, None

    # --- Execution ---

    async def run(self, plan: IngestionPlan, emit: EmitCallback, signal: Optional[asyncio.Event] = None) -> None:
        """
        Crawls and indexes the site described by ``plan``. Every event goes
        through ``emit``; the last one is always a single crawl_complete or
        crawl_error. Per-page failures are reported and the crawl continues.
        """
        progress = ProgressTracker()
        stats = CrawlStats()

        def relay(event: ProgressCounters) -> None:
            progress.absorb(event)
            emit(progress.stamp(event))

        await self.in_flight.acquire(plan.user_id)
        try:
            logger.info(f"Job {plan.crawl_job_id}: Importing {plan.source_url} for user {plan.user_id} (budget {plan.page_budget})")
            try:
                pages = self.crawler.iter_pages(
                    plan.seed,
                    relay,
                    max_pages=plan.page_budget,
                    signal=signal,
                    resolved_ips=plan.seed.resolved_ips,
                    stats=stats,
                    job_id=plan.crawl_job_id,
                )
                async with aclosing(pages):
                    async for page in pages:
                        document_id, error = await self.index_page(page, plan)
                        if error is None:
                            progress.indexed += 1
                            emit(progress.stamp(PageReadyEvent(url=page.url, title=page.title, document_id=document_id)))
                        else:
                            progress.index_failed += 1
                            emit(progress.stamp(PageErrorEvent(url=page.url, error=error)))
            except CrawlBlockedError as e:
                emit(CrawlErrorEvent(error=str(e), **progress.counters()))
                return
            except Exception as e:
                logger.error(f"Job {plan.crawl_job_id}: Crawl failed: {e}", exc_info=True)
                emit(CrawlErrorEvent(error=str(e) or "Crawl failed", **progress.counters()))
                return

            # Links still queued at the budget mean the limit cut the crawl short
            limit_reached = progress.indexed >= plan.page_budget and stats.queued > 0
            note = LIMIT_REACHED_NOTE if limit_reached else None
            emit(CrawlCompleteEvent(error=note, **progress.final_counters()))
            logger.info(
                f"Job {plan.crawl_job_id}: Import finished. indexed={progress.indexed} "
                f"skipped={progress.crawl_skipped} failed={progress.failed}"
            )
        finally:
            await self.in_flight.release(plan.user_id)

    async def stream(self, plan: IngestionPlan, signal: Optional[asyncio.Event] = None) -> AsyncIterator[ProgressCounters]:
        """
        Runs the import in a background task and yields its events in order.
        Closing the iterator early (client disconnect) sets the cancel signal;
        the page being indexed is finished before the crawl stops.
        """
        signal = signal or asyncio.Event()
        queue: asyncio.Queue = asyncio.Queue()

        async def produce() -> None:
            try:
                await self.run(plan, queue.put_nowait, signal)
            finally:
                queue.put_nowait(_END)

        task = asyncio.create_task(produce())
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                yield item
            await task
        finally:
            if not task.done():
                logger.info(f"Job {plan.crawl_job_id}: Client went away, stopping crawl after the current page")
                signal.set()
                await asyncio.shield(task)

    async def import_url(
        self,
        raw_url: str,
        user_id: str,
        requested_max: Optional[int] = None,
        signal: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ProgressCounters]:
        """Convenience wrapper: prepare, then stream. Rejections raise on first iteration."""
        plan = await self.prepare(raw_url, user_id, requested_max)
        async for event in self.stream(plan, signal):
            yield event
