import json
import uuid
import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

import databases
import sqlalchemy

from site_ingest.core.errors import DuplicateDocumentError
from site_ingest.database import create_tables, rag_document_chunks, rag_documents
from site_ingest.models.document import ChunkRecord, DocumentCreate, DocumentRecord, DocumentStatus

logger = logging.getLogger(__name__)

CHUNK_FIELDS = ("document_id", "user_id", "chunk_index", "content", "embedding", "token_count", "page_number")


def _validate_chunks(document_id: str, chunks: List[ChunkRecord]) -> None:
    indexes = sorted(c.chunk_index for c in chunks)
    if indexes != list(range(len(chunks))):
        raise ValueError(f"Chunk indexes for document {document_id} must be dense and start at 0")
    if any(c.document_id != document_id for c in chunks):
        raise ValueError(f"All chunks must belong to document {document_id}")


class DocumentStore(ABC):
    """
    Persistence for page documents and their chunks.

    (user_id, source_url) is unique across documents, and
    (document_id, chunk_index) across chunks. ``insert_chunks`` is
    all-or-nothing; deleting a document deletes its chunks.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def insert_document(self, document: DocumentCreate) -> DocumentRecord:
        """Raises DuplicateDocumentError if the user already has this source URL."""

    @abstractmethod
    async def update_document_status(
        self, document_id: str, status: DocumentStatus, error_message: Optional[str] = None
    ) -> None:
        pass

    @abstractmethod
    async def insert_chunks(self, document_id: str, chunks: List[ChunkRecord]) -> int:
        pass

    @abstractmethod
    async def delete_chunks(self, document_id: str) -> int:
        pass

    @abstractmethod
    async def count_chunks(self, document_id: str) -> int:
        pass

    @abstractmethod
    async def list_chunks(self, document_id: str) -> List[ChunkRecord]:
        pass

    @abstractmethod
    async def count_documents_for_user(self, user_id: str, since: Optional[datetime] = None) -> int:
        pass

    @abstractmethod
    async def count_crawl_jobs_since(self, user_id: str, since: datetime) -> int:
        """Distinct crawl jobs that created at least one document at or after ``since``."""

    @abstractmethod
    async def find_document_by_source_url(self, user_id: str, source_url: str) -> Optional[DocumentRecord]:
        pass

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        pass

    @abstractmethod
    async def list_documents(self, user_id: str, crawl_job_id: Optional[str] = None) -> List[DocumentRecord]:
        pass

    @abstractmethod
    async def delete_document(self, document_id: str) -> bool:
        pass


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store. Used in tests and for single-instance deployments
    that do not need durability.
    """

    def __init__(self):
        self._documents: Dict[str, DocumentRecord] = {}
        self._chunks: Dict[str, List[ChunkRecord]] = {}
        self._lock = asyncio.Lock()

    async def insert_document(self, document: DocumentCreate) -> DocumentRecord:
        async with self._lock:
            for existing in self._documents.values():
                if existing.user_id == document.user_id and existing.source_url == document.source_url:
                    raise DuplicateDocumentError(f"Document already exists for {document.source_url}")
            now = datetime.utcnow()
            record = DocumentRecord(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                **document.model_dump(),
            )
            self._documents[record.id] = record
            return record.model_copy()

    async def update_document_status(
        self, document_id: str, status: DocumentStatus, error_message: Optional[str] = None
    ) -> None:
        async with self._lock:
            record = self._documents.get(document_id)
            if record is None:
                raise KeyError(f"Document {document_id} not found")
            now = datetime.utcnow()
            record.status = status
            record.error_message = error_message
            record.updated_at = now
            if status == DocumentStatus.READY:
                record.processed_at = now

    async def insert_chunks(self, document_id: str, chunks: List[ChunkRecord]) -> int:
        async with self._lock:
            if document_id not in self._documents:
                raise KeyError(f"Document {document_id} not found")
            if self._chunks.get(document_id):
                raise ValueError(f"Document {document_id} already has chunks")
            _validate_chunks(document_id, chunks)
            self._chunks[document_id] = [c.model_copy() for c in sorted(chunks, key=lambda c: c.chunk_index)]
            return len(chunks)

    async def delete_chunks(self, document_id: str) -> int:
        async with self._lock:
            return len(self._chunks.pop(document_id, []))

    async def count_chunks(self, document_id: str) -> int:
        async with self._lock:
            return len(self._chunks.get(document_id, []))

    async def list_chunks(self, document_id: str) -> List[ChunkRecord]:
        async with self._lock:
            return [c.model_copy() for c in self._chunks.get(document_id, [])]

    async def count_documents_for_user(self, user_id: str, since: Optional[datetime] = None) -> int:
        async with self._lock:
            return sum(
                1 for d in self._documents.values()
                if d.user_id == user_id and (since is None or d.created_at >= since)
            )

    async def count_crawl_jobs_since(self, user_id: str, since: datetime) -> int:
        async with self._lock:
            return len({
                d.crawl_job_id for d in self._documents.values()
                if d.user_id == user_id and d.crawl_job_id and d.created_at >= since
            })

    async def find_document_by_source_url(self, user_id: str, source_url: str) -> Optional[DocumentRecord]:
        async with self._lock:
            for d in self._documents.values():
                if d.user_id == user_id and d.source_url == source_url:
                    return d.model_copy()
            return None

    async def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        async with self._lock:
            record = self._documents.get(document_id)
            return record.model_copy() if record else None

    async def list_documents(self, user_id: str, crawl_job_id: Optional[str] = None) -> List[DocumentRecord]:
        async with self._lock:
            records = [
                d.model_copy() for d in self._documents.values()
                if d.user_id == user_id and (crawl_job_id is None or d.crawl_job_id == crawl_job_id)
            ]
        return sorted(records, key=lambda d: d.created_at, reverse=True)

    async def delete_document(self, document_id: str) -> bool:
        async with self._lock:
            self._chunks.pop(document_id, None)
            return self._documents.pop(document_id, None) is not None


def _is_unique_violation(exc: Exception) -> bool:
    if isinstance(exc, sqlite3.IntegrityError):
        return "UNIQUE" in str(exc).upper()
    # asyncpg / psycopg expose the SQLSTATE code
    return getattr(exc, "sqlstate", None) == "23505" or getattr(exc, "pgcode", None) == "23505"


class SqlDocumentStore(DocumentStore):
    """
    Store backed by the ``databases`` async driver and the SQLAlchemy tables
    in ``site_ingest.database``.
    """

    def __init__(self, database: databases.Database, create_schema: bool = True):
        self.database = database
        self.create_schema = create_schema

    async def connect(self) -> None:
        if self.create_schema:
            create_tables(str(self.database.url))
        await self.database.connect()
        logger.info(f"Connected document store to {self.database.url.dialect}")

    async def disconnect(self) -> None:
        await self.database.disconnect()

    @staticmethod
    def _to_record(row) -> DocumentRecord:
        data = {column.name: row[column.name] for column in rag_documents.columns}
        data["status"] = DocumentStatus(data["status"])
        return DocumentRecord(**data)

    async def insert_document(self, document: DocumentCreate) -> DocumentRecord:
        now = datetime.utcnow()
        record = DocumentRecord(id=str(uuid.uuid4()), created_at=now, updated_at=now, **document.model_dump())
        values = record.model_dump()
        values["status"] = record.status.value
        try:
            await self.database.execute(rag_documents.insert().values(**values))
        except Exception as e:
            if _is_unique_violation(e):
                raise DuplicateDocumentError(f"Document already exists for {document.source_url}") from e
            raise
        return record

    async def update_document_status(
        self, document_id: str, status: DocumentStatus, error_message: Optional[str] = None
    ) -> None:
        now = datetime.utcnow()
        values = {"status": status.value, "error_message": error_message, "updated_at": now}
        if status == DocumentStatus.READY:
            values["processed_at"] = now
        query = rag_documents.update().where(rag_documents.c.id == document_id).values(**values)
        await self.database.execute(query)

    async def insert_chunks(self, document_id: str, chunks: List[ChunkRecord]) -> int:
        _validate_chunks(document_id, chunks)
        if not chunks:
            return 0
        async with self.database.transaction():
            await self.database.execute_many(
                query=rag_document_chunks.insert(),
                values=[c.model_dump() for c in chunks],
            )
        return len(chunks)

    async def delete_chunks(self, document_id: str) -> int:
        count = await self.count_chunks(document_id)
        await self.database.execute(
            rag_document_chunks.delete().where(rag_document_chunks.c.document_id == document_id)
        )
        return count

    async def count_chunks(self, document_id: str) -> int:
        query = (
            sqlalchemy.select(sqlalchemy.func.count())
            .select_from(rag_document_chunks)
            .where(rag_document_chunks.c.document_id == document_id)
        )
        return int(await self.database.fetch_val(query) or 0)

    async def list_chunks(self, document_id: str) -> List[ChunkRecord]:
        query = (
            sqlalchemy.select(*[rag_document_chunks.c[name] for name in CHUNK_FIELDS])
            .where(rag_document_chunks.c.document_id == document_id)
            .order_by(rag_document_chunks.c.chunk_index)
        )
        rows = await self.database.fetch_all(query)
        chunks = []
        for row in rows:
            data = {name: row[name] for name in CHUNK_FIELDS}
            if isinstance(data["embedding"], (str, bytes)):
                data["embedding"] = json.loads(data["embedding"])
            chunks.append(ChunkRecord(**data))
        return chunks

    async def count_documents_for_user(self, user_id: str, since: Optional[datetime] = None) -> int:
        query = (
            sqlalchemy.select(sqlalchemy.func.count())
            .select_from(rag_documents)
            .where(rag_documents.c.user_id == user_id)
        )
        if since is not None:
            query = query.where(rag_documents.c.created_at >= since)
        return int(await self.database.fetch_val(query) or 0)

    async def count_crawl_jobs_since(self, user_id: str, since: datetime) -> int:
        query = (
            sqlalchemy.select(sqlalchemy.func.count(sqlalchemy.distinct(rag_documents.c.crawl_job_id)))
            .where(rag_documents.c.user_id == user_id)
            .where(rag_documents.c.crawl_job_id.isnot(None))
            .where(rag_documents.c.created_at >= since)
        )
        return int(await self.database.fetch_val(query) or 0)

    async def find_document_by_source_url(self, user_id: str, source_url: str) -> Optional[DocumentRecord]:
        query = rag_documents.select().where(
            (rag_documents.c.user_id == user_id) & (rag_documents.c.source_url == source_url)
        )
        row = await self.database.fetch_one(query)
        return self._to_record(row) if row else None

    async def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        row = await self.database.fetch_one(rag_documents.select().where(rag_documents.c.id == document_id))
        return self._to_record(row) if row else None

    async def list_documents(self, user_id: str, crawl_job_id: Optional[str] = None) -> List[DocumentRecord]:
        query = rag_documents.select().where(rag_documents.c.user_id == user_id)
        if crawl_job_id is not None:
            query = query.where(rag_documents.c.crawl_job_id == crawl_job_id)
        query = query.order_by(rag_documents.c.created_at.desc())
        rows = await self.database.fetch_all(query)
        return [self._to_record(row) for row in rows]

    async def delete_document(self, document_id: str) -> bool:
        async with self.database.transaction():
            await self.database.execute(
                rag_document_chunks.delete().where(rag_document_chunks.c.document_id == document_id)
            )
            existing = await self.database.fetch_val(
                sqlalchemy.select(sqlalchemy.func.count())
                .select_from(rag_documents)
                .where(rag_documents.c.id == document_id)
            )
            await self.database.execute(rag_documents.delete().where(rag_documents.c.id == document_id))
        return bool(existing)
