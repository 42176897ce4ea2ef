"""
Database tables for ingested documents and their chunks
"""
from typing import Optional

import databases
import sqlalchemy
from site_ingest.config import settings

metadata = sqlalchemy.MetaData()

rag_documents = sqlalchemy.Table(
    "rag_documents",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.String(36), primary_key=True),
    sqlalchemy.Column("user_id", sqlalchemy.String(255), nullable=False, index=True),
    sqlalchemy.Column("source_url", sqlalchemy.Text, nullable=False),
    sqlalchemy.Column("crawl_job_id", sqlalchemy.String(36), nullable=True, index=True),
    sqlalchemy.Column("title", sqlalchemy.Text, nullable=True),
    sqlalchemy.Column("status", sqlalchemy.String(16), nullable=False),
    sqlalchemy.Column("error_message", sqlalchemy.Text, nullable=True),
    sqlalchemy.Column("word_count", sqlalchemy.Integer, nullable=False, default=0),
    sqlalchemy.Column("content_size", sqlalchemy.Integer, nullable=False, default=0),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime, nullable=False),
    sqlalchemy.Column("updated_at", sqlalchemy.DateTime, nullable=False),
    sqlalchemy.Column("processed_at", sqlalchemy.DateTime, nullable=True),
    sqlalchemy.UniqueConstraint("user_id", "source_url", name="uq_rag_documents_user_source_url"),
)

rag_document_chunks = sqlalchemy.Table(
    "rag_document_chunks",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True, autoincrement=True),
    sqlalchemy.Column(
        "document_id",
        sqlalchemy.String(36),
        sqlalchemy.ForeignKey("rag_documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    sqlalchemy.Column("user_id", sqlalchemy.String(255), nullable=False),
    sqlalchemy.Column("chunk_index", sqlalchemy.Integer, nullable=False),
    sqlalchemy.Column("content", sqlalchemy.Text, nullable=False),
    sqlalchemy.Column("embedding", sqlalchemy.JSON, nullable=False),
    sqlalchemy.Column("token_count", sqlalchemy.Integer, nullable=False),
    sqlalchemy.Column("page_number", sqlalchemy.Integer, nullable=True),
    sqlalchemy.UniqueConstraint("document_id", "chunk_index", name="uq_rag_document_chunks_index"),
)


def create_database(database_url: Optional[str] = None) -> databases.Database:
    return databases.Database(database_url or settings.DATABASE_URL)


def create_tables(database_url: Optional[str] = None):
    """Create database tables"""
    engine = sqlalchemy.create_engine(database_url or settings.DATABASE_URL)
    try:
        metadata.create_all(engine)
    finally:
        engine.dispose()
