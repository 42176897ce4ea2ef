"""
Exceptions raised by the ingestion pipeline.
"""


class IngestionRejected(Exception):
    """
    The import request was refused before any crawling started.
    Nothing has been persisted when this is raised.
    """
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class PageProcessingError(Exception):
    """A single page could not be chunked, embedded or stored."""


class EmbeddingError(Exception):
    """The embedding provider failed or returned a malformed batch."""


class DuplicateDocumentError(Exception):
    """A document with the same (user, source_url) already exists."""


class BlockedHostError(Exception):
    """A fetch targeted a host whose addresses were never validated."""


class CrawlBlockedError(Exception):
    """The whole crawl is refused, e.g. robots.txt disallows the seed path."""
