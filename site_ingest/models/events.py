"""
Progress events streamed to the client during a crawl.

Events form a discriminated union on ``type`` and serialize in camelCase,
which is the wire contract consumed by the UI. Clients ignore unknown types.
"""
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class ProgressCounters(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    pages_processed: int = 0
    pages_total: int = 0
    pages_skipped: int = 0
    pages_failed: int = 0


class CrawlStartedEvent(ProgressCounters):
    type: Literal["crawl_started"] = "crawl_started"
    url: str


class PageFetchedEvent(ProgressCounters):
    type: Literal["page_fetched"] = "page_fetched"
    url: str
    title: Optional[str] = None


class PageSkippedEvent(ProgressCounters):
    type: Literal["page_skipped"] = "page_skipped"
    url: str
    error: str


class PageReadyEvent(ProgressCounters):
    type: Literal["page_ready"] = "page_ready"
    url: str
    title: Optional[str] = None
    document_id: Optional[str] = None


class PageErrorEvent(ProgressCounters):
    type: Literal["page_error"] = "page_error"
    url: str
    error: str


class CrawlCompleteEvent(ProgressCounters):
    type: Literal["crawl_complete"] = "crawl_complete"
    error: Optional[str] = None


class CrawlErrorEvent(ProgressCounters):
    type: Literal["crawl_error"] = "crawl_error"
    error: str


CrawlProgressEvent = Annotated[
    Union[
        CrawlStartedEvent,
        PageFetchedEvent,
        PageSkippedEvent,
        PageReadyEvent,
        PageErrorEvent,
        CrawlCompleteEvent,
        CrawlErrorEvent,
    ],
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES = frozenset({"crawl_complete", "crawl_error"})

_event_adapter = TypeAdapter(CrawlProgressEvent)


def event_to_json(event: ProgressCounters) -> str:
    """Serialize an event to its wire form (camelCase, no null fields)."""
    return event.model_dump_json(by_alias=True, exclude_none=True)


def event_from_dict(data: Dict[str, Any]) -> ProgressCounters:
    """Parse a wire-form event back into its typed model."""
    return _event_adapter.validate_python(data)
