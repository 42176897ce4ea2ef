"""
Splits page text into overlapping chunks sized for embedding.

Sizes are expressed in tokens and converted with a fixed estimate of four
characters per token. Text is split on paragraph boundaries first, then on
sentence or line boundaries, and only hard-split when a single sentence is
longer than a chunk.
"""
import math
import re
import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional

from site_ingest.config import settings
from site_ingest.models.document import TextChunk

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n\s*")
_SENTENCE_BREAK = re.compile(r"((?<=[.!?])\s+|\s*\n\s*)")


@dataclass
class _Unit:
    text: str
    joiner: str # Separator placed before this unit when it follows another


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def sanitize_text(text: str) -> str:
    """Normalizes line endings and removes control characters except tab and newline."""
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return _CONTROL_CHARS.sub("", text)


def _hard_split(sentence: str, max_chars: int) -> Iterator[_Unit]:
    """
    Splits an oversized sentence at the last whitespace that keeps at least
    80% of the limit, or exactly at the limit when there is none.
    """
    rest = sentence
    joiner = ""
    while len(rest) > max_chars:
        cut = rest.rfind(" ", 0, max_chars + 1)
        if cut >= int(max_chars * 0.8):
            yield _Unit(rest[:cut].rstrip(), joiner)
            rest = rest[cut:].lstrip()
            joiner = " "
        else:
            yield _Unit(rest[:max_chars], joiner)
            rest = rest[max_chars:]
            joiner = ""
    if rest:
        yield _Unit(rest, joiner)


def _split_units(text: str, max_chars: int) -> List[_Unit]:
    units: List[_Unit] = []
    for paragraph in _PARAGRAPH_BREAK.split(text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if len(paragraph) <= max_chars:
            units.append(_Unit(paragraph, "\n\n"))
            continue

        parts = _SENTENCE_BREAK.split(paragraph)
        joiner = "\n\n"
        for i in range(0, len(parts), 2):
            sentence = parts[i].strip()
            if sentence:
                for position, piece in enumerate(_hard_split(sentence, max_chars)):
                    units.append(_Unit(piece.text, joiner if position == 0 else piece.joiner))
            if i + 1 < len(parts):
                joiner = "\n" if "\n" in parts[i + 1] else " "
    return units


def _joined_length(units: List[_Unit]) -> int:
    if not units:
        return 0
    return len(units[0].text) + sum(len(u.joiner) + len(u.text) for u in units[1:])


def _join(units: List[_Unit]) -> str:
    return units[0].text + "".join(u.joiner + u.text for u in units[1:])


def _overlap_tail(units: List[_Unit], overlap_chars: int) -> List[_Unit]:
    """Whole trailing units of a finished chunk that fit in the overlap budget."""
    tail: List[_Unit] = []
    for unit in reversed(units):
        if _joined_length([unit] + tail) > overlap_chars:
            break
        tail.insert(0, unit)
    return tail


def chunk_text(
    text: str,
    start_index: int = 0,
    page_number: Optional[int] = None,
    chunk_size: int = settings.RAG_CHUNK_SIZE,
    chunk_overlap: int = settings.RAG_CHUNK_OVERLAP,
) -> List[TextChunk]:
    """
    Chunks ``text`` into pieces of at most ``chunk_size`` tokens (estimated),
    each new chunk starting with up to ``chunk_overlap`` tokens of trailing
    text from the previous one. Chunk indexes are dense starting at
    ``start_index``. Empty or whitespace-only input yields no chunks.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be non-negative and smaller than chunk_size")

    text = sanitize_text(text)
    if not text.strip():
        return []

    max_chars = chunk_size * CHARS_PER_TOKEN
    overlap_chars = chunk_overlap * CHARS_PER_TOKEN

    pieces: List[str] = []
    current: List[_Unit] = []
    for unit in _split_units(text, max_chars):
        if current and _joined_length(current + [unit]) > max_chars:
            pieces.append(_join(current))
            current = _overlap_tail(current, overlap_chars)
            if current and _joined_length(current + [unit]) > max_chars:
                current = []
        current.append(unit)
    if current:
        pieces.append(_join(current))

    chunks: List[TextChunk] = []
    for piece in pieces:
        content = piece.strip()
        if not content:
            continue
        chunks.append(
            TextChunk(
                chunk_index=start_index + len(chunks),
                content=content,
                page_number=page_number,
                token_count=estimate_tokens(content),
            )
        )
    return chunks
