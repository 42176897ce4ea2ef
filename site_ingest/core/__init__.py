"""
Core pipeline components
"""
from .crawler import SiteCrawler
from .chunker import chunk_text
from .embedder import Embedder, generate_embeddings_in_batches
from .url_validator import validate_url

__all__ = [
    "SiteCrawler",
    "chunk_text",
    "Embedder",
    "generate_embeddings_in_batches",
    "validate_url",
]
