import asyncio
import logging
from typing import List, Optional
from abc import ABC, abstractmethod
import numpy as np

from site_ingest.config import settings
from site_ingest.core.errors import EmbeddingError

logger = logging.getLogger(__name__)

# --- Abstract Base Class for Embedders ---

class BaseEmbedder(ABC):
    """
    Abstract base class for all embedder implementations.
    Implementations return exactly one vector per input text, in input order,
    or raise EmbeddingError.
    """
    @abstractmethod
    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        pass

    def credentials_configured(self) -> bool:
        return True

# --- OpenAI Embedder Implementation ---

class OpenAIEmbedder(BaseEmbedder):
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, base_url: Optional[str] = None):
        try:
            import openai
        except ImportError:
            raise ImportError("Please install openai: pip install openai")
        api_key = api_key or settings.OPENAI_API_KEY
        if not api_key:
            raise EmbeddingError("OpenAI API key missing.")
        self._openai = openai
        self.client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url or settings.OPENAI_BASE_URL)
        self.model = model or settings.OPENAI_EMBEDDING_MODEL
        logger.info(f"Initialized OpenAIEmbedder: {self.model}")

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            response = await self.client.embeddings.create(input=texts, model=self.model)
        except self._openai.OpenAIError as e:
            logger.error(f"OpenAI Embedding error: {e}")
            raise EmbeddingError(f"Embedding request failed: {e}") from e
        data = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in data]

# --- Google Gemini Embedder Implementation ---

class GeminiEmbedder(BaseEmbedder):
    """
    Uses google-generativeai. The client is synchronous, so calls run in a
    worker thread.
    """
    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        try:
            import google.generativeai as genai
        except ImportError:
            raise ImportError("Please install google-generativeai: pip install google-generativeai")

        api_key = api_key or settings.GEMINI_API_KEY
        if not api_key:
            raise EmbeddingError("Gemini API key is not set.")
        self.genai = genai
        self.genai.configure(api_key=api_key)
        self.model = model or settings.GEMINI_EMBEDDING_MODEL
        logger.info(f"Initialized GeminiEmbedder: {self.model}")

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            response = await asyncio.to_thread(
                self.genai.embed_content,
                model=self.model,
                content=texts,
                task_type="RETRIEVAL_DOCUMENT"
            )
        except Exception as e:
            logger.error(f"Gemini Embedding error: {e}")
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        # Gemini returns a dict with a list of embeddings
        embeddings = response.get('embedding', [])
        if isinstance(embeddings, np.ndarray):
            embeddings = embeddings.tolist()
        return [list(map(float, e)) for e in embeddings]

# --- Local Sentence Transformer Embedder Implementation ---

class LocalSentenceTransformerEmbedder(BaseEmbedder):
    def __init__(self, model_name: Optional[str] = None):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError("Please install sentence-transformers: pip install sentence-transformers")

        self.model_name = model_name or settings.LOCAL_EMBEDDING_MODEL
        # Use CPU unless GPU is explicitly configured
        self.model = SentenceTransformer(self.model_name, device="cpu")
        self.embedding_dimension = self.model.get_sentence_embedding_dimension()
        logger.info(f"Initialized LocalEmbedder: {self.model_name} (Dim: {self.embedding_dimension})")

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            embeddings = await asyncio.to_thread(self.model.encode, texts, convert_to_numpy=True)
        except Exception as e:
            logger.error(f"Local Embedding error: {e}")
            raise EmbeddingError(f"Local embedding failed: {e}") from e
        # np.float32 -> plain floats so vectors serialize to JSON
        return np.asarray(embeddings, dtype=float).tolist()

# --- Embedder Factory ---

class Embedder(BaseEmbedder):
    """
    Factory class to provide the correct embedder instance based on settings.
    The provider is created lazily so that a missing credential surfaces as a
    rejected request instead of a startup failure.
    """
    def __init__(self, provider: Optional[str] = None):
        self.provider = (provider or settings.EMBEDDING_PROVIDER).lower()
        self._embedder_instance: Optional[BaseEmbedder] = None

    def credentials_configured(self) -> bool:
        if self.provider == "openai":
            return bool(settings.OPENAI_API_KEY)
        if self.provider == "gemini":
            return bool(settings.GEMINI_API_KEY)
        return self.provider == "local"

    def _initialize_embedder(self) -> BaseEmbedder:
        if self.provider == "openai":
            instance = OpenAIEmbedder()
        elif self.provider == "gemini":
            instance = GeminiEmbedder()
        elif self.provider == "local":
            instance = LocalSentenceTransformerEmbedder()
        else:
            raise ValueError(f"Unsupported EMBEDDING_PROVIDER: {self.provider}")
        logger.info(f"Active Embedder Factory initialized: {self.provider}")
        return instance

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not self._embedder_instance:
            self._embedder_instance = self._initialize_embedder()
        return await self._embedder_instance.embed_documents(texts)


async def generate_embeddings_in_batches(
    texts: List[str],
    embedder: BaseEmbedder,
    batch_size: int = settings.EMBEDDING_BATCH_SIZE,
    max_concurrency: int = settings.EMBEDDING_MAX_CONCURRENCY,
) -> List[List[float]]:
    """
    Embeds ``texts`` in batches of ``batch_size`` with at most
    ``max_concurrency`` batches in flight. The result has one vector per
    input, in input order. Any failed or malformed batch fails the whole
    call and the remaining batches are cancelled; no retries.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    if not texts:
        return []

    batches = [texts[i:i + batch_size] for i in range(0, len(texts), batch_size)]
    results: List[Optional[List[List[float]]]] = [None] * len(batches)
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def embed_batch(position: int, batch: List[str]) -> None:
        async with semaphore:
            vectors = await embedder.embed_documents(batch)
        if len(vectors) != len(batch):
            raise EmbeddingError(
                f"Embedding batch {position} returned {len(vectors)} vectors for {len(batch)} texts"
            )
        if any(len(v) == 0 for v in vectors):
            raise EmbeddingError(f"Embedding batch {position} contains empty vectors")
        results[position] = [list(v) for v in vectors]

    if max_concurrency <= 1 or len(batches) == 1:
        for position, batch in enumerate(batches):
            await embed_batch(position, batch)
    else:
        tasks = [asyncio.create_task(embed_batch(i, b)) for i, b in enumerate(batches)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    logger.debug(f"Embedded {len(texts)} texts in {len(batches)} batches")
    return [vector for batch_vectors in results for vector in batch_vectors]
