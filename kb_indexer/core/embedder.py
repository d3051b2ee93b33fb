import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence

import numpy as np

from kb_indexer.exceptions import EmbeddingError, DimensionMismatchError

logger = logging.getLogger(__name__)

# --- Abstract Base Class for Embedders ---

class BaseEmbedder(ABC):
    """
    Abstract base class for embedding model backends.
    Backends are synchronous and raise on failure.
    """
    @abstractmethod
    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        pass

# --- Local Sentence Transformer Embedder Implementation ---

class LocalSentenceTransformerEmbedder(BaseEmbedder):
    def __init__(self, model_name: str):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError("Please install sentence-transformers: pip install sentence-transformers")

        self.model_name = model_name
        # Use CPU unless GPU is explicitly configured
        self.model = SentenceTransformer(self.model_name, device="cpu")
        self.embedding_dimension = self.model.get_sentence_embedding_dimension()
        logger.info(f"Initialized LocalEmbedder: {self.model_name} (Dim: {self.embedding_dimension})")

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        # Convert numpy float32 rows to plain Python floats for JSON storage
        embeddings = self.model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)
        return embeddings.tolist()

# --- OpenAI Embedder Implementation ---

class OpenAIEmbedder(BaseEmbedder):
    def __init__(self, api_key: str, model: str, dimension: int):
        try:
            from openai import OpenAI
        except ImportError:
            raise ImportError("Please install openai: pip install openai")
        if not api_key:
            raise EmbeddingError("OpenAI API key missing.")
        self.client = OpenAI(api_key=api_key)
        self.model = model
        self.dimension = dimension
        logger.info(f"Initialized OpenAIEmbedder: {self.model} (Dim: {self.dimension})")

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        response = self.client.embeddings.create(input=texts, model=self.model, dimensions=self.dimension)
        return [d.embedding for d in response.data]

# --- Embedder Factory ---

def create_embedder(settings) -> BaseEmbedder:
    """Builds the embedding backend selected by EMBEDDING_PROVIDER."""
    provider = settings.EMBEDDING_PROVIDER.lower()
    if provider == "local":
        return LocalSentenceTransformerEmbedder(settings.LOCAL_EMBEDDING_MODEL)
    if provider == "openai":
        return OpenAIEmbedder(settings.OPENAI_API_KEY, settings.OPENAI_EMBEDDING_MODEL, settings.EMBEDDING_DIMENSION)
    raise ValueError(f"Unsupported EMBEDDING_PROVIDER: {settings.EMBEDDING_PROVIDER}")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity in [-1, 1]. Returns 0.0 when either vector has zero magnitude.

    Raises:
        DimensionMismatchError: the vectors differ in length.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(f"Vectors must have the same length ({len(a)} != {len(b)})")

    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)
    magnitude = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    if magnitude == 0:
        return 0.0
    return float(np.clip(np.dot(vec_a, vec_b) / magnitude, -1.0, 1.0))


class EmbeddingService:
    """
    Converts chunk text into unit-length vectors of a fixed dimension.

    The backend model is loaded lazily on first use. Concurrent first callers
    share one in-flight load: the load is submitted once under a lock and every
    caller awaits the same future. A failed load is forgotten so the next call
    tries again.
    """
    def __init__(self, backend_factory: Callable[[], BaseEmbedder], dimension: int = 384):
        self._backend_factory = backend_factory
        self.dimension = dimension
        self._backend: Optional[BaseEmbedder] = None
        self._init_future: Optional[Future] = None
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="embedding-init")

    @property
    def is_initialized(self) -> bool:
        return self._backend is not None

    def _load_backend(self) -> BaseEmbedder:
        logger.info("Initializing embedding model...")
        backend = self._backend_factory()
        self._backend = backend
        logger.info("Embedding model initialized successfully.")
        return backend

    def _start_initialization(self) -> Future:
        with self._lock:
            if self._init_future is None:
                self._init_future = self._executor.submit(self._load_backend)
            return self._init_future

    async def _get_backend(self) -> BaseEmbedder:
        if self._backend is not None:
            return self._backend

        future = self._start_initialization()
        try:
            return await asyncio.wrap_future(future)
        except Exception as e:
            with self._lock:
                if self._init_future is future:
                    self._init_future = None
            logger.error(f"Failed to initialize embedding model: {e}")
            raise EmbeddingError(f"Failed to initialize embedding model: {e}") from e

    def _normalize(self, vector: Sequence[float]) -> List[float]:
        if len(vector) != self.dimension:
            raise EmbeddingError(f"Embedding dimension mismatch. Expected {self.dimension}, got {len(vector)}.")
        arr = np.asarray(vector, dtype=np.float64)
        norm = np.linalg.norm(arr)
        if norm == 0:
            raise EmbeddingError("Embedding model returned a zero vector.")
        return (arr / norm).tolist()

    async def embed(self, text: str) -> List[float]:
        """
        Embeds a single text.

        Raises:
            EmbeddingError: the model could not be loaded or failed on this text.
        """
        backend = await self._get_backend()
        try:
            vectors = await asyncio.to_thread(backend.embed_documents, [text])
        except Exception as e:
            raise EmbeddingError(f"Embedding generation failed: {e}") from e
        if not vectors:
            raise EmbeddingError("Embedding model returned no vector.")
        return self._normalize(vectors[0])

    async def embed_many(self, texts: List[str]) -> List[Optional[List[float]]]:
        """
        Embeds texts in one batch, falling back to one call per text if the batch fails.
        A text whose embedding fails gets ``None``; the failure is logged, never raised.
        """
        if not texts:
            return []

        try:
            backend = await self._get_backend()
        except EmbeddingError as e:
            logger.error(f"Embedding model unavailable, storing {len(texts)} chunks without embeddings: {e}")
            return [None] * len(texts)

        try:
            vectors = await asyncio.to_thread(backend.embed_documents, list(texts))
            if len(vectors) != len(texts):
                raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(vectors)}.")
        except Exception as e:
            logger.warning(f"Batch embedding of {len(texts)} texts failed, embedding one at a time: {e}")
            return [await self._embed_or_none(i, text) for i, text in enumerate(texts)]

        results: List[Optional[List[float]]] = []
        for i, vector in enumerate(vectors):
            try:
                results.append(self._normalize(vector))
            except EmbeddingError as e:
                logger.error(f"Discarding embedding for chunk {i}: {e}")
                results.append(None)
        return results

    async def _embed_or_none(self, index: int, text: str) -> Optional[List[float]]:
        try:
            return await self.embed(text)
        except EmbeddingError as e:
            logger.error(f"Failed to generate embedding for chunk {index}: {e}")
            return None

    @staticmethod
    def similarity(a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)


def build_embedding_service(settings) -> EmbeddingService:
    return EmbeddingService(lambda: create_embedder(settings), dimension=settings.EMBEDDING_DIMENSION)
