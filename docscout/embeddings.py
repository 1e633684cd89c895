"""Embedding generation with caching and multiple provider support."""

import hashlib
import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple, Union

from openai import OpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from .cache import TTLCache
from .errors import ConfigurationError
from .models import Chunk, ChunkType

logger = logging.getLogger(__name__)


class EmbeddingCache:
    """LRU + TTL cache for embeddings to avoid redundant API calls.

    Keyed by model and exact text. Each provider owns one instance.
    """

    def __init__(self, maxsize: int = 1000, ttl: Optional[float] = 300.0):
        self._cache: TTLCache[List[float]] = TTLCache(maxsize=maxsize, ttl=ttl)

    def _hash_text(self, text: str, model: str) -> str:
        """Create a hash key for text + model combination."""
        return hashlib.sha256(f"{model}:{text}".encode()).hexdigest()

    def get(self, text: str, model: str) -> Optional[List[float]]:
        """Get cached embedding if exists."""
        return self._cache.get(self._hash_text(text, model))

    def set(self, text: str, model: str, embedding: List[float]) -> None:
        """Cache an embedding."""
        self._cache.set(self._hash_text(text, model), embedding)

    def stats(self):
        """Return cache statistics."""
        return self._cache.stats()

    def clear(self) -> None:
        """Clear the cache."""
        self._cache.clear()


class BaseEmbeddingProvider(ABC):
    """Abstract base class for embedding providers.

    Implementations must return the same vector for the same input text.
    """

    def __init__(
        self,
        model: str,
        use_cache: bool = True,
        cache_size: int = 1000,
        cache_ttl: Optional[float] = 300.0,
    ):
        self.model = model
        self.use_cache = use_cache
        self.cache = EmbeddingCache(maxsize=cache_size, ttl=cache_ttl) if use_cache else None

    @abstractmethod
    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for a batch of texts (provider-specific)."""
        pass

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return embedding dimension for this model."""
        pass

    def embed(self, texts: Union[str, List[str]]) -> List[List[float]]:
        """
        Generate embeddings with caching.

        Args:
            texts: Single text or list of texts

        Returns:
            List of embedding vectors, one per input text
        """
        if isinstance(texts, str):
            texts = [texts]
        if not texts:
            return []

        if self.cache is None:
            return self._embed_batch(texts)

        results: List[Optional[List[float]]] = [None] * len(texts)
        texts_to_embed: List[Tuple[int, str]] = []

        # Check cache first
        for i, text in enumerate(texts):
            cached = self.cache.get(text, self.model)
            if cached is not None:
                results[i] = cached
            else:
                texts_to_embed.append((i, text))

        # Embed uncached texts
        if texts_to_embed:
            indices, uncached_texts = zip(*texts_to_embed)
            new_embeddings = self._embed_batch(list(uncached_texts))
            if len(new_embeddings) != len(uncached_texts):
                raise RuntimeError(
                    f"{type(self).__name__} returned {len(new_embeddings)} vectors "
                    f"for {len(uncached_texts)} texts"
                )

            for idx, text, embedding in zip(indices, uncached_texts, new_embeddings):
                self.cache.set(text, self.model, embedding)
                results[idx] = embedding

        return results  # type: ignore


class OpenAIEmbedding(BaseEmbeddingProvider):
    """OpenAI embedding provider with retries and caching."""

    # Known dimensions for OpenAI models
    MODEL_DIMENSIONS = {
        "text-embedding-3-large": 3072,
        "text-embedding-3-small": 1536,
        "text-embedding-ada-002": 1536,
    }

    def __init__(self, model: str, openai_api_key: Optional[str] = None, **cache_options):
        super().__init__(model, **cache_options)
        self.api_key = openai_api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ConfigurationError(
                "OpenAI API key required. Set OPENAI_API_KEY environment variable "
                "or pass openai_api_key parameter."
            )
        self.client = OpenAI(api_key=self.api_key)

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model, 3072)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings via OpenAI API."""
        response = self.client.embeddings.create(
            model=self.model,
            input=texts,
        )

        # Sort by index to ensure correct order
        embeddings = sorted(response.data, key=lambda x: x.index)
        return [emb.embedding for emb in embeddings]


class HuggingFaceEmbedding(BaseEmbeddingProvider):
    """
    HuggingFace sentence-transformers embedding provider (local, free).

    Requires the ``hf`` extra: pip install docscout[hf]

    Example:
        >>> embedder = HuggingFaceEmbedding("all-MiniLM-L6-v2")
        >>> embeddings = embedder.embed(["Hello world"])
    """

    # Known dimensions for common models
    MODEL_DIMENSIONS = {
        "all-MiniLM-L6-v2": 384,
        "all-MiniLM-L12-v2": 384,
        "all-mpnet-base-v2": 768,
        "multi-qa-mpnet-base-dot-v1": 768,
        "BAAI/bge-small-en-v1.5": 384,
        "BAAI/bge-base-en-v1.5": 768,
        "BAAI/bge-large-en-v1.5": 1024,
    }

    def __init__(self, model: str = "all-MiniLM-L6-v2", hf_token: Optional[str] = None, **cache_options):
        """
        Initialize HuggingFace embedding provider.

        Args:
            model: Model name from HuggingFace Hub
            hf_token: Optional HuggingFace token for private models (or set HF_TOKEN env var)
            **cache_options: use_cache, cache_size, cache_ttl
        """
        super().__init__(model, **cache_options)
        self.hf_token = hf_token or os.environ.get("HF_TOKEN")
        self._model = None
        self._dimension: Optional[int] = None

    def _load_model(self):
        """Lazy-load the model."""
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise ConfigurationError(
                    "sentence-transformers not installed. Run: pip install docscout[hf]"
                ) from e
            logger.info("Loading sentence-transformers model %s", self.model)
            self._model = SentenceTransformer(self.model, token=self.hf_token)
            self._dimension = self._model.get_sentence_embedding_dimension()
        return self._model

    @property
    def dimension(self) -> int:
        if self._dimension is not None:
            return self._dimension
        if self.model in self.MODEL_DIMENSIONS:
            return self.MODEL_DIMENSIONS[self.model]
        self._load_model()
        return self._dimension or 384

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings using sentence-transformers."""
        model = self._load_model()
        embeddings = model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)
        return embeddings.tolist()


class JinaEmbedding(BaseEmbeddingProvider):
    """
    Jina AI embedding provider (API-based).

    Requires: JINA_API_KEY environment variable
    """

    API_URL = "https://api.jina.ai/v1/embeddings"
    REQUEST_TIMEOUT = 30

    # Known dimensions for Jina models
    MODEL_DIMENSIONS = {
        "jina-embeddings-v3": 1024,
        "jina-embeddings-v2-base-en": 768,
        "jina-embeddings-v2-base-code": 768,
        "jina-embeddings-v2-small-en": 512,
    }

    def __init__(
        self,
        model: str = "jina-embeddings-v3",
        jina_api_key: Optional[str] = None,
        task: Optional[str] = None,
        **cache_options,
    ):
        """
        Initialize Jina embedding provider.

        Args:
            model: Jina model name
            jina_api_key: API key (or set JINA_API_KEY env var)
            task: Optional task type for optimization:
                  'retrieval.query', 'retrieval.passage', 'text-matching'
            **cache_options: use_cache, cache_size, cache_ttl
        """
        super().__init__(model, **cache_options)
        self.api_key = jina_api_key or os.environ.get("JINA_API_KEY")
        if not self.api_key:
            raise ConfigurationError(
                "Jina API key required. Set JINA_API_KEY environment variable "
                "or pass jina_api_key parameter."
            )
        self.task = task

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model, 1024)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings via Jina AI API."""
        import requests

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        payload = {"model": self.model, "input": texts}
        if self.task:
            payload["task"] = self.task

        response = requests.post(self.API_URL, headers=headers, json=payload, timeout=self.REQUEST_TIMEOUT)
        response.raise_for_status()

        data = sorted(response.json()["data"], key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in data]


# ============ Text preparation ============

def prepare_chunk_text(chunk: Chunk) -> str:
    """Build the text that is embedded for a chunk.

    Prefixes document title, file and section so short chunks still carry
    enough context to be found semantically.
    """
    parts = []
    title = chunk.metadata.get("title")
    if title:
        parts.append(f"Title: {title}")
    parts.append(f"File: {chunk.filepath}")
    if chunk.type == ChunkType.HEADING and chunk.metadata.get("section"):
        parts.append(f"Section: {chunk.metadata['section']}")
    elif chunk.metadata.get("heading_context"):
        parts.append(f"Section: {chunk.metadata['heading_context']}")
    parts.append("")
    parts.append(chunk.content)
    tags = chunk.metadata.get("tags")
    if tags:
        if isinstance(tags, (list, tuple)):
            tags = ", ".join(str(t) for t in tags)
        parts.append("")
        parts.append(f"Tags: {tags}")
    return "\n".join(parts)


# ============ Provider Factory ============

def create_embedding_provider(
    provider: str = "openai",
    model: Optional[str] = None,
    **kwargs
) -> BaseEmbeddingProvider:
    """
    Factory function to create embedding providers.

    Args:
        provider: Provider name ('openai', 'huggingface', 'jina')
        model: Model name (uses provider default if not specified)
        **kwargs: Additional provider-specific arguments

    Returns:
        Configured embedding provider

    Example:
        >>> embedder = create_embedding_provider("huggingface", "all-MiniLM-L6-v2")
    """
    provider = provider.lower()

    if provider in ("openai", "openai-embedding"):
        return OpenAIEmbedding(model or "text-embedding-3-small", **kwargs)

    elif provider in ("huggingface", "hf", "sentence-transformers"):
        return HuggingFaceEmbedding(model or "all-MiniLM-L6-v2", **kwargs)

    elif provider in ("jina", "jina-ai"):
        return JinaEmbedding(model or "jina-embeddings-v3", **kwargs)

    else:
        raise ConfigurationError(
            f"Unknown provider: {provider}. "
            f"Supported: 'openai', 'huggingface', 'jina'"
        )
