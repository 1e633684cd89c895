"""Main Docscout engine orchestrator."""

import asyncio
import logging
import threading
from typing import Any, Dict, Iterable, Optional, Union

from .chunking import DocumentProcessor
from .config import DocscoutConfig, EmbeddingConfig
from .embeddings import BaseEmbeddingProvider
from .formatting import render_page
from .index import InMemoryVectorIndex, USearchVectorIndex, VectorIndex
from .ingest import DocumentOutcome, Indexer
from .loaders import load_repository
from .models import (
    ContextPage,
    IngestionReport,
    ProcessingResult,
    Query,
    RepositoryConfig,
    SearchResponse,
    SourceFile,
)
from .progressive import ProgressiveContext
from .search import ContextGenerator

logger = logging.getLogger(__name__)

RepositoryLike = Union[RepositoryConfig, str]


def _repository(repository: RepositoryLike) -> RepositoryConfig:
    return repository if isinstance(repository, RepositoryConfig) else RepositoryConfig(name=repository)


class Docscout:
    """Documentation retrieval engine: chunking, hybrid ranking and paged context.

    The embedding provider and the vector index are injected or built from
    config; everything else is wired here.
    """

    def __init__(
        self,
        config: Optional[DocscoutConfig] = None,
        embedder: Optional[BaseEmbeddingProvider] = None,
        index: Optional[VectorIndex] = None,
    ):
        self.config = (config or DocscoutConfig()).validate()
        self._lock = threading.RLock()

        # Initialize components
        self.embedder = embedder or self.config.embedding.create_provider()
        self.index = index or self._create_index()
        self.processor = DocumentProcessor(self.config)
        self.generator = ContextGenerator(self.embedder, self.index, self.config)
        self.progressive = ProgressiveContext(self.generator, self.config)
        self.indexer = Indexer(self.processor, self.embedder, self.index, self.config)

    def _create_index(self) -> VectorIndex:
        if self.config.index_backend == "memory":
            return InMemoryVectorIndex()
        return USearchVectorIndex(
            self.config.index_path,
            self.config.db_path,
            self.embedder.dimension,
            metric=self.config.metric,
            dtype=self.config.dtype,
            connectivity=self.config.connectivity,
            expansion_add=self.config.expansion_add,
            expansion_search=self.config.expansion_search,
        )

    # ============ Retrieval ============

    async def search(self, query: Union[Query, Dict[str, Any]]) -> SearchResponse:
        """
        Rank indexed chunks for a task.

        Args:
            query: Query model or dict of its fields

        Returns:
            SearchResponse with ranked, deduplicated chunks
        """
        return await self.generator.search(query)

    async def generate_context(self, query: Union[Query, Dict[str, Any]]) -> ContextPage:
        """First page of context for a task."""
        return await self.progressive.get_page(query)

    async def get_context_page(
        self,
        query: Union[Query, Dict[str, Any]],
        cursor: Optional[str] = None,
        level: Optional[str] = None,
    ) -> ContextPage:
        """
        Page of context for a task, optionally continuing from a cursor.

        Args:
            query: The same query the cursor was issued for
            cursor: Continuation token from a previous page
            level: 'overview' or 'detailed'

        Returns:
            ContextPage within the query's chunk and character budgets
        """
        return await self.progressive.get_page(query, cursor=cursor, level=level)

    async def render_context(
        self,
        query: Union[Query, Dict[str, Any]],
        cursor: Optional[str] = None,
        level: Optional[str] = None,
    ) -> str:
        """Page of context rendered as markdown."""
        page = await self.get_context_page(query, cursor=cursor, level=level)
        task = query.task if isinstance(query, Query) else query.get("task")
        return render_page(page, task)

    # ============ Ingestion ============

    def process_document(
        self,
        filepath: str,
        content: str,
        repository: RepositoryLike,
        last_modified: Optional[float] = None,
    ) -> ProcessingResult:
        """Chunk a document without indexing it."""
        return self.processor.process_document(filepath, content, _repository(repository), last_modified)

    async def ingest(self, files: Iterable[SourceFile]) -> IngestionReport:
        """Chunk, embed and index a batch of files."""
        return await self.indexer.ingest(files)

    async def ingest_directory(self, path: str, repository: RepositoryLike) -> IngestionReport:
        """Load every supported file under ``path`` and ingest it."""
        files = await asyncio.to_thread(load_repository, path, _repository(repository))
        return await self.ingest(files)

    async def file_changed(
        self,
        repository: RepositoryLike,
        filepath: str,
        content: str,
        sync_seq: Optional[int] = None,
        last_modified: Optional[float] = None,
    ) -> DocumentOutcome:
        """Re-index a single changed file."""
        return await self.indexer.file_changed(_repository(repository), filepath, content, sync_seq, last_modified)

    async def file_deleted(self, repository: str, filepath: str) -> int:
        """Remove a deleted file from the index."""
        return await self.indexer.file_deleted(repository, filepath)

    async def delete_repository(self, name: str) -> int:
        """Remove every chunk of a repository."""
        return await self.indexer.delete_repository(name)

    # ============ Housekeeping ============

    def stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        with self._lock:
            index_stats = self.index.stats()
            stats: Dict[str, Any] = {
                "documents": index_stats.document_count,
                "chunks": index_stats.chunk_count,
                "vectors": index_stats.indexed_vector_count,
                "index_version": self.index.version,
                "index_backend": self.config.index_backend,
                "embedding_model": self.embedder.model,
                "embedding_dim": self.embedder.dimension,
                "ranking_cache": self.generator.ranking_cache.stats(),
            }
            if self.embedder.cache is not None:
                stats["embedding_cache"] = self.embedder.cache.stats()
            if isinstance(self.index, USearchVectorIndex):
                stats["repositories"] = self.index.store.list_repositories()
            return stats

    def save(self) -> None:
        """Persist index to disk."""
        with self._lock:
            self.index.flush()

    def close(self) -> None:
        """Close all connections and save."""
        with self._lock:
            self.index.close()


def create_docscout(
    db_path: str = "docscout.db",
    index_path: str = "docscout.usearch",
    *,
    provider: str = "openai",
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    index_backend: str = "usearch",
    **overrides: Any,
) -> Docscout:
    """
    Create a Docscout instance with sensible defaults.

    Extra keyword arguments override fields of :class:`DocscoutConfig`.

    Example:
        >>> scout = create_docscout("docs.db", "docs.usearch", provider="huggingface")
        >>> await scout.ingest_directory("./docs", RepositoryConfig("handbook", priority="high"))
        >>> page = await scout.generate_context({"task": "configure logging"})
    """
    config = DocscoutConfig(
        embedding=EmbeddingConfig(provider=provider, model=model, api_key=api_key),
        db_path=db_path,
        index_path=index_path,
        index_backend=index_backend,
        **overrides,
    )
    return Docscout(config)
