"""
Docscout - documentation retrieval and context assembly for coding assistants

Ingests markdown, reStructuredText, HTML, source code and config files from
multiple repositories and answers "what do I need to know to do X" with
ranked, deduplicated, size-bounded evidence:
- Structure-aware chunking (headings, code fences, lists, tables)
- Semantic, structural and hybrid ranking with priority weighting
- Budgeted, resumable context pages with overview/detailed levels
- USearch HNSW + SQLite persistence, or an in-memory index
- Multiple embedding providers (OpenAI, HuggingFace, Jina AI)
"""

__version__ = "0.3.0"

from .config import DocscoutConfig, EmbeddingConfig
from .errors import (
    CapacityError,
    ConfigurationError,
    DocscoutError,
    DocumentProcessingError,
    UpstreamUnavailableError,
    ValidationError,
)
from .models import (
    Chunk,
    ChunkType,
    ContextPage,
    Document,
    DocumentType,
    IngestionReport,
    Priority,
    ProcessingResult,
    Query,
    RepositoryConfig,
    ScoredChunk,
    SearchMetadata,
    SearchResponse,
    SourceFile,
)
from .chunking import DocumentProcessor
from .embeddings import (
    BaseEmbeddingProvider,
    HuggingFaceEmbedding,
    JinaEmbedding,
    OpenAIEmbedding,
    create_embedding_provider,
)
from .index import InMemoryVectorIndex, USearchVectorIndex, VectorIndex
from .search import ContextGenerator
from .progressive import ProgressiveContext
from .formatting import render_page
from .ingest import Indexer
from .loaders import load_repository
from .engine import Docscout, create_docscout
from .log import setup_logging

__all__ = [
    # Core
    "Docscout",
    "create_docscout",
    "DocscoutConfig",
    "EmbeddingConfig",
    # Models
    "Chunk",
    "ChunkType",
    "ContextPage",
    "Document",
    "DocumentType",
    "IngestionReport",
    "Priority",
    "ProcessingResult",
    "Query",
    "RepositoryConfig",
    "ScoredChunk",
    "SearchMetadata",
    "SearchResponse",
    "SourceFile",
    # Components
    "DocumentProcessor",
    "ContextGenerator",
    "ProgressiveContext",
    "Indexer",
    "VectorIndex",
    "InMemoryVectorIndex",
    "USearchVectorIndex",
    "render_page",
    "load_repository",
    # Embeddings
    "BaseEmbeddingProvider",
    "OpenAIEmbedding",
    "HuggingFaceEmbedding",
    "JinaEmbedding",
    "create_embedding_provider",
    # Errors
    "DocscoutError",
    "ValidationError",
    "UpstreamUnavailableError",
    "DocumentProcessingError",
    "CapacityError",
    "ConfigurationError",
    # Logging
    "setup_logging",
]
