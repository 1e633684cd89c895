"""Configuration models for the Docscout retrieval engine."""

from dataclasses import dataclass, field
from typing import Dict, Literal, Optional

from .errors import ConfigurationError


ProviderType = Literal["openai", "huggingface", "jina"]
IndexBackend = Literal["memory", "usearch"]


@dataclass
class EmbeddingConfig:
    """Configuration for embedding providers."""

    provider: ProviderType = "openai"
    model: Optional[str] = None  # Uses provider default if None
    api_key: Optional[str] = None  # Uses env var if None

    # Provider-specific options
    hf_token: Optional[str] = None  # For HuggingFace private models
    jina_task: Optional[str] = None  # For Jina AI task optimization

    # Query embedding cache
    use_cache: bool = True
    cache_size: int = 1000
    cache_ttl: float = 300.0  # seconds

    def create_provider(self):
        """Create the configured embedding provider."""
        from .embeddings import create_embedding_provider

        kwargs = {"use_cache": self.use_cache, "cache_size": self.cache_size, "cache_ttl": self.cache_ttl}
        if self.provider == "openai":
            kwargs["openai_api_key"] = self.api_key
        elif self.provider == "huggingface":
            kwargs["hf_token"] = self.hf_token
        elif self.provider == "jina":
            kwargs["jina_api_key"] = self.api_key
            kwargs["task"] = self.jina_task
        return create_embedding_provider(self.provider, self.model, **kwargs)


@dataclass
class DocscoutConfig:
    """Configuration for the Docscout engine."""

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)

    # Vector index
    index_backend: IndexBackend = "usearch"
    db_path: str = "docscout.db"
    index_path: str = "docscout.usearch"
    metric: str = "cos"  # 'cos', 'ip', 'l2sq'
    dtype: str = "f16"   # 'f32', 'f16', 'bf16', 'i8'
    connectivity: int = 32      # M parameter
    expansion_add: int = 128    # efConstruction
    expansion_search: int = 64  # ef

    # Chunking window (characters)
    min_chunk_chars: int = 200
    max_chunk_chars: int = 2000
    overlap_chars: int = 300
    max_document_chars: int = 1_000_000
    max_chunks_per_document: int = 5000

    # Scoring
    semantic_weight: float = 0.7
    structural_weight: float = 0.3
    score_threshold: float = 0.5  # minimum cosine similarity for semantic hits
    candidate_multiplier: int = 3  # candidates fetched per requested result
    structural_scan_limit: int = 10_000
    dedup_threshold: float = 0.8
    priority_weights: Dict[str, float] = field(
        default_factory=lambda: {"high": 1.5, "medium": 1.0, "low": 0.5}
    )
    category_weights: Dict[str, float] = field(default_factory=dict)
    type_weights: Dict[str, float] = field(
        default_factory=lambda: {
            "heading": 1.0,
            "code": 0.9,
            "table": 0.85,
            "list": 0.85,
            "paragraph": 0.8,
        }
    )
    field_weights: Dict[str, float] = field(
        default_factory=lambda: {
            "title": 3.0,
            "section": 2.5,
            "heading_context": 2.0,
            "filepath": 1.5,
            "content": 1.0,
        }
    )
    custom_prompts: Dict[str, str] = field(default_factory=dict)

    # Results & pages
    default_max_results: int = 20
    max_results_limit: int = 100
    default_page_chunks: int = 10
    default_page_chars: int = 12_000
    overview_boost: float = 1.25
    overview_paragraph_chars: int = 400
    summary_lines: int = 3
    expansion_threshold: float = 0.7  # related groups take scores in [0.7 * this, this)
    related_per_group: int = 3

    # Timeouts (seconds) for external calls on the query path
    embedding_timeout: float = 30.0
    index_timeout: float = 15.0

    # Ranked-candidate cache used for page continuation
    ranking_cache_size: int = 256
    ranking_cache_ttl: float = 600.0

    # Ingestion
    ingest_concurrency: int = 4
    embed_batch_size: int = 64

    debug: bool = False

    def validate(self) -> "DocscoutConfig":
        """Check internal consistency. Returns self so it can be chained."""
        if self.min_chunk_chars < 0 or self.max_chunk_chars <= 0:
            raise ConfigurationError("chunk sizes must be positive")
        if self.min_chunk_chars >= self.max_chunk_chars:
            raise ConfigurationError("min_chunk_chars must be below max_chunk_chars")
        if not 0 <= self.overlap_chars < self.max_chunk_chars:
            raise ConfigurationError("overlap_chars must be in [0, max_chunk_chars)")
        for name in (
            "semantic_weight", "structural_weight", "score_threshold", "dedup_threshold", "expansion_threshold",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be within [0, 1], got {value}")
        if self.semantic_weight + self.structural_weight <= 0:
            raise ConfigurationError("semantic_weight and structural_weight cannot both be zero")
        for tier in ("high", "medium", "low"):
            if tier not in self.priority_weights:
                raise ConfigurationError(f"priority_weights is missing '{tier}'")
        if not (self.priority_weights["high"] >= self.priority_weights["medium"] >= self.priority_weights["low"]):
            raise ConfigurationError("priority_weights must satisfy high >= medium >= low")
        if not 1 <= self.default_max_results <= self.max_results_limit:
            raise ConfigurationError("default_max_results must be within [1, max_results_limit]")
        if self.index_backend not in ("memory", "usearch"):
            raise ConfigurationError(f"Unknown index backend: {self.index_backend}")
        return self
