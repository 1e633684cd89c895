"""Data models for the Docscout retrieval engine."""

import hashlib
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 2, "medium": 1, "low": 0}[self.value]


class ChunkType(str, Enum):
    HEADING = "heading"
    PARAGRAPH = "paragraph"
    CODE = "code"
    LIST = "list"
    TABLE = "table"


class DocumentType(str, Enum):
    MARKDOWN = "markdown"
    RESTRUCTURED_TEXT = "rst"
    HTML = "html"
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    PYTHON = "python"
    JAVA = "java"
    CSHARP = "csharp"
    GO = "go"
    RUST = "rust"
    YAML = "yaml"
    JSON = "json"
    PLAIN_TEXT = "text"
    UNKNOWN = "unknown"


SOURCE_CODE_TYPES = frozenset({
    DocumentType.JAVASCRIPT,
    DocumentType.TYPESCRIPT,
    DocumentType.PYTHON,
    DocumentType.JAVA,
    DocumentType.CSHARP,
    DocumentType.GO,
    DocumentType.RUST,
})


def content_hash(text: str) -> str:
    """Stable short hash of text content, used for change detection."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def document_id(repository: str, filepath: str) -> str:
    """Stable document id derived from its provenance."""
    return hashlib.sha256(f"{repository}:{filepath}".encode("utf-8")).hexdigest()[:16]


@dataclass
class RepositoryConfig:
    """A documentation source and how much its content should be trusted."""
    name: str
    priority: Priority = Priority.MEDIUM
    category: Optional[str] = None
    branch: Optional[str] = None
    exclude: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.priority = Priority(self.priority)


@dataclass
class Document:
    """A single processed source file."""
    id: str
    repository: str
    filepath: str
    content: str
    content_hash: str
    type: DocumentType
    priority: Priority = Priority.MEDIUM
    categories: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    last_modified: Optional[float] = None  # unix timestamp supplied by the source


@dataclass(frozen=True)
class Chunk:
    """The atomic retrievable unit. Treated as immutable once created."""
    id: str
    document_id: str
    repository: str
    filepath: str
    content: str
    type: ChunkType
    ordinal: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    document_hash: str = ""
    content_hash: str = ""
    embedding: Optional[List[float]] = field(default=None, repr=False, compare=False)  # None: not searchable

    @property
    def priority(self) -> Priority:
        return Priority(self.metadata.get("priority", Priority.MEDIUM.value))

    @property
    def identity(self):
        """Persistence identity: (repository, filepath, ordinal)."""
        return (self.repository, self.filepath, self.ordinal)

    def with_embedding(self, vector: List[float]) -> "Chunk":
        """Copy of this chunk carrying its vector."""
        return replace(self, embedding=[float(v) for v in vector])

    def to_payload(self, sync_seq: int = 0) -> Dict[str, Any]:
        """Flatten into the payload stored alongside the vector."""
        return {
            "chunk_id": self.id,
            "document_id": self.document_id,
            "repository": self.repository,
            "filepath": self.filepath,
            "ordinal": self.ordinal,
            "content": self.content,
            "type": self.type.value,
            "metadata": dict(self.metadata),
            "document_hash": self.document_hash,
            "content_hash": self.content_hash,
            "sync_seq": sync_seq,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Chunk":
        return cls(
            id=payload["chunk_id"],
            document_id=payload["document_id"],
            repository=payload["repository"],
            filepath=payload["filepath"],
            content=payload["content"],
            type=ChunkType(payload["type"]),
            ordinal=int(payload["ordinal"]),
            metadata=dict(payload.get("metadata") or {}),
            document_hash=payload.get("document_hash", ""),
            content_hash=payload.get("content_hash", ""),
        )


@dataclass
class SourceFile:
    """A decoded file handed over by a source provider."""
    repository: RepositoryConfig
    filepath: str
    content: str
    last_modified: Optional[float] = None
    sync_seq: Optional[int] = None


@dataclass
class ProcessingResult:
    """Output of the chunker for one document."""
    document: Document
    chunks: List[Chunk]
    errors: List[str] = field(default_factory=list)


class Query(BaseModel):
    """A "what do I need to know to do X" request."""

    task: str = Field(..., min_length=1, description="Free-text description of the task")
    language: Optional[str] = Field(default=None, description="Only chunks in this programming language")
    framework: Optional[str] = Field(default=None, description="Only chunks for this framework")
    repositories: Optional[List[str]] = Field(default=None, description="Only these repositories")
    categories: Optional[List[str]] = Field(default=None, description="Only these categories")
    context: Optional[str] = Field(default=None, description="Extra context folded into the semantic query")
    max_results: Optional[int] = Field(default=None, ge=1, le=100, description="Number of ranked results (engine default if None)")
    strategy: str = Field(default="hybrid", description="'semantic', 'structural', 'hybrid' or 'auto'")
    max_chunks: Optional[int] = Field(default=None, ge=1, le=100, description="Chunk budget per page")
    max_chars: Optional[int] = Field(default=None, ge=1, description="Character budget per page")
    allow_degraded: bool = Field(default=False, description="Fall back to structural search if upstream is down")

    @field_validator("task")
    @classmethod
    def _task_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("task must not be blank")
        return value

    @field_validator("strategy")
    @classmethod
    def _known_strategy(cls, value: str) -> str:
        value = value.lower()
        if value == "keyword":
            value = "structural"
        if value not in ("semantic", "structural", "hybrid", "auto"):
            raise ValueError(f"unknown strategy '{value}'")
        return value

    def fingerprint(self) -> str:
        """Stable hash of the fields that influence ranking."""
        data = self.model_dump(exclude={"max_chunks", "max_chars"})
        for key in ("repositories", "categories"):
            if data[key]:
                data[key] = sorted(data[key])
        return hashlib.sha256(repr(sorted(data.items())).encode("utf-8")).hexdigest()[:24]


@dataclass
class ScoredChunk:
    """A chunk with its final combined score."""
    chunk: Chunk
    score: float
    semantic_score: float = 0.0
    structural_score: float = 0.0
    relevance_explanation: str = ""


@dataclass
class SearchMetadata:
    """Describes how a ranked result set was produced."""
    strategy: str
    total_candidates: int = 0
    search_time_ms: float = 0.0
    repositories: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    confidence: float = 0.0
    truncated: bool = False
    scan_truncated: bool = False  # structural scan stopped at structural_scan_limit


@dataclass
class SearchResponse:
    """Single-pass ranked retrieval output."""
    query: Query
    results: List[ScoredChunk]
    metadata: SearchMetadata


@dataclass
class ContextPage:
    """One budget-bounded page of ranked evidence."""
    chunks: List[ScoredChunk]
    metadata: SearchMetadata
    level: str = "detailed"
    has_more: bool = False
    cursor: Optional[str] = None
    page_chars: int = 0
    budget_exceeded: bool = False
    related: Dict[str, List[ScoredChunk]] = field(default_factory=dict)  # group -> lower-scoring results


@dataclass
class IngestionReport:
    """Summary of a batch ingestion run."""
    documents: int = 0
    indexed: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    chunks: int = 0
    errors: Dict[str, List[str]] = field(default_factory=dict)
