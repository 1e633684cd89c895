"""Vector index boundary and its backends.

``VectorIndex`` is the narrow contract the retrieval engine depends on.
Two backends ship: an exact numpy index kept in memory and a persistent
USearch HNSW index whose payloads live in SQLite.
"""

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from usearch.index import Index as USearchIndex, MetricKind

from .models import Chunk
from .storage import PayloadStore

logger = logging.getLogger(__name__)

_ID_MASK = (1 << 63) - 1


def point_id(repository: str, filepath: str, ordinal: int) -> int:
    """Deterministic 63-bit point id for a chunk identity."""
    digest = hashlib.sha256(f"{repository}\x00{filepath}\x00{ordinal}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") & _ID_MASK


@dataclass
class VectorPoint:
    id: int
    vector: List[float]
    payload: Dict[str, Any]

    @classmethod
    def from_chunk(cls, chunk: Chunk, sync_seq: int = 0) -> "VectorPoint":
        """Point for an embedded chunk. Chunks without a vector cannot be indexed."""
        if chunk.embedding is None:
            raise ValueError(f"chunk {chunk.id} has no embedding")
        return cls(
            id=point_id(chunk.repository, chunk.filepath, chunk.ordinal),
            vector=chunk.embedding,
            payload=chunk.to_payload(sync_seq),
        )


@dataclass
class VectorMatch:
    id: int
    score: float  # cosine similarity clamped to [0, 1]
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IndexStats:
    document_count: int = 0
    chunk_count: int = 0
    indexed_vector_count: int = 0


PayloadFilter = Dict[str, Any]


def _lookup(payload: Dict[str, Any], key: str) -> Any:
    value: Any = payload
    for part in key.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _matches_value(actual: Any, expected: Any) -> bool:
    if isinstance(expected, (list, tuple, set, frozenset)):
        if isinstance(actual, (list, tuple)):
            return any(a in expected for a in actual)
        return actual in expected
    if isinstance(actual, (list, tuple)):
        return expected in actual
    return actual == expected


def payload_matches(payload: Dict[str, Any], payload_filter: Optional[PayloadFilter]) -> bool:
    """Check a payload against a filter.

    Keys are dotted paths into the payload (``repository``,
    ``metadata.language``). A list value matches any of its members, a list
    in the payload matches if any element matches. The special key ``$or``
    holds a list of sub-filters, at least one of which must match. All keys
    must match.
    """
    if not payload_filter:
        return True
    for key, expected in payload_filter.items():
        if expected is None:
            continue
        if key == "$or":
            if not any(payload_matches(payload, sub) for sub in expected):
                return False
            continue
        if not _matches_value(_lookup(payload, key), expected):
            return False
    return True


def _normalize(vector: List[float]) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(arr))
    return arr / norm if norm > 0 else arr


def _sort_key(payload: Dict[str, Any]) -> Tuple[str, str, int]:
    return (payload.get("repository", ""), payload.get("filepath", ""), int(payload.get("ordinal", 0)))


class VectorIndex(ABC):
    """Contract for vector storage with payload filtering."""

    @property
    @abstractmethod
    def version(self) -> int:
        """Monotonic counter bumped by every mutation."""

    @abstractmethod
    def upsert(self, points: List[VectorPoint]) -> None:
        """Insert or replace points by id."""

    @abstractmethod
    def search(
        self,
        vector: List[float],
        limit: int,
        score_threshold: Optional[float] = None,
        payload_filter: Optional[PayloadFilter] = None,
    ) -> List[VectorMatch]:
        """Nearest neighbours by cosine similarity, best first."""

    @abstractmethod
    def delete(self, payload_filter: PayloadFilter) -> int:
        """Delete all points whose payload matches. Returns count deleted."""

    @abstractmethod
    def scroll(self, payload_filter: Optional[PayloadFilter] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Payloads matching the filter in (repository, filepath, ordinal) order."""

    @abstractmethod
    def stats(self) -> IndexStats:
        """Return document, chunk and vector counts."""

    def flush(self) -> None:
        """Persist pending changes. No-op for volatile backends."""

    def close(self) -> None:
        """Release resources."""
        self.flush()


class InMemoryVectorIndex(VectorIndex):
    """Exact cosine search over numpy arrays. Volatile."""

    def __init__(self):
        self._vectors: Dict[int, np.ndarray] = {}
        self._payloads: Dict[int, Dict[str, Any]] = {}
        self._version = 0
        self._lock = threading.RLock()

    @property
    def version(self) -> int:
        return self._version

    def upsert(self, points: List[VectorPoint]) -> None:
        if not points:
            return
        with self._lock:
            for point in points:
                self._vectors[point.id] = _normalize(point.vector)
                self._payloads[point.id] = dict(point.payload)
            self._version += 1

    def search(
        self,
        vector: List[float],
        limit: int,
        score_threshold: Optional[float] = None,
        payload_filter: Optional[PayloadFilter] = None,
    ) -> List[VectorMatch]:
        query = _normalize(vector)
        with self._lock:
            candidates = [
                (pid, vec) for pid, vec in self._vectors.items()
                if payload_matches(self._payloads[pid], payload_filter)
            ]
            if not candidates:
                return []
            ids = [pid for pid, _ in candidates]
            matrix = np.stack([vec for _, vec in candidates])
            scores = np.clip(matrix @ query, 0.0, 1.0)
            order = sorted(range(len(ids)), key=lambda i: (-float(scores[i]), _sort_key(self._payloads[ids[i]])))
            matches = []
            for i in order:
                score = float(scores[i])
                if score_threshold is not None and score < score_threshold:
                    break
                matches.append(VectorMatch(ids[i], score, dict(self._payloads[ids[i]])))
                if len(matches) >= limit:
                    break
            return matches

    def delete(self, payload_filter: PayloadFilter) -> int:
        with self._lock:
            doomed = [pid for pid, payload in self._payloads.items() if payload_matches(payload, payload_filter)]
            for pid in doomed:
                del self._vectors[pid]
                del self._payloads[pid]
            if doomed:
                self._version += 1
            return len(doomed)

    def scroll(self, payload_filter: Optional[PayloadFilter] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            payloads = [dict(p) for p in self._payloads.values() if payload_matches(p, payload_filter)]
        payloads.sort(key=_sort_key)
        return payloads[:limit] if limit is not None else payloads

    def stats(self) -> IndexStats:
        with self._lock:
            documents = {p.get("document_id") for p in self._payloads.values()}
            return IndexStats(
                document_count=len(documents),
                chunk_count=len(self._payloads),
                indexed_vector_count=len(self._vectors),
            )


class USearchVectorIndex(VectorIndex):
    """USearch HNSW index for vectors with a SQLite payload store."""

    def __init__(
        self,
        index_path: str,
        db_path: str,
        embedding_dim: int,
        metric: str = "cos",
        dtype: str = "f16",
        connectivity: int = 32,
        expansion_add: int = 128,
        expansion_search: int = 64,
    ):
        self.index_path = Path(index_path)
        self.embedding_dim = embedding_dim
        self.metric = metric
        self.dtype = dtype
        self.connectivity = connectivity
        self.expansion_add = expansion_add
        self.expansion_search = expansion_search

        self.store = PayloadStore(db_path)
        self._lock = threading.RLock()
        self._dirty = False
        self.index = self._init_index()
        self._version = int(self.store.get_meta("version", "0"))

    def _init_index(self):
        """Initialize or load the USearch index."""
        if self.index_path.exists():
            index = USearchIndex.restore(str(self.index_path))
            if index is not None and index.ndim != self.embedding_dim:
                raise ValueError(
                    f"Index at {self.index_path} has dimension {index.ndim}, "
                    f"provider produces {self.embedding_dim}"
                )
            if index is not None:
                logger.info("Loaded USearch index %s (%d vectors)", self.index_path, len(index))
                return index

        metric_kind = {
            "cos": MetricKind.Cos,
            "ip": MetricKind.IP,
            "l2sq": MetricKind.L2sq,
        }.get(self.metric, MetricKind.Cos)

        return USearchIndex(
            ndim=self.embedding_dim,
            metric=metric_kind,
            dtype=self.dtype,
            connectivity=self.connectivity,
            expansion_add=self.expansion_add,
            expansion_search=self.expansion_search,
        )

    @property
    def version(self) -> int:
        return self._version

    def _bump_version(self) -> None:
        self._version += 1
        self._dirty = True
        self.store.set_meta("version", str(self._version))

    def upsert(self, points: List[VectorPoint]) -> None:
        if not points:
            return
        with self._lock:
            for point in points:
                if point.id in self.index:
                    self.index.remove(point.id)
                self.index.add(point.id, _normalize(point.vector))
            self.store.put_many((p.id, p.payload) for p in points)
            self._bump_version()

    def search(
        self,
        vector: List[float],
        limit: int,
        score_threshold: Optional[float] = None,
        payload_filter: Optional[PayloadFilter] = None,
    ) -> List[VectorMatch]:
        query = _normalize(vector)
        with self._lock:
            total = len(self.index)
            if total == 0:
                return []
            # HNSW cannot filter: widen k until enough neighbours pass the
            # filter, the threshold is crossed or the index is exhausted
            k = min(total, limit * 10 if payload_filter else limit)
            while True:
                results, below_threshold = self._collect(query, k, score_threshold, payload_filter)
                if len(results) >= limit or below_threshold or k >= total:
                    break
                k = min(total, k * 4)

        results.sort(key=lambda m: (-m.score, _sort_key(m.payload)))
        return results[:limit]

    def _collect(
        self,
        query: np.ndarray,
        k: int,
        score_threshold: Optional[float],
        payload_filter: Optional[PayloadFilter],
    ) -> Tuple[List[VectorMatch], bool]:
        matches = self.index.search(query, k)
        keys = [int(key) for key in matches.keys]
        distances = [float(d) for d in matches.distances]
        payloads = self.store.get_many(keys)

        results = []
        below_threshold = False
        for key, distance in zip(keys, distances):
            score = min(1.0, max(0.0, 1.0 - distance))
            if score_threshold is not None and score < score_threshold:
                below_threshold = True
                continue
            payload = payloads.get(key)
            if payload is None or not payload_matches(payload, payload_filter):
                continue
            results.append(VectorMatch(key, score, payload))
        return results, below_threshold

    def delete(self, payload_filter: PayloadFilter) -> int:
        with self._lock:
            repositories = payload_filter.get("repository")
            if isinstance(repositories, str):
                repositories = [repositories]
            doomed = [
                pid for pid, payload in self.store.iter_payloads(repositories)
                if payload_matches(payload, payload_filter)
            ]
            for pid in doomed:
                if pid in self.index:
                    self.index.remove(pid)
            self.store.delete_ids(doomed)
            if doomed:
                self._bump_version()
            return len(doomed)

    def scroll(self, payload_filter: Optional[PayloadFilter] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        repositories = (payload_filter or {}).get("repository")
        if isinstance(repositories, str):
            repositories = [repositories]
        payloads = []
        for _, payload in self.store.iter_payloads(repositories):
            if payload_matches(payload, payload_filter):
                payloads.append(payload)
                if limit is not None and len(payloads) >= limit:
                    break
        return payloads

    def stats(self) -> IndexStats:
        counts = self.store.counts()
        return IndexStats(
            document_count=counts["document_count"],
            chunk_count=counts["chunk_count"],
            indexed_vector_count=len(self.index),
        )

    def flush(self) -> None:
        """Persist index to disk."""
        with self._lock:
            if self._dirty:
                self.index_path.parent.mkdir(parents=True, exist_ok=True)
                self.index.save(str(self.index_path))
                self._dirty = False

    def close(self) -> None:
        self.flush()
        self.store.close()
