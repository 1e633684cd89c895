"""Retrieval engine: semantic, structural and hybrid ranking of chunks."""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pydantic

from .cache import TTLCache
from .config import DocscoutConfig
from .embeddings import BaseEmbeddingProvider
from .errors import DocscoutError, UpstreamUnavailableError, ValidationError
from .index import PayloadFilter, VectorIndex, payload_matches
from .models import Chunk, Priority, Query, ScoredChunk, SearchMetadata, SearchResponse
from .parsing import normalize_language
from .scoring import LexicalScorer, extract_keywords, jaccard, token_set

logger = logging.getLogger(__name__)

_CODE_PATTERNS = [
    re.compile(r"\b(?:function|def|class|interface|struct|fn)\s+\w+"),
    re.compile(r"\b\w+\.\w+\s*\("),
    re.compile(r"\bimport\s+[\w{},\s*]+\s+from\b"),
    re.compile(r"\bfrom\s+[\w.]+\s+import\b"),
    re.compile(r"\berror\s+(?:code\s+)?[A-Z]*\d{2,}\b|\b[A-Z]{2,}\d{2,}\b"),
    re.compile(r"`[^`]+`"),
]
_CONCEPT_PATTERNS = re.compile(
    r"\b(?:how (?:to|do|does|can)|explain|overview|what is|what are|why|"
    r"difference between|best practices?|introduction|concepts?|architecture)\b",
    re.IGNORECASE,
)


def validate_query(query: Union[Query, Dict[str, Any]]) -> Query:
    """Coerce input into a Query, mapping pydantic errors to ValidationError."""
    if isinstance(query, Query):
        return query
    try:
        return Query.model_validate(query)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(part) for part in first.get("loc", ())) or "query"
        raise ValidationError(field_name, first.get("msg", "invalid value")) from e


@dataclass
class _Candidate:
    payload: Dict[str, Any]
    semantic: float = 0.0
    structural: float = 0.0
    matched: List[str] = field(default_factory=list)


class RankingCache:
    """Bounded TTL map of ranked responses keyed by query fingerprint and index version."""

    def __init__(self, maxsize: int = 256, ttl: Optional[float] = 600.0):
        self._cache: TTLCache[SearchResponse] = TTLCache(maxsize=maxsize, ttl=ttl)

    def get(self, fingerprint: str, version: int) -> Optional[SearchResponse]:
        return self._cache.get((fingerprint, version))

    def put(self, fingerprint: str, version: int, response: SearchResponse) -> None:
        self._cache.set((fingerprint, version), response)

    def stats(self) -> Dict[str, Any]:
        return self._cache.stats()

    def clear(self) -> None:
        self._cache.clear()


class ContextGenerator:
    """Scores and ranks indexed chunks for a task description.

    Each query owns its own state; the generator itself only holds the
    injected provider, index and ranking cache, so concurrent queries are safe.
    """

    def __init__(
        self,
        embedder: BaseEmbeddingProvider,
        index: VectorIndex,
        config: Optional[DocscoutConfig] = None,
    ):
        self.embedder = embedder
        self.index = index
        self.config = config or DocscoutConfig()
        self.scorer = LexicalScorer(self.config.field_weights, self.config.type_weights)
        self.ranking_cache = RankingCache(self.config.ranking_cache_size, self.config.ranking_cache_ttl)

    # ============ Public API ============

    def prepare_query(self, query: Union[Query, Dict[str, Any]]) -> Query:
        """Validate a query and fill engine defaults such as ``max_results``."""
        query = validate_query(query)
        if query.max_results is None:
            query = query.model_copy(update={"max_results": self.config.default_max_results})
        elif query.max_results > self.config.max_results_limit:
            raise ValidationError(
                "max_results", f"must be at most {self.config.max_results_limit}"
            )
        return query

    async def search(self, query: Union[Query, Dict[str, Any]]) -> SearchResponse:
        """
        Rank chunks for a query.

        Args:
            query: Query model or a dict with the same fields

        Returns:
            SearchResponse with at most ``max_results`` chunks, best first

        Raises:
            ValidationError: malformed query
            UpstreamUnavailableError: embedding provider or index unreachable
        """
        query = self.prepare_query(query)
        started = time.perf_counter()
        strategy = self.select_strategy(query)
        payload_filter = self.build_filter(query)

        try:
            candidates, scan_truncated = await self._retrieve(query, strategy, payload_filter)
            ran = strategy
        except UpstreamUnavailableError as e:
            if not query.allow_degraded or strategy == "structural":
                raise
            logger.warning("Falling back to structural search: %s", e)
            candidates, scan_truncated = await self._structural(query, payload_filter)
            ran = "degraded"

        total = len(candidates)
        results, truncated = await asyncio.to_thread(self._rank, query, ran, candidates, payload_filter)

        elapsed_ms = (time.perf_counter() - started) * 1000
        metadata = SearchMetadata(
            strategy=ran,
            total_candidates=total,
            search_time_ms=round(elapsed_ms, 2),
            repositories=sorted({r.chunk.repository for r in results}),
            categories=sorted({
                c for r in results for c in _chunk_categories(r.chunk)
            }),
            confidence=self.calculate_confidence(results),
            truncated=truncated,
            scan_truncated=scan_truncated,
        )
        logger.debug(
            "Query %r ran %s: %d candidates, %d results in %.1f ms",
            query.task[:60], ran, total, len(results), elapsed_ms,
        )
        return SearchResponse(query=query, results=results, metadata=metadata)

    async def ranked(self, query: Query) -> SearchResponse:
        """Like :meth:`search` but reuses a cached ranking for continuation pages."""
        query = self.prepare_query(query)
        fingerprint = query.fingerprint()
        version = self.index.version
        cached = self.ranking_cache.get(fingerprint, version)
        if cached is not None:
            return cached
        response = await self.search(query)
        # Degraded rankings are not reused once the upstream may have recovered
        if response.metadata.strategy != "degraded":
            self.ranking_cache.put(fingerprint, version, response)
        return response

    def select_strategy(self, query: Query) -> str:
        """Resolve ``auto`` into a concrete strategy."""
        if query.strategy != "auto":
            return query.strategy
        task = query.task
        if any(pattern.search(task) for pattern in _CODE_PATTERNS):
            return "structural"
        if _CONCEPT_PATTERNS.search(task):
            return "semantic"
        return "hybrid"

    def build_semantic_query(self, query: Query) -> str:
        """Text embedded for the semantic leg."""
        parts = [query.task]
        if query.language:
            parts.append(f"Programming language: {query.language}")
        if query.framework:
            parts.append(f"Framework: {query.framework}")
        if query.context:
            parts.append(f"Context: {query.context}")
        prompt = self.config.custom_prompts.get(query.framework or "default")
        if prompt:
            parts.append(prompt)
        return "\n".join(parts)

    def build_filter(self, query: Query) -> PayloadFilter:
        """Hard filter derived from the query."""
        payload_filter: PayloadFilter = {}
        if query.repositories:
            payload_filter["repository"] = list(query.repositories)
        if query.language:
            payload_filter["metadata.language"] = normalize_language(query.language)
        if query.framework:
            payload_filter["metadata.framework"] = query.framework
        if query.categories:
            categories = list(query.categories)
            payload_filter["$or"] = [
                {"metadata.category": categories},
                {"metadata.categories": categories},
            ]
        return payload_filter

    # ============ Retrieval ============

    async def _call(self, service: str, timeout: float, fn: Callable, *args):
        """Run a blocking provider/index call off the event loop with a timeout."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError(service, f"timed out after {timeout}s") from e
        except DocscoutError:
            raise
        except Exception as e:
            raise UpstreamUnavailableError(service, str(e) or type(e).__name__, {"error": e}) from e

    def _limit(self, query: Query) -> int:
        return query.max_results * self.config.candidate_multiplier

    async def _retrieve(
        self, query: Query, strategy: str, payload_filter: PayloadFilter
    ) -> Tuple[Dict[str, _Candidate], bool]:
        """Candidates for the strategy, plus whether the payload scan hit its cap."""
        if strategy == "semantic":
            return await self._semantic(query, payload_filter), False
        if strategy == "structural":
            return await self._structural(query, payload_filter)
        return await self._hybrid(query, payload_filter)

    async def _semantic(self, query: Query, payload_filter: PayloadFilter) -> Dict[str, _Candidate]:
        vectors = await self._call(
            "embedding", self.config.embedding_timeout, self.embedder.embed, self.build_semantic_query(query)
        )
        matches = await self._call(
            "index", self.config.index_timeout, self.index.search,
            vectors[0], self._limit(query), self.config.score_threshold, payload_filter,
        )
        return {
            m.payload["chunk_id"]: _Candidate(payload=m.payload, semantic=m.score)
            for m in matches
        }

    async def _scan(self, payload_filter: PayloadFilter) -> Tuple[List[Dict[str, Any]], bool]:
        cap = self.config.structural_scan_limit
        payloads = await self._call(
            "index", self.config.index_timeout, self.index.scroll, payload_filter, cap + 1,
        )
        if len(payloads) > cap:
            logger.warning("Structural scan capped at %d payloads; later chunks were not scored", cap)
            return payloads[:cap], True
        return payloads, False

    def _score_lexical(self, keywords: List[str], payloads: List[Dict[str, Any]]) -> Dict[str, _Candidate]:
        scored = {}
        for payload in payloads:
            match = self.scorer.score(keywords, payload)
            if match.score > 0:
                scored[payload["chunk_id"]] = _Candidate(
                    payload=payload, structural=match.score, matched=match.matched
                )
        return scored

    def _keywords(self, query: Query) -> List[str]:
        return extract_keywords(query.task)

    async def _structural(
        self, query: Query, payload_filter: PayloadFilter
    ) -> Tuple[Dict[str, _Candidate], bool]:
        payloads, capped = await self._scan(payload_filter)
        scored = await asyncio.to_thread(self._score_lexical, self._keywords(query), payloads)
        top = sorted(scored.items(), key=lambda item: (-item[1].structural, item[0]))[:self._limit(query)]
        return dict(top), capped

    async def _hybrid(
        self, query: Query, payload_filter: PayloadFilter
    ) -> Tuple[Dict[str, _Candidate], bool]:
        semantic, (payloads, capped) = await asyncio.gather(
            self._semantic(query, payload_filter),
            self._scan(payload_filter),
        )
        keywords = self._keywords(query)
        lexical = await asyncio.to_thread(self._score_lexical, keywords, payloads)

        top_structural = sorted(lexical.items(), key=lambda item: (-item[1].structural, item[0]))
        candidates: Dict[str, _Candidate] = dict(semantic)
        for chunk_id, candidate in top_structural[:self._limit(query)]:
            candidates.setdefault(chunk_id, _Candidate(payload=candidate.payload))

        # Semantic hits get their structural component even when outside the top structural set
        for chunk_id, candidate in candidates.items():
            if chunk_id in lexical:
                candidate.structural = lexical[chunk_id].structural
                candidate.matched = lexical[chunk_id].matched
            else:
                match = self.scorer.score(keywords, candidate.payload)
                candidate.structural = match.score
                candidate.matched = match.matched
        return candidates, capped

    # ============ Post-scoring ============

    def _weights(self, strategy: str) -> Tuple[float, float]:
        """(semantic, structural) weights for the strategy that actually ran."""
        if strategy == "semantic":
            return 1.0, 0.0
        if strategy == "hybrid":
            return self.config.semantic_weight, self.config.structural_weight
        return 0.0, 1.0

    def _rank(
        self,
        query: Query,
        strategy: str,
        candidates: Dict[str, _Candidate],
        payload_filter: PayloadFilter,
    ) -> Tuple[List[ScoredChunk], bool]:
        semantic_weight, structural_weight = self._weights(strategy)

        scored: List[ScoredChunk] = []
        for candidate in candidates.values():
            chunk = Chunk.from_payload(candidate.payload)
            # 1. priority and category weighting
            score = candidate.semantic * semantic_weight + candidate.structural * structural_weight
            score *= self.config.priority_weights.get(chunk.priority.value, 1.0)
            category = chunk.metadata.get("category")
            if category is not None:
                score *= self.config.category_weights.get(category, 1.0)
            # 2. hard filters
            if not payload_matches(candidate.payload, payload_filter):
                continue
            scored.append(ScoredChunk(
                chunk=chunk,
                score=score,
                semantic_score=candidate.semantic,
                structural_score=candidate.structural,
                relevance_explanation=self.explain_relevance(query, chunk, candidate),
            ))

        scored.sort(key=_rank_key)

        # 3. drop near-duplicates adjacent in rank from the same file
        deduped: List[ScoredChunk] = []
        previous_tokens = None
        for result in scored:
            tokens = token_set(result.chunk.content)
            if deduped:
                previous = deduped[-1].chunk
                if (
                    previous.repository == result.chunk.repository
                    and previous.filepath == result.chunk.filepath
                    and jaccard(previous_tokens, tokens) >= self.config.dedup_threshold
                ):
                    continue
            deduped.append(result)
            previous_tokens = tokens

        truncated = len(deduped) > query.max_results
        return deduped[:query.max_results], truncated

    def explain_relevance(self, query: Query, chunk: Chunk, candidate: _Candidate) -> str:
        """Short human-readable reason a chunk was selected."""
        reasons = []
        if candidate.semantic > 0.8:
            reasons.append("High semantic similarity")
        elif candidate.semantic > 0.6:
            reasons.append("Good semantic match")
        elif candidate.semantic > 0:
            reasons.append("Semantic match")
        if candidate.matched:
            reasons.append("Keyword match: " + ", ".join(candidate.matched[:5]))
        if chunk.priority == Priority.HIGH:
            reasons.append("High priority content")
        if query.framework and chunk.metadata.get("framework") == query.framework:
            reasons.append(f"Matches framework {query.framework}")
        if query.language and chunk.metadata.get("language") == normalize_language(query.language):
            reasons.append(f"Matches language {query.language}")
        return "; ".join(reasons) or "Related content"

    @staticmethod
    def calculate_confidence(results: List[ScoredChunk]) -> float:
        """Rough confidence that the result set answers the task, in [0, 1]."""
        if not results:
            return 0.0
        scores = [min(r.score, 1.0) for r in results]
        confidence = sum(scores) / len(scores) * 0.5
        if any(score > 0.8 for score in scores):
            confidence += 0.3
        if len({r.chunk.repository for r in results}) > 1:
            confidence += 0.2
        return round(min(confidence, 1.0), 4)


def _chunk_categories(chunk: Chunk) -> List[str]:
    categories = list(chunk.metadata.get("categories") or [])
    category = chunk.metadata.get("category")
    if category and category not in categories:
        categories.append(category)
    return categories


def _rank_key(result: ScoredChunk):
    """Score first, then priority, recency, brevity and identity for a total order."""
    chunk = result.chunk
    return (
        -result.score,
        -chunk.priority.rank,
        -(chunk.metadata.get("last_modified") or 0.0),
        len(chunk.content),
        chunk.identity,
    )
