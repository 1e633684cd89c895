"""Budget-bounded, resumable pages over a ranked result list."""

import base64
import binascii
import hashlib
import json
import logging
import re
from dataclasses import replace
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from .config import DocscoutConfig
from .errors import ValidationError
from .models import ChunkType, ContextPage, Query, ScoredChunk, SearchMetadata
from .search import ContextGenerator

logger = logging.getLogger(__name__)

LEVELS = ("overview", "detailed")


_SIGNATURE_PATTERNS = [
    re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s+"),
    re.compile(r"^\s*(?:export\s+)?(?:const|let|var)\s+\w+\s*="),
    re.compile(r"^\s*(?:export\s+)?(?:abstract\s+)?class\s+"),
    re.compile(r"^\s*(?:public|private|protected)\s+"),
    re.compile(r"^\s*(?:async\s+)?def\s+"),
    re.compile(r"^\s*func\s+"),
    re.compile(r"^\s*(?:pub\s+)?fn\s+"),
    re.compile(r"^\s*(?:export\s+)?interface\s+"),
    re.compile(r"^\s*(?:export\s+)?type\s+\w+"),
]


def _closes_signature(line: str) -> bool:
    stripped = line.rstrip()
    return not stripped or stripped.endswith(("{", ":", ";", "=>")) or "{" in stripped


def extract_code_signature(code: str, max_signatures: int = 3) -> str:
    """Declaration lines of a code block with their bodies dropped.

    Falls back to the first five lines when nothing looks like a declaration.
    """
    lines = code.split("\n")
    signatures: List[str] = []
    current: List[str] = []
    for line in lines:
        if any(pattern.match(line) for pattern in _SIGNATURE_PATTERNS):
            if current:
                signatures.append("\n".join(current))
            current = [line]
        elif current and line.strip():
            current.append(line)
        else:
            if current:
                signatures.append("\n".join(current))
                current = []
            continue
        if _closes_signature(current[-1]):
            signatures.append("\n".join(current))
            current = []
    if current:
        signatures.append("\n".join(current))

    if signatures:
        return "\n\n".join(signatures[:max_signatures])
    return "\n".join(lines[:5])


def summarize_text(text: str, max_lines: int = 3, max_chars: int = 400) -> str:
    """First lines of a text block, cut at a sentence or word boundary, with a trailing ``...``."""
    lines = text.split("\n")
    summary = "\n".join(lines[:max_lines])
    cut = len(lines) > max_lines
    if len(summary) > max_chars:
        window = summary[:max_chars]
        boundary = max(window.rfind(". "), window.rfind("\n"))
        if boundary < max_chars // 2:
            boundary = window.rfind(" ")
        summary = window[:boundary + 1].rstrip() if boundary > 0 else window
        cut = True
    return summary + "\n..." if cut else summary


def _split_fence(content: str) -> Tuple[str, str, str]:
    lines = content.split("\n")
    if len(lines) >= 2 and lines[0].startswith(("```", "~~~")) and lines[-1].strip().startswith(lines[0][:3]):
        return lines[0], "\n".join(lines[1:-1]), lines[-1]
    return "", content, ""


def encode_cursor(offset: int, level: str, fingerprint: str) -> str:
    """Opaque continuation token."""
    raw = json.dumps({"offset": offset, "level": level, "fingerprint": fingerprint}, sort_keys=True)
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> Dict[str, Any]:
    """Decode a continuation token or raise ValidationError on field ``cursor``."""
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError) as e:
        raise ValidationError("cursor", "malformed cursor") from e
    if (
        not isinstance(data, dict)
        or not isinstance(data.get("offset"), int)
        or data["offset"] < 0
        or data.get("level") not in LEVELS
        or not isinstance(data.get("fingerprint"), str)
    ):
        raise ValidationError("cursor", "malformed cursor")
    return data


class ProgressiveContext:
    """Splits ranked evidence into pages that fit a chunk and character budget.

    Pages never cut a chunk. A chunk larger than the whole character budget is
    placed alone on its own page and flagged with ``budget_exceeded``.
    Overview pages carry condensed chunks (see :meth:`condense`) and the first
    page of either level carries the related groups.
    """

    def __init__(self, generator: ContextGenerator, config: Optional[DocscoutConfig] = None):
        self.generator = generator
        self.config = config or generator.config

    def page_fingerprint(self, query: Query, index_version: int) -> str:
        """Binds a cursor to the query and to the index state it was issued against."""
        raw = f"{query.fingerprint()}:{index_version}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]

    def order_for_level(self, results: List[ScoredChunk], level: str) -> List[ScoredChunk]:
        """Reorder ranked results for the requested level of detail."""
        if level == "detailed":
            return list(results)

        boost = self.config.overview_boost
        short = self.config.overview_paragraph_chars

        def adjusted(result: ScoredChunk) -> float:
            chunk = result.chunk
            if chunk.type == ChunkType.HEADING or (
                chunk.type == ChunkType.PARAGRAPH and len(chunk.content) <= short
            ):
                return result.score * boost
            return result.score

        # Stable: equal adjusted scores keep their rank order
        order = sorted(range(len(results)), key=lambda i: (-adjusted(results[i]), i))
        return [results[i] for i in order]

    def condense(self, result: ScoredChunk) -> ScoredChunk:
        """Overview form of a result.

        Code is reduced to its declaration signatures and prose to its first
        lines. A condensed chunk keeps its id and gains a ``preview`` or
        ``summarized`` flag plus ``original_length`` in its metadata.
        """
        chunk = result.chunk
        if chunk.type == ChunkType.HEADING:
            return result
        if chunk.type == ChunkType.CODE:
            opening, body, closing = _split_fence(chunk.content)
            preview = extract_code_signature(body)
            content = "\n".join(part for part in (opening, preview, closing) if part)
            flag = "preview"
        else:
            content = summarize_text(
                chunk.content, self.config.summary_lines, self.config.overview_paragraph_chars
            )
            flag = "summarized"
        if content == chunk.content:
            return result
        metadata = dict(chunk.metadata)
        metadata[flag] = True
        metadata["original_length"] = len(chunk.content)
        return replace(result, chunk=replace(chunk, content=content, metadata=metadata))

    def related_groups(
        self, ranked: List[ScoredChunk], exclude: Optional[Set[str]] = None
    ) -> Dict[str, List[ScoredChunk]]:
        """Lower-scoring evidence grouped by category or framework.

        A result is related when its score lies in
        ``[0.7 * expansion_threshold, expansion_threshold)`` and its chunk id is
        not in ``exclude``. Each group keeps its best ``related_per_group``
        results, in rank order.
        """
        exclude = exclude or set()
        high = self.config.expansion_threshold
        low = high * 0.7
        groups: Dict[str, List[ScoredChunk]] = {}
        for result in ranked:
            if not low <= result.score < high or result.chunk.id in exclude:
                continue
            metadata = result.chunk.metadata
            key = metadata.get("category") or metadata.get("framework") or "general"
            group = groups.setdefault(str(key), [])
            if len(group) < self.config.related_per_group:
                group.append(result)
        return groups

    def build_page(
        self,
        ranked: List[ScoredChunk],
        metadata: SearchMetadata,
        *,
        offset: int = 0,
        level: str = "detailed",
        max_chunks: Optional[int] = None,
        max_chars: Optional[int] = None,
        fingerprint: str = "",
    ) -> ContextPage:
        """
        Greedily fill one page starting at ``offset``.

        Args:
            ranked: Full ranked result list
            metadata: Metadata of the ranking the page is drawn from
            offset: Position in the level-ordered list to start from
            level: 'overview' or 'detailed'
            max_chunks: Chunk budget (config default if None)
            max_chars: Character budget (config default if None)
            fingerprint: Value bound into the continuation cursor

        Returns:
            ContextPage with a cursor when more results remain, and related
            groups when ``offset`` is 0
        """
        max_chunks = max_chunks or self.config.default_page_chunks
        max_chars = max_chars or self.config.default_page_chars
        ordered = self.order_for_level(ranked, level)
        if offset > len(ordered):
            raise ValidationError("cursor", "cursor points past the end of the results")

        page: List[ScoredChunk] = []
        chars = 0
        budget_exceeded = False
        position = offset
        while position < len(ordered) and len(page) < max_chunks:
            result = ordered[position]
            if level == "overview":
                result = self.condense(result)
            size = len(result.chunk.content)
            if chars + size > max_chars:
                if not page:
                    page.append(result)
                    chars += size
                    budget_exceeded = True
                    position += 1
                break
            page.append(result)
            chars += size
            position += 1

        has_more = position < len(ordered)
        related = self.related_groups(ranked, {r.chunk.id for r in page}) if offset == 0 else {}
        return ContextPage(
            chunks=page,
            metadata=replace(metadata),
            level=level,
            has_more=has_more,
            cursor=encode_cursor(position, level, fingerprint) if has_more else None,
            page_chars=chars,
            budget_exceeded=budget_exceeded,
            related=related,
        )

    async def get_page(
        self,
        query: Union[Query, Dict[str, Any]],
        cursor: Optional[str] = None,
        level: Optional[str] = None,
    ) -> ContextPage:
        """
        Return the first page for a query, or the page a cursor points at.

        Continuation pages reuse the cached ranking when it is still present;
        otherwise retrieval is re-run, which yields the same ranking for the
        same query and index state.

        Raises:
            ValidationError: unknown level, or a cursor issued for another
                query, level or index state
        """
        query = self.generator.prepare_query(query)
        if level is not None and level not in LEVELS:
            raise ValidationError("level", f"must be one of {', '.join(LEVELS)}")

        fingerprint = self.page_fingerprint(query, self.generator.index.version)
        offset = 0
        if cursor:
            state = decode_cursor(cursor)
            if state["fingerprint"] != fingerprint:
                raise ValidationError("cursor", "cursor does not belong to this query or index state")
            if level is not None and level != state["level"]:
                raise ValidationError("cursor", "cursor was issued for a different level")
            level = state["level"]
            offset = state["offset"]
        level = level or "detailed"

        response = await self.generator.ranked(query)
        page = self.build_page(
            response.results,
            response.metadata,
            offset=offset,
            level=level,
            max_chunks=query.max_chunks,
            max_chars=query.max_chars,
            fingerprint=fingerprint,
        )
        logger.debug(
            "Page at offset %d (%s): %d chunks, %d chars, has_more=%s",
            offset, level, len(page.chunks), page.page_chars, page.has_more,
        )
        return page
