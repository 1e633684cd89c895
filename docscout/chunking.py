"""Document chunking: structural units to size-bounded, retrievable chunks."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .config import DocscoutConfig
from .errors import CapacityError, DocumentProcessingError, ValidationError
from .models import (
    Chunk,
    ChunkType,
    Document,
    DocumentType,
    ProcessingResult,
    RepositoryConfig,
    SOURCE_CODE_TYPES,
    content_hash,
    document_id,
)
from .parsing import (
    UNIT_CHUNK_TYPES,
    CodeBlock,
    Heading,
    ParseResult,
    detect_document_type,
    normalize_language,
    parse_document,
    parse_plain_text,
)

logger = logging.getLogger(__name__)

_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*\s+")
_WHITESPACE_RE = re.compile(r"\s")

_MERGE_SEPARATORS = {
    ChunkType.PARAGRAPH: "\n\n",
    ChunkType.LIST: "\n",
    ChunkType.TABLE: "\n",
}


def _find_cut(text: str, start: int, limit: int, prefer_lines: bool) -> int:
    """Pick the end of a piece in ``text[start:limit]``.

    Preference: sentence boundary, then line boundary, then whitespace,
    then a hard cut at ``limit``.
    """
    if limit >= len(text):
        return len(text)
    window = text[start:limit]
    floor = len(window) // 2

    if not prefer_lines:
        ends = [m.end() for m in _SENTENCE_END_RE.finditer(window)]
        if ends and ends[-1] > floor:
            return start + ends[-1]

    newline = window.rfind("\n")
    if newline > 0:
        return start + newline + 1

    space = max(window.rfind(" "), window.rfind("\t"))
    if space > 0:
        return start + space + 1

    return limit


def _overlap_start(text: str, piece_start: int, cut: int, overlap_chars: int) -> int:
    """Start of the overlap slice carried into the next piece, aligned to a word."""
    if overlap_chars <= 0:
        return cut
    begin = max(piece_start, cut - overlap_chars)
    if begin > piece_start and not text[begin - 1].isspace():
        match = _WHITESPACE_RE.search(text, begin, cut)
        if not match:
            return cut
        begin = match.end()
    return begin


def split_text(
    text: str,
    *,
    max_chars: int = 2000,
    overlap_chars: int = 300,
    prefer_lines: bool = False,
) -> List[Tuple[str, int]]:
    """
    Split text that exceeds ``max_chars`` into overlapping pieces.

    Each piece is at most ``max_chars`` long including its overlap prefix.
    Stripping the overlap prefix from every piece and concatenating the rest
    gives back ``text`` exactly.

    Args:
        text: Input text
        max_chars: Hard maximum per piece
        overlap_chars: Maximum overlap carried from the previous piece
        prefer_lines: Skip sentence boundaries (used for source code)

    Returns:
        List of (piece, overlap_prefix_length) tuples
    """
    if len(text) <= max_chars:
        return [(text, 0)]
    overlap_chars = min(overlap_chars, max_chars - 1)

    pieces: List[Tuple[str, int]] = []
    pos = 0
    prefix_start = 0
    while pos < len(text):
        budget = max_chars - (pos - prefix_start)
        cut = _find_cut(text, pos, min(len(text), pos + budget), prefer_lines)
        pieces.append((text[prefix_start:cut], pos - prefix_start))
        if cut >= len(text):
            break
        prefix_start = _overlap_start(text, pos, cut, overlap_chars)
        pos = cut
    return pieces


def validate_filepath(filepath: str) -> str:
    """Reject paths that could escape the repository root."""
    if not filepath or not filepath.strip():
        raise ValidationError("filepath", "filepath must not be empty")
    if "\x00" in filepath:
        raise ValidationError("filepath", "filepath contains a NUL byte")
    normalized = filepath.replace("\\", "/")
    if normalized.startswith(("~/", "/")) or normalized == "~":
        raise ValidationError("filepath", f"filepath must be relative: {filepath}")
    if ".." in normalized.split("/"):
        raise ValidationError("filepath", f"path traversal in filepath: {filepath}")
    return normalized


@dataclass
class _Block:
    """A unit on its way to becoming one or more chunks."""
    type: ChunkType
    text: str
    start_line: int
    end_line: int
    heading_context: Optional[str] = None
    parent: Optional["_Block"] = None  # enclosing heading block
    language: Optional[str] = None
    section: Optional[str] = None
    heading_level: Optional[int] = None
    atomic: bool = False
    prefer_lines: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


class DocumentProcessor:
    """Turns raw documents into ordered chunk lists.

    Chunking is deterministic: the same filepath, content and repository
    always produce the same chunk ids, contents and metadata.
    """

    def __init__(self, config: Optional[DocscoutConfig] = None):
        self.config = config or DocscoutConfig()
        self.min_chars = self.config.min_chunk_chars
        self.max_chars = self.config.max_chunk_chars
        self.overlap_chars = self.config.overlap_chars

    def process_document(
        self,
        filepath: str,
        content: str,
        repository: RepositoryConfig,
        last_modified: Optional[float] = None,
    ) -> ProcessingResult:
        """
        Parse and chunk a single document.

        Args:
            filepath: Path relative to the repository root
            content: Decoded file content
            repository: Source repository configuration
            last_modified: Unix timestamp supplied by the source

        Returns:
            ProcessingResult with the document, its chunks and any recovered errors

        Raises:
            ValidationError: filepath escapes the repository
            CapacityError: document or chunk count above configured limits
            DocumentProcessingError: content is binary
        """
        filepath = validate_filepath(filepath)
        if len(content) > self.config.max_document_chars:
            raise CapacityError("document_chars", self.config.max_document_chars, len(content))
        if "\x00" in content:
            raise DocumentProcessingError(f"{filepath} looks like a binary file")
        content = content.replace("\r\n", "\n").replace("\r", "\n")

        doc_type = detect_document_type(filepath)
        parsed = self._parse(filepath, content, doc_type)

        metadata: Dict[str, Any] = dict(parsed.metadata)
        if repository.category:
            metadata["category"] = repository.category
        metadata["priority"] = repository.priority.value
        if repository.branch:
            metadata["branch"] = repository.branch
        metadata.update(repository.metadata)
        metadata.setdefault("title", _title_from_path(filepath))

        categories = metadata.get("categories") or []
        if isinstance(categories, str):
            categories = [categories]
        if repository.category and repository.category not in categories:
            categories = [repository.category] + list(categories)

        document = Document(
            id=document_id(repository.name, filepath),
            repository=repository.name,
            filepath=filepath,
            content=content,
            content_hash=content_hash(content),
            type=doc_type,
            priority=repository.priority,
            categories=[str(c) for c in categories],
            metadata=metadata,
            last_modified=last_modified,
        )

        chunks = self._build_chunks(document, parsed)
        if len(chunks) > self.config.max_chunks_per_document:
            raise CapacityError("chunks_per_document", self.config.max_chunks_per_document, len(chunks))

        logger.debug("Chunked %s/%s into %d chunks", repository.name, filepath, len(chunks))
        return ProcessingResult(document=document, chunks=chunks, errors=list(parsed.errors))

    # ------------------------------------------------------------------

    def _parse(self, filepath: str, content: str, doc_type: DocumentType) -> ParseResult:
        try:
            return parse_document(content, doc_type, self.max_chars)
        except Exception as e:
            logger.warning("Failed to parse %s as %s, falling back to paragraphs: %s", filepath, doc_type.value, e)
            result = parse_plain_text(content)
            result.errors.append(f"parse error ({doc_type.value}): {e}")
            return result

    def _build_chunks(self, document: Document, parsed: ParseResult) -> List[Chunk]:
        blocks = self._to_blocks(document, parsed)
        blocks = self._merge_small(blocks)

        chunks: List[Chunk] = []
        block_chunk_ids: Dict[int, str] = {}  # id(block) -> first chunk id
        base = self._base_metadata(document)

        for block in blocks:
            if block.atomic:
                pieces = [(block.text, 0)]
            else:
                pieces = split_text(
                    block.text,
                    max_chars=self.max_chars,
                    overlap_chars=self.overlap_chars,
                    prefer_lines=block.prefer_lines,
                )
            for part, (piece, overlap) in enumerate(pieces, start=1):
                if not piece.strip():
                    continue
                ordinal = len(chunks)
                chunk_id = f"{document.id}_{ordinal:04d}"
                block_chunk_ids.setdefault(id(block), chunk_id)

                metadata = dict(base)
                metadata.update(block.extra)
                metadata["ordinal"] = ordinal
                metadata["start_line"] = block.start_line
                metadata["end_line"] = block.end_line
                if block.language:
                    metadata["language"] = block.language
                if block.heading_context:
                    metadata["heading_context"] = block.heading_context
                if block.section:
                    metadata["section"] = block.section
                if block.heading_level is not None:
                    metadata["heading_level"] = block.heading_level
                if block.parent is not None and id(block.parent) in block_chunk_ids:
                    metadata["parent_id"] = block_chunk_ids[id(block.parent)]
                if overlap:
                    metadata["overlap_chars"] = overlap
                if len(pieces) > 1:
                    metadata["part"] = part
                    metadata["parts"] = len(pieces)

                chunks.append(Chunk(
                    id=chunk_id,
                    document_id=document.id,
                    repository=document.repository,
                    filepath=document.filepath,
                    content=piece,
                    type=block.type,
                    ordinal=ordinal,
                    metadata=metadata,
                    document_hash=document.content_hash,
                    content_hash=content_hash(piece),
                ))
        return chunks

    def _base_metadata(self, document: Document) -> Dict[str, Any]:
        meta = document.metadata
        base: Dict[str, Any] = {
            "title": meta.get("title"),
            "document_title": meta.get("title"),
            "description": meta.get("description"),
            "category": meta.get("category"),
            "categories": list(document.categories),
            "framework": meta.get("framework"),
            "priority": document.priority.value,
            "tags": meta.get("tags"),
            "document_type": document.type.value,
            "last_modified": document.last_modified,
        }
        return {k: v for k, v in base.items() if v not in (None, [], "")}

    def _to_blocks(self, document: Document, parsed: ParseResult) -> List[_Block]:
        """Annotate units with breadcrumbs and convert them to blocks."""
        doc_language = normalize_language(document.metadata.get("language"))
        if document.type in SOURCE_CODE_TYPES:
            doc_language = document.type.value

        blocks: List[_Block] = []
        stack: List[Tuple[int, str, _Block]] = []  # (level, title, heading block)

        for unit in parsed.units:
            if isinstance(unit, Heading):
                while stack and stack[-1][0] >= unit.level:
                    stack.pop()
                context = " > ".join(title for _, title, _ in stack) or None
                blocks.append(_Block(
                    type=ChunkType.HEADING,
                    text=unit.text,
                    start_line=unit.start_line,
                    end_line=unit.end_line,
                    heading_context=context,
                    parent=stack[-1][2] if stack else None,
                    section=unit.title,
                    heading_level=unit.level,
                    language=doc_language,
                ))
                stack.append((unit.level, unit.title, blocks[-1]))
                continue

            context = " > ".join(title for _, title, _ in stack) or None
            block = _Block(
                type=UNIT_CHUNK_TYPES[type(unit)],
                text=unit.text,
                start_line=unit.start_line,
                end_line=unit.end_line,
                heading_context=context,
                parent=stack[-1][2] if stack else None,
                section=stack[-1][1] if stack else None,
                language=doc_language,
            )
            if isinstance(unit, CodeBlock):
                block.atomic = unit.fenced
                block.prefer_lines = True
                block.language = unit.language or (doc_language if not unit.fenced else None)
                if unit.section:
                    block.section = unit.section
                if not unit.terminated:
                    block.extra["unterminated"] = True
            blocks.append(block)
        return blocks

    def _merge_small(self, blocks: List[_Block]) -> List[_Block]:
        """Merge undersized prose blocks into their next sibling of the same type."""
        merged: List[_Block] = []
        for block in blocks:
            prev = merged[-1] if merged else None
            if (
                prev is not None
                and prev.type in _MERGE_SEPARATORS
                and prev.type == block.type
                and len(prev.text) < self.min_chars
                and prev.heading_context == block.heading_context
                and prev.parent is block.parent
            ):
                separator = _MERGE_SEPARATORS[prev.type]
                if len(prev.text) + len(separator) + len(block.text) <= self.max_chars:
                    prev.text = prev.text + separator + block.text
                    prev.end_line = block.end_line
                    continue
            merged.append(block)
        return merged


def _title_from_path(filepath: str) -> str:
    name = filepath.rsplit("/", 1)[-1]
    stem = name.rsplit(".", 1)[0] if "." in name.lstrip(".") else name
    return stem.replace("-", " ").replace("_", " ").strip() or name
