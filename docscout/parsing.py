"""Structural parsing of raw documents into a closed set of unit variants.

Every parser returns a flat, ordered list of units. The chunker only has to
know these five shapes, which keeps its merge and split rules exhaustive.
"""

import json
import logging
import re
import textwrap
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from bs4 import BeautifulSoup

from .models import ChunkType, DocumentType, SOURCE_CODE_TYPES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Heading:
    text: str  # raw heading as written, e.g. "# Setup"
    title: str  # heading text without markup
    level: int
    start_line: int = 0
    end_line: int = 0


@dataclass(frozen=True)
class Paragraph:
    text: str
    start_line: int = 0
    end_line: int = 0


@dataclass(frozen=True)
class CodeBlock:
    text: str
    language: Optional[str] = None
    fenced: bool = False  # fenced blocks are atomic
    terminated: bool = True
    section: Optional[str] = None  # declaration name or top-level key
    start_line: int = 0
    end_line: int = 0


@dataclass(frozen=True)
class ListItem:
    text: str
    start_line: int = 0
    end_line: int = 0


@dataclass(frozen=True)
class TableRow:
    text: str
    start_line: int = 0
    end_line: int = 0


Unit = Union[Heading, Paragraph, CodeBlock, ListItem, TableRow]

UNIT_CHUNK_TYPES = {
    Heading: ChunkType.HEADING,
    Paragraph: ChunkType.PARAGRAPH,
    CodeBlock: ChunkType.CODE,
    ListItem: ChunkType.LIST,
    TableRow: ChunkType.TABLE,
}


@dataclass
class ParseResult:
    units: List[Unit]
    metadata: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)


# ============ Document type detection ============

_EXTENSION_TYPES = {
    ".md": DocumentType.MARKDOWN,
    ".markdown": DocumentType.MARKDOWN,
    ".mdx": DocumentType.MARKDOWN,
    ".rst": DocumentType.RESTRUCTURED_TEXT,
    ".html": DocumentType.HTML,
    ".htm": DocumentType.HTML,
    ".js": DocumentType.JAVASCRIPT,
    ".jsx": DocumentType.JAVASCRIPT,
    ".mjs": DocumentType.JAVASCRIPT,
    ".ts": DocumentType.TYPESCRIPT,
    ".tsx": DocumentType.TYPESCRIPT,
    ".py": DocumentType.PYTHON,
    ".java": DocumentType.JAVA,
    ".cs": DocumentType.CSHARP,
    ".go": DocumentType.GO,
    ".rs": DocumentType.RUST,
    ".yaml": DocumentType.YAML,
    ".yml": DocumentType.YAML,
    ".json": DocumentType.JSON,
    ".txt": DocumentType.PLAIN_TEXT,
}


def detect_document_type(filepath: str) -> DocumentType:
    """Guess the content type from the file name."""
    name = filepath.replace("\\", "/").rsplit("/", 1)[-1].lower()
    if "." not in name.lstrip("."):
        return DocumentType.MARKDOWN if name == "readme" else DocumentType.UNKNOWN
    ext = "." + name.rsplit(".", 1)[-1]
    return _EXTENSION_TYPES.get(ext, DocumentType.UNKNOWN)


_LANGUAGE_ALIASES = {
    "py": "python",
    "python3": "python",
    "js": "javascript",
    "node": "javascript",
    "ts": "typescript",
    "sh": "bash",
    "shell": "bash",
    "zsh": "bash",
    "console": "bash",
    "yml": "yaml",
    "rs": "rust",
    "golang": "go",
    "c#": "csharp",
    "cs": "csharp",
}


def normalize_language(hint: Optional[str]) -> Optional[str]:
    """Lower-case a language hint and fold common aliases."""
    if not hint:
        return None
    hint = hint.strip().lower()
    if not hint:
        return None
    return _LANGUAGE_ALIASES.get(hint, hint)


# ============ Markdown ============

_FRONTMATTER_RE = re.compile(r"\A---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)", re.DOTALL)
_FENCE_OPEN_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})[ \t]*([^\s`]*)")
_ATX_HEADING_RE = re.compile(r"^ {0,3}(#{1,6})[ \t]+(.+?)[ \t]*#*[ \t]*$")
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])[ \t]+")
_SETEXT_RE = re.compile(r"^ {0,3}(=+|-+)[ \t]*$")
_RULE_RE = re.compile(r"^ {0,3}([-*_])(?:[ \t]*\1){2,}[ \t]*$")


def _split_frontmatter(content: str) -> Tuple[Dict[str, Any], str, int, List[str]]:
    """Return (frontmatter, body, line offset of body, errors)."""
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return {}, content, 0, []
    body = content[match.end():]
    offset = content[:match.end()].count("\n")
    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        logger.warning("Failed to parse frontmatter: %s", e)
        return {}, body, offset, [f"invalid frontmatter: {e}"]
    if not isinstance(data, dict):
        return {}, body, offset, ["frontmatter is not a mapping"]
    return {str(k): v for k, v in data.items()}, body, offset, []


def parse_markdown(content: str) -> ParseResult:
    """Parse markdown into headings, paragraphs, code blocks, list items and table rows."""
    metadata, body, offset, errors = _split_frontmatter(content)
    lines = body.split("\n")
    units: List[Unit] = []

    buffer: List[str] = []
    buffer_kind: Optional[type] = None
    buffer_start = 0

    def flush(end_line: int) -> None:
        nonlocal buffer, buffer_kind
        if buffer and buffer_kind is not None:
            text = "\n".join(buffer).strip()
            if text:
                units.append(buffer_kind(text=text, start_line=buffer_start, end_line=end_line))
        buffer = []
        buffer_kind = None

    def start(kind: type, line_no: int, line: str) -> None:
        nonlocal buffer, buffer_kind, buffer_start
        buffer = [line]
        buffer_kind = kind
        buffer_start = line_no

    i = 0
    while i < len(lines):
        line = lines[i]
        line_no = i + offset

        fence = _FENCE_OPEN_RE.match(line)
        if fence:
            flush(line_no - 1)
            marker = fence.group(1)
            language = normalize_language(fence.group(2))
            close_re = re.compile(r"^ {0,3}" + re.escape(marker[0]) + "{" + str(len(marker)) + r",}[ \t]*$")
            j = i + 1
            while j < len(lines) and not close_re.match(lines[j]):
                j += 1
            if j >= len(lines):
                # Unterminated fence: the rest of the document becomes one block
                text = "\n".join(lines[i:]).rstrip()
                units.append(CodeBlock(
                    text=text, language=language, fenced=True, terminated=False,
                    start_line=line_no, end_line=len(lines) - 1 + offset,
                ))
                errors.append(f"unterminated code fence at line {line_no + 1}")
                logger.warning("Unterminated code fence at line %d", line_no + 1)
                return ParseResult(units, metadata, errors)
            text = "\n".join(lines[i:j + 1])
            units.append(CodeBlock(
                text=text, language=language, fenced=True,
                start_line=line_no, end_line=j + offset,
            ))
            i = j + 1
            continue

        heading = _ATX_HEADING_RE.match(line)
        if heading:
            flush(line_no - 1)
            units.append(Heading(
                text=line.strip(), title=heading.group(2).strip(), level=len(heading.group(1)),
                start_line=line_no, end_line=line_no,
            ))
            i += 1
            continue

        stripped = line.strip()

        # Setext heading: a single paragraph line underlined with === or ---
        if (
            buffer_kind is Paragraph and len(buffer) == 1
            and _SETEXT_RE.match(line) and buffer[0].strip()
        ):
            title = buffer[0].strip()
            level = 1 if stripped.startswith("=") else 2
            units.append(Heading(
                text=f"{title}\n{stripped}", title=title, level=level,
                start_line=buffer_start, end_line=line_no,
            ))
            buffer = []
            buffer_kind = None
            i += 1
            continue

        if not stripped:
            flush(line_no - 1)
        elif _RULE_RE.match(line):
            flush(line_no - 1)
        elif _LIST_ITEM_RE.match(line) and not (buffer_kind is Paragraph and line[:1].isspace()):
            flush(line_no - 1)
            start(ListItem, line_no, line)
        elif buffer_kind is ListItem and line[:1].isspace():
            buffer.append(line)  # continuation of the current item
        elif stripped.startswith("|"):
            flush(line_no - 1)
            units.append(TableRow(text=stripped, start_line=line_no, end_line=line_no))
        elif buffer_kind is Paragraph:
            buffer.append(line)
        else:
            flush(line_no - 1)
            start(Paragraph, line_no, line)
        i += 1

    flush(len(lines) - 1 + offset)

    if "title" not in metadata:
        for unit in units:
            if isinstance(unit, Heading) and unit.level == 1:
                metadata["title"] = unit.title
                break
    return ParseResult(units, metadata, errors)


# ============ reStructuredText ============

_RST_UNDERLINE_RE = re.compile(r"^([=\-~`'\"^_*+#:.])\1{2,}\s*$")
_RST_LIST_RE = re.compile(r"^(?:[*\-+]|\d+\.|#\.)\s+")
_RST_CODE_DIRECTIVE_RE = re.compile(r"^\.\.\s+(?:code-block|code|sourcecode)::\s*(\S*)")


def parse_restructured_text(content: str) -> ParseResult:
    """Parse reStructuredText titles, literal blocks, lists and paragraphs."""
    lines = content.split("\n")
    units: List[Unit] = []
    metadata: Dict[str, Any] = {}
    underline_levels: List[str] = []

    def indented_block(begin: int) -> int:
        """Return the index after an indented block starting at ``begin``."""
        j = begin
        while j < len(lines) and (not lines[j].strip() or lines[j][:1].isspace()):
            j += 1
        # Trailing blank lines do not belong to the block
        while j > begin and not lines[j - 1].strip():
            j -= 1
        return j

    paragraph: List[str] = []
    para_start = 0
    para_kind: type = Paragraph

    def flush(end_line: int) -> None:
        nonlocal paragraph, para_kind
        text = "\n".join(paragraph).strip()
        if text:
            units.append(para_kind(text=text, start_line=para_start, end_line=end_line))
        paragraph = []
        para_kind = Paragraph

    i = 0
    while i < len(lines):
        line = lines[i]
        nxt = lines[i + 1] if i + 1 < len(lines) else ""

        if (
            line.strip() and not line[:1].isspace()
            and _RST_UNDERLINE_RE.match(nxt) and len(nxt.strip()) >= len(line.strip())
        ):
            flush(i - 1)
            char = nxt.strip()[0]
            if char not in underline_levels:
                underline_levels.append(char)
            level = underline_levels.index(char) + 1
            title = line.strip()
            units.append(Heading(text=f"{line}\n{nxt}", title=title, level=level, start_line=i, end_line=i + 1))
            if "title" not in metadata:
                metadata["title"] = title
            i += 2
            continue

        directive = _RST_CODE_DIRECTIVE_RE.match(line)
        if directive:
            flush(i - 1)
            end = indented_block(i + 1)
            text = "\n".join(lines[i:end]).rstrip()
            units.append(CodeBlock(
                text=text, language=normalize_language(directive.group(1)), fenced=True,
                start_line=i, end_line=end - 1,
            ))
            i = end
            continue

        if not line.strip():
            flush(i - 1)
            i += 1
            continue

        if _RST_LIST_RE.match(line):
            flush(i - 1)
            paragraph = [line]
            para_start = i
            para_kind = ListItem
            i += 1
            continue

        if not paragraph:
            para_start = i
        paragraph.append(line)

        if line.rstrip().endswith("::"):
            # Literal block follows the paragraph
            flush(i)
            j = i + 1
            while j < len(lines) and not lines[j].strip():
                j += 1
            if j < len(lines) and lines[j][:1].isspace():
                end = indented_block(j)
                units.append(CodeBlock(
                    text=textwrap.dedent("\n".join(lines[j:end])).strip("\n"), fenced=True,
                    start_line=j, end_line=end - 1,
                ))
                i = end
                continue
        i += 1

    flush(len(lines) - 1)
    return ParseResult(units, metadata, [])


# ============ HTML ============

_HTML_BLOCK_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6", "p", "pre", "li", "tr", "blockquote", "dt", "dd"]


def parse_html(content: str) -> ParseResult:
    """Parse HTML with BeautifulSoup into structural units."""
    soup = BeautifulSoup(content, "html.parser")
    metadata: Dict[str, Any] = {}

    if soup.title and soup.title.string:
        metadata["title"] = soup.title.string.strip()
    description = soup.find("meta", attrs={"name": "description"})
    if description and description.get("content"):
        metadata["description"] = description["content"].strip()

    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()

    units: List[Unit] = []
    for element in soup.find_all(_HTML_BLOCK_TAGS):
        if any(parent.name in _HTML_BLOCK_TAGS for parent in element.parents):
            continue
        line = max(0, (getattr(element, "sourceline", None) or 1) - 1)
        name = element.name
        if name[0] == "h" and name[1:].isdigit():
            title = element.get_text(" ", strip=True)
            if title:
                units.append(Heading(text=title, title=title, level=int(name[1]), start_line=line, end_line=line))
                metadata.setdefault("title", title)
        elif name == "pre":
            code = element.find("code")
            classes = (code.get("class") if code else None) or element.get("class") or []
            language = None
            for cls in classes:
                if cls.startswith(("language-", "lang-")):
                    language = cls.split("-", 1)[1]
                    break
            text = element.get_text().strip("\n")
            if text.strip():
                units.append(CodeBlock(
                    text=text, language=normalize_language(language), fenced=True,
                    start_line=line, end_line=line + text.count("\n"),
                ))
        elif name == "li":
            text = element.get_text(" ", strip=True)
            if text:
                units.append(ListItem(text=f"- {text}", start_line=line, end_line=line))
        elif name == "tr":
            cells = [cell.get_text(" ", strip=True) for cell in element.find_all(["th", "td"])]
            if any(cells):
                units.append(TableRow(text="| " + " | ".join(cells) + " |", start_line=line, end_line=line))
        else:
            text = element.get_text(" ", strip=True)
            if text:
                units.append(Paragraph(text=text, start_line=line, end_line=line))

    if not units:
        text = soup.get_text("\n")
        return ParseResult(parse_plain_text(text).units, metadata, [])
    return ParseResult(units, metadata, [])


# ============ Source code ============

_DECLARATION_PATTERNS = {
    DocumentType.JAVASCRIPT: [
        r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(\w+)",
        r"^(?:export\s+)?(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s+)?(?:\([^)]*\)|[\w$]+)\s*=>",
        r"^(?:export\s+)?(?:default\s+)?class\s+(\w+)",
    ],
    DocumentType.TYPESCRIPT: [
        r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s+(\w+)",
        r"^(?:export\s+)?(?:const|let|var)\s+(\w+)\s*(?::[^=]+)?=\s*(?:async\s+)?(?:\([^)]*\)|[\w$]+)\s*=>",
        r"^(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)",
        r"^(?:export\s+)?interface\s+(\w+)",
        r"^(?:export\s+)?type\s+(\w+)",
        r"^(?:export\s+)?enum\s+(\w+)",
    ],
    DocumentType.PYTHON: [
        r"^(?:async\s+)?def\s+(\w+)",
        r"^class\s+(\w+)",
    ],
    DocumentType.JAVA: [
        r"^(?:public|private|protected)?\s*(?:abstract\s+|final\s+)?(?:class|interface|enum|record)\s+(\w+)",
    ],
    DocumentType.CSHARP: [
        r"^(?:public|private|protected|internal)?\s*(?:static\s+|abstract\s+|sealed\s+|partial\s+)*(?:class|interface|struct|enum|record)\s+(\w+)",
    ],
    DocumentType.GO: [
        r"^func\s+(?:\(\w+\s+\*?\w+\)\s+)?(\w+)",
        r"^type\s+(\w+)\s+(?:struct|interface)",
    ],
    DocumentType.RUST: [
        r"^(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?fn\s+(\w+)",
        r"^(?:pub(?:\([^)]*\))?\s+)?(?:struct|enum|trait)\s+(\w+)",
        r"^impl(?:<[^>]*>)?\s+([\w:]+)",
    ],
}

# Lines that belong to the declaration that follows them
_ATTACHED_PREFIX_RE = re.compile(r"^(?:@|#\[|///|//|#(?!!)|/\*\*|\*)")


def parse_source_code(content: str, doc_type: DocumentType) -> ParseResult:
    """Split a source file at its top-level declarations."""
    language = doc_type.value
    patterns = [re.compile(p) for p in _DECLARATION_PATTERNS.get(doc_type, [])]
    lines = content.split("\n")

    starts: List[Tuple[int, Optional[str]]] = []
    for idx, line in enumerate(lines):
        for pattern in patterns:
            match = pattern.match(line)
            if match:
                begin = idx
                # Pull decorators, attributes and doc comments into the declaration
                while begin > 0 and lines[begin - 1].strip() and _ATTACHED_PREFIX_RE.match(lines[begin - 1].lstrip()):
                    begin -= 1
                if starts and begin <= starts[-1][0]:
                    begin = idx
                starts.append((begin, match.group(1)))
                break

    if not starts:
        text = content.strip("\n")
        units = [CodeBlock(text=text, language=language, start_line=0, end_line=len(lines) - 1)] if text.strip() else []
        return ParseResult(units, {}, [])

    units: List[Unit] = []
    boundaries = ([(0, None)] if starts[0][0] > 0 else []) + starts
    for n, (begin, name) in enumerate(boundaries):
        end = boundaries[n + 1][0] if n + 1 < len(boundaries) else len(lines)
        block = lines[begin:end]
        while block and not block[-1].strip():
            block.pop()
        text = "\n".join(block)
        if text.strip():
            units.append(CodeBlock(
                text=text, language=language, section=name,
                start_line=begin, end_line=begin + len(block) - 1,
            ))
    return ParseResult(units, {}, [])


# ============ Structured (JSON / YAML) ============

def parse_structured(content: str, doc_type: DocumentType, max_unit_chars: int) -> ParseResult:
    """Keep small files whole; split large mappings per top-level key."""
    language = doc_type.value
    lines = content.count("\n")
    if len(content.strip()) <= max_unit_chars:
        text = content.strip()
        units = [CodeBlock(text=text, language=language, start_line=0, end_line=lines)] if text else []
        return ParseResult(units, {}, [])

    try:
        if doc_type == DocumentType.JSON:
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (ValueError, yaml.YAMLError) as e:
        logger.warning("Failed to parse %s document, falling back to plain text: %s", language, e)
        result = parse_plain_text(content)
        result.errors.append(f"invalid {language}: {e}")
        return result

    if not isinstance(data, dict):
        return ParseResult(
            [CodeBlock(text=content.strip(), language=language, start_line=0, end_line=lines)], {}, []
        )

    units: List[Unit] = []
    for key, value in data.items():
        if doc_type == DocumentType.JSON:
            text = json.dumps({key: value}, indent=2, ensure_ascii=False)
        else:
            text = yaml.safe_dump({key: value}, sort_keys=False, allow_unicode=True).rstrip()
        units.append(CodeBlock(text=text, language=language, section=str(key)))
    return ParseResult(units, {}, [])


# ============ Plain text ============

def parse_plain_text(content: str) -> ParseResult:
    """Split plain text into paragraphs on blank lines."""
    units: List[Unit] = []
    block: List[str] = []
    block_start = 0
    for idx, line in enumerate(content.split("\n")):
        if line.strip():
            if not block:
                block_start = idx
            block.append(line)
        elif block:
            units.append(Paragraph(text="\n".join(block).strip(), start_line=block_start, end_line=idx - 1))
            block = []
    if block:
        units.append(Paragraph(text="\n".join(block).strip(), start_line=block_start, end_line=block_start + len(block) - 1))
    return ParseResult(units, {}, [])


def parse_document(content: str, doc_type: DocumentType, max_unit_chars: int = 2000) -> ParseResult:
    """Dispatch to the parser for ``doc_type``."""
    if doc_type == DocumentType.MARKDOWN:
        return parse_markdown(content)
    if doc_type == DocumentType.RESTRUCTURED_TEXT:
        return parse_restructured_text(content)
    if doc_type == DocumentType.HTML:
        return parse_html(content)
    if doc_type in SOURCE_CODE_TYPES:
        return parse_source_code(content, doc_type)
    if doc_type in (DocumentType.JSON, DocumentType.YAML):
        return parse_structured(content, doc_type, max_unit_chars)
    return parse_plain_text(content)
