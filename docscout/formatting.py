"""Markdown rendering of context pages for an assistant prompt."""

from collections import OrderedDict
from typing import Dict, List, Optional

from .models import ChunkType, ContextPage, ScoredChunk


def format_chunk(result: ScoredChunk, show_explanation: bool = True) -> str:
    """Render one chunk: headings in bold, code fenced with its language."""
    chunk = result.chunk
    content = chunk.content.strip()

    if chunk.type == ChunkType.HEADING:
        body = f"**{content.lstrip('#').strip()}**"
    elif chunk.type == ChunkType.CODE and not content.startswith(("```", "~~~")):
        language = chunk.metadata.get("language") or ""
        body = f"```{language}\n{content}\n```"
    else:
        body = content

    if show_explanation and result.relevance_explanation:
        body += f"\n\n*{result.relevance_explanation}*"
    return body


def hierarchical_order(results: List[ScoredChunk]) -> List[ScoredChunk]:
    """Place each chunk right after its parent when the parent is present.

    Chunks whose parent is absent keep their rank order; children of one
    parent also keep rank order.
    """
    present = {r.chunk.id for r in results}
    children: Dict[str, List[ScoredChunk]] = {}
    roots: List[ScoredChunk] = []
    for result in results:
        parent_id = result.chunk.metadata.get("parent_id")
        if parent_id in present and parent_id != result.chunk.id:
            children.setdefault(parent_id, []).append(result)
        else:
            roots.append(result)

    ordered: List[ScoredChunk] = []
    seen = set()

    def visit(result: ScoredChunk) -> None:
        if result.chunk.id in seen:
            return
        seen.add(result.chunk.id)
        ordered.append(result)
        for child in children.get(result.chunk.id, []):
            visit(child)

    for result in roots:
        visit(result)
    # Parent cycles leave nothing reachable from a root
    for result in results:
        visit(result)
    return ordered


def _brief(result: ScoredChunk, width: int = 100) -> str:
    chunk = result.chunk
    first = next((line.strip() for line in chunk.content.splitlines() if line.strip()), "")
    first = first.lstrip("#").strip()
    if len(first) > width:
        first = first[:width - 3].rstrip() + "..."
    return f"- `{chunk.repository}/{chunk.filepath}`: {first}"


def render_page(page: ContextPage, task: Optional[str] = None, show_explanations: bool = True) -> str:
    """
    Render a page as markdown.

    Chunks are grouped by repository, then file. Groups appear in the order of
    their best-ranked chunk, and within a file children follow their parent.
    Related groups are listed briefly after the main evidence.

    Args:
        page: Page to render
        task: Task description used as the title
        show_explanations: Append each chunk's relevance explanation

    Returns:
        Markdown text
    """
    lines: List[str] = []
    lines.append(f"# Context: {task}" if task else "# Context")
    lines.append("")

    repositories = sorted({r.chunk.repository for r in page.chunks})
    if repositories:
        lines.append(f"Sources: {', '.join(repositories)}")
        lines.append("")

    groups: "OrderedDict[str, OrderedDict[str, List[ScoredChunk]]]" = OrderedDict()
    for result in page.chunks:
        files = groups.setdefault(result.chunk.repository, OrderedDict())
        files.setdefault(result.chunk.filepath, []).append(result)

    for repository, files in groups.items():
        lines.append(f"## {repository}")
        lines.append("")
        for filepath, results in files.items():
            lines.append(f"### {filepath}")
            lines.append("")
            for result in hierarchical_order(results):
                lines.append(format_chunk(result, show_explanations))
                lines.append("")

    if page.related:
        lines.append("## Related")
        lines.append("")
        for group, results in page.related.items():
            lines.append(f"### {group}")
            lines.append("")
            lines.extend(_brief(result) for result in results)
            lines.append("")

    if page.budget_exceeded:
        lines.append("> Note: a single result exceeded the page size budget and is shown in full.")
        lines.append("")
    if page.metadata.scan_truncated:
        lines.append("> Note: the keyword scan stopped at its limit; some matches may be missing.")
        lines.append("")
    if page.has_more:
        lines.append(f"_More results available (cursor: `{page.cursor}`)._")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def summarize_page(page: ContextPage) -> Dict[str, object]:
    """Plain-dict summary of a page, suitable for JSON output."""
    return {
        "level": page.level,
        "chunks": len(page.chunks),
        "page_chars": page.page_chars,
        "has_more": page.has_more,
        "cursor": page.cursor,
        "budget_exceeded": page.budget_exceeded,
        "strategy": page.metadata.strategy,
        "confidence": page.metadata.confidence,
        "repositories": list(page.metadata.repositories),
        "scan_truncated": page.metadata.scan_truncated,
        "related": {group: len(results) for group, results in page.related.items()},
    }
