import pytest

from docscout import Chunk, ChunkType, ScoredChunk, SearchMetadata, ValidationError
from docscout.progressive import (
    ProgressiveContext,
    decode_cursor,
    encode_cursor,
    extract_code_signature,
    summarize_text,
)

from conftest import SETUP_DOC, source


TOPICS = [
    ("timeouts", "Set connect and read timeouts separately."),
    ("jitter", "Randomize delays to avoid thundering herds."),
    ("circuit breakers", "Open the breaker after repeated failures."),
    ("idempotency", "Only repeat requests that are safe to send twice."),
    ("rate limits", "Honor the Retry-After header from the server."),
    ("queues", "Move poisoned messages to a dead letter queue."),
]


def _guide() -> str:
    parts = ["# Retry guide\n"]
    for topic, detail in TOPICS:
        parts.append(f"## Retry {topic}\n\nRetry guidance on {topic} covers backoff settings. {detail}\n")
    return "\n".join(parts)


def _scored(ordinal, content, chunk_type=ChunkType.PARAGRAPH, score=1.0, **metadata):
    chunk = Chunk(
        id=f"doc_{ordinal:04d}",
        document_id="doc",
        repository="handbook",
        filepath="guide.md",
        content=content,
        type=chunk_type,
        ordinal=ordinal,
        metadata=metadata,
    )
    return ScoredChunk(chunk=chunk, score=score)


@pytest.fixture
def progressive(scout):
    return scout.progressive


async def _all_pages(scout, query, level=None):
    pages = [await scout.get_context_page(query, level=level)]
    while pages[-1].has_more:
        pages.append(await scout.get_context_page(query, cursor=pages[-1].cursor))
    return pages


async def test_pages_cover_the_ranking_exactly_once(scout, repo):
    await scout.ingest([source(repo, "retry.md", _guide())])
    query = {"task": "retry backoff settings", "strategy": "structural", "max_chunks": 4}

    ranked = await scout.search(query)
    pages = await _all_pages(scout, query)

    ids = [r.chunk.id for page in pages for r in page.chunks]
    assert ids == [r.chunk.id for r in ranked.results]
    assert len(ids) == len(set(ids)) == 13
    assert [len(p.chunks) for p in pages] == [4, 4, 4, 1]
    assert pages[-1].cursor is None
    assert all(p.level == "detailed" for p in pages)


async def test_pagination_is_deterministic(scout, repo):
    await scout.ingest([source(repo, "retry.md", _guide())])
    query = {"task": "retry backoff settings", "strategy": "hybrid", "max_chunks": 3}

    first = await _all_pages(scout, query)
    scout.generator.ranking_cache.clear()
    second = await _all_pages(scout, query)

    assert [[r.chunk.id for r in p.chunks] for p in first] == [[r.chunk.id for r in p.chunks] for p in second]
    assert [p.cursor for p in first] == [p.cursor for p in second]


async def test_pages_respect_character_budget(scout, repo):
    await scout.ingest([source(repo, "retry.md", _guide())])
    query = {"task": "retry backoff settings", "strategy": "structural", "max_chars": 120}

    for page in await _all_pages(scout, query):
        assert page.chunks
        assert page.page_chars == sum(len(r.chunk.content) for r in page.chunks)
        if page.budget_exceeded:
            assert len(page.chunks) == 1
        else:
            assert page.page_chars <= 120


def test_oversized_chunk_is_placed_alone(progressive):
    ranked = [
        _scored(0, "a" * 50),
        _scored(1, "b" * 50),
        _scored(2, "c" * 500),
        _scored(3, "d" * 10),
    ]
    metadata = SearchMetadata(strategy="hybrid")

    page1 = progressive.build_page(ranked, metadata, max_chars=120, fingerprint="fp")
    assert [r.chunk.ordinal for r in page1.chunks] == [0, 1]
    assert page1.budget_exceeded is False
    assert decode_cursor(page1.cursor)["offset"] == 2

    page2 = progressive.build_page(ranked, metadata, offset=2, max_chars=120, fingerprint="fp")
    assert [r.chunk.ordinal for r in page2.chunks] == [2]
    assert page2.budget_exceeded is True
    assert page2.page_chars == 500

    page3 = progressive.build_page(ranked, metadata, offset=3, max_chars=120, fingerprint="fp")
    assert [r.chunk.ordinal for r in page3.chunks] == [3]
    assert page3.has_more is False
    assert page3.cursor is None


def test_offset_past_end_is_rejected(progressive):
    with pytest.raises(ValidationError):
        progressive.build_page([_scored(0, "x")], SearchMetadata(strategy="hybrid"), offset=5)


def test_overview_promotes_headings_and_short_paragraphs(progressive):
    results = [
        _scored(0, "def f():\n    pass", ChunkType.CODE, score=1.0),
        _scored(1, "# Intro", ChunkType.HEADING, score=0.9),
        _scored(2, "long " * 100, ChunkType.PARAGRAPH, score=0.85),
        _scored(3, "Short summary.", ChunkType.PARAGRAPH, score=0.82),
    ]
    overview = progressive.order_for_level(results, "overview")
    assert [r.chunk.ordinal for r in overview] == [1, 3, 0, 2]
    assert progressive.order_for_level(results, "detailed") == results


async def test_cursor_keeps_its_level(scout, repo):
    await scout.ingest([source(repo, "retry.md", _guide())])
    query = {"task": "retry backoff settings", "strategy": "structural", "max_chunks": 2}

    first = await scout.get_context_page(query, level="overview")
    second = await scout.get_context_page(query, cursor=first.cursor)
    assert second.level == "overview"
    assert not {r.chunk.id for r in first.chunks} & {r.chunk.id for r in second.chunks}


def test_cursor_round_trip():
    cursor = encode_cursor(7, "overview", "abc")
    assert "=" not in cursor
    assert decode_cursor(cursor) == {"offset": 7, "level": "overview", "fingerprint": "abc"}


@pytest.mark.parametrize("cursor", ["not-a-cursor!!", "e30", encode_cursor(0, "detailed", "x")[:-4], "é"])
def test_malformed_cursors(cursor):
    with pytest.raises(ValidationError) as exc:
        decode_cursor(cursor)
    assert exc.value.field == "cursor"


async def test_cursor_from_another_query_is_rejected(scout, repo):
    await scout.ingest([source(repo, "retry.md", _guide())])
    page = await scout.get_context_page({"task": "retry backoff settings", "max_chunks": 2})
    assert page.cursor

    with pytest.raises(ValidationError) as exc:
        await scout.get_context_page({"task": "something else", "max_chunks": 2}, cursor=page.cursor)
    assert exc.value.field == "cursor"


async def test_cursor_with_conflicting_level_is_rejected(scout, repo):
    await scout.ingest([source(repo, "retry.md", _guide())])
    query = {"task": "retry backoff settings", "max_chunks": 2}
    page = await scout.get_context_page(query)

    with pytest.raises(ValidationError) as exc:
        await scout.get_context_page(query, cursor=page.cursor, level="overview")
    assert exc.value.field == "cursor"


async def test_cursor_is_invalidated_by_index_changes(scout, repo):
    await scout.ingest([source(repo, "retry.md", _guide())])
    query = {"task": "retry backoff settings", "max_chunks": 2}
    page = await scout.get_context_page(query)

    await scout.ingest([source(repo, "README.md", SETUP_DOC)])
    with pytest.raises(ValidationError) as exc:
        await scout.get_context_page(query, cursor=page.cursor)
    assert exc.value.field == "cursor"


async def test_page_size_may_change_between_pages(scout, repo):
    await scout.ingest([source(repo, "retry.md", _guide())])
    query = {"task": "retry backoff settings", "strategy": "structural", "max_chunks": 2}
    first = await scout.get_context_page(query)
    second = await scout.get_context_page(dict(query, max_chunks=5), cursor=first.cursor)
    assert len(second.chunks) == 5


async def test_unknown_level_is_rejected(scout):
    with pytest.raises(ValidationError) as exc:
        await scout.get_context_page({"task": "anything"}, level="summary")
    assert exc.value.field == "level"


async def test_empty_result_page(scout):
    page = await scout.generate_context({"task": "nothing indexed yet"})
    assert page.chunks == []
    assert page.has_more is False
    assert page.cursor is None


def test_progressive_uses_generator_config(scout):
    assert ProgressiveContext(scout.generator).config is scout.config


PYTHON_CODE = '''```python
def connect(host, port=5432):
    """Open a connection."""
    return Connection(host, port)

class Pool:
    def __init__(self, size):
        self.size = size
```'''


def test_code_signature_drops_bodies():
    assert extract_code_signature("def f(a, b):\n    return a + b") == "def f(a, b):"
    assert extract_code_signature("export function add(a, b) {\n  return a + b;\n}") == "export function add(a, b) {"
    assert extract_code_signature("def f(\n    a,\n    b,\n):\n    pass") == "def f(\n    a,\n    b,\n):"


def test_code_signature_keeps_first_three_declarations():
    code = "\n".join(f"def f{i}():\n    pass" for i in range(5))
    assert extract_code_signature(code) == "def f0():\n\ndef f1():\n\ndef f2():"


def test_code_signature_falls_back_to_first_lines():
    script = "\n".join(f"echo {i}" for i in range(8))
    assert extract_code_signature(script) == "\n".join(f"echo {i}" for i in range(5))


def test_summarize_text():
    assert summarize_text("One.\nTwo.") == "One.\nTwo."
    assert summarize_text("1\n2\n3\n4\n5") == "1\n2\n3\n..."
    long_text = "First sentence here. " + "word " * 100
    assert summarize_text(long_text, max_chars=36) == "First sentence here.\n..."


def test_condense_marks_previews_and_summaries(progressive):
    code = progressive.condense(_scored(0, PYTHON_CODE, ChunkType.CODE, language="python"))
    assert code.chunk.content == (
        "```python\ndef connect(host, port=5432):\n\nclass Pool:\n\n    def __init__(self, size):\n```"
    )
    assert code.chunk.metadata["preview"] is True
    assert code.chunk.metadata["original_length"] == len(PYTHON_CODE)
    assert code.chunk.metadata["language"] == "python"
    assert code.chunk.id == "doc_0000"

    prose = "\n".join(f"Line {i}." for i in range(6))
    summary = progressive.condense(_scored(1, prose))
    assert summary.chunk.content == "Line 0.\nLine 1.\nLine 2.\n..."
    assert summary.chunk.metadata == {"summarized": True, "original_length": len(prose)}

    heading = _scored(2, "# Intro", ChunkType.HEADING)
    assert progressive.condense(heading) is heading
    short = _scored(3, "Already short.")
    assert progressive.condense(short) is short


def test_overview_pages_carry_condensed_chunks(progressive):
    prose = "\n".join(f"Step {i} of the rollout." for i in range(10))
    ranked = [_scored(0, PYTHON_CODE, ChunkType.CODE), _scored(1, prose)]
    metadata = SearchMetadata(strategy="hybrid")

    overview = progressive.build_page(ranked, metadata, level="overview")
    detailed = progressive.build_page(ranked, metadata, level="detailed")

    assert sorted(r.chunk.id for r in overview.chunks) == sorted(r.chunk.id for r in detailed.chunks)
    assert overview.page_chars == sum(len(r.chunk.content) for r in overview.chunks)
    assert overview.page_chars < detailed.page_chars
    assert all(r.chunk.metadata.get("preview") or r.chunk.metadata.get("summarized") for r in overview.chunks)
    assert detailed.chunks[1].chunk.content == prose


def test_related_groups_collect_borderline_results(progressive):
    ranked = [
        _scored(0, "Strong.", score=0.95, category="guides"),
        _scored(1, "Borderline guide.", score=0.6, category="guides"),
        _scored(2, "Borderline react.", score=0.55, framework="react"),
        _scored(3, "Borderline plain.", score=0.5),
        _scored(4, "Too weak.", score=0.3, category="guides"),
    ]
    groups = progressive.related_groups(ranked)
    assert {k: [r.chunk.ordinal for r in v] for k, v in groups.items()} == {
        "guides": [1],
        "react": [2],
        "general": [3],
    }
    assert progressive.related_groups(ranked, exclude={"doc_0001"}).keys() == {"react", "general"}


def test_related_groups_keep_the_best_few(progressive):
    ranked = [_scored(i, f"Guide {i}.", score=0.69 - i * 0.01, category="guides") for i in range(5)]
    assert [r.chunk.ordinal for r in progressive.related_groups(ranked)["guides"]] == [0, 1, 2]


def test_first_page_only_carries_related(progressive):
    ranked = [
        _scored(0, "Strong.", score=0.95),
        _scored(1, "Borderline.", score=0.6),
    ]
    metadata = SearchMetadata(strategy="hybrid")
    first = progressive.build_page(ranked, metadata, max_chunks=1, fingerprint="fp")
    assert [r.chunk.ordinal for r in first.related["general"]] == [1]

    second = progressive.build_page(ranked, metadata, offset=1, max_chunks=1, fingerprint="fp")
    assert second.related == {}

    whole = progressive.build_page(ranked, metadata, max_chunks=5)
    assert whole.related == {}


async def test_overview_through_the_engine(scout, repo):
    doc = (
        "# Deploy\n\n"
        "```python\ndef deploy(target):\n    rollout(target)\n    return True\n```\n"
    )
    await scout.ingest([source(repo, "deploy.md", doc)])
    query = {"task": "deploy rollout target", "strategy": "structural"}

    detailed = await scout.get_context_page(query)
    overview = await scout.get_context_page(query, level="overview")

    assert sorted(r.chunk.id for r in overview.chunks) == sorted(r.chunk.id for r in detailed.chunks)
    code = [r.chunk for r in overview.chunks if r.chunk.type == ChunkType.CODE]
    assert code and code[0].content == "```python\ndef deploy(target):\n```"
    assert code[0].metadata["preview"] is True
    assert all("preview" not in r.chunk.metadata for r in detailed.chunks)
