import pytest

from docscout import CapacityError, ChunkType, DocscoutConfig, DocumentProcessingError, RepositoryConfig, ValidationError
from docscout.chunking import DocumentProcessor, split_text, validate_filepath
from docscout.models import document_id

from conftest import SETUP_DOC


@pytest.fixture
def processor():
    return DocumentProcessor(DocscoutConfig())


@pytest.fixture
def repo():
    return RepositoryConfig(name="handbook", priority="high", category="guides")


def test_setup_section_becomes_heading_paragraph_and_code(processor, repo):
    result = processor.process_document("README.md", SETUP_DOC, repo)
    chunks = result.chunks

    assert [c.type for c in chunks] == [ChunkType.HEADING, ChunkType.PARAGRAPH, ChunkType.CODE]
    assert chunks[0].content == "# Setup"
    assert chunks[1].content == "Run `npm install`."
    assert chunks[2].content == "```bash\nnpm install\n```"
    assert chunks[2].metadata["language"] == "bash"
    assert "language" not in chunks[1].metadata
    assert chunks[1].metadata["heading_context"] == "Setup"
    assert chunks[2].metadata["parent_id"] == chunks[0].id
    assert result.errors == []


def test_chunk_ids_and_ordinals(processor, repo):
    chunks = processor.process_document("README.md", SETUP_DOC, repo).chunks
    doc_id = document_id("handbook", "README.md")
    assert [c.id for c in chunks] == [f"{doc_id}_{i:04d}" for i in range(3)]
    assert [c.ordinal for c in chunks] == [0, 1, 2]
    assert all(c.document_id == doc_id for c in chunks)


def test_chunking_is_deterministic(processor, repo):
    first = processor.process_document("README.md", SETUP_DOC, repo).chunks
    second = processor.process_document("README.md", SETUP_DOC, repo).chunks
    assert [(c.id, c.content, c.metadata) for c in first] == [(c.id, c.content, c.metadata) for c in second]


def test_repository_metadata_flows_into_chunks(processor):
    repo = RepositoryConfig(
        name="web", priority="low", category="frontend", branch="main",
        metadata={"framework": "react"},
    )
    chunks = processor.process_document("docs/getting-started.md", "Some intro text.", repo).chunks
    meta = chunks[0].metadata
    assert meta["priority"] == "low"
    assert meta["category"] == "frontend"
    assert meta["categories"] == ["frontend"]
    assert meta["framework"] == "react"
    assert meta["title"] == "getting started"
    assert meta["document_type"] == "markdown"


def test_fenced_code_is_never_split(processor, repo):
    body = "print('hello world')\n" * 150
    content = "# Example\n\n```python\n" + body + "```\n"
    chunks = processor.process_document("example.md", content, repo).chunks
    code = [c for c in chunks if c.type == ChunkType.CODE]
    assert len(code) == 1
    assert len(code[0].content) > processor.max_chars
    assert code[0].content.startswith("```python")
    assert code[0].content.endswith("```")


def test_long_paragraph_reconstructs_from_parts(processor, repo):
    sentence = "Sentence {} explains how retrieval ranks documentation chunks. "
    text = "".join(sentence.format(i) for i in range(200))[:4999] + "."
    assert len(text) == 5000

    chunks = processor.process_document("notes.txt", text, repo).chunks
    assert len(chunks) >= 3
    assert all(len(c.content) <= processor.max_chars for c in chunks)
    assert all(c.type == ChunkType.PARAGRAPH for c in chunks)
    assert all(c.metadata.get("overlap_chars", 0) <= processor.overlap_chars for c in chunks)
    assert chunks[0].metadata.get("overlap_chars", 0) == 0
    assert chunks[1].metadata["overlap_chars"] > 0

    rebuilt = "".join(c.content[c.metadata.get("overlap_chars", 0):] for c in chunks)
    assert rebuilt == text
    assert chunks[0].metadata["parts"] == len(chunks)


def test_split_text_short_input_is_untouched():
    assert split_text("short", max_chars=100, overlap_chars=10) == [("short", 0)]


def test_split_text_without_whitespace_hard_cuts():
    text = "x" * 250
    pieces = split_text(text, max_chars=100, overlap_chars=20)
    assert all(len(p) <= 100 for p, _ in pieces)
    assert "".join(p[o:] for p, o in pieces) == text


def test_source_split_prefers_line_boundaries():
    lines = ["value_{0} = compute({0})".format(i) for i in range(200)]
    text = "\n".join(lines)
    pieces = split_text(text, max_chars=500, overlap_chars=50, prefer_lines=True)
    for piece, overlap in pieces[:-1]:
        assert piece.endswith("\n")
    assert "".join(p[o:] for p, o in pieces) == text


def test_small_siblings_merge(processor, repo):
    content = "# Notes\n\nshort one.\n\nshort two.\n\n- a\n- b\n- c\n\n| x | y |\n|---|---|\n"
    chunks = processor.process_document("notes.md", content, repo).chunks
    assert [c.type for c in chunks] == [ChunkType.HEADING, ChunkType.PARAGRAPH, ChunkType.LIST, ChunkType.TABLE]
    assert chunks[1].content == "short one.\n\nshort two."
    assert chunks[2].content == "- a\n- b\n- c"
    assert chunks[3].content == "| x | y |\n|---|---|"


def test_merge_does_not_cross_sections(processor, repo):
    content = "# A\n\nfirst.\n\n# B\n\nsecond."
    chunks = processor.process_document("notes.md", content, repo).chunks
    paragraphs = [c for c in chunks if c.type == ChunkType.PARAGRAPH]
    assert [c.content for c in paragraphs] == ["first.", "second."]


def test_heading_breadcrumbs_and_parents(processor, repo):
    content = "# A\n\n## B\n\ntext under b\n\n### C\n\ntext under c\n\n## D\n\ntext under d\n"
    chunks = processor.process_document("guide.md", content, repo).chunks
    by_content = {c.content: c for c in chunks}

    assert "heading_context" not in by_content["# A"].metadata
    assert by_content["## B"].metadata["heading_context"] == "A"
    assert by_content["text under c"].metadata["heading_context"] == "A > B > C"
    assert by_content["text under c"].metadata["section"] == "C"
    assert by_content["text under c"].metadata["parent_id"] == by_content["### C"].id
    assert by_content["text under d"].metadata["heading_context"] == "A > D"
    assert by_content["## D"].metadata["parent_id"] == by_content["# A"].id
    assert by_content["### C"].metadata["heading_level"] == 3


def test_unterminated_fence_is_one_code_chunk(processor, repo):
    content = "# T\n\nIntro.\n\n```python\ndef f():\n    pass\n\n## Not a heading\n"
    result = processor.process_document("broken.md", content, repo)
    last = result.chunks[-1]
    assert len(result.chunks) == 3
    assert last.type == ChunkType.CODE
    assert "## Not a heading" in last.content
    assert last.metadata["unterminated"] is True
    assert any("unterminated" in e for e in result.errors)


def test_crlf_fence_closes_before_following_prose(processor, repo):
    content = "# Setup\r\n\r\n```bash\r\nnpm install\r\n```\r\n\r\n# Next\r\n\r\nProse after the block.\r\n"
    result = processor.process_document("README.md", content, repo)
    chunks = result.chunks

    assert [c.type for c in chunks] == [ChunkType.HEADING, ChunkType.CODE, ChunkType.HEADING, ChunkType.PARAGRAPH]
    assert chunks[1].content == "```bash\nnpm install\n```"
    assert "unterminated" not in chunks[1].metadata
    assert chunks[3].content == "Prose after the block."
    assert result.errors == []


def test_line_endings_do_not_change_chunks(processor, repo):
    unix = processor.process_document("README.md", SETUP_DOC, repo)
    windows = processor.process_document("README.md", SETUP_DOC.replace("\n", "\r\n"), repo)
    assert [c.content for c in windows.chunks] == [c.content for c in unix.chunks]
    assert windows.document.content_hash == unix.document.content_hash


def test_source_file_chunks_per_declaration(processor, repo):
    content = "import os\n\n\ndef alpha():\n    return 1\n\n\nclass Beta:\n    pass\n"
    chunks = processor.process_document("pkg/mod.py", content, repo).chunks
    assert [c.metadata.get("section") for c in chunks] == [None, "alpha", "Beta"]
    assert all(c.type == ChunkType.CODE for c in chunks)
    assert all(c.metadata["language"] == "python" for c in chunks)


def test_frontmatter_sets_title_and_tags(processor, repo):
    content = "---\ntitle: Deploying\ntags: [ops]\n---\n\nBody text here.\n"
    chunks = processor.process_document("deploy.md", content, repo).chunks
    assert chunks[0].metadata["title"] == "Deploying"
    assert chunks[0].metadata["tags"] == ["ops"]
    assert chunks[0].metadata["start_line"] == 5


def test_parser_failure_degrades_to_paragraphs(processor, repo, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("parser exploded")

    monkeypatch.setattr("docscout.chunking.parse_document", boom)
    result = processor.process_document("doc.md", "first block\n\nsecond block", repo)
    assert [c.type for c in result.chunks] == [ChunkType.PARAGRAPH]
    assert result.chunks[0].content == "first block\n\nsecond block"
    assert any("parser exploded" in e for e in result.errors)


def test_empty_document_has_no_chunks(processor, repo):
    assert processor.process_document("empty.md", "\n\n", repo).chunks == []


@pytest.mark.parametrize("path", ["../etc/passwd", "docs/../../secret.md", "/etc/passwd", "~/notes.md", "", "a\x00b.md"])
def test_rejects_unsafe_paths(processor, repo, path):
    with pytest.raises(ValidationError) as exc:
        processor.process_document(path, "content", repo)
    assert exc.value.field == "filepath"


def test_validate_filepath_normalizes_separators():
    assert validate_filepath("docs\\guide.md") == "docs/guide.md"


def test_document_size_limit(repo):
    processor = DocumentProcessor(DocscoutConfig(max_document_chars=100))
    with pytest.raises(CapacityError) as exc:
        processor.process_document("big.md", "x" * 101, repo)
    assert exc.value.what == "document_chars"
    assert exc.value.actual == 101


def test_chunk_count_limit(repo):
    processor = DocumentProcessor(DocscoutConfig(max_chunks_per_document=2))
    with pytest.raises(CapacityError) as exc:
        processor.process_document("README.md", SETUP_DOC, repo)
    assert exc.value.what == "chunks_per_document"


def test_binary_content_is_rejected(processor, repo):
    with pytest.raises(DocumentProcessingError):
        processor.process_document("blob.md", "abc\x00def", repo)
