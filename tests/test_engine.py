import asyncio
import json
import sys

import pytest

from docscout import ChunkType, Docscout, DocscoutConfig, RepositoryConfig, cli

from conftest import SETUP_DOC, FakeEmbedding, source


def test_process_document_accepts_repository_name(scout):
    result = scout.process_document("README.md", SETUP_DOC, "handbook")
    assert result.document.repository == "handbook"
    assert [c.type for c in result.chunks] == [ChunkType.HEADING, ChunkType.PARAGRAPH, ChunkType.CODE]


async def test_stats(scout, repo):
    await scout.ingest([source(repo, "README.md", SETUP_DOC)])
    stats = scout.stats()
    assert stats["documents"] == 1
    assert stats["chunks"] == 3
    assert stats["vectors"] == 3
    assert stats["index_backend"] == "memory"
    assert stats["embedding_model"] == "fake-hash"
    assert stats["index_version"] >= 1


async def test_ingest_directory(scout, tmp_path):
    (tmp_path / "guide.md").write_text(SETUP_DOC, encoding="utf-8")
    report = await scout.ingest_directory(str(tmp_path), RepositoryConfig(name="local", priority="high"))
    assert report.indexed == 1
    response = await scout.search({"task": "npm install", "repositories": ["local"]})
    assert response.results[0].chunk.priority.value == "high"


async def test_render_context(scout, repo):
    await scout.ingest([source(repo, "README.md", SETUP_DOC)])
    text = await scout.render_context({"task": "install dependencies", "language": "bash"})
    assert text.startswith("# Context: install dependencies")
    assert "### README.md" in text
    assert "```bash\nnpm install\n```" in text


async def test_usearch_backend_end_to_end(tmp_path, repo):
    config = DocscoutConfig(
        index_backend="usearch",
        db_path=str(tmp_path / "docs.db"),
        index_path=str(tmp_path / "docs.usearch"),
        dtype="f32",
        score_threshold=0.05,
    )
    scout = Docscout(config, embedder=FakeEmbedding(dim=64))
    await scout.ingest([source(repo, "README.md", SETUP_DOC)])
    scout.close()

    reopened = Docscout(config, embedder=FakeEmbedding(dim=64))
    try:
        assert reopened.stats()["chunks"] == 3
        assert reopened.stats()["repositories"][0]["repository"] == "handbook"
        page = await reopened.get_context_page({"task": "install dependencies", "language": "bash"})
        assert [r.chunk.type for r in page.chunks] == [ChunkType.CODE]
    finally:
        reopened.close()


# ============ CLI ============

@pytest.fixture
def cli_engine(monkeypatch, config, index):
    engine = Docscout(config, embedder=FakeEmbedding(), index=index)
    asyncio.run(engine.ingest([source(RepositoryConfig(name="handbook"), "README.md", SETUP_DOC)]))
    monkeypatch.setattr(cli, "_engine", lambda args: engine)
    return engine


def _run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["docscout", *argv])
    cli.main()


def test_cli_without_command_prints_help(monkeypatch, capsys):
    with pytest.raises(SystemExit) as exc:
        _run_cli(monkeypatch)
    assert exc.value.code == 0
    assert "docscout" in capsys.readouterr().out


def test_cli_query_json(monkeypatch, capsys, cli_engine):
    _run_cli(monkeypatch, "query", "install dependencies", "--language", "bash", "--json")
    output = json.loads(capsys.readouterr().out)
    assert output["chunks"] == 1
    assert output["has_more"] is False
    assert output["results"][0]["type"] == "code"


def test_cli_query_markdown(monkeypatch, capsys, cli_engine):
    _run_cli(monkeypatch, "query", "install dependencies", "--language", "bash")
    assert "# Context: install dependencies" in capsys.readouterr().out


def test_cli_reports_errors_as_json(monkeypatch, capsys, cli_engine):
    with pytest.raises(SystemExit) as exc:
        _run_cli(monkeypatch, "query", "install", "--max-results", "0")
    assert exc.value.code == 1
    error = json.loads(capsys.readouterr().err)
    assert error["kind"] == "validation"
    assert error["field"] == "max_results"


def test_cli_stats(monkeypatch, capsys, cli_engine):
    _run_cli(monkeypatch, "stats")
    assert json.loads(capsys.readouterr().out)["chunks"] == 3


def test_cli_index(monkeypatch, capsys, cli_engine, tmp_path):
    (tmp_path / "notes.md").write_text("# Notes\n\nSome notes.\n", encoding="utf-8")
    _run_cli(monkeypatch, "index", str(tmp_path), "--repo", "notes", "--priority", "low")
    report = json.loads(capsys.readouterr().out)
    assert report["indexed"] == 1
    assert {p["repository"] for p in cli_engine.index.scroll()} == {"handbook", "notes"}


def test_cli_error_details_follow_debug_setting(monkeypatch, capsys, index):
    embedder = FakeEmbedding()
    config = DocscoutConfig(index_backend="memory", score_threshold=0.05, debug=True)
    engine = Docscout(config, embedder=embedder, index=index)
    asyncio.run(engine.ingest([source(RepositoryConfig(name="handbook"), "README.md", SETUP_DOC)]))
    embedder.fail = True
    monkeypatch.setattr(cli, "_engine", lambda args: engine)

    with pytest.raises(SystemExit) as exc:
        _run_cli(monkeypatch, "query", "install dependencies")
    assert exc.value.code == 1
    error = json.loads(capsys.readouterr().err)
    assert error["kind"] == "upstream_unavailable"
    assert "embedding backend unreachable" in error["details"]["error"]


def test_cli_error_details_hidden_without_debug(monkeypatch, capsys, cli_engine):
    cli_engine.embedder.fail = True
    with pytest.raises(SystemExit):
        _run_cli(monkeypatch, "query", "install dependencies")
    assert "details" not in json.loads(capsys.readouterr().err)


def test_cli_debug_flag_reaches_the_engine(monkeypatch):
    seen = {}

    def fake_create(**kwargs):
        seen.update(kwargs)
        raise SystemExit(0)

    monkeypatch.setattr("docscout.engine.create_docscout", fake_create)
    with pytest.raises(SystemExit):
        _run_cli(monkeypatch, "--debug", "stats")
    assert seen["debug"] is True
