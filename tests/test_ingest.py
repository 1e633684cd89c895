import asyncio

from docscout import RepositoryConfig

from conftest import SETUP_DOC, source

V1 = "# Deploy\n\nBuild the image.\n\n```bash\ndocker build .\n```\n\n## Rollback\n\nRe-deploy the previous tag."
V2 = "# Deploy\n\nUse the release pipeline."


def _file_payloads(index, repository, filepath):
    return index.scroll({"repository": repository, "filepath": filepath})


async def test_ingest_reports_counts(scout, repo, index):
    report = await scout.ingest([source(repo, "README.md", SETUP_DOC), source(repo, "deploy.md", V1)])
    assert report.documents == 2
    assert report.indexed == 2
    assert report.failed == 0
    assert report.chunks == index.stats().chunk_count
    assert index.stats().document_count == 2


async def test_reingesting_unchanged_content_is_a_no_op(scout, repo, index, embedder):
    await scout.ingest([source(repo, "deploy.md", V1)])
    version = index.version
    calls = embedder.calls
    before = _file_payloads(index, "handbook", "deploy.md")

    report = await scout.ingest([source(repo, "deploy.md", V1)])
    assert report.unchanged == 1
    assert report.indexed == 0
    assert index.version == version
    assert embedder.calls == calls
    assert _file_payloads(index, "handbook", "deploy.md") == before


async def test_changed_content_supersedes_all_old_chunks(scout, repo, index):
    await scout.ingest([source(repo, "deploy.md", V1)])
    old = _file_payloads(index, "handbook", "deploy.md")
    assert len(old) == 5

    outcome = await scout.file_changed(repo, "deploy.md", V2)
    assert outcome.status == "indexed"

    new = _file_payloads(index, "handbook", "deploy.md")
    assert [p["content"] for p in new] == ["# Deploy", "Use the release pipeline."]
    assert len({p["document_hash"] for p in new}) == 1
    assert new[0]["document_hash"] != old[0]["document_hash"]

    response = await scout.search({"task": "docker build image rollback", "strategy": "structural"})
    assert all("docker" not in r.chunk.content for r in response.results)


async def test_stale_sync_seq_is_skipped(scout, repo, index):
    first = await scout.file_changed(repo, "deploy.md", V1, sync_seq=5)
    assert first.status == "indexed"

    stale = await scout.file_changed(repo, "deploy.md", V2, sync_seq=3)
    assert stale.status == "skipped"
    payloads = _file_payloads(index, "handbook", "deploy.md")
    assert len(payloads) == 5
    assert all(p["sync_seq"] == 5 for p in payloads)

    newer = await scout.file_changed(repo, "deploy.md", V2, sync_seq=6)
    assert newer.status == "indexed"
    assert len(_file_payloads(index, "handbook", "deploy.md")) == 2


async def test_concurrent_writes_to_one_file_stay_consistent(scout, repo, index):
    await asyncio.gather(
        scout.file_changed(repo, "deploy.md", V1, sync_seq=1),
        scout.file_changed(repo, "deploy.md", V2, sync_seq=2),
    )
    payloads = _file_payloads(index, "handbook", "deploy.md")
    assert len({p["document_hash"] for p in payloads}) == 1
    assert [p["ordinal"] for p in payloads] == list(range(len(payloads)))


async def test_file_locks_are_released_after_writes(scout, repo):
    await scout.ingest([source(repo, f"notes/{i}.md", f"# Note {i}\n\nBody {i}.\n") for i in range(20)])
    await asyncio.gather(
        scout.file_changed(repo, "deploy.md", V1, sync_seq=1),
        scout.file_changed(repo, "deploy.md", V2, sync_seq=2),
    )
    await scout.file_deleted("handbook", "deploy.md")
    assert scout.indexer._locks == {}


async def test_failing_document_does_not_abort_batch(scout, repo, index):
    report = await scout.ingest([
        source(repo, "../escape.md", "nope"),
        source(repo, "README.md", SETUP_DOC),
    ])
    assert report.indexed == 1
    assert report.failed == 1
    assert "handbook/../escape.md" in report.errors
    assert index.stats().chunk_count == 3


async def test_embedding_failure_keeps_previous_version(scout, repo, index, embedder):
    await scout.ingest([source(repo, "deploy.md", V1)])
    embedder.fail = True

    report = await scout.ingest([source(repo, "deploy.md", V2)])
    assert report.failed == 1
    assert "ConnectionError" in report.errors["handbook/deploy.md"][0]
    assert len(_file_payloads(index, "handbook", "deploy.md")) == 5


async def test_parse_errors_are_reported_but_indexed(scout, repo):
    report = await scout.ingest([source(repo, "broken.md", "# T\n\n```python\nprint(1)\n")])
    assert report.indexed == 1
    assert any("unterminated" in e for e in report.errors["handbook/broken.md"])


async def test_file_deleted(scout, repo, index):
    await scout.ingest([source(repo, "deploy.md", V1), source(repo, "README.md", SETUP_DOC)])
    assert await scout.file_deleted("handbook", "deploy.md") == 5
    assert _file_payloads(index, "handbook", "deploy.md") == []
    assert len(_file_payloads(index, "handbook", "README.md")) == 3


async def test_delete_repository(scout, repo, index):
    other = RepositoryConfig(name="other")
    await scout.ingest([source(repo, "README.md", SETUP_DOC), source(other, "README.md", SETUP_DOC)])
    assert await scout.delete_repository("handbook") == 3
    assert {p["repository"] for p in index.scroll()} == {"other"}


async def test_payload_carries_provenance(scout, repo, index):
    await scout.ingest([source(repo, "README.md", SETUP_DOC, last_modified=1700000000.0, sync_seq=9)])
    payload = _file_payloads(index, "handbook", "README.md")[2]
    assert payload["type"] == "code"
    assert payload["ordinal"] == 2
    assert payload["sync_seq"] == 9
    assert payload["metadata"]["last_modified"] == 1700000000.0
    assert payload["metadata"]["category"] == "guides"
    assert payload["metadata"]["priority"] == "medium"
