"""Ingestion: chunk, embed and persist documents idempotently."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .chunking import DocumentProcessor
from .config import DocscoutConfig
from .embeddings import BaseEmbeddingProvider, prepare_chunk_text
from .errors import DocscoutError
from .index import VectorIndex, VectorPoint
from .models import Chunk, IngestionReport, RepositoryConfig, SourceFile

logger = logging.getLogger(__name__)

INDEXED = "indexed"
UNCHANGED = "unchanged"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class DocumentOutcome:
    """What happened to one document during ingestion."""
    repository: str
    filepath: str
    status: str
    chunks: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class _FileLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class Indexer:
    """Writes chunked documents into the vector index.

    * unchanged content (same document hash) is a no-op
    * changed content replaces every previous chunk of the file
    * writes for the same file are serialized; different files run concurrently
    * a write carrying an older ``sync_seq`` than the stored one is skipped
    """

    def __init__(
        self,
        processor: DocumentProcessor,
        embedder: BaseEmbeddingProvider,
        index: VectorIndex,
        config: Optional[DocscoutConfig] = None,
    ):
        self.processor = processor
        self.embedder = embedder
        self.index = index
        self.config = config or processor.config
        self._locks: Dict[Tuple[str, str], _FileLock] = {}

    @asynccontextmanager
    async def _file_lock(self, repository: str, filepath: str):
        """Serialize writes to one file; the lock is dropped once nobody holds or awaits it."""
        key = (repository, filepath)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _FileLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    async def ingest_document(
        self,
        repository: RepositoryConfig,
        filepath: str,
        content: str,
        last_modified: Optional[float] = None,
        sync_seq: Optional[int] = None,
    ) -> DocumentOutcome:
        """
        Chunk, embed and store one document.

        Args:
            repository: Source repository configuration
            filepath: Path relative to the repository root
            content: Decoded file content
            last_modified: Unix timestamp supplied by the source
            sync_seq: Monotonic sequence number from the source provider

        Returns:
            DocumentOutcome describing what happened

        Raises:
            ValidationError, CapacityError: the document was rejected
            Exception: embedding or index failures propagate unchanged
        """
        async with self._file_lock(repository.name, filepath):
            result = await asyncio.to_thread(
                self.processor.process_document, filepath, content, repository, last_modified
            )
            document = result.document
            file_filter = {"repository": repository.name, "filepath": document.filepath}

            existing = await asyncio.to_thread(self.index.scroll, file_filter)
            stored_seq = max((int(p.get("sync_seq") or 0) for p in existing), default=0)

            if existing and sync_seq is not None and sync_seq < stored_seq:
                logger.info(
                    "Skipping stale write for %s/%s (seq %d < %d)",
                    repository.name, document.filepath, sync_seq, stored_seq,
                )
                return DocumentOutcome(repository.name, document.filepath, SKIPPED, errors=result.errors)

            if (
                existing
                and len(existing) == len(result.chunks)
                and all(p.get("document_hash") == document.content_hash for p in existing)
            ):
                logger.debug("Unchanged: %s/%s", repository.name, document.filepath)
                return DocumentOutcome(repository.name, document.filepath, UNCHANGED, len(existing), result.errors)

            # Embed before touching the index so a failure leaves the old version in place
            points = await self._embed(result.chunks, sync_seq if sync_seq is not None else stored_seq)

            if existing:
                await asyncio.to_thread(self.index.delete, file_filter)
            await asyncio.to_thread(self.index.upsert, points)

            logger.debug("Indexed %s/%s: %d chunks", repository.name, document.filepath, len(points))
            return DocumentOutcome(repository.name, document.filepath, INDEXED, len(points), result.errors)

    async def _embed(self, chunks: List[Chunk], sync_seq: int) -> List[VectorPoint]:
        points: List[VectorPoint] = []
        batch_size = max(1, self.config.embed_batch_size)
        for start in range(0, len(chunks), batch_size):
            batch = chunks[start:start + batch_size]
            texts = [prepare_chunk_text(chunk) for chunk in batch]
            vectors = await asyncio.to_thread(self.embedder.embed, texts)
            points.extend(
                VectorPoint.from_chunk(chunk.with_embedding(vector), sync_seq)
                for chunk, vector in zip(batch, vectors)
            )
        return points

    async def file_changed(
        self,
        repository: RepositoryConfig,
        filepath: str,
        content: str,
        sync_seq: Optional[int] = None,
        last_modified: Optional[float] = None,
    ) -> DocumentOutcome:
        """Entry point for source providers reporting a changed file."""
        return await self.ingest_document(repository, filepath, content, last_modified, sync_seq)

    async def file_deleted(self, repository: str, filepath: str) -> int:
        """Remove every chunk of a deleted file. Returns count deleted."""
        async with self._file_lock(repository, filepath):
            return await asyncio.to_thread(
                self.index.delete, {"repository": repository, "filepath": filepath}
            )

    async def delete_repository(self, repository: str) -> int:
        """Remove every chunk of a repository. Returns count deleted."""
        deleted = await asyncio.to_thread(self.index.delete, {"repository": repository})
        logger.info("Deleted %d chunks from repository %s", deleted, repository)
        return deleted

    async def ingest(self, files: Iterable[SourceFile]) -> IngestionReport:
        """
        Ingest a batch of files concurrently.

        A failing document is recorded in the report and never aborts the batch.
        """
        files = list(files)
        report = IngestionReport(documents=len(files))
        semaphore = asyncio.Semaphore(max(1, self.config.ingest_concurrency))

        async def run(source: SourceFile) -> DocumentOutcome:
            async with semaphore:
                try:
                    return await self.ingest_document(
                        source.repository, source.filepath, source.content,
                        source.last_modified, source.sync_seq,
                    )
                except DocscoutError as e:
                    logger.warning("Failed to ingest %s/%s: %s", source.repository.name, source.filepath, e)
                    return DocumentOutcome(source.repository.name, source.filepath, FAILED, errors=[str(e)])
                except Exception as e:
                    logger.exception("Failed to ingest %s/%s", source.repository.name, source.filepath)
                    return DocumentOutcome(
                        source.repository.name, source.filepath, FAILED, errors=[f"{type(e).__name__}: {e}"]
                    )

        outcomes = await asyncio.gather(*(run(source) for source in files))

        for outcome in outcomes:
            if outcome.status == INDEXED:
                report.indexed += 1
                report.chunks += outcome.chunks
            elif outcome.status == UNCHANGED:
                report.unchanged += 1
            elif outcome.status == SKIPPED:
                report.skipped += 1
            else:
                report.failed += 1
            if outcome.errors:
                report.errors[f"{outcome.repository}/{outcome.filepath}"] = list(outcome.errors)

        await asyncio.to_thread(self.index.flush)
        logger.info(
            "Ingested %d documents: %d indexed (%d chunks), %d unchanged, %d skipped, %d failed",
            report.documents, report.indexed, report.chunks, report.unchanged, report.skipped, report.failed,
        )
        return report
