import hashlib
import time
from typing import List

import numpy as np
import pytest

from docscout import Docscout, DocscoutConfig, InMemoryVectorIndex, RepositoryConfig, SourceFile
from docscout.embeddings import BaseEmbeddingProvider
from docscout.scoring import tokenize


class FakeEmbedding(BaseEmbeddingProvider):
    """Deterministic hashed bag-of-words vectors."""

    def __init__(self, dim: int = 512, use_cache: bool = False, delay: float = 0.0):
        super().__init__("fake-hash", use_cache=use_cache)
        self._dim = dim
        self.calls = 0
        self.fail = False
        self.delay = delay

    @property
    def dimension(self) -> int:
        return self._dim

    def _vector(self, text: str) -> List[float]:
        vec = np.zeros(self._dim, dtype=np.float32)
        for token in tokenize(text):
            bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self._dim
            vec[bucket] += 1.0
        norm = np.linalg.norm(vec)
        return (vec / norm if norm > 0 else vec).tolist()

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise ConnectionError("embedding backend unreachable")
        return [self._vector(text) for text in texts]


SETUP_DOC = "# Setup\n\nRun `npm install`.\n\n```bash\nnpm install\n```"


@pytest.fixture
def config():
    return DocscoutConfig(index_backend="memory", score_threshold=0.05)


@pytest.fixture
def embedder():
    return FakeEmbedding()


@pytest.fixture
def index():
    return InMemoryVectorIndex()


@pytest.fixture
def scout(config, embedder, index):
    engine = Docscout(config, embedder=embedder, index=index)
    yield engine
    engine.close()


@pytest.fixture
def repo():
    return RepositoryConfig(name="handbook", priority="medium", category="guides")


def source(repository, filepath, content, **kwargs):
    return SourceFile(repository=repository, filepath=filepath, content=content, **kwargs)
