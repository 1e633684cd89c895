"""Loading documentation files from a local repository checkout."""

import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence

from langchain_community.document_loaders import DirectoryLoader, TextLoader
from langchain_core.documents import Document as LCDocument

from .models import RepositoryConfig, SourceFile

logger = logging.getLogger(__name__)

DEFAULT_PATTERNS = (
    "**/*.md", "**/*.mdx", "**/*.markdown", "**/*.rst", "**/*.txt",
    "**/*.html", "**/*.htm",
    "**/*.py", "**/*.js", "**/*.jsx", "**/*.mjs", "**/*.ts", "**/*.tsx",
    "**/*.java", "**/*.cs", "**/*.go", "**/*.rs",
    "**/*.json", "**/*.yaml", "**/*.yml",
    "**/README",
)

DEFAULT_EXCLUDES = (
    "**/.git/**",
    "**/node_modules/**",
    "**/__pycache__/**",
    "**/.venv/**",
    "**/dist/**",
    "**/build/**",
    "**/*.min.js",
    "**/package-lock.json",
)


def _relative_path(source: str, root: Path) -> str:
    try:
        return Path(source).resolve().relative_to(root).as_posix()
    except ValueError:
        return Path(source).name


def _to_source_file(doc: LCDocument, root: Path, repository: RepositoryConfig) -> Optional[SourceFile]:
    source = doc.metadata.get("source")
    if not source or not doc.page_content or not doc.page_content.strip():
        return None
    try:
        last_modified = os.path.getmtime(source)
    except OSError:
        last_modified = None
    return SourceFile(
        repository=repository,
        filepath=_relative_path(source, root),
        content=doc.page_content,
        last_modified=last_modified,
    )


def load_repository(
    path: str,
    repository: RepositoryConfig,
    *,
    patterns: Sequence[str] = DEFAULT_PATTERNS,
    autodetect_encoding: bool = True,
) -> List[SourceFile]:
    """
    Load every documentation and source file under a directory.

    Files matching the repository's exclude globs (plus common build and
    dependency directories) are skipped, as are files that cannot be decoded.

    Args:
        path: Repository checkout directory
        repository: Repository configuration (priority, category, excludes)
        patterns: Glob patterns of files to load
        autodetect_encoding: Auto-detect text file encoding

    Returns:
        SourceFile list sorted by filepath
    """
    root = Path(path).resolve()
    if not root.is_dir():
        raise FileNotFoundError(f"Not a directory: {path}")

    exclude = list(DEFAULT_EXCLUDES) + list(repository.exclude)
    files = {}
    for pattern in patterns:
        loader = DirectoryLoader(
            str(root),
            glob=pattern,
            exclude=exclude,
            recursive=True,
            loader_cls=TextLoader,
            loader_kwargs={"autodetect_encoding": autodetect_encoding},
            silent_errors=True,
        )
        for doc in loader.load():
            source_file = _to_source_file(doc, root, repository)
            if source_file is not None:
                files[source_file.filepath] = source_file

    logger.info("Loaded %d files from %s for repository %s", len(files), root, repository.name)
    return [files[key] for key in sorted(files)]


def load_file(path: str, repository: RepositoryConfig, root: Optional[str] = None) -> Optional[SourceFile]:
    """Load a single file; ``root`` determines the repository-relative path."""
    file_path = Path(path).resolve()
    base = Path(root).resolve() if root else file_path.parent
    try:
        docs = TextLoader(str(file_path), autodetect_encoding=True).load()
    except RuntimeError as e:
        logger.warning("Failed to load %s: %s", path, e)
        return None
    return _to_source_file(docs[0], base, repository) if docs else None
