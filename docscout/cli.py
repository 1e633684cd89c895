"""CLI for the Docscout retrieval engine."""

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict

from . import __version__
from .errors import DocscoutError
from .log import setup_logging

# Set USER_AGENT to suppress langchain warning
if not os.environ.get("USER_AGENT"):
    os.environ["USER_AGENT"] = f"docscout/{__version__}"


def _engine(args: argparse.Namespace):
    from .engine import create_docscout

    return create_docscout(
        db_path=args.db or "docscout.db",
        index_path=args.index or "docscout.usearch",
        provider=args.provider,
        model=args.model,
        debug=args.debug,
    )


def _fail(error: DocscoutError, debug: bool) -> None:
    print(json.dumps(error.to_dict(debug=debug), indent=2), file=sys.stderr)
    sys.exit(1)


def _run(args: argparse.Namespace, work):
    """Run ``work(scout)`` on a fresh engine, reporting errors with the engine's debug setting."""
    scout = _engine(args)
    try:
        return asyncio.run(work(scout))
    except DocscoutError as e:
        _fail(e, scout.config.debug)
    finally:
        scout.close()


def index(args: argparse.Namespace) -> None:
    """Index a local repository checkout."""
    from .models import RepositoryConfig

    repository = RepositoryConfig(
        name=args.repo or os.path.basename(os.path.abspath(args.path)),
        priority=args.priority,
        category=args.category,
        exclude=args.exclude or [],
        metadata={k: v for k, v in (("framework", args.framework), ("language", args.language)) if v},
    )
    report = _run(args, lambda scout: scout.ingest_directory(args.path, repository))
    print(json.dumps(asdict(report), indent=2))


def query(args: argparse.Namespace) -> None:
    """Retrieve a page of context for a task."""
    from .formatting import render_page, summarize_page

    request = {
        "task": args.task,
        "language": args.language,
        "framework": args.framework,
        "repositories": args.repo or None,
        "categories": args.category or None,
        "strategy": args.strategy,
        "max_results": args.max_results,
        "max_chunks": args.max_chunks,
        "max_chars": args.max_chars,
        "allow_degraded": args.allow_degraded,
    }
    page = _run(args, lambda scout: scout.get_context_page(request, cursor=args.cursor, level=args.level))

    if args.json:
        summary = summarize_page(page)
        summary["results"] = [
            {
                "repository": r.chunk.repository,
                "filepath": r.chunk.filepath,
                "type": r.chunk.type.value,
                "score": round(r.score, 4),
                "explanation": r.relevance_explanation,
                "content": r.chunk.content,
            }
            for r in page.chunks
        ]
        print(json.dumps(summary, indent=2))
    else:
        print(render_page(page, args.task))


def stats(args: argparse.Namespace) -> None:
    """Show engine statistics."""
    scout = _engine(args)
    try:
        print(json.dumps(scout.stats(), indent=2, default=str))
    finally:
        scout.close()


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="docscout",
        description="Docscout - documentation retrieval for coding assistants",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  docscout index ./docs --repo handbook --priority high
  docscout query "configure request retries" --language python
  docscout stats

Environment variables:
  OPENAI_API_KEY    Required for OpenAI embeddings
  HF_TOKEN          Optional for HuggingFace models
  JINA_API_KEY      Required for Jina AI embeddings
"""
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--db", type=str, help="Database path (default: docscout.db)")
    parser.add_argument("--index", type=str, help="Index path (default: docscout.usearch)")
    parser.add_argument(
        "--provider", type=str, default="openai", choices=["openai", "huggingface", "jina"],
        help="Embedding provider (default: openai)",
    )
    parser.add_argument("--model", type=str, help="Embedding model (provider default if omitted)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--debug", action="store_true", help="Include error details in error output")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Index command
    index_parser = subparsers.add_parser("index", help="Index a local directory")
    index_parser.add_argument("path", help="Repository checkout directory")
    index_parser.add_argument("--repo", type=str, help="Repository name (default: directory name)")
    index_parser.add_argument("--priority", choices=["high", "medium", "low"], default="medium")
    index_parser.add_argument("--category", type=str)
    index_parser.add_argument("--framework", type=str)
    index_parser.add_argument("--language", type=str)
    index_parser.add_argument("--exclude", action="append", help="Glob to skip (repeatable)")
    index_parser.set_defaults(func=index)

    # Query command
    query_parser = subparsers.add_parser("query", help="Retrieve context for a task")
    query_parser.add_argument("task", help="What you are trying to do")
    query_parser.add_argument("--language", type=str)
    query_parser.add_argument("--framework", type=str)
    query_parser.add_argument("--repo", action="append", help="Restrict to repository (repeatable)")
    query_parser.add_argument("--category", action="append", help="Restrict to category (repeatable)")
    query_parser.add_argument(
        "--strategy", default="hybrid", choices=["semantic", "structural", "keyword", "hybrid", "auto"],
    )
    query_parser.add_argument("--max-results", type=int, help="Ranked results (default from config)")
    query_parser.add_argument("--max-chunks", type=int)
    query_parser.add_argument("--max-chars", type=int)
    query_parser.add_argument("--level", choices=["overview", "detailed"])
    query_parser.add_argument("--cursor", type=str, help="Continue from a previous page")
    query_parser.add_argument("--allow-degraded", action="store_true")
    query_parser.add_argument("--json", action="store_true", help="Print JSON instead of markdown")
    query_parser.set_defaults(func=query)

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show engine statistics")
    stats_parser.set_defaults(func=stats)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    try:
        args.func(args)
    except DocscoutError as e:
        _fail(e, args.debug)


if __name__ == "__main__":
    main()
