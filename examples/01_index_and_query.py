#!/usr/bin/env python3
"""
Example 1: Index documentation and pull paged context for a task

This example demonstrates:
- Creating a Docscout instance backed by USearch + SQLite
- Ingesting documents from two repositories with different priorities
- Searching with a language filter
- Walking through context pages with a cursor
- Rendering a page as markdown for an assistant prompt

Requirements:
    pip install docscout
    export OPENAI_API_KEY=sk-...
"""

import asyncio
import os

# Ensure API key is set
if not os.environ.get("OPENAI_API_KEY"):
    print("Set OPENAI_API_KEY environment variable")
    print("   export OPENAI_API_KEY=sk-...")
    raise SystemExit(1)

from docscout import RepositoryConfig, SourceFile, create_docscout, setup_logging

OFFICIAL_README = """# Setup

Run `npm install` before starting the dev server.

```bash
npm install
npm run dev
```

## Configuration

Settings are read from `config/app.yaml`. Environment variables override file values.
"""

COMMUNITY_NOTES = """# Tips

If `npm install` fails behind a proxy, set `HTTPS_PROXY` first.

```bash
export HTTPS_PROXY=http://proxy.local:3128
npm install
```
"""


async def main():
    setup_logging()

    print("=" * 60)
    print("Example 1: Index and query")
    print("=" * 60)

    scout = create_docscout(
        db_path="example_docs.db",
        index_path="example_docs.usearch",
        max_chunk_chars=1500,
    )

    official = RepositoryConfig(name="webapp", priority="high", category="guides")
    community = RepositoryConfig(name="community-wiki", priority="low", category="tips")

    try:
        print("\nIngesting documents...")
        report = await scout.ingest([
            SourceFile(official, "README.md", OFFICIAL_README),
            SourceFile(community, "proxy.md", COMMUNITY_NOTES),
        ])
        print(f"   {report.indexed} indexed, {report.unchanged} unchanged, {report.chunks} chunks")

        # Re-ingesting identical content is a no-op
        report = await scout.ingest([SourceFile(official, "README.md", OFFICIAL_README)])
        print(f"   Re-ingest: {report.unchanged} unchanged")

        print("\nSearching for shell commands only...")
        response = await scout.search({"task": "install dependencies", "language": "bash"})
        for result in response.results:
            print(f"   [{result.score:.3f}] {result.chunk.repository}/{result.chunk.filepath}")
            print(f"           {result.relevance_explanation}")

        print("\nPaging through context, two chunks at a time...")
        query = {"task": "install and configure the app", "max_chunks": 2}
        page = await scout.get_context_page(query)
        number = 1
        while True:
            print(f"   Page {number}: {len(page.chunks)} chunks, {page.page_chars} chars")
            if not page.has_more:
                break
            page = await scout.get_context_page(query, cursor=page.cursor)
            number += 1

        print("\nRendered overview page:")
        print(await scout.render_context({"task": "install and configure the app"}, level="overview"))

        print("Stats:", scout.stats()["chunks"], "chunks indexed")
    finally:
        scout.close()


if __name__ == "__main__":
    asyncio.run(main())
