"""SQLite payload storage for the USearch-backed vector index."""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple


class PayloadStore:
    """Stores chunk payloads keyed by vector point id, plus index metadata.

    The connection is shared across worker threads, so every statement runs
    under a lock.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS points (
                    id INTEGER PRIMARY KEY,
                    repository TEXT NOT NULL,
                    filepath TEXT NOT NULL,
                    document_id TEXT NOT NULL,
                    ordinal INTEGER NOT NULL,
                    payload_json TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_points_repository ON points(repository)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_points_file ON points(repository, filepath)")
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            self.conn.commit()

    def put_many(self, items: Iterable[Tuple[int, Dict[str, Any]]]) -> int:
        """Insert or replace payloads. Returns the number written."""
        rows = [
            (
                point_id,
                payload["repository"],
                payload["filepath"],
                payload["document_id"],
                int(payload["ordinal"]),
                json.dumps(payload, ensure_ascii=False, default=str),
            )
            for point_id, payload in items
        ]
        with self._lock:
            self.conn.executemany("""
                INSERT OR REPLACE INTO points (id, repository, filepath, document_id, ordinal, payload_json)
                VALUES (?, ?, ?, ?, ?, ?)
            """, rows)
            self.conn.commit()
        return len(rows)

    def get_many(self, ids: List[int]) -> Dict[int, Dict[str, Any]]:
        """Get payloads by point id. Missing ids are absent from the result."""
        if not ids:
            return {}
        result: Dict[int, Dict[str, Any]] = {}
        with self._lock:
            # SQLite caps bound parameters, so fetch in slices
            for start in range(0, len(ids), 500):
                batch = ids[start:start + 500]
                placeholders = ",".join("?" * len(batch))
                rows = self.conn.execute(
                    f"SELECT id, payload_json FROM points WHERE id IN ({placeholders})", batch
                ).fetchall()
                for row in rows:
                    result[row["id"]] = json.loads(row["payload_json"])
        return result

    def iter_payloads(self, repositories: Optional[List[str]] = None) -> Iterator[Tuple[int, Dict[str, Any]]]:
        """Yield (id, payload) in (repository, filepath, ordinal) order."""
        sql = "SELECT id, payload_json FROM points"
        params: List[Any] = []
        if repositories:
            sql += f" WHERE repository IN ({','.join('?' * len(repositories))})"
            params.extend(repositories)
        sql += " ORDER BY repository, filepath, ordinal"
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        for row in rows:
            yield row["id"], json.loads(row["payload_json"])

    def delete_ids(self, ids: List[int]) -> int:
        """Delete payloads by point id. Returns count deleted."""
        if not ids:
            return 0
        deleted = 0
        with self._lock:
            for start in range(0, len(ids), 500):
                batch = ids[start:start + 500]
                placeholders = ",".join("?" * len(batch))
                cursor = self.conn.execute(f"DELETE FROM points WHERE id IN ({placeholders})", batch)
                deleted += cursor.rowcount
            self.conn.commit()
        return deleted

    def counts(self) -> Dict[str, int]:
        """Return document and chunk counts."""
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS chunks, COUNT(DISTINCT document_id) AS docs FROM points"
            ).fetchone()
        return {"chunk_count": row["chunks"], "document_count": row["docs"]}

    def list_repositories(self) -> List[Dict[str, Any]]:
        """List all repositories with statistics."""
        with self._lock:
            rows = self.conn.execute("""
                SELECT repository, COUNT(*) as chunks, COUNT(DISTINCT document_id) as docs
                FROM points
                GROUP BY repository
                ORDER BY repository
            """).fetchall()
        return [dict(row) for row in rows]

    def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            self.conn.execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value))
            self.conn.commit()

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            self.conn.close()
