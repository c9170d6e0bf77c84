from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Iterator

import sqlite_vec

from knowledge_store.core.errors import StorageError
from knowledge_store.core.models import (
    EmbeddingRecord,
    KnowledgeFragment,
    KnowledgeSource,
    KnowledgeStats,
    utcnow,
)
from knowledge_store.core.settings import Settings

if TYPE_CHECKING:
    from knowledge_store.core.audit import AuditEvent

logger = logging.getLogger(__name__)

# Max bound parameters per IN (...) clause
IN_BATCH = 500

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS knowledge_sources (
  id TEXT PRIMARY KEY,
  tenant_id TEXT NOT NULL,
  name TEXT NOT NULL CHECK (length(trim(name)) > 0),
  description TEXT,
  icon TEXT,
  is_active INTEGER NOT NULL DEFAULT 1,
  fragment_count INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  created_by TEXT
);

CREATE INDEX IF NOT EXISTS idx_sources_tenant ON knowledge_sources(tenant_id, created_at);

CREATE TABLE IF NOT EXISTS knowledge_fragments (
  id TEXT PRIMARY KEY,
  tenant_id TEXT NOT NULL,
  source_id TEXT REFERENCES knowledge_sources(id),
  title TEXT NOT NULL CHECK (length(trim(title)) > 0),
  content TEXT NOT NULL CHECK (length(trim(content)) > 0),
  tags TEXT NOT NULL DEFAULT '[]',
  is_active INTEGER NOT NULL DEFAULT 1,
  version INTEGER NOT NULL DEFAULT 1 CHECK (version >= 1),
  content_hash TEXT,
  priority INTEGER NOT NULL DEFAULT 5 CHECK (priority BETWEEN 1 AND 10),
  usage_count INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
  positive_feedback INTEGER NOT NULL DEFAULT 0 CHECK (positive_feedback >= 0),
  negative_feedback INTEGER NOT NULL DEFAULT 0 CHECK (negative_feedback >= 0),
  metadata TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  created_by TEXT
);

CREATE INDEX IF NOT EXISTS idx_fragments_tenant ON knowledge_fragments(tenant_id, created_at);
CREATE INDEX IF NOT EXISTS idx_fragments_source ON knowledge_fragments(tenant_id, source_id);

-- At most one live embedding per fragment; existence means "indexed"
CREATE TABLE IF NOT EXISTS knowledge_embeddings (
  id TEXT PRIMARY KEY,
  tenant_id TEXT NOT NULL,
  fragment_id TEXT NOT NULL UNIQUE REFERENCES knowledge_fragments(id),
  model TEXT NOT NULL,
  dimensions INTEGER NOT NULL,
  fragment_version INTEGER NOT NULL,
  embedding BLOB NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_embeddings_tenant ON knowledge_embeddings(tenant_id);

CREATE TABLE IF NOT EXISTS indexing_jobs (
  id TEXT PRIMARY KEY,
  tenant_id TEXT NOT NULL,
  job_type TEXT NOT NULL,  -- generate_embeddings, reindex_knowledge
  status TEXT NOT NULL,    -- pending, running, completed, failed
  metadata TEXT NOT NULL DEFAULT '{}',
  items_total INTEGER DEFAULT 0,
  items_succeeded INTEGER DEFAULT 0,
  items_failed INTEGER DEFAULT 0,
  error TEXT,
  created_at TEXT NOT NULL,
  started_at TEXT,
  finished_at TEXT,
  updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON indexing_jobs(status, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_tenant ON indexing_jobs(tenant_id, created_at);

CREATE TABLE IF NOT EXISTS audit_log (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  tenant_id TEXT NOT NULL,
  actor_type TEXT NOT NULL DEFAULT 'member',
  actor_id TEXT,
  action TEXT NOT NULL,
  entity_type TEXT NOT NULL,
  entity_id TEXT,
  changes TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_tenant ON audit_log(tenant_id, created_at);
"""

_SOURCE_PATCHABLE = ("name", "description", "icon")
_FRAGMENT_PATCHABLE = ("source_id", "title", "content", "tags", "priority", "metadata")
_FRAGMENT_COUNTERS = ("usage_count", "positive_feedback", "negative_feedback")

FRAGMENT_SELECT = """
    SELECT f.*, s.name AS source_name, s.icon AS source_icon
    FROM knowledge_fragments f
    LEFT JOIN knowledge_sources s ON s.id = f.source_id AND s.tenant_id = f.tenant_id
"""


def _now() -> str:
    return utcnow().isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _casefold_contains(haystack: str | None, needle: str | None) -> int:
    if haystack is None or needle is None:
        return 0
    return int(needle.casefold() in haystack.casefold())


def _encode_fragment_fields(fields: dict[str, Any]) -> dict[str, Any]:
    encoded = dict(fields)
    if "tags" in encoded:
        encoded["tags"] = json.dumps(list(encoded["tags"] or []))
    if "metadata" in encoded:
        encoded["metadata"] = json.dumps(encoded["metadata"] or {})
    return encoded


def _chunks(ids: list[str], size: int = IN_BATCH) -> Iterator[list[str]]:
    for i in range(0, len(ids), size):
        yield ids[i : i + size]


def _first(cur: sqlite3.Cursor) -> sqlite3.Row | None:
    # Drain RETURNING statements fully so commit() never sees one in progress
    rows = cur.fetchall()
    return rows[0] if rows else None


@dataclass
class KnowledgeDB:
    conn: sqlite3.Connection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _depth: int = field(default=0, repr=False)

    def init(self) -> None:
        self.conn.row_factory = sqlite3.Row
        self.conn.create_function("kx_contains", 2, _casefold_contains, deterministic=True)
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements as one locked transaction, wrapping driver errors.

        Nested calls join the outer transaction; only the outermost commits.
        """
        with self._lock:
            self._depth += 1
            try:
                yield self.conn
                if self._depth == 1:
                    self.conn.commit()
            except sqlite3.Error as e:
                if self._depth == 1:
                    self.conn.rollback()
                raise StorageError(str(e)) from e
            except BaseException:
                if self._depth == 1:
                    self.conn.rollback()
                raise
            finally:
                self._depth -= 1

    def fetch_all(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    def fetch_one(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            try:
                return self.conn.execute(sql, tuple(params)).fetchone()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    def _count(self, sql: str, params: Iterable[Any]) -> int:
        row = self.fetch_one(sql, params)
        return row[0] if row else 0

    # ==================== Sources ====================

    def insert_source(
        self,
        tenant_id: str,
        *,
        name: str,
        description: str | None = None,
        icon: str | None = None,
        created_by: str | None = None,
    ) -> KnowledgeSource:
        now = _now()
        with self.transaction() as conn:
            row = _first(conn.execute(
                """
                INSERT INTO knowledge_sources (
                    id, tenant_id, name, description, icon, created_at, updated_at, created_by
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING *
                """,
                (_new_id(), tenant_id, name, description, icon, now, now, created_by),
            ))
        return KnowledgeSource.from_row(row)

    def get_source(self, tenant_id: str, source_id: str) -> KnowledgeSource | None:
        row = self.fetch_one(
            "SELECT * FROM knowledge_sources WHERE id = ? AND tenant_id = ?",
            (source_id, tenant_id),
        )
        return KnowledgeSource.from_row(row) if row else None

    def list_sources(self, tenant_id: str) -> list[KnowledgeSource]:
        rows = self.fetch_all(
            """
            SELECT * FROM knowledge_sources
            WHERE tenant_id = ?
            ORDER BY created_at DESC, rowid DESC
            """,
            (tenant_id,),
        )
        return [KnowledgeSource.from_row(r) for r in rows]

    def update_source(
        self, tenant_id: str, source_id: str, fields: dict[str, Any]
    ) -> KnowledgeSource | None:
        """Patch whitelisted source columns. Returns None if not found."""
        updates = {k: v for k, v in fields.items() if k in _SOURCE_PATCHABLE}
        assignments = ", ".join(f"{k} = ?" for k in updates)
        set_clause = f"{assignments}, updated_at = ?" if assignments else "updated_at = ?"
        with self.transaction() as conn:
            row = _first(conn.execute(
                f"""
                UPDATE knowledge_sources SET {set_clause}
                WHERE id = ? AND tenant_id = ?
                RETURNING *
                """,
                (*updates.values(), _now(), source_id, tenant_id),
            ))
        return KnowledgeSource.from_row(row) if row else None

    def toggle_source(self, tenant_id: str, source_id: str) -> KnowledgeSource | None:
        """Flip is_active against the stored value in a single statement."""
        with self.transaction() as conn:
            row = _first(conn.execute(
                """
                UPDATE knowledge_sources
                SET is_active = NOT is_active, updated_at = ?
                WHERE id = ? AND tenant_id = ?
                RETURNING *
                """,
                (_now(), source_id, tenant_id),
            ))
        return KnowledgeSource.from_row(row) if row else None

    def delete_source_cascade(self, tenant_id: str, source_id: str) -> bool:
        """Delete a source with its fragments and their embeddings.

        Returns True if the source row was deleted.
        """
        with self.transaction() as conn:
            fragment_ids = [
                r[0]
                for r in conn.execute(
                    "SELECT id FROM knowledge_fragments WHERE source_id = ? AND tenant_id = ?",
                    (source_id, tenant_id),
                ).fetchall()
            ]
            self.delete_embeddings(tenant_id, fragment_ids)
            conn.execute(
                "DELETE FROM knowledge_fragments WHERE source_id = ? AND tenant_id = ?",
                (source_id, tenant_id),
            )
            cur = conn.execute(
                "DELETE FROM knowledge_sources WHERE id = ? AND tenant_id = ?",
                (source_id, tenant_id),
            )
            return cur.rowcount > 0

    def refresh_fragment_count(self, tenant_id: str, source_id: str) -> int:
        """Rederive fragment_count from a fresh count of the fragment table."""
        with self.transaction() as conn:
            row = _first(conn.execute(
                """
                UPDATE knowledge_sources
                SET fragment_count = (
                    SELECT COUNT(*) FROM knowledge_fragments
                    WHERE tenant_id = ? AND source_id = ?
                )
                WHERE id = ? AND tenant_id = ?
                RETURNING fragment_count
                """,
                (tenant_id, source_id, source_id, tenant_id),
            ))
        return row[0] if row else 0

    def source_ids_with_embeddings(self, tenant_id: str, source_ids: list[str]) -> set[str]:
        found: set[str] = set()
        for batch in _chunks(source_ids):
            placeholders = ",".join("?" * len(batch))
            rows = self.fetch_all(
                f"""
                SELECT DISTINCT f.source_id
                FROM knowledge_embeddings e
                JOIN knowledge_fragments f ON f.id = e.fragment_id
                WHERE e.tenant_id = ? AND f.tenant_id = ?
                  AND f.source_id IN ({placeholders})
                """,
                (tenant_id, tenant_id, *batch),
            )
            found.update(r[0] for r in rows)
        return found

    # ==================== Fragments ====================

    def insert_fragment(
        self,
        tenant_id: str,
        *,
        title: str,
        content: str,
        content_hash: str,
        source_id: str | None = None,
        tags: list[str] | None = None,
        priority: int = 5,
        metadata: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> KnowledgeFragment:
        ids = self.insert_fragments_bulk(
            tenant_id,
            [
                {
                    "source_id": source_id,
                    "title": title,
                    "content": content,
                    "content_hash": content_hash,
                    "tags": tags or [],
                    "priority": priority,
                    "metadata": metadata or {},
                }
            ],
            created_by=created_by,
        )
        return self.get_fragment(tenant_id, ids[0])

    def insert_fragments_bulk(
        self,
        tenant_id: str,
        rows: list[dict[str, Any]],
        *,
        created_by: str | None = None,
    ) -> list[str]:
        """Insert all rows in one transaction at version 1. Returns new ids in order."""
        now = _now()
        ids = [_new_id() for _ in rows]
        params = [
            (
                fragment_id,
                tenant_id,
                r.get("source_id"),
                r["title"],
                r["content"],
                json.dumps(list(r.get("tags") or [])),
                r["content_hash"],
                r.get("priority", 5),
                json.dumps(r.get("metadata") or {}),
                now,
                now,
                created_by,
            )
            for fragment_id, r in zip(ids, rows)
        ]
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO knowledge_fragments (
                    id, tenant_id, source_id, title, content, tags, version,
                    content_hash, priority, metadata, created_at, updated_at, created_by
                ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?)
                """,
                params,
            )
        return ids

    def get_fragment(self, tenant_id: str, fragment_id: str) -> KnowledgeFragment | None:
        row = self.fetch_one(
            FRAGMENT_SELECT + " WHERE f.id = ? AND f.tenant_id = ?",
            (fragment_id, tenant_id),
        )
        return KnowledgeFragment.from_row(row) if row else None

    def get_fragments_by_ids(self, tenant_id: str, fragment_ids: list[str]) -> list[KnowledgeFragment]:
        """Load fragments by id, preserving the order of fragment_ids and skipping missing ones."""
        by_id: dict[str, KnowledgeFragment] = {}
        for batch in _chunks(fragment_ids):
            placeholders = ",".join("?" * len(batch))
            rows = self.fetch_all(
                FRAGMENT_SELECT + f" WHERE f.tenant_id = ? AND f.id IN ({placeholders})",
                (tenant_id, *batch),
            )
            for r in rows:
                by_id[r["id"]] = KnowledgeFragment.from_row(r)
        return [by_id[i] for i in fragment_ids if i in by_id]

    def fragment_ids_for_source(self, tenant_id: str, source_id: str) -> list[str]:
        rows = self.fetch_all(
            """
            SELECT id FROM knowledge_fragments
            WHERE source_id = ? AND tenant_id = ?
            ORDER BY created_at, rowid
            """,
            (source_id, tenant_id),
        )
        return [r[0] for r in rows]

    def patch_fragment(
        self, tenant_id: str, fragment_id: str, fields: dict[str, Any]
    ) -> KnowledgeFragment | None:
        """Plain field patch: no version bump, no hash recompute."""
        updates = _encode_fragment_fields(
            {k: v for k, v in fields.items() if k in _FRAGMENT_PATCHABLE and k != "content"}
        )
        assignments = "".join(f"{k} = ?, " for k in updates)
        with self.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE knowledge_fragments SET {assignments}updated_at = ?
                WHERE id = ? AND tenant_id = ?
                """,
                (*updates.values(), _now(), fragment_id, tenant_id),
            )
            if cur.rowcount == 0:
                return None
        return self.get_fragment(tenant_id, fragment_id)

    def update_fragment_versioned(
        self,
        tenant_id: str,
        fragment_id: str,
        fields: dict[str, Any],
        *,
        expected_version: int,
        new_version: int,
        new_hash: str,
    ) -> KnowledgeFragment | None:
        """Write fields, version and hash together and drop the stale embedding.

        The update only applies while the row is still at expected_version.
        Returns None if no row matched.
        """
        updates = _encode_fragment_fields(
            {k: v for k, v in fields.items() if k in _FRAGMENT_PATCHABLE}
        )
        assignments = "".join(f"{k} = ?, " for k in updates)
        with self.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE knowledge_fragments
                SET {assignments}version = ?, content_hash = ?, updated_at = ?
                WHERE id = ? AND tenant_id = ? AND version = ?
                """,
                (
                    *updates.values(),
                    new_version,
                    new_hash,
                    _now(),
                    fragment_id,
                    tenant_id,
                    expected_version,
                ),
            )
            if cur.rowcount == 0:
                return None
            self.delete_embeddings(tenant_id, [fragment_id])
        return self.get_fragment(tenant_id, fragment_id)

    def delete_fragment_row(self, tenant_id: str, fragment_id: str) -> bool:
        """Delete a fragment after removing its embedding. Returns True if deleted."""
        with self.transaction() as conn:
            self.delete_embeddings(tenant_id, [fragment_id])
            cur = conn.execute(
                "DELETE FROM knowledge_fragments WHERE id = ? AND tenant_id = ?",
                (fragment_id, tenant_id),
            )
            return cur.rowcount > 0

    def toggle_fragment(self, tenant_id: str, fragment_id: str) -> KnowledgeFragment | None:
        """Flip is_active against the stored value in a single statement."""
        with self.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE knowledge_fragments
                SET is_active = NOT is_active, updated_at = ?
                WHERE id = ? AND tenant_id = ?
                """,
                (_now(), fragment_id, tenant_id),
            )
            if cur.rowcount == 0:
                return None
        return self.get_fragment(tenant_id, fragment_id)

    def increment_counter(self, tenant_id: str, fragment_id: str, column: str) -> bool:
        if column not in _FRAGMENT_COUNTERS:
            raise ValueError(f"Unknown counter: {column}")
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE knowledge_fragments SET {column} = {column} + 1 WHERE id = ? AND tenant_id = ?",
                (fragment_id, tenant_id),
            )
            return cur.rowcount > 0

    def list_tags(self, tenant_id: str) -> list[str]:
        rows = self.fetch_all(
            """
            SELECT DISTINCT t.value
            FROM knowledge_fragments f, json_each(f.tags) t
            WHERE f.tenant_id = ?
            ORDER BY t.value
            """,
            (tenant_id,),
        )
        return [r[0] for r in rows]

    # ==================== Embeddings ====================

    def delete_embeddings(self, tenant_id: str, fragment_ids: list[str]) -> int:
        """Remove embeddings for the given fragments. Missing ones count as success."""
        deleted = 0
        with self.transaction() as conn:
            for batch in _chunks(fragment_ids):
                placeholders = ",".join("?" * len(batch))
                cur = conn.execute(
                    f"DELETE FROM knowledge_embeddings WHERE tenant_id = ? AND fragment_id IN ({placeholders})",
                    (tenant_id, *batch),
                )
                deleted += cur.rowcount
        return deleted

    def fragment_ids_with_embeddings(self, tenant_id: str, fragment_ids: list[str]) -> set[str]:
        found: set[str] = set()
        for batch in _chunks(fragment_ids):
            placeholders = ",".join("?" * len(batch))
            rows = self.fetch_all(
                f"SELECT fragment_id FROM knowledge_embeddings WHERE tenant_id = ? AND fragment_id IN ({placeholders})",
                (tenant_id, *batch),
            )
            found.update(r[0] for r in rows)
        return found

    def get_embedding(self, tenant_id: str, fragment_id: str) -> EmbeddingRecord | None:
        row = self.fetch_one(
            """
            SELECT id, tenant_id, fragment_id, model, dimensions, fragment_version,
                   created_at, updated_at
            FROM knowledge_embeddings
            WHERE fragment_id = ? AND tenant_id = ?
            """,
            (fragment_id, tenant_id),
        )
        return EmbeddingRecord.from_row(row) if row else None

    def save_embedding_if_current(
        self,
        tenant_id: str,
        *,
        fragment_id: str,
        fragment_version: int,
        model: str,
        embedding: bytes,
        dimensions: int,
    ) -> bool:
        """Upsert an embedding only while the fragment is still at fragment_version.

        Returns False when the fragment was edited or deleted since its content
        was read, in which case nothing is written.
        """
        now = _now()
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO knowledge_embeddings (
                    id, tenant_id, fragment_id, model, dimensions, fragment_version,
                    embedding, created_at, updated_at
                )
                SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?
                WHERE EXISTS (
                    SELECT 1 FROM knowledge_fragments
                    WHERE id = ? AND tenant_id = ? AND version = ?
                )
                ON CONFLICT(fragment_id) DO UPDATE SET
                    model = excluded.model,
                    dimensions = excluded.dimensions,
                    fragment_version = excluded.fragment_version,
                    embedding = excluded.embedding,
                    updated_at = excluded.updated_at
                """,
                (
                    _new_id(),
                    tenant_id,
                    fragment_id,
                    model,
                    dimensions,
                    fragment_version,
                    embedding,
                    now,
                    now,
                    fragment_id,
                    tenant_id,
                    fragment_version,
                ),
            )
            return cur.rowcount > 0

    # ==================== Stats ====================

    def get_stats(self, tenant_id: str) -> KnowledgeStats:
        return KnowledgeStats(
            total_sources=self._count(
                "SELECT COUNT(*) FROM knowledge_sources WHERE tenant_id = ?", (tenant_id,)
            ),
            active_sources=self._count(
                "SELECT COUNT(*) FROM knowledge_sources WHERE tenant_id = ? AND is_active = 1",
                (tenant_id,),
            ),
            total_fragments=self._count(
                "SELECT COUNT(*) FROM knowledge_fragments WHERE tenant_id = ?", (tenant_id,)
            ),
            indexed_fragments=self._count(
                "SELECT COUNT(*) FROM knowledge_embeddings WHERE tenant_id = ?", (tenant_id,)
            ),
        )

    # ==================== Audit ====================

    def insert_audit_entry(self, event: "AuditEvent") -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    tenant_id, actor_type, actor_id, action, entity_type, entity_id,
                    changes, created_at
                ) VALUES (?, 'member', ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.tenant_id,
                    event.actor,
                    event.action,
                    event.entity_type,
                    event.entity_id,
                    json.dumps(event.changes, default=str),
                    event.created_at.isoformat(),
                ),
            )

    def list_audit_entries(self, tenant_id: str, limit: int = 50) -> list[dict[str, Any]]:
        rows = self.fetch_all(
            """
            SELECT id, actor_id, action, entity_type, entity_id, changes, created_at
            FROM audit_log
            WHERE tenant_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (tenant_id, limit),
        )
        return [
            {
                "id": r[0],
                "actor": r[1],
                "action": r[2],
                "entity_type": r[3],
                "entity_id": r[4],
                "changes": json.loads(r[5]),
                "created_at": r[6],
            }
            for r in rows
        ]


def _load_vector_extension(conn: sqlite3.Connection) -> None:
    """Make sqlite-vec functions available to retrieval queries on this connection."""
    try:
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
    except (AttributeError, sqlite3.OperationalError) as e:
        logger.warning(f"sqlite-vec extension not loaded: {e}")


_db: KnowledgeDB | None = None


def init_db() -> None:
    global _db
    from knowledge_store.core.audit import init_audit_log
    from knowledge_store.core.indexing import init_job_store

    s = Settings.from_env()
    os.makedirs(os.path.dirname(s.db_path), exist_ok=True)

    conn = sqlite3.connect(s.db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    _load_vector_extension(conn)

    _db = KnowledgeDB(conn=conn)
    _db.init()

    # Audit channel and job store share the same DB object
    init_audit_log(_db.insert_audit_entry, maxsize=s.audit_queue_size)
    init_job_store(_db)


def get_db() -> KnowledgeDB:
    assert _db is not None, "DB not initialized"
    return _db
