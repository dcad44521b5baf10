"""Persistent cache for documents, embeddings, pair scores, links and failures.

The database lives in an in-memory sqlite connection and is serialized to
``{root}/.linkweave/cache.sqlite`` with the sqlite backup API. Mutations set a
dirty flag; ``flush()`` writes only when dirty, so callers can flush after
every batch without paying for no-op writes.

Single-writer: one CacheStore per KB per process, guarded by the run lock in
``engine.RunLock``.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterable

import numpy as np

from .models import (
    CacheStats,
    DocumentRecord,
    EmbeddingVector,
    FailureRecord,
    LinkLedgerEntry,
    PairScore,
)
from .similarity import canonical_pair_key

log = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    path TEXT NOT NULL UNIQUE,
    content_hash TEXT NOT NULL,
    created_at TEXT NOT NULL,
    modified_at TEXT NOT NULL,
    title TEXT,
    tags_json TEXT,
    embedding_updated_at TEXT,
    tags_generated_at TEXT
);

CREATE TABLE IF NOT EXISTS embeddings (
    document_id TEXT PRIMARY KEY REFERENCES documents(id),
    vector BLOB NOT NULL,
    model TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pair_scores (
    id_1 TEXT NOT NULL,
    id_2 TEXT NOT NULL,
    similarity_score REAL NOT NULL,
    ai_score REAL NOT NULL,
    model TEXT,
    reasoning TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (id_1, id_2),
    CHECK (id_1 < id_2)
);

CREATE TABLE IF NOT EXISTS link_ledger (
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    inserted_at TEXT NOT NULL,
    PRIMARY KEY (source_id, target_id)
);

CREATE TABLE IF NOT EXISTS failure_log (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    operation_type TEXT NOT NULL,
    batch_info_json TEXT NOT NULL,
    error_message TEXT NOT NULL,
    resolved INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS cache_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_documents_path ON documents(path);
CREATE INDEX IF NOT EXISTS idx_scores_similarity ON pair_scores(similarity_score);
CREATE INDEX IF NOT EXISTS idx_scores_id1 ON pair_scores(id_1);
CREATE INDEX IF NOT EXISTS idx_scores_id2 ON pair_scores(id_2);
CREATE INDEX IF NOT EXISTS idx_failure_log_timestamp ON failure_log(timestamp);
"""


def _chunked(items: list[str], size: int) -> Iterable[list[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _now() -> str:
    return datetime.now(tz=UTC).isoformat()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def pack_vector(vector: list[float]) -> bytes:
    """Pack floats as little-endian float32."""
    return np.asarray(vector, dtype="<f4").tobytes()


def unpack_vector(blob: bytes) -> list[float]:
    return np.frombuffer(blob, dtype="<f4").tolist()


class CacheStore:
    """SQLite-backed cache with an in-memory bidirectional score index."""

    def __init__(self, path: Path | None) -> None:
        """Open the cache.

        Args:
            path: Database file. Loaded if it exists, written on flush.
                None keeps the cache purely in memory (tests).
        """
        self._path = path
        self._dirty = False
        self._score_index: dict[str, dict[str, PairScore]] | None = None
        self._conn = self._connect()

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def dirty(self) -> bool:
        return self._dirty

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        if self._path is not None and self._path.exists():
            source = sqlite3.connect(str(self._path))
            try:
                source.backup(conn)
            finally:
                source.close()
            log.debug("Loaded cache from %s", self._path)
        self._ensure_schema(conn)
        return conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(_SCHEMA)
        row = conn.execute("SELECT value FROM cache_meta WHERE key = 'schema_version'").fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO cache_meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            self._dirty = True
        conn.commit()

    def _mark_dirty(self, scores_changed: bool = False) -> None:
        self._dirty = True
        if scores_changed:
            self._score_index = None

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def flush(self) -> bool:
        """Serialize the database to disk if anything changed.

        The file is replaced atomically, so a crash mid-write leaves the
        previous flush intact.

        Returns:
            True if a write happened.
        """
        if not self._dirty or self._path is None:
            return False

        self._conn.commit()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        if tmp_path.exists():
            tmp_path.unlink()
        target = sqlite3.connect(str(tmp_path))
        try:
            self._conn.backup(target)
        finally:
            target.close()
        os.replace(tmp_path, self._path)
        self._dirty = False
        log.debug("Flushed cache to %s", self._path)
        return True

    def close(self) -> None:
        self.flush()
        self._conn.close()

    def __enter__(self) -> CacheStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def clear(self) -> None:
        """Delete every cached row (schema is kept)."""
        for table in ("documents", "embeddings", "pair_scores", "link_ledger", "failure_log"):
            self._conn.execute(f"DELETE FROM {table}")
        self._conn.commit()
        self._mark_dirty(scores_changed=True)

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    def _row_to_document(self, row: sqlite3.Row) -> DocumentRecord:
        return DocumentRecord(
            id=row["id"],
            path=row["path"],
            content_hash=row["content_hash"],
            created_at=datetime.fromisoformat(row["created_at"]),
            modified_at=datetime.fromisoformat(row["modified_at"]),
            title=row["title"] or "",
            tags=json.loads(row["tags_json"]) if row["tags_json"] else [],
            embedding_updated_at=_parse_dt(row["embedding_updated_at"]),
            tags_generated_at=_parse_dt(row["tags_generated_at"]),
        )

    def upsert_document(self, record: DocumentRecord) -> None:
        """Insert or replace a document record.

        A different document already cached at the same path is removed first
        (its file now carries a new id).
        """
        self._conn.execute(
            "DELETE FROM documents WHERE path = ? AND id != ?",
            (record.path, record.id),
        )
        self._conn.execute(
            """
            INSERT OR REPLACE INTO documents
                (id, path, content_hash, created_at, modified_at, title, tags_json,
                 embedding_updated_at, tags_generated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.path,
                record.content_hash,
                record.created_at.isoformat(),
                record.modified_at.isoformat(),
                record.title,
                json.dumps(record.tags),
                _iso(record.embedding_updated_at),
                _iso(record.tags_generated_at),
            ),
        )
        self._conn.commit()
        self._mark_dirty()

    def get_document(self, document_id: str) -> DocumentRecord | None:
        row = self._conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
        return self._row_to_document(row) if row else None

    def get_document_by_path(self, path: str) -> DocumentRecord | None:
        row = self._conn.execute("SELECT * FROM documents WHERE path = ?", (path,)).fetchone()
        return self._row_to_document(row) if row else None

    def list_documents(self) -> list[DocumentRecord]:
        rows = self._conn.execute("SELECT * FROM documents ORDER BY path").fetchall()
        return [self._row_to_document(row) for row in rows]

    def delete_document(self, document_id: str) -> None:
        """Remove a document and everything that references it."""
        self._conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        self._conn.execute("DELETE FROM embeddings WHERE document_id = ?", (document_id,))
        self._conn.execute(
            "DELETE FROM pair_scores WHERE id_1 = ? OR id_2 = ?", (document_id, document_id)
        )
        self._conn.execute(
            "DELETE FROM link_ledger WHERE source_id = ? OR target_id = ?",
            (document_id, document_id),
        )
        self._conn.commit()
        self._mark_dirty(scores_changed=True)

    def stage_tags(self, document_id: str, tags: list[str]) -> None:
        """Store generated tags without marking them as written."""
        self._conn.execute(
            "UPDATE documents SET tags_json = ? WHERE id = ?",
            (json.dumps(tags), document_id),
        )
        self._conn.commit()
        self._mark_dirty()

    def mark_tags_generated(self, document_id: str, when: datetime | None = None) -> None:
        """Commit the tag timestamp once the tags are durably in the document."""
        when = when or datetime.now(tz=UTC)
        self._conn.execute(
            "UPDATE documents SET tags_generated_at = ? WHERE id = ?",
            (when.isoformat(), document_id),
        )
        self._conn.commit()
        self._mark_dirty()

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    def save_embedding(self, embedding: EmbeddingVector) -> None:
        """Store an embedding, replacing any previous one for the document."""
        created = embedding.created_at.isoformat()
        self._conn.execute(
            """
            INSERT OR REPLACE INTO embeddings (document_id, vector, model, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (embedding.document_id, pack_vector(embedding.vector), embedding.model_name, created),
        )
        self._conn.execute(
            "UPDATE documents SET embedding_updated_at = ? WHERE id = ?",
            (created, embedding.document_id),
        )
        self._conn.commit()
        self._mark_dirty()

    def get_embedding(self, document_id: str) -> EmbeddingVector | None:
        row = self._conn.execute(
            "SELECT * FROM embeddings WHERE document_id = ?", (document_id,)
        ).fetchone()
        if row is None:
            return None
        return EmbeddingVector(
            document_id=row["document_id"],
            vector=unpack_vector(row["vector"]),
            model_name=row["model"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_all_embeddings(self) -> dict[str, list[float]]:
        rows = self._conn.execute("SELECT document_id, vector FROM embeddings").fetchall()
        return {row["document_id"]: unpack_vector(row["vector"]) for row in rows}

    def delete_embedding(self, document_id: str) -> None:
        self._conn.execute("DELETE FROM embeddings WHERE document_id = ?", (document_id,))
        self._conn.execute(
            "UPDATE documents SET embedding_updated_at = NULL WHERE id = ?", (document_id,)
        )
        self._conn.commit()
        self._mark_dirty()

    # -------------------------------------------------------------------------
    # Pair scores
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_score(row: sqlite3.Row) -> PairScore:
        return PairScore(
            id_1=row["id_1"],
            id_2=row["id_2"],
            similarity_score=row["similarity_score"],
            ai_score=row["ai_score"],
            model=row["model"] or "",
            reasoning=row["reasoning"] or "",
            last_scored=datetime.fromisoformat(row["updated_at"]),
        )

    def save_score(self, score: PairScore) -> None:
        self.save_scores([score])

    def save_scores(self, scores: list[PairScore]) -> None:
        """Insert or overwrite scores, canonicalizing each pair first."""
        if not scores:
            return
        rows = []
        for score in scores:
            id_1, id_2 = canonical_pair_key(score.id_1, score.id_2)
            rows.append(
                (
                    id_1,
                    id_2,
                    score.similarity_score,
                    score.ai_score,
                    score.model,
                    score.reasoning,
                    score.last_scored.isoformat(),
                )
            )
        self._conn.executemany(
            """
            INSERT OR REPLACE INTO pair_scores
                (id_1, id_2, similarity_score, ai_score, model, reasoning, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
        self._conn.commit()
        self._mark_dirty(scores_changed=True)

    def get_score(self, a: str, b: str) -> PairScore | None:
        id_1, id_2 = canonical_pair_key(a, b)
        return self._index().get(id_1, {}).get(id_2)

    def get_all_scores(self) -> list[PairScore]:
        rows = self._conn.execute("SELECT * FROM pair_scores ORDER BY id_1, id_2").fetchall()
        return [self._row_to_score(row) for row in rows]

    def _index(self) -> dict[str, dict[str, PairScore]]:
        """Bidirectional document -> neighbor -> score map, rebuilt on demand."""
        if self._score_index is None:
            index: dict[str, dict[str, PairScore]] = {}
            for score in self.get_all_scores():
                index.setdefault(score.id_1, {})[score.id_2] = score
                index.setdefault(score.id_2, {})[score.id_1] = score
            self._score_index = index
        return self._score_index

    def get_scores_for_document(
        self,
        document_id: str,
        min_similarity: float | None = None,
        min_ai_score: float | None = None,
        limit: int | None = None,
    ) -> list[PairScore]:
        """All scores touching a document, best AI score first.

        Args:
            document_id: Document on either side of the pair.
            min_similarity: Keep pairs with similarity >= this.
            min_ai_score: Keep pairs with AI score >= this.
            limit: Maximum number of results.
        """
        scores = list(self._index().get(document_id, {}).values())
        if min_similarity is not None:
            scores = [s for s in scores if s.similarity_score >= min_similarity]
        if min_ai_score is not None:
            scores = [s for s in scores if s.ai_score >= min_ai_score]
        scores.sort(key=lambda s: (-s.ai_score, -s.similarity_score))
        if limit is not None:
            scores = scores[:limit]
        return scores

    def delete_scores_for_document(self, document_id: str) -> int:
        cursor = self._conn.execute(
            "DELETE FROM pair_scores WHERE id_1 = ? OR id_2 = ?", (document_id, document_id)
        )
        self._conn.commit()
        if cursor.rowcount:
            self._mark_dirty(scores_changed=True)
        return cursor.rowcount

    def get_unscored_document_ids(self) -> set[str]:
        """Embedded documents that appear in no pair score."""
        rows = self._conn.execute(
            """
            SELECT e.document_id FROM embeddings e
            WHERE NOT EXISTS (
                SELECT 1 FROM pair_scores p
                WHERE p.id_1 = e.document_id OR p.id_2 = e.document_id
            )
            """
        ).fetchall()
        return {row["document_id"] for row in rows}

    # -------------------------------------------------------------------------
    # Link ledger
    # -------------------------------------------------------------------------

    def add_ledger_links(self, source_id: str, target_ids: Iterable[str]) -> None:
        now = _now()
        self._conn.executemany(
            "INSERT OR IGNORE INTO link_ledger (source_id, target_id, inserted_at) VALUES (?, ?, ?)",
            [(source_id, target_id, now) for target_id in target_ids],
        )
        self._conn.commit()
        self._mark_dirty()

    def get_ledger_entries(self, source_id: str) -> list[LinkLedgerEntry]:
        rows = self._conn.execute(
            "SELECT * FROM link_ledger WHERE source_id = ? ORDER BY inserted_at, target_id",
            (source_id,),
        ).fetchall()
        return [
            LinkLedgerEntry(
                source_id=row["source_id"],
                target_id=row["target_id"],
                inserted_at=datetime.fromisoformat(row["inserted_at"]),
            )
            for row in rows
        ]

    def get_ledger_targets(self, source_id: str) -> set[str]:
        rows = self._conn.execute(
            "SELECT target_id FROM link_ledger WHERE source_id = ?", (source_id,)
        ).fetchall()
        return {row["target_id"] for row in rows}

    def set_ledger_targets(self, source_id: str, target_ids: Iterable[str]) -> None:
        """Make the ledger for ``source_id`` exactly ``target_ids``.

        Entries that survive keep their original ``inserted_at``.
        """
        desired = set(target_ids)
        current = self.get_ledger_targets(source_id)
        stale = sorted(current - desired)
        for batch in _chunked(stale, 900):
            placeholders = ",".join("?" for _ in batch)
            self._conn.execute(
                f"DELETE FROM link_ledger WHERE source_id = ? AND target_id IN ({placeholders})",
                [source_id, *batch],
            )
        self._conn.commit()
        self.add_ledger_links(source_id, sorted(desired - current))

    def get_ledger_sources_targeting(self, target_ids: Iterable[str]) -> set[str]:
        """Sources whose ledger contains any of ``target_ids``."""
        targets = sorted(set(target_ids))
        sources: set[str] = set()
        for batch in _chunked(targets, 900):
            placeholders = ",".join("?" for _ in batch)
            rows = self._conn.execute(
                f"SELECT DISTINCT source_id FROM link_ledger WHERE target_id IN ({placeholders})",
                batch,
            ).fetchall()
            sources.update(row["source_id"] for row in rows)
        return sources

    # -------------------------------------------------------------------------
    # Failure log
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_failure(row: sqlite3.Row) -> FailureRecord:
        error = json.loads(row["error_message"])
        return FailureRecord(
            id=row["id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            operation_type=row["operation_type"],
            batch=json.loads(row["batch_info_json"]),
            error=error,
            resolved=bool(row["resolved"]),
        )

    def append_failure(self, record: FailureRecord) -> None:
        self._conn.execute(
            """
            INSERT OR REPLACE INTO failure_log
                (id, timestamp, operation_type, batch_info_json, error_message, resolved)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.timestamp.isoformat(),
                record.operation_type,
                record.batch.model_dump_json(),
                record.error.model_dump_json(),
                int(record.resolved),
            ),
        )
        self._conn.commit()
        self._mark_dirty()

    def list_failures(
        self, operation_type: str | None = None, include_resolved: bool = False
    ) -> list[FailureRecord]:
        """Failure records, oldest first."""
        query = "SELECT * FROM failure_log"
        clauses: list[str] = []
        params: list[object] = []
        if operation_type is not None:
            clauses.append("operation_type = ?")
            params.append(operation_type)
        if not include_resolved:
            clauses.append("resolved = 0")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY timestamp, id"
        rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_failure(row) for row in rows]

    def mark_failure_resolved(self, failure_id: str) -> None:
        self._conn.execute("UPDATE failure_log SET resolved = 1 WHERE id = ?", (failure_id,))
        self._conn.commit()
        self._mark_dirty()

    def delete_failure(self, failure_id: str) -> bool:
        cursor = self._conn.execute("DELETE FROM failure_log WHERE id = ?", (failure_id,))
        self._conn.commit()
        if cursor.rowcount:
            self._mark_dirty()
        return bool(cursor.rowcount)

    def delete_resolved_failures_before(self, cutoff: datetime) -> int:
        cursor = self._conn.execute(
            "DELETE FROM failure_log WHERE resolved = 1 AND timestamp < ?",
            (cutoff.isoformat(),),
        )
        self._conn.commit()
        if cursor.rowcount:
            self._mark_dirty()
        return cursor.rowcount

    def delete_all_failures(self) -> int:
        cursor = self._conn.execute("DELETE FROM failure_log")
        self._conn.commit()
        if cursor.rowcount:
            self._mark_dirty()
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def stats(self) -> CacheStats:
        def count(query: str) -> int:
            return int(self._conn.execute(query).fetchone()[0])

        return CacheStats(
            total_documents=count("SELECT COUNT(*) FROM documents"),
            total_embeddings=count("SELECT COUNT(*) FROM embeddings"),
            total_scores=count("SELECT COUNT(*) FROM pair_scores"),
            total_links=count("SELECT COUNT(*) FROM link_ledger"),
            total_failures=count("SELECT COUNT(*) FROM failure_log"),
            unresolved_failures=count("SELECT COUNT(*) FROM failure_log WHERE resolved = 0"),
        )

    def cleanup_orphans(self) -> int:
        """Delete embeddings, scores and ledger rows for documents no longer cached.

        Returns:
            Number of rows removed.
        """
        removed = 0
        for statement in (
            "DELETE FROM embeddings WHERE document_id NOT IN (SELECT id FROM documents)",
            "DELETE FROM pair_scores WHERE id_1 NOT IN (SELECT id FROM documents) "
            "OR id_2 NOT IN (SELECT id FROM documents)",
            "DELETE FROM link_ledger WHERE source_id NOT IN (SELECT id FROM documents) "
            "OR target_id NOT IN (SELECT id FROM documents)",
        ):
            removed += self._conn.execute(statement).rowcount
        self._conn.commit()
        if removed:
            self._mark_dirty(scores_changed=True)
            log.info("Removed %d orphaned cache rows", removed)
        return removed
