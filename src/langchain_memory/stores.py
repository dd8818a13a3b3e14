"""
Long-term memory stores.

``InMemoryMemoryStore`` keeps records and vectors in process and is the
zero-dependency default. ``PgVectorMemoryStore`` persists to PostgreSQL
with the pgvector extension and falls back to case-insensitive substring
search when no query embedding is available.
"""

import dataclasses
import logging
import math
import os
import threading
from datetime import datetime
from typing import Optional, Sequence

from .types import MemoryRecord, MemoryScope, MemoryType, decay_factor

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_DIMENSIONS = 1536


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def keyword_overlap(query: str, content: str) -> float:
    """Share of query words found in ``content``."""
    words = {w for w in query.lower().split() if w}
    if not words:
        return 0.0
    text = content.lower()
    return sum(1 for w in words if w in text) / len(words)


def _check_counts(records: Sequence[MemoryRecord], embeddings: Sequence) -> None:
    if len(records) != len(embeddings):
        raise ValueError(
            f"Got {len(embeddings)} embeddings for {len(records)} memory records"
        )


class InMemoryMemoryStore:
    """Thread-safe in-process memory store."""

    def __init__(self, embeddings=None):
        self._embeddings = embeddings
        self._records: dict[str, MemoryRecord] = {}
        self._vectors: dict[str, list[float]] = {}
        self._access_counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def save(self, record: MemoryRecord, embedding: Sequence[float]) -> None:
        with self._lock:
            self._records[record.id] = record
            self._vectors[record.id] = list(embedding or [])
            self._access_counts.setdefault(record.id, 0)

    def save_all(self, records: Sequence[MemoryRecord],
                 embeddings: Sequence[Sequence[float]]) -> None:
        _check_counts(records, embeddings)
        with self._lock:
            for record, embedding in zip(records, embeddings):
                self._records[record.id] = record
                self._vectors[record.id] = list(embedding or [])
                self._access_counts.setdefault(record.id, 0)

    def delete(self, record_id: str) -> None:
        with self._lock:
            self._records.pop(record_id, None)
            self._vectors.pop(record_id, None)
            self._access_counts.pop(record_id, None)

    def get(self, record_id: str) -> Optional[MemoryRecord]:
        with self._lock:
            return self._records.get(record_id)

    def all_records(self, scope: Optional[MemoryScope] = None) -> list[MemoryRecord]:
        with self._lock:
            records = list(self._records.values())
        if scope is not None:
            records = [r for r in records if scope.matches(r.scope)]
        return sorted(records, key=lambda r: r.created_at)

    def access_count(self, record_id: str) -> int:
        with self._lock:
            return self._access_counts.get(record_id, 0)

    def recall_similar(self, scope: MemoryScope, text: str, k: int) -> list[MemoryRecord]:
        if not text or not text.strip() or k <= 0:
            return []

        query_vector = self._embed_query(text)
        with self._lock:
            scored = []
            for record_id, record in self._records.items():
                if not scope.matches(record.scope):
                    continue
                vector = self._vectors.get(record_id)
                if query_vector and vector:
                    similarity = cosine_similarity(query_vector, vector)
                else:
                    similarity = keyword_overlap(text, record.content)
                if similarity <= 0:
                    continue
                score = record.effective_score(similarity, self._access_counts.get(record_id, 0))
                scored.append((score, record))

            scored.sort(key=lambda pair: pair[0], reverse=True)
            results = [record for _, record in scored[:k]]
            for record in results:
                self._access_counts[record.id] = self._access_counts.get(record.id, 0) + 1
        return results

    def apply_decay(self, threshold: float = 0.1, now: Optional[datetime] = None) -> int:
        """Refresh decay factors and evict records whose factor fell below ``threshold``."""
        evicted = 0
        with self._lock:
            for record_id, record in list(self._records.items()):
                factor = decay_factor(record, now)
                if factor < threshold:
                    self._records.pop(record_id)
                    self._vectors.pop(record_id, None)
                    self._access_counts.pop(record_id, None)
                    evicted += 1
                else:
                    self._records[record_id] = dataclasses.replace(record, decay_factor=factor)
        if evicted:
            logger.info("Evicted %d decayed memory records", evicted)
        return evicted

    def __len__(self) -> int:
        return len(self._records)

    def _embed_query(self, text: str) -> Optional[list[float]]:
        if self._embeddings is None:
            return None
        try:
            return self._embeddings.embed_query(text)
        except Exception as e:
            logger.warning("Query embedding failed, using keyword match: %s", e)
            return None


def connect_pg(db_url: Optional[str] = None):
    """Open an autocommit psycopg connection returning dict rows."""
    from psycopg import Connection
    from psycopg.rows import dict_row

    return Connection.connect(
        db_url or os.getenv("DATABASE_URL"),
        autocommit=True,
        prepare_threshold=0,
        row_factory=dict_row,
    )


class PgVectorMemoryStore:
    """
    Memory records in PostgreSQL with pgvector.

    Without a connection every operation is a no-op, so callers can run
    without a database configured.
    """

    _COLUMNS = (
        "id, tenant_id, user_id, scope_session_id, session_id, content, "
        "memory_type, importance, decay_factor, created_at"
    )

    def __init__(self, pg_conn=None, embeddings=None, embedding_dimensions: int = 0):
        self._pg_conn = pg_conn
        self._embeddings = embeddings
        self._embedding_dimensions = embedding_dimensions
        self._table_ready = False
        self._setup_table()

    def _setup_table(self):
        if not self._pg_conn:
            return
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                dim = self._embedding_dimensions or self._detect_dimensions()
                cur.execute(f"""
                    CREATE TABLE IF NOT EXISTS memory_records (
                        id TEXT PRIMARY KEY,
                        tenant_id TEXT,
                        user_id TEXT,
                        scope_session_id TEXT,
                        session_id TEXT,
                        content TEXT NOT NULL,
                        memory_type TEXT NOT NULL,
                        importance REAL NOT NULL DEFAULT 0.5,
                        decay_factor REAL NOT NULL DEFAULT 1.0,
                        access_count INT NOT NULL DEFAULT 0,
                        embedding vector({dim}),
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_memory_records_scope
                    ON memory_records (tenant_id, user_id)
                """)
                self._table_ready = True
        except Exception as e:
            logger.warning("Failed to setup memory_records table: %s", e)

    def _detect_dimensions(self) -> int:
        if self._embeddings:
            try:
                dim = len(self._embeddings.embed_query("test"))
                self._embedding_dimensions = dim
                return dim
            except Exception as e:
                logger.warning("Could not detect embedding dimensions: %s", e)
        return DEFAULT_EMBEDDING_DIMENSIONS

    def save(self, record: MemoryRecord, embedding: Sequence[float]) -> None:
        self.save_all([record], [embedding])

    def save_all(self, records: Sequence[MemoryRecord],
                 embeddings: Sequence[Sequence[float]]) -> None:
        _check_counts(records, embeddings)
        if not self._pg_conn or not self._table_ready:
            return
        with self._pg_conn.cursor() as cur:
            for record, embedding in zip(records, embeddings):
                scope = record.scope or MemoryScope()
                cur.execute(
                    """
                    INSERT INTO memory_records
                        (id, tenant_id, user_id, scope_session_id, session_id, content,
                         memory_type, importance, decay_factor, created_at, embedding)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::vector)
                    ON CONFLICT (id) DO UPDATE SET
                        content = EXCLUDED.content,
                        importance = EXCLUDED.importance,
                        decay_factor = EXCLUDED.decay_factor,
                        embedding = EXCLUDED.embedding
                    """,
                    (
                        record.id, scope.tenant_id, scope.user_id, scope.session_id,
                        record.session_id, record.content, record.type.name,
                        record.importance, record.decay_factor, record.created_at,
                        list(embedding) if embedding else None,
                    ),
                )

    def delete(self, record_id: str) -> None:
        if not self._pg_conn:
            return
        with self._pg_conn.cursor() as cur:
            cur.execute("DELETE FROM memory_records WHERE id = %s", (record_id,))

    def recall_similar(self, scope: MemoryScope, text: str, k: int) -> list[MemoryRecord]:
        if not self._pg_conn or not self._table_ready or not text or not text.strip():
            return []

        embedding = None
        if self._embeddings:
            try:
                embedding = self._embeddings.embed_query(text)
            except Exception as e:
                logger.warning("Embedding failed: %s", e)

        if embedding:
            records = self._vector_search(scope, embedding, k)
        else:
            records = self._keyword_search(scope, text, k)
        self._touch(records)
        return records

    def _vector_search(self, scope: MemoryScope, embedding: list[float],
                       k: int) -> list[MemoryRecord]:
        where, params = _scope_filter(scope)
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {self._COLUMNS}
                    FROM memory_records
                    WHERE {where} AND embedding IS NOT NULL
                    ORDER BY (1 - (embedding <=> %s::vector)) * importance * decay_factor
                             * (1 + 0.1 * ln(1 + access_count)) DESC
                    LIMIT %s
                    """,
                    (*params, embedding, k),
                )
                return [_row_to_record(row) for row in cur.fetchall()]
        except Exception as e:
            logger.warning("Vector search failed: %s", e)
            return []

    def _keyword_search(self, scope: MemoryScope, query: str, k: int) -> list[MemoryRecord]:
        words = query.strip().split()
        if not words:
            return []
        where, params = _scope_filter(scope)
        conditions = " OR ".join("position(lower(%s) in lower(content)) > 0" for _ in words)
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {self._COLUMNS}
                    FROM memory_records
                    WHERE {where} AND ({conditions})
                    ORDER BY importance * decay_factor DESC, created_at DESC
                    LIMIT %s
                    """,
                    (*params, *words, k),
                )
                return [_row_to_record(row) for row in cur.fetchall()]
        except Exception as e:
            logger.warning("Keyword search failed: %s", e)
            return []

    def _touch(self, records: Sequence[MemoryRecord]):
        if not records:
            return
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    "UPDATE memory_records SET access_count = access_count + 1 WHERE id = ANY(%s)",
                    ([r.id for r in records],),
                )
        except Exception as e:
            logger.warning("Failed to update access counts: %s", e)


def _scope_filter(scope: MemoryScope) -> tuple[str, list]:
    conditions = ["TRUE"]
    params: list = []
    for column, value in (
        ("tenant_id", scope.tenant_id),
        ("user_id", scope.user_id),
        ("scope_session_id", scope.session_id),
    ):
        if value:
            conditions.append(f"{column} = %s")
            params.append(value)
    return " AND ".join(conditions), params


def _row_to_record(row) -> MemoryRecord:
    if not isinstance(row, dict):
        keys = [c.strip() for c in PgVectorMemoryStore._COLUMNS.split(",")]
        row = dict(zip(keys, row))
    return MemoryRecord(
        id=row["id"],
        scope=MemoryScope(
            tenant_id=row.get("tenant_id"),
            user_id=row.get("user_id"),
            session_id=row.get("scope_session_id"),
        ),
        session_id=row.get("session_id"),
        content=row["content"],
        type=MemoryType.parse(row.get("memory_type")),
        importance=float(row.get("importance", 0.5)),
        decay_factor=float(row.get("decay_factor", 1.0)),
        created_at=row["created_at"],
    )
