"""SQLite storage layer for the knowledge graph.

Single-file database (one per agent) with:
* Entity registry keyed by normalized name
* Triple store (subject → predicate → object) with confidence accumulation
* Entity co-occurrence cache (sorted pairs, running counts)
* WAL journal + bounded busy timeout for cross-process contention
* Auto-create schema on first use
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

DEFAULT_AGENT = "main"
DEFAULT_ENTITY_TYPE = "CONCEPT"


class GraphStoreError(Exception):
    """Base class for graph storage failures."""


class StoreBusyError(GraphStoreError):
    """The database stayed locked for longer than the busy timeout.

    Recoverable: the caller may retry the operation later.
    """


def normalize_entity_id(name: str) -> str:
    """Map an entity name to its canonical id.

    Lowercase, trim, and join whitespace runs with ``_`` so that
    ``" Foo  Bar "`` and ``"foo bar"`` share the id ``foo_bar``.
    """
    return "_".join(name.lower().split())


def today_utc() -> str:
    """Current UTC calendar date as ``YYYY-MM-DD``."""
    return datetime.now(timezone.utc).date().isoformat()


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
-- Core triples (subject → predicate → object)
CREATE TABLE IF NOT EXISTS triples (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject TEXT NOT NULL,
    predicate TEXT NOT NULL,
    object TEXT NOT NULL,
    confidence REAL DEFAULT 1.0,
    source_exchange_id TEXT,
    source_date TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    agent_id TEXT DEFAULT 'main',
    pending_resolution INTEGER DEFAULT 0
);

-- Entity registry (canonical forms + metadata)
CREATE TABLE IF NOT EXISTS entities (
    id TEXT NOT NULL,
    canonical_name TEXT NOT NULL,
    entity_type TEXT DEFAULT 'CONCEPT',
    first_seen REAL,
    last_seen REAL,
    mention_count INTEGER DEFAULT 1,
    aliases TEXT DEFAULT '[]',
    metadata TEXT DEFAULT '{}',
    agent_id TEXT DEFAULT 'main',
    PRIMARY KEY (id, agent_id)
);

-- Entity co-occurrence cache (entity_a < entity_b)
CREATE TABLE IF NOT EXISTS cooccurrences (
    entity_a TEXT NOT NULL,
    entity_b TEXT NOT NULL,
    count INTEGER DEFAULT 1,
    last_seen REAL,
    PRIMARY KEY (entity_a, entity_b)
);

CREATE INDEX IF NOT EXISTS idx_triples_subject ON triples(subject, agent_id);
CREATE INDEX IF NOT EXISTS idx_triples_object ON triples(object, agent_id);
CREATE INDEX IF NOT EXISTS idx_triples_predicate ON triples(predicate, agent_id);
CREATE INDEX IF NOT EXISTS idx_triples_subj_pred ON triples(subject, predicate);
CREATE INDEX IF NOT EXISTS idx_triples_obj_pred ON triples(object, predicate);
CREATE INDEX IF NOT EXISTS idx_triples_source ON triples(source_exchange_id);
CREATE INDEX IF NOT EXISTS idx_triples_date ON triples(source_date);
CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(entity_type, agent_id);
CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(canonical_name);
"""


# ---------------------------------------------------------------------------
# Query values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntityResolution:
    """Outcome of :meth:`GraphStore.resolve_entity`."""
    id: str
    is_new: bool


@dataclass
class TripleFilter:
    """Optional, conjunctive filters for :meth:`GraphStore.query_triples`.

    ``subject``/``object`` are matched by normalized id, ``predicate``
    verbatim. Empty values are treated as absent.
    """
    subject: Optional[str] = None
    predicate: Optional[str] = None
    object: Optional[str] = None
    agent_id: Optional[str] = None
    limit: int = 50

    def clauses(self) -> List[Tuple[str, Any]]:
        clauses: List[Tuple[str, Any]] = []
        if self.subject:
            clauses.append(("subject = ?", normalize_entity_id(self.subject)))
        if self.predicate:
            clauses.append(("predicate = ?", self.predicate))
        if self.object:
            clauses.append(("object = ?", normalize_entity_id(self.object)))
        if self.agent_id:
            clauses.append(("agent_id = ?", self.agent_id))
        return clauses

    def to_sql(self) -> Tuple[str, List[Any]]:
        clauses = self.clauses()
        sql = "SELECT * FROM triples"
        if clauses:
            sql += " WHERE " + " AND ".join(fragment for fragment, _ in clauses)
        sql += " ORDER BY updated_at DESC, id DESC LIMIT ?"
        params = [value for _, value in clauses]
        params.append(self.limit or 50)
        return sql, params


def _entity_dict(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    d["aliases"] = json.loads(d.get("aliases") or "[]")
    d["metadata"] = json.loads(d.get("metadata") or "{}")
    return d


def _triple_dict(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    d["pending_resolution"] = bool(d.get("pending_resolution"))
    return d


class GraphStore:
    """SQLite-backed triple store with entity registry and co-occurrence cache."""

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms

        # Ensure parent directory exists
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn: Optional[sqlite3.Connection] = None
        self._tx_depth = 0
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            # isolation_level=None: transactions are opened explicitly in transaction()
            self._conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            self._conn.execute("PRAGMA cache_size = -16000")  # 16MB page cache
            self._conn.execute("PRAGMA temp_store = MEMORY")
        return self._conn

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Run one statement, surfacing lock-wait timeouts as StoreBusyError."""
        try:
            return self._get_conn().execute(sql, params)
        except sqlite3.OperationalError as exc:
            if _is_busy(exc):
                raise StoreBusyError(f"{self.db_path}: {exc}") from exc
            raise

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Scope one atomic unit of work.

        The outermost entry opens ``BEGIN IMMEDIATE`` and commits on a clean
        exit or rolls back on any exception. Nested entries join the
        enclosing transaction.
        """
        conn = self._get_conn()
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield conn
            finally:
                self._tx_depth -= 1
            return

        self._execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            try:
                self._execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.rollback()
                raise
        finally:
            self._tx_depth = 0

    def ping(self) -> bool:
        """Cheap liveness check for the health endpoint."""
        return self._execute("SELECT 1").fetchone() is not None

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Schema bootstrap
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        for stmt in _SCHEMA_SQL.split(";"):
            stmt = stmt.strip()
            if stmt:
                self._execute(stmt)

    # ------------------------------------------------------------------
    # Entity registry
    # ------------------------------------------------------------------

    normalize_entity_id = staticmethod(normalize_entity_id)

    def upsert_entity(
        self,
        name: str,
        entity_type: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> str:
        """Register a mention of *name*. Returns the entity id.

        New entities start at ``mention_count = 1``; known ones get their
        count incremented and ``last_seen`` refreshed.
        """
        eid = normalize_entity_id(name)
        if not eid:
            raise ValueError("entity name must not be empty")
        now = time.time()
        with self.transaction():
            self._execute(
                """INSERT INTO entities (id, canonical_name, entity_type, first_seen,
                                         last_seen, mention_count, aliases, metadata, agent_id)
                   VALUES (?, ?, ?, ?, ?, 1, '[]', '{}', ?)
                   ON CONFLICT(id, agent_id) DO UPDATE SET
                       last_seen = excluded.last_seen,
                       mention_count = mention_count + 1""",
                (eid, name.strip(), entity_type or DEFAULT_ENTITY_TYPE, now, now,
                 agent_id or DEFAULT_AGENT),
            )
        return eid

    def resolve_entity(
        self,
        name: str,
        entity_type: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> EntityResolution:
        """Resolve a mention to its canonical id (exact normalized match).

        ``is_new`` reports whether the entity existed before this call's
        implicit upsert.
        """
        aid = agent_id or DEFAULT_AGENT
        with self.transaction():
            existing = self.get_entity(normalize_entity_id(name), aid)
            eid = self.upsert_entity(name, entity_type, aid)
        return EntityResolution(id=eid, is_new=existing is None)

    def get_entity(self, entity_id: str, agent_id: str = DEFAULT_AGENT) -> Optional[Dict[str, Any]]:
        """Return entity dict or None."""
        row = self._execute(
            "SELECT * FROM entities WHERE id = ? AND agent_id = ?",
            (entity_id, agent_id or DEFAULT_AGENT),
        ).fetchone()
        return _entity_dict(row) if row else None

    def get_entity_by_name(self, name: str, agent_id: str = DEFAULT_AGENT) -> Optional[Dict[str, Any]]:
        """Look up an entity by its stored canonical name."""
        row = self._execute(
            "SELECT * FROM entities WHERE canonical_name = ? AND agent_id = ? LIMIT 1",
            (name, agent_id or DEFAULT_AGENT),
        ).fetchone()
        return _entity_dict(row) if row else None

    def find_entities_by_prefix(
        self,
        prefix: str,
        agent_id: str = DEFAULT_AGENT,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """Case-sensitive prefix match over canonical names (gazetteer lookups)."""
        rows = self._execute(
            """SELECT * FROM entities
               WHERE substr(canonical_name, 1, length(?)) = ? AND agent_id = ?
               ORDER BY canonical_name
               LIMIT ?""",
            (prefix, prefix, agent_id or DEFAULT_AGENT, limit),
        ).fetchall()
        return [_entity_dict(r) for r in rows]

    def recent_entities(self, agent_id: str = DEFAULT_AGENT, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recently seen entities for *agent_id*."""
        rows = self._execute(
            "SELECT * FROM entities WHERE agent_id = ? ORDER BY last_seen DESC LIMIT ?",
            (agent_id or DEFAULT_AGENT, limit),
        ).fetchall()
        return [_entity_dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Triple store
    # ------------------------------------------------------------------

    def add_triple(
        self,
        subject: str,
        predicate: str,
        obj: str,
        confidence: Optional[float] = None,
        source_exchange_id: Optional[str] = None,
        source_date: Optional[str] = None,
        agent_id: Optional[str] = None,
        pending_resolution: bool = False,
    ) -> int:
        """Add a fact to the graph. Returns the triple id.

        An existing (subject, predicate, object, agent) fact is never
        duplicated: its confidence becomes ``max(old, new)`` and the
        existing id is returned.
        """
        subject_id = normalize_entity_id(subject)
        object_id = normalize_entity_id(obj)
        if not subject_id or not object_id or not predicate:
            raise ValueError("triple needs a subject, predicate and object")
        aid = agent_id or DEFAULT_AGENT
        conf = 1.0 if confidence is None else float(confidence)
        now = time.time()

        with self.transaction():
            existing = self._execute(
                """SELECT id FROM triples
                   WHERE subject = ? AND predicate = ? AND object = ? AND agent_id = ?
                   LIMIT 1""",
                (subject_id, predicate, object_id, aid),
            ).fetchone()
            if existing:
                self._execute(
                    "UPDATE triples SET confidence = MAX(confidence, ?), updated_at = ? WHERE id = ?",
                    (conf, now, existing["id"]),
                )
                return int(existing["id"])

            cur = self._execute(
                """INSERT INTO triples (subject, predicate, object, confidence,
                                        source_exchange_id, source_date, created_at,
                                        updated_at, agent_id, pending_resolution)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (subject_id, predicate, object_id, conf, source_exchange_id,
                 source_date or today_utc(), now, now, aid, 1 if pending_resolution else 0),
            )
            return int(cur.lastrowid)

    def write_exchange(
        self,
        entities: Optional[Iterable[Dict[str, Any]]] = None,
        triples: Optional[Iterable[Dict[str, Any]]] = None,
        cooccurrences: Optional[Iterable[Sequence[str]]] = None,
        agent_id: Optional[str] = None,
        source_exchange_id: Optional[str] = None,
        source_date: Optional[str] = None,
    ) -> List[int]:
        """Write the entities, triples and co-occurrences of one exchange.

        Everything happens in a single transaction: entities first, then
        triples (each deduplicated), then co-occurrence pairs (normalized and
        sorted). Either all of it becomes visible or none of it does.

        Each entity dict needs ``name`` (and optionally ``type``); each
        triple dict needs ``subject``, ``predicate``, ``object`` and may
        carry ``confidence`` / ``pending_resolution``.

        Returns the triple ids in input order.
        """
        aid = agent_id or DEFAULT_AGENT
        date = source_date or today_utc()
        triple_ids: List[int] = []

        with self.transaction():
            for entity in entities or []:
                self.upsert_entity(entity["name"], entity.get("type"), aid)

            for triple in triples or []:
                triple_ids.append(self.add_triple(
                    triple["subject"],
                    triple["predicate"],
                    triple["object"],
                    confidence=triple.get("confidence"),
                    source_exchange_id=source_exchange_id,
                    source_date=date,
                    agent_id=aid,
                    pending_resolution=bool(triple.get("pending_resolution", False)),
                ))

            for a, b in cooccurrences or []:
                first, second = sorted((normalize_entity_id(a), normalize_entity_id(b)))
                if first == second:
                    continue
                self.upsert_cooccurrence(first, second)

        logger.debug(
            "write_exchange: agent=%s exchange=%s triples=%d",
            aid, source_exchange_id, len(triple_ids),
        )
        return triple_ids

    def get_triples_for(
        self,
        entity_name: str,
        agent_id: str = DEFAULT_AGENT,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Triples where the entity is subject or object, newest first.

        The subject and object scans are each capped at *limit* before the
        union, so the result may hold more than *limit* rows.
        """
        eid = normalize_entity_id(entity_name)
        aid = agent_id or DEFAULT_AGENT
        lim = limit or 50

        as_subject = self._execute(
            """SELECT * FROM triples WHERE subject = ? AND agent_id = ?
               ORDER BY updated_at DESC, id DESC LIMIT ?""",
            (eid, aid, lim),
        ).fetchall()
        as_object = self._execute(
            """SELECT * FROM triples WHERE object = ? AND agent_id = ?
               ORDER BY updated_at DESC, id DESC LIMIT ?""",
            (eid, aid, lim),
        ).fetchall()

        seen: set[int] = set()
        result: List[Dict[str, Any]] = []
        for row in list(as_subject) + list(as_object):
            if row["id"] in seen:
                continue
            seen.add(row["id"])
            result.append(_triple_dict(row))
        return result

    def get_triples_by_id(
        self,
        entity_id: str,
        agent_id: str = DEFAULT_AGENT,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Triples touching an already-normalized entity id (single capped scan)."""
        rows = self._execute(
            """SELECT * FROM triples
               WHERE (subject = ? OR object = ?) AND agent_id = ?
               ORDER BY updated_at DESC, id DESC
               LIMIT ?""",
            (entity_id, entity_id, agent_id or DEFAULT_AGENT, limit or 50),
        ).fetchall()
        return [_triple_dict(r) for r in rows]

    def query_triples(self, filters: Optional[TripleFilter] = None, **kwargs: Any) -> List[Dict[str, Any]]:
        """Filtered triple listing, newest first.

        Pass a :class:`TripleFilter` or its fields as keyword arguments.
        """
        if filters is None:
            filters = TripleFilter(**kwargs)
        sql, params = filters.to_sql()
        rows = self._execute(sql, params).fetchall()
        return [_triple_dict(r) for r in rows]

    def delete_triples_by_exchange(self, exchange_id: str) -> int:
        """Delete the triples of one exchange (before re-extraction).

        Entities and co-occurrence counts are left as they are.
        """
        with self.transaction():
            cur = self._execute(
                "DELETE FROM triples WHERE source_exchange_id = ?", (exchange_id,)
            )
        deleted = int(cur.rowcount or 0)
        logger.info("Deleted %d triples for exchange %s", deleted, exchange_id)
        return deleted

    # ------------------------------------------------------------------
    # Co-occurrence cache
    # ------------------------------------------------------------------

    def upsert_cooccurrence(self, entity_a: str, entity_b: str) -> None:
        """Count one co-occurrence of an already-sorted id pair."""
        with self.transaction():
            self._execute(
                """INSERT INTO cooccurrences (entity_a, entity_b, count, last_seen)
                   VALUES (?, ?, 1, ?)
                   ON CONFLICT(entity_a, entity_b) DO UPDATE SET
                       count = count + 1,
                       last_seen = excluded.last_seen""",
                (entity_a, entity_b, time.time()),
            )

    def get_cooccurrences(self, entity_name: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Rows pairing the entity with anything else, most frequent first."""
        eid = normalize_entity_id(entity_name)
        rows = self._execute(
            """SELECT * FROM cooccurrences
               WHERE entity_a = ? OR entity_b = ?
               ORDER BY count DESC, rowid ASC
               LIMIT ?""",
            (eid, eid, limit or 20),
        ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_stats(self, agent_id: str = DEFAULT_AGENT) -> Dict[str, Any]:
        """Return graph statistics for *agent_id*.

        ``top_cooccurrences`` covers the whole file: co-occurrence rows carry
        no agent id.
        """
        aid = agent_id or DEFAULT_AGENT
        entity_count = self._execute(
            "SELECT COUNT(*) AS c FROM entities WHERE agent_id = ?", (aid,)
        ).fetchone()["c"]
        triple_count = self._execute(
            "SELECT COUNT(*) AS c FROM triples WHERE agent_id = ?", (aid,)
        ).fetchone()["c"]
        top = self._execute(
            "SELECT * FROM cooccurrences ORDER BY count DESC, rowid ASC LIMIT ?", (10,)
        ).fetchall()

        return {
            "entity_count": entity_count,
            "triple_count": triple_count,
            "recent_entities": self.recent_entities(aid, 10),
            "top_cooccurrences": [dict(r) for r in top],
        }
