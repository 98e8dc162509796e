"""Exchange ingestion and recall.

Live path (one call per finished agent turn):
* ``ingest_exchange``      extract → ``write_exchange`` in one transaction
* ``recall_for_messages``  last user message → link-expansion search
* ``report_stats``         end-of-session graph summary

Batch path: parse OpenClaw JSONL session files into user→assistant
exchanges and re-extract them (``backfill_sessions``).
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import metrics
from .config import Config
from .extractor import Extractor, message_text, strip_context_blocks
from .pool import StoragePool
from .searcher import SearchResults
from .storage import GraphStore, today_utc

logger = logging.getLogger(__name__)

DOCUMENT_GUARD_CHARS = 2000
_DOCUMENT_RE = re.compile(r"(?:\.pdf|\.docx?|\.txt|\.epub|\.md)\b", re.IGNORECASE)

# Messages to skip during backfill
_SKIP_CONTENT: set[str] = {
    "HEARTBEAT_OK",
    "NO_REPLY",
}


@dataclass
class IngestResult:
    """Outcome of one ``ingest_exchange`` call."""
    agent_id: str
    exchange_id: Optional[str] = None
    status: str = "written"  # written | skipped | failed
    reason: str = ""
    entity_count: int = 0
    triple_ids: List[int] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "exchange_id": self.exchange_id,
            "status": self.status,
            "reason": self.reason,
            "entity_count": self.entity_count,
            "triple_count": len(self.triple_ids),
            "triple_ids": list(self.triple_ids),
            "error": self.error,
        }


def known_entities(store: GraphStore, agent_id: str, limit: int = 200) -> List[Dict[str, Any]]:
    """Recent entities used as the gazetteer sample (empty on storage errors)."""
    try:
        return store.recent_entities(agent_id, limit)
    except Exception as exc:
        logger.warning("[Graph:%s] known-entity lookup failed: %s", agent_id, exc)
        return []


def is_document_exchange(messages: Sequence[Dict[str, Any]]) -> bool:
    """True when the first user message looks like a pasted document."""
    first_user = next((m for m in messages if m and m.get("role") == "user"), None)
    text = message_text(first_user)
    return bool(_DOCUMENT_RE.search(text)) and len(text) > DOCUMENT_GUARD_CHARS


def ingest_exchange(
    pool: StoragePool,
    extractor: Extractor,
    messages: Sequence[Dict[str, Any]],
    agent_id: Optional[str] = None,
    exchange_id: Optional[str] = None,
    source_date: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    config: Optional[Config] = None,
    raise_errors: bool = False,
) -> IngestResult:
    """Extract one finished exchange and write it to the agent's graph.

    Extraction and write failures are logged and reported in the result;
    they never propagate to the caller unless *raise_errors* is set.
    """
    cfg = config or Config()
    meta = metadata or {}
    graph = pool.get_or_create(agent_id)
    aid = graph.agent_id
    result = IngestResult(agent_id=aid)

    if not cfg.enabled:
        result.status, result.reason = "skipped", "disabled"
    elif meta.get("is_heartbeat") and cfg.skip_heartbeats:
        result.status, result.reason = "skipped", "heartbeat"
    elif not messages:
        result.status, result.reason = "skipped", "empty"
    elif is_document_exchange(messages):
        logger.debug("[Graph:%s] Skipping document processing exchange", aid)
        result.status, result.reason = "skipped", "document"
    if result.status == "skipped":
        metrics.record_exchange(aid, "skipped")
        return result

    gazetteer = known_entities(graph.store, aid, cfg.known_entities_limit)
    stage = "extraction"
    try:
        extraction = extractor.extract_from_exchange(messages, known_entities=gazetteer)
        if not extraction.entities:
            result.status, result.reason = "skipped", "no_entities"
            metrics.record_exchange(aid, "skipped")
            return result

        payload = extraction.to_dict()
        result.exchange_id = (
            exchange_id
            or meta.get("exchange_id")
            or meta.get("session_id")
            or f"exchange_{int(time.time() * 1000)}"
        )
        result.entity_count = len(extraction.entities)

        stage = "write"
        result.triple_ids = graph.store.write_exchange(
            entities=payload["entities"],
            triples=payload["triples"],
            cooccurrences=payload["cooccurrences"],
            agent_id=aid,
            source_exchange_id=result.exchange_id,
            source_date=source_date or today_utc(),
        )
    except Exception as exc:
        if raise_errors:
            raise
        logger.error(
            "[Graph:%s] %s failed for %s: %s",
            aid, stage.capitalize(), result.exchange_id or "exchange", exc,
        )
        result.status, result.error = "failed", str(exc)
        result.triple_ids = []
        metrics.record_exchange(aid, "failed")
        return result

    logger.info(
        "[Graph:%s] Extracted %d entities, wrote %d triples from %s",
        aid, result.entity_count, len(result.triple_ids), result.exchange_id,
    )
    metrics.record_exchange(aid, "written")
    return result


def recall_for_messages(
    pool: StoragePool,
    extractor: Extractor,
    messages: Sequence[Dict[str, Any]],
    agent_id: Optional[str] = None,
    config: Optional[Config] = None,
) -> SearchResults:
    """Run link expansion for the last user message of a conversation."""
    cfg = config or Config()
    if not cfg.enabled:
        return SearchResults()
    graph = pool.get_or_create(agent_id)

    last_user = next((m for m in reversed(list(messages)) if m and m.get("role") == "user"), None)
    if last_user is None:
        return SearchResults()

    query = strip_context_blocks(message_text(last_user))
    if len(query) < cfg.min_query_length:
        return SearchResults()

    gazetteer = known_entities(graph.store, graph.agent_id, cfg.known_entities_limit)
    started = time.perf_counter()
    results = graph.searcher.search(query, graph.agent_id, known_entities=gazetteer)
    metrics.record_search(graph.agent_id, time.perf_counter() - started)
    if results.exchanges:
        logger.info(
            "[Graph:%s] Found %d connected exchanges via %d entities",
            graph.agent_id, len(results.exchanges), len(results.entities),
        )
    return results


def report_stats(pool: StoragePool, agent_id: Optional[str] = None) -> Dict[str, Any]:
    """Graph summary for one agent, logged at session end."""
    graph = pool.get_or_create(agent_id)
    stats = graph.store.get_stats(graph.agent_id)
    metrics.set_graph_size(
        graph.agent_id, entities=stats["entity_count"], triples=stats["triple_count"]
    )
    logger.info(
        "[Graph:%s] Session end: %d entities, %d triples",
        graph.agent_id, stats["entity_count"], stats["triple_count"],
    )
    return {"agent_id": graph.agent_id, **stats}


# ---------------------------------------------------------------------------
# Session files
# ---------------------------------------------------------------------------

@dataclass
class ExchangeRecord:
    """One user→assistant exchange recovered from a session file."""
    exchange_id: str
    session_id: str
    timestamp: str
    messages: List[Dict[str, Any]]

    @property
    def source_date(self) -> str:
        try:
            ts = datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            return today_utc()
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc).date().isoformat()


def _is_tool_entry(msg: Dict[str, Any]) -> bool:
    if msg.get("role") in ("tool", "function", "toolResult"):
        return True
    content = msg.get("content")
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and item.get("type") in ("tool_use", "tool_result", "toolCall"):
                return True
    return False


def parse_session_file(path: Path) -> List[ExchangeRecord]:
    """Parse a JSONL session file into user→assistant exchanges.

    Tool calls, heartbeats and system messages are skipped; a user message
    without an assistant reply is kept as a one-message exchange.
    """
    session_id = path.stem
    records: List[ExchangeRecord] = []
    pending: Optional[Dict[str, Any]] = None
    pending_ts = ""

    def flush(reply: Optional[Dict[str, Any]] = None) -> None:
        nonlocal pending
        if pending is None:
            return
        msgs = [pending] + ([reply] if reply else [])
        records.append(ExchangeRecord(
            exchange_id=f"{session_id}:{len(records)}",
            session_id=session_id,
            timestamp=pending_ts,
            messages=msgs,
        ))
        pending = None

    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if entry.get("type") != "message":
                continue

            msg = entry.get("message") or {}
            if _is_tool_entry(msg):
                continue
            text = message_text(msg).strip()
            if not text or text in _SKIP_CONTENT:
                continue

            role = msg.get("role")
            if role == "user":
                flush()
                pending = {"role": "user", "content": text}
                pending_ts = entry.get("timestamp", "")
            elif role == "assistant" and pending is not None:
                flush({"role": "assistant", "content": text})

    flush()
    return records


def discover_sessions(sessions_dir: str) -> List[Path]:
    """Return all .jsonl session files sorted by modification time."""
    sdir = Path(sessions_dir).expanduser()
    if not sdir.is_dir():
        logger.warning("Sessions directory not found: %s", sdir)
        return []
    return sorted(sdir.glob("*.jsonl"), key=lambda p: p.stat().st_mtime)


def backfill_sessions(
    pool: StoragePool,
    extractor: Extractor,
    sessions_dir: str,
    agent_id: Optional[str] = None,
    config: Optional[Config] = None,
    progress_cb: Optional[Callable[[int, int], None]] = None,
) -> Dict[str, Any]:
    """Re-extract every exchange of every session file into the agent's graph.

    Each exchange is replaced atomically: its earlier triples are deleted and
    the fresh extraction written in one transaction, so a failed rewrite
    keeps the old facts. A failing exchange is logged, counted under
    ``failed`` and the backfill moves on to the next one.

    Returns stats dict.
    """
    cfg = config or Config()
    stats = {"sessions": 0, "exchanges": 0, "written": 0,
             "skipped": 0, "failed": 0, "replaced_triples": 0}
    if not cfg.enabled:
        logger.warning("Graph memory disabled, backfill skipped")
        return stats

    sessions = discover_sessions(sessions_dir)
    graph = pool.get_or_create(agent_id)
    stats["sessions"] = len(sessions)

    for idx, session_path in enumerate(sessions, start=1):
        for record in parse_session_file(session_path):
            stats["exchanges"] += 1
            try:
                with graph.store.transaction():
                    replaced = graph.store.delete_triples_by_exchange(record.exchange_id)
                    result = ingest_exchange(
                        pool,
                        extractor,
                        record.messages,
                        agent_id=graph.agent_id,
                        exchange_id=record.exchange_id,
                        source_date=record.source_date,
                        config=cfg,
                        raise_errors=True,
                    )
            except Exception as exc:
                logger.error(
                    "[Graph:%s] Backfill of %s failed, previous triples kept: %s",
                    graph.agent_id, record.exchange_id, exc,
                )
                metrics.record_exchange(graph.agent_id, "failed")
                stats["failed"] += 1
                continue
            stats["replaced_triples"] += replaced
            stats[result.status] += 1
        if progress_cb:
            progress_cb(idx, len(sessions))
        logger.info("Backfill progress: %d/%d sessions", idx, len(sessions))

    return stats
