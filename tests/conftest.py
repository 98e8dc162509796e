"""Shared fixtures for graph memory tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from graph_memory.extractor import PatternExtractor
from graph_memory.metrics import reset_metrics
from graph_memory.pool import StoragePool
from graph_memory.searcher import GraphSearcher
from graph_memory.storage import GraphStore


# ---------------------------------------------------------------------------
# Keep config and metrics isolated per test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    """Point every GRAPH_MEMORY_* lookup at the temp dir."""
    monkeypatch.delenv("GRAPH_MEMORY_CONFIG", raising=False)
    monkeypatch.delenv("GRAPH_MEMORY_API_KEY", raising=False)
    monkeypatch.setenv("GRAPH_MEMORY_DATA_DIR", str(tmp_path / "data"))
    reset_metrics()
    yield
    reset_metrics()


# ---------------------------------------------------------------------------
# Storage fixture (temporary DB)
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_store(tmp_path):
    """Create a fresh GraphStore backed by a temp SQLite file."""
    s = GraphStore(db_path=str(tmp_path / "graph.db"))
    yield s
    s.close()


@pytest.fixture
def extractor():
    return PatternExtractor()


@pytest.fixture
def searcher(tmp_store, extractor):
    return GraphSearcher(tmp_store, extractor=extractor)


@pytest.fixture
def pool(tmp_path):
    p = StoragePool(base_dir=str(tmp_path / "graphs"))
    yield p
    p.close_all()


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

ALICE_EXCHANGE = [
    {"role": "user", "content": "Alice visited Paris last spring."},
    {"role": "assistant", "content": "Sure, Alice visited Paris."},
]

SAMPLE_SESSION_JSONL = [
    {"type": "session", "id": "s1", "timestamp": "2026-01-15T09:59:00Z"},
    {"type": "message", "timestamp": "2026-01-15T10:00:00Z",
     "message": {"role": "user", "content": "Bob works at Google these days."}},
    {"type": "message", "timestamp": "2026-01-15T10:00:30Z",
     "message": {"role": "assistant", "content": [{"type": "toolCall", "name": "memory_search"}]}},
    {"type": "message", "timestamp": "2026-01-15T10:00:40Z",
     "message": {"role": "assistant", "content": [{"type": "text", "text": "Got it, Bob works at Google."}]}},
    {"type": "message", "timestamp": "2026-01-16T08:00:00Z",
     "message": {"role": "user", "content": "HEARTBEAT_OK"}},
    {"type": "message", "timestamp": "2026-01-16T08:05:00Z",
     "message": {"role": "user", "content": "Alice lives in Berlin now."}},
    {"type": "message", "timestamp": "2026-01-16T08:05:20Z",
     "message": {"role": "assistant", "content": "Thanks, Alice lives in Berlin."}},
]


@pytest.fixture
def alice_exchange():
    return [dict(m) for m in ALICE_EXCHANGE]


@pytest.fixture
def session_file(tmp_path) -> Path:
    sessions = tmp_path / "sessions"
    sessions.mkdir()
    path = sessions / "sess-abc.jsonl"
    with open(path, "w", encoding="utf-8") as fh:
        for entry in SAMPLE_SESSION_JSONL:
            fh.write(json.dumps(entry) + "\n")
        fh.write("not json\n")
    return path
