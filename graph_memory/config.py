"""Configuration for the graph memory service.

Defaults live on the ``Config`` dataclass; ``load_config`` layers a JSON
file and then ``GRAPH_MEMORY_*`` environment variables on top.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _to_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Config:
    """Central configuration for the store, searcher, ingest path and API."""

    enabled: bool = True

    # Storage: one graph.db per agent under data_dir
    data_dir: str = str(Path.home() / ".graph-memory")
    db_file: str = "graph.db"
    busy_timeout_ms: int = 5000

    # API
    # Security: bind to localhost by default. Override with GRAPH_MEMORY_HOST if needed.
    api_host: str = "127.0.0.1"
    api_port: int = 8788
    api_key: str = ""

    # Retrieval (link expansion)
    max_results: int = 20
    min_shared_entities: int = 1
    cooccurrence_boost: float = 0.1

    # Ingest / recall
    known_entities_limit: int = 200
    min_query_length: int = 5
    skip_heartbeats: bool = True
    max_entities_per_exchange: int = 25
    sessions_dir: str = str(Path.home() / ".openclaw" / "agents" / "main" / "sessions")

    def validate(self) -> list[str]:
        """Human-readable problems with the current values; empty when usable."""
        errors: list[str] = []
        if self.busy_timeout_ms < 0:
            errors.append("GRAPH_MEMORY_BUSY_TIMEOUT_MS must be >= 0")
        if self.api_port < 1 or self.api_port > 65535:
            errors.append("GRAPH_MEMORY_PORT must be 1-65535")
        if self.max_results < 1:
            errors.append("GRAPH_MEMORY_MAX_RESULTS must be >= 1")
        if self.min_shared_entities < 0:
            errors.append("GRAPH_MEMORY_MIN_SHARED must be >= 0")
        if self.cooccurrence_boost < 0:
            errors.append("GRAPH_MEMORY_COOC_BOOST must be >= 0")
        if not self.db_file or "/" in self.db_file:
            errors.append("GRAPH_MEMORY_DB_FILE must be a bare file name")
        return errors

    def search_settings(self):
        """Build the searcher settings from the retrieval fields."""
        from .searcher import SearchSettings

        return SearchSettings(
            max_results=self.max_results,
            min_shared_entities=self.min_shared_entities,
            cooccurrence_boost=self.cooccurrence_boost,
        )


def load_config(config_path: Optional[str] = None) -> Config:
    """Defaults, then the JSON file (argument or ``GRAPH_MEMORY_CONFIG``), then env vars.

    Environment variables (all optional):
        GRAPH_MEMORY_CONFIG
        GRAPH_MEMORY_ENABLED
        GRAPH_MEMORY_DATA_DIR
        GRAPH_MEMORY_DB_FILE
        GRAPH_MEMORY_BUSY_TIMEOUT_MS
        GRAPH_MEMORY_HOST
        GRAPH_MEMORY_PORT
        GRAPH_MEMORY_API_KEY
        GRAPH_MEMORY_MAX_RESULTS
        GRAPH_MEMORY_MIN_SHARED
        GRAPH_MEMORY_COOC_BOOST
        GRAPH_MEMORY_SESSIONS_DIR
    """
    cfg = Config()

    # JSON overlay
    json_path = config_path or os.environ.get("GRAPH_MEMORY_CONFIG")
    if json_path and Path(json_path).is_file():
        with open(json_path, "r") as fh:
            data = json.load(fh)
        for key, val in data.items():
            if hasattr(cfg, key):
                expected_type = type(getattr(cfg, key))
                cast = _to_bool if expected_type is bool else expected_type
                try:
                    setattr(cfg, key, cast(val))
                except (ValueError, TypeError):
                    pass  # keep the default

    # Environment overlay (wins over JSON)
    env_map: dict[str, tuple[str, type]] = {
        "GRAPH_MEMORY_ENABLED": ("enabled", bool),
        "GRAPH_MEMORY_DATA_DIR": ("data_dir", str),
        "GRAPH_MEMORY_DB_FILE": ("db_file", str),
        "GRAPH_MEMORY_BUSY_TIMEOUT_MS": ("busy_timeout_ms", int),
        "GRAPH_MEMORY_HOST": ("api_host", str),
        "GRAPH_MEMORY_PORT": ("api_port", int),
        "GRAPH_MEMORY_API_KEY": ("api_key", str),
        "GRAPH_MEMORY_MAX_RESULTS": ("max_results", int),
        "GRAPH_MEMORY_MIN_SHARED": ("min_shared_entities", int),
        "GRAPH_MEMORY_COOC_BOOST": ("cooccurrence_boost", float),
        "GRAPH_MEMORY_SESSIONS_DIR": ("sessions_dir", str),
    }

    for env_key, (attr, cast) in env_map.items():
        val = os.environ.get(env_key)
        if val is not None:
            try:
                setattr(cfg, attr, _to_bool(val) if cast is bool else cast(val))
            except (ValueError, TypeError):
                pass

    cfg.data_dir = str(Path(cfg.data_dir).expanduser())
    return cfg
