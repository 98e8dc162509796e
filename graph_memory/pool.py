"""Registry of per-agent graph databases.

Every agent owns a separate SQLite file:
    - main/default: {base_dir}/graph.db
    - named agent:  {base_dir}/agents/{agent_id}/graph.db

The pool lazily opens a GraphStore + GraphSearcher pair on first access.
Schema is auto-created by GraphStore.__init__.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .config import Config
from .extractor import Extractor, PatternExtractor
from .searcher import GraphSearcher, SearchSettings
from .storage import GraphStore

logger = logging.getLogger(__name__)

# Agent ids double as directory names under agents/.
_AGENT_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


@dataclass
class AgentGraph:
    """Open store and searcher for one agent."""
    agent_id: str
    store: GraphStore
    searcher: GraphSearcher


class StoragePool:
    """Manages per-agent GraphStore instances."""

    def __init__(
        self,
        base_dir: str,
        db_file: str = "graph.db",
        busy_timeout_ms: int = 5000,
        settings: Optional[SearchSettings] = None,
        extractor: Optional[Extractor] = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.db_file = db_file
        self.busy_timeout_ms = busy_timeout_ms
        self.settings = settings or SearchSettings()
        self.extractor = extractor
        self._graphs: Dict[str, AgentGraph] = {}

    @classmethod
    def from_config(cls, cfg: Config) -> "StoragePool":
        """Pool, settings and extractor as described by *cfg*."""
        return cls(
            base_dir=cfg.data_dir,
            db_file=cfg.db_file,
            busy_timeout_ms=cfg.busy_timeout_ms,
            settings=cfg.search_settings(),
            extractor=PatternExtractor(max_entities_per_exchange=cfg.max_entities_per_exchange),
        )

    @staticmethod
    def normalize_key(agent_id: Optional[str]) -> str:
        """Canonical agent id for routing and the on-disk layout.

        ``None``, empty and ``main`` all mean the default graph. Raises
        ValueError for ids that could escape the data dir and for ``all``.
        """
        if not agent_id or agent_id == "main":
            return "main"
        agent_id = agent_id.strip().lower()
        if agent_id == "all":
            raise ValueError("'all' is a reserved agent ID")
        if not _AGENT_ID_RE.match(agent_id):
            raise ValueError(
                f"Invalid agent ID '{agent_id}': must match [a-z0-9][a-z0-9_-]{{0,63}}"
            )
        return agent_id

    def db_path(self, agent_id: Optional[str] = None) -> str:
        key = self.normalize_key(agent_id)
        if key == "main":
            return str(self.base_dir / self.db_file)
        return str(self.base_dir / "agents" / key / self.db_file)

    def get_or_create(self, agent_id: Optional[str] = None) -> AgentGraph:
        """Get or open the graph for the given agent."""
        key = self.normalize_key(agent_id)
        if key not in self._graphs:
            db_path = self.db_path(key)
            store = GraphStore(db_path, busy_timeout_ms=self.busy_timeout_ms)
            searcher = GraphSearcher(store, extractor=self.extractor, settings=self.settings)
            self._graphs[key] = AgentGraph(agent_id=key, store=store, searcher=searcher)
            logger.info("StoragePool: opened %s -> %s", key, db_path)
        return self._graphs[key]

    def get_all_agents(self) -> List[str]:
        """Agent IDs with a database on disk, plus any currently open."""
        agents: List[str] = []
        if (self.base_dir / self.db_file).exists():
            agents.append("main")
        agents_dir = self.base_dir / "agents"
        if agents_dir.is_dir():
            for child in sorted(agents_dir.iterdir()):
                if child.is_dir() and (child / self.db_file).exists() and _AGENT_ID_RE.match(child.name):
                    agents.append(child.name)
        for key in self._graphs:
            if key not in agents:
                agents.append(key)
        return agents

    def close_all(self) -> None:
        """Close every open store; handles reopen lazily on next access."""
        for graph in self._graphs.values():
            graph.store.close()
        self._graphs.clear()
