"""Command-line access to the per-agent knowledge graphs.

Usage::

    graph-memory stats [--agent ID]
    graph-memory search "where did Alice go?" [--agent ID] [--limit N]
    graph-memory entity Alice [--agent ID]
    graph-memory triples [--subject S] [--predicate P] [--object O] [--limit N]
    graph-memory agents
    graph-memory backfill [--sessions-dir DIR] [--agent ID]
    graph-memory forget-exchange EXCHANGE_ID [--agent ID]

Every command prints JSON to stdout.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, List, Optional

from .config import load_config
from .ingest import backfill_sessions, known_entities
from .pool import StoragePool
from .storage import GraphStoreError, TripleFilter

logger = logging.getLogger(__name__)


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="graph-memory", description=__doc__.splitlines()[0])
    parser.add_argument("--config", help="Path to a JSON config file")
    parser.add_argument("--data-dir", help="Override the data directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("stats", help="Graph statistics for one agent")
    p.add_argument("--agent", default=None)

    p = sub.add_parser("search", help="Link-expansion search")
    p.add_argument("query")
    p.add_argument("--agent", default=None)
    p.add_argument("--limit", type=int, default=None)

    p = sub.add_parser("entity", help="Entity context")
    p.add_argument("name")
    p.add_argument("--agent", default=None)

    p = sub.add_parser("triples", help="Filtered triple listing")
    p.add_argument("--subject")
    p.add_argument("--predicate")
    p.add_argument("--object", dest="obj")
    p.add_argument("--agent", default=None)
    p.add_argument("--limit", type=int, default=50)

    sub.add_parser("agents", help="List agent graphs")

    p = sub.add_parser("backfill", help="Re-extract OpenClaw session files")
    p.add_argument("--sessions-dir", default=None)
    p.add_argument("--agent", default=None)

    p = sub.add_parser("forget-exchange", help="Delete the triples of one exchange")
    p.add_argument("exchange_id")
    p.add_argument("--agent", default=None)

    return parser


def run(args: argparse.Namespace, pool: StoragePool, cfg) -> int:
    """Dispatch one parsed command. Returns the process exit code."""
    if args.command == "agents":
        _print({"agents": pool.get_all_agents()})
        return 0

    graph = pool.get_or_create(args.agent)

    if args.command == "stats":
        _print({"agent": graph.agent_id, **graph.store.get_stats(graph.agent_id)})
    elif args.command == "search":
        gazetteer = known_entities(graph.store, graph.agent_id, cfg.known_entities_limit)
        results = graph.searcher.search(
            args.query, graph.agent_id, limit=args.limit, known_entities=gazetteer
        )
        _print(results.to_dict())
    elif args.command == "entity":
        context = graph.searcher.get_entity_context(args.name, graph.agent_id)
        if context is None:
            _print({"error": f"Entity not found: {args.name}"})
            return 1
        _print(context)
    elif args.command == "triples":
        _print(graph.store.query_triples(TripleFilter(
            subject=args.subject,
            predicate=args.predicate,
            object=args.obj,
            agent_id=graph.agent_id,
            limit=args.limit,
        )))
    elif args.command == "backfill":
        stats = backfill_sessions(
            pool,
            graph.searcher.extractor,
            args.sessions_dir or cfg.sessions_dir,
            agent_id=graph.agent_id,
            config=cfg,
        )
        _print(stats)
    elif args.command == "forget-exchange":
        deleted = graph.store.delete_triples_by_exchange(args.exchange_id)
        _print({"exchange_id": args.exchange_id, "deleted": deleted})
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    cfg = load_config(args.config)
    if args.data_dir:
        cfg.data_dir = args.data_dir

    pool = StoragePool.from_config(cfg)
    try:
        return run(args, pool, cfg)
    except ValueError as exc:
        _print({"error": str(exc)})
        return 2
    except GraphStoreError as exc:
        logger.error("Graph store error: %s", exc)
        _print({"error": str(exc)})
        return 3
    finally:
        pool.close_all()


if __name__ == "__main__":
    sys.exit(main())
