"""FastAPI HTTP API for the graph memory system.

Endpoints:
    GET    /v1/state                  -- Graph statistics for one agent
    POST   /v1/search                 -- Link-expansion search over free text
    GET    /v1/entity                 -- Entity record + relationships + co-occurrences
    GET    /v1/triples                -- Filtered triple listing
    GET    /v1/agents                 -- List agent graphs with counts
    POST   /v1/ingest                 -- Extract + write one finished exchange
    POST   /v1/recall                 -- Search for the last user message of a conversation
    DELETE /v1/exchanges/{id}         -- Drop the triples of one exchange
    GET    /v1/health                 -- Health check (storage check)
    GET    /v1/metrics                -- Prometheus text exposition

All endpoints accept an optional ``agent`` parameter for per-agent DB routing:
    - None / "main"  -> {data_dir}/graph.db
    - "{agent_id}"   -> {data_dir}/agents/{agent_id}/graph.db

Run: ``python -m graph_memory.api``
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse, PlainTextResponse

from . import metrics
from .config import Config, load_config
from .ingest import ingest_exchange, known_entities, recall_for_messages
from .middleware import APIKeyMiddleware, AuditLogMiddleware
from .pool import AgentGraph, StoragePool
from .storage import StoreBusyError, TripleFilter

logger = logging.getLogger(__name__)
logging.getLogger("audit").setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Application state helpers
# ---------------------------------------------------------------------------

def _pool(request: Request) -> StoragePool:
    pool = getattr(request.app.state, "pool", None)
    if pool is None:
        raise HTTPException(503, "Storage pool not initialised")
    return pool


def _config(request: Request) -> Config:
    return getattr(request.app.state, "config", None) or Config()


def _get_graph(request: Request, agent: Optional[str]) -> AgentGraph:
    """Resolve the graph for *agent*; invalid agent ids are a client error."""
    pool = _pool(request)
    try:
        return pool.get_or_create(agent)
    except ValueError as exc:
        raise HTTPException(400, str(exc))


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown logic."""
    cfg: Config = getattr(app.state, "config", None) or load_config()
    errors = cfg.validate()
    if errors:
        raise RuntimeError("Invalid configuration: " + "; ".join(errors))

    app.state.config = cfg
    app.state.pool = StoragePool.from_config(cfg)
    app.state.start_time = time.time()
    app.state.pool.get_or_create("main")
    logger.info("Graph memory ready (data_dir=%s)", cfg.data_dir)

    yield

    app.state.pool.close_all()
    logger.info("Graph memory shut down")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class SearchRequest(BaseModel):
    query: str = Field(default="", max_length=2000)
    agent: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1, le=200)


class IngestRequest(BaseModel):
    messages: List[Dict[str, Any]]
    agent: Optional[str] = None
    exchange_id: Optional[str] = None
    source_date: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RecallRequest(BaseModel):
    messages: List[Dict[str, Any]]
    agent: Optional[str] = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
# Handlers stay ``async def``: each GraphStore holds one sqlite3 connection
# bound to the event-loop thread.

router = APIRouter(prefix="/v1")


@router.get("/state")
async def get_state(request: Request, agent: Optional[str] = Query(default=None)) -> Dict[str, Any]:
    """Entity/triple counts, recent entities and top co-occurrences."""
    graph = _get_graph(request, agent)
    stats = graph.store.get_stats(graph.agent_id)
    metrics.set_graph_size(
        graph.agent_id, entities=stats["entity_count"], triples=stats["triple_count"]
    )
    return {"agent": graph.agent_id, **stats}


@router.post("/search")
async def search(request: Request, req: SearchRequest) -> Dict[str, Any]:
    graph = _get_graph(request, req.agent)
    cfg = _config(request)
    gazetteer = known_entities(graph.store, graph.agent_id, cfg.known_entities_limit)
    started = time.perf_counter()
    results = graph.searcher.search(
        req.query, graph.agent_id, limit=req.limit, known_entities=gazetteer
    )
    metrics.record_search(graph.agent_id, time.perf_counter() - started)
    return {"agent": graph.agent_id, **results.to_dict()}


@router.get("/entity")
async def get_entity(
    request: Request,
    name: Optional[str] = Query(default=None),
    agent: Optional[str] = Query(default=None),
) -> Dict[str, Any]:
    """Entity context: record, relationships by predicate, co-occurrences."""
    if not name or not name.strip():
        raise HTTPException(400, "Provide 'name'")
    graph = _get_graph(request, agent)
    context = graph.searcher.get_entity_context(name, graph.agent_id)
    if context is None:
        raise HTTPException(404, f"Entity not found: {name}")
    return context


@router.get("/triples")
async def get_triples(
    request: Request,
    subject: Optional[str] = Query(default=None),
    predicate: Optional[str] = Query(default=None),
    obj: Optional[str] = Query(default=None, alias="object"),
    agent: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
) -> Dict[str, Any]:
    graph = _get_graph(request, agent)
    triples = graph.store.query_triples(TripleFilter(
        subject=subject,
        predicate=predicate,
        object=obj,
        agent_id=graph.agent_id,
        limit=limit,
    ))
    return {"agent": graph.agent_id, "triples": triples, "count": len(triples)}


@router.get("/agents")
async def list_agents(request: Request) -> Dict[str, Any]:
    """List all known agent graphs."""
    pool = _pool(request)
    agents = pool.get_all_agents()
    details: Dict[str, Any] = {}
    for agent_id in agents:
        graph = pool.get_or_create(agent_id)
        s = graph.store.get_stats(agent_id)
        details[agent_id] = {
            "entity_count": s["entity_count"],
            "triple_count": s["triple_count"],
            "db_path": graph.store.db_path,
        }
    return {"agents": agents, "count": len(agents), "details": details}


@router.post("/ingest")
async def ingest(request: Request, req: IngestRequest) -> Dict[str, Any]:
    graph = _get_graph(request, req.agent)
    result = ingest_exchange(
        _pool(request),
        graph.searcher.extractor,
        req.messages,
        agent_id=graph.agent_id,
        exchange_id=req.exchange_id,
        source_date=req.source_date,
        metadata=req.metadata,
        config=_config(request),
    )
    return result.to_dict()


@router.post("/recall")
async def recall(request: Request, req: RecallRequest) -> Dict[str, Any]:
    graph = _get_graph(request, req.agent)
    results = recall_for_messages(
        _pool(request),
        graph.searcher.extractor,
        req.messages,
        agent_id=graph.agent_id,
        config=_config(request),
    )
    return {"agent": graph.agent_id, **results.to_dict()}


@router.delete("/exchanges/{exchange_id}")
async def forget_exchange(
    request: Request,
    exchange_id: str,
    agent: Optional[str] = Query(default=None),
) -> Dict[str, Any]:
    """Delete the triples of one exchange ahead of re-extraction."""
    graph = _get_graph(request, agent)
    deleted = graph.store.delete_triples_by_exchange(exchange_id)
    return {"agent": graph.agent_id, "exchange_id": exchange_id, "deleted": deleted}


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    """Health check with a real storage check.

    Returns 200 with status "ok" | "down".
    """
    checks: Dict[str, bool] = {"storage": False}
    pool = getattr(request.app.state, "pool", None)
    if pool is not None:
        try:
            checks["storage"] = pool.get_or_create("main").store.ping()
        except Exception as exc:
            logger.warning("Health check failed: %s", exc)

    start_time = getattr(request.app.state, "start_time", None) or time.time()
    return {
        "status": "ok" if all(checks.values()) else "down",
        "checks": checks,
        "uptime_seconds": round(time.time() - start_time, 1),
    }


@router.get("/metrics")
async def prometheus_metrics(request: Request) -> PlainTextResponse:
    """Prometheus exposition (request, ingest and search counters + graph gauges)."""
    pool = getattr(request.app.state, "pool", None)
    if pool is not None:
        for agent_id in pool.get_all_agents():
            try:
                s = pool.get_or_create(agent_id).store.get_stats(agent_id)
            except StoreBusyError:
                continue
            metrics.set_graph_size(agent_id, entities=s["entity_count"], triples=s["triple_count"])
    return PlainTextResponse(
        metrics.render_prometheus_metrics(),
        media_type="text/plain; version=0.0.4",
    )


# ---------------------------------------------------------------------------
# Centralized error handling
# ---------------------------------------------------------------------------

async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning("HTTP %d: %s (path=%s)", exc.status_code, exc.detail, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "status_code": exc.status_code},
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Validation error: %s (path=%s)", str(exc)[:200], request.url.path)
    return JSONResponse(
        status_code=422,
        content={"error": "Validation error", "status_code": 422, "detail": exc.errors()},
    )


async def store_busy_handler(request: Request, exc: StoreBusyError):
    logger.warning("Store busy: %s (path=%s)", exc, request.url.path)
    return JSONResponse(
        status_code=503,
        content={"error": "Graph store is busy, retry later", "status_code": 503},
        headers={"Retry-After": "1"},
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s (path=%s)", exc, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "status_code": 500},
    )


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(config: Optional[Config] = None) -> FastAPI:
    """Build the FastAPI application.

    The storage pool is created in the lifespan handler and stored on
    ``app.state.pool``.
    """
    cfg = config or load_config()
    app = FastAPI(
        title="Graph Memory API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = cfg

    # --- Middleware (order matters: last added = first to run) ---
    app.add_middleware(AuditLogMiddleware)
    if cfg.api_key:
        app.add_middleware(APIKeyMiddleware, api_key=cfg.api_key)
        logger.info("API key authentication enabled")
    else:
        logger.warning("No GRAPH_MEMORY_API_KEY set -- API is UNAUTHENTICATED")

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StoreBusyError, store_busy_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(router)
    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry-point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run the API server via uvicorn."""
    import uvicorn

    cfg = load_config()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    logger.info("Starting Graph Memory API on %s:%d", cfg.api_host, cfg.api_port)
    uvicorn.run(
        "graph_memory.api:app",
        host=cfg.api_host,
        port=cfg.api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
