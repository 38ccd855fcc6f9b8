import logging
import logging.config
import sys
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Awaitable, Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from backend.expertmatch.adapters.embeddings import safe_embedding_provider
from backend.expertmatch.core.config import get_settings
from backend.expertmatch.core.database import build_engine, statement_timeout_ms
from backend.expertmatch.core.errors import QueryValidationError
from backend.expertmatch.models.dto import (
    ParsedQuery,
    RebuildResponse,
    RetrievalRequest,
    RetrieveRequest,
    RetrieveResponse,
)
from backend.expertmatch.models.provider_factory import build_provider_context
from backend.expertmatch.rag.graph_search import GraphSearchService, InMemoryGraphSearch
from backend.expertmatch.rag.person_search import LlmNameMatcher, PersonNameSearch
from backend.expertmatch.rag.rerank import SemanticReranker
from backend.expertmatch.rag.retrieve import HybridRetriever
from backend.expertmatch.services.graph_builder import GraphBuilder
from backend.expertmatch.services.profile_indexer import ProfileIndexer
from backend.expertmatch.store.experts import ExpertRepository, InMemoryExpertRepository
from backend.expertmatch.store.graph_query import GraphQueryAdapter
from backend.expertmatch.store.keyword_search import InMemoryKeywordSearch, KeywordSearch
from backend.expertmatch.store.vector_chroma import InMemoryVectorStore, VectorChromaStore, VectorSearch

SETTINGS = get_settings()
LOGGING_CONFIG = Path(__file__).resolve().parents[1] / "logging.ini"
MAX_BODY_BYTES = 1024 * 1024

if LOGGING_CONFIG.exists():
    logging.config.fileConfig(
        LOGGING_CONFIG,
        disable_existing_loggers=False,
        defaults={"sys": sys},
    )
else:  # pragma: no cover - fallback logging configuration
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )

logger = logging.getLogger("expertmatch")

app = FastAPI(title=SETTINGS.app_name)


def _init_vector_store(settings):
    try:
        return VectorChromaStore(path=str(settings.chroma_dir), collection_name=settings.chroma_collection)
    except Exception as exc:  # pragma: no cover - fallback path
        logger.warning("Chroma unavailable (%s); using in-memory vector store", exc)
        return InMemoryVectorStore()


def _init_expert_repository(settings, engine):
    if engine is not None:
        return ExpertRepository(engine, schema=settings.db_schema)
    seed_path = getattr(settings, "seed_path", None)
    if seed_path:
        try:
            repository = InMemoryExpertRepository.from_seed(Path(seed_path))
            logger.info("Loaded %d experts from seed %s", len(repository.experts), seed_path)
            return repository
        except (OSError, ValueError) as exc:
            logger.warning("Could not load seed data from %s (%s); starting empty", seed_path, exc)
    return InMemoryExpertRepository()


def _build_state(settings, use_chroma: bool) -> SimpleNamespace:
    """Wire stores and services for the configured backend (PostgreSQL/AGE or in-memory)."""

    engine = build_engine(settings)
    repository = _init_expert_repository(settings, engine)
    embedding_provider = safe_embedding_provider(settings)
    vector_store = _init_vector_store(settings) if use_chroma else InMemoryVectorStore()
    provider_context = build_provider_context(settings)
    model = provider_context.provider

    if engine is not None:
        graph_adapter = GraphQueryAdapter(
            engine,
            graph_name=settings.graph_name,
            schema=settings.db_schema,
            statement_timeout_ms=statement_timeout_ms(settings),
        )
        graph_search = GraphSearchService(graph_adapter)
        keyword_search = KeywordSearch(engine, schema=settings.db_schema)
        graph_backend = "age"
    else:
        graph_adapter = None
        graph_search = InMemoryGraphSearch(repository)
        keyword_search = InMemoryKeywordSearch(repository.list_work_experience())
        graph_backend = "inmemory"
        if repository.experts:
            ProfileIndexer(vector_store, repository, embedding_provider).index_all()

    retriever = HybridRetriever(
        settings=settings,
        vector_search=VectorSearch(vector_store, embedding_provider),
        graph_search=graph_search,
        keyword_search=keyword_search,
        person_search=PersonNameSearch(repository, LlmNameMatcher(model) if model is not None else None),
        reranker=SemanticReranker(model, profiles=repository),
    )
    return SimpleNamespace(
        settings=settings,
        engine=engine,
        repository=repository,
        embedding_provider=embedding_provider,
        vector_store=vector_store,
        provider_context=provider_context,
        graph_adapter=graph_adapter,
        graph_backend=graph_backend,
        retriever=retriever,
    )


def _apply_state(state: SimpleNamespace) -> None:
    for key, value in vars(state).items():
        setattr(app.state, key, value)


def _require_admin_secret(request: Request, settings) -> None:
    expected = getattr(settings, "admin_api_secret", None)
    if not expected:
        return
    provided = request.headers.get("x-admin-secret")
    if provided != expected:
        raise HTTPException(status_code=403, detail="Forbidden")


_apply_state(_build_state(SETTINGS, use_chroma=False))


@app.on_event("startup")
async def startup_event() -> None:  # pragma: no cover - exercised in integration tests
    """Swap in persistent stores before serving requests."""
    settings = get_settings()
    _apply_state(_build_state(settings, use_chroma=True))


@app.on_event("shutdown")
async def shutdown_event() -> None:  # pragma: no cover - exercised in integration tests
    """Release pooled database connections."""
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        engine.dispose()


@app.middleware("http")
async def enforce_body_limit(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Reject retrieval payloads above the body limit."""
    if request.method.upper() == "POST" and request.url.path == "/retrieve":
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                if int(content_length) > MAX_BODY_BYTES:
                    return JSONResponse({"detail": "Payload too large"}, status_code=413)
            except ValueError:
                pass
        else:
            body = await request.body()
            if len(body) > MAX_BODY_BYTES:
                return JSONResponse({"detail": "Payload too large"}, status_code=413)
    return await call_next(request)


@app.middleware("http")
async def log_requests(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log request method/path pairs alongside the response status."""
    response = await call_next(request)
    logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


@app.get("/health")
def health() -> dict[str, object]:
    """Report backend wiring, reasoning model, and store reachability."""
    context = app.state.provider_context
    adapter = app.state.graph_adapter
    vector_store = app.state.vector_store
    return {
        "status": "ok",
        "reasoning_provider": context.provider.name() if context.provider is not None else None,
        "reasoning_provider_type": context.provider_type,
        "reasoning_model": context.model_name,
        "operator_message": context.reason,
        "database_configured": app.state.engine is not None,
        "graph_backend": app.state.graph_backend,
        "graph_exists": adapter.graph_exists() if adapter is not None else None,
        "vector_store_path": getattr(vector_store, "path", None),
        "vector_store_reachable": bool(vector_store.ping()),
    }


@app.post("/retrieve", response_model=RetrieveResponse)
def retrieve(payload: RetrieveRequest) -> RetrieveResponse:
    """Run hybrid retrieval for a requirement query."""
    started = time.perf_counter()
    parsed = payload.parsed_query or ParsedQuery(original_query=payload.query)
    request = RetrievalRequest(query=payload.query, options=payload.options)
    try:
        result = app.state.retriever.retrieve(request, parsed, payload.entities)
    except QueryValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RetrieveResponse(
        query=payload.query,
        expert_ids=result.expert_ids,
        relevance_scores=result.relevance_scores,
        reranked=result.reranked,
        weights=result.weights,
        latency_ms=int((time.perf_counter() - started) * 1000),
    )


@app.post("/admin/graph/rebuild", response_model=RebuildResponse)
def rebuild_graph(request: Request) -> RebuildResponse:
    """Recreate the expert graph from the relational tables."""
    settings = app.state.settings
    _require_admin_secret(request, settings)
    adapter = app.state.graph_adapter
    if adapter is None:
        raise HTTPException(status_code=409, detail="Graph rebuild requires DATABASE_URL")
    builder = GraphBuilder(adapter=adapter, repository=app.state.repository, batch_size=settings.graph_batch_size)
    stats = builder.build(clear=True)
    return RebuildResponse(
        operation="graph",
        count=stats.experts,
        failed_batches=stats.failed_batches,
        ms=stats.ms,
    )


@app.post("/admin/vectors/rebuild", response_model=RebuildResponse)
def rebuild_vectors(request: Request) -> RebuildResponse:
    """Re-embed every expert profile into the vector store."""
    settings = app.state.settings
    _require_admin_secret(request, settings)
    started = time.perf_counter()
    indexer = ProfileIndexer(
        vector_store=app.state.vector_store,
        repository=app.state.repository,
        embedding_provider=app.state.embedding_provider,
    )
    count = indexer.index_all()
    return RebuildResponse(operation="vectors", count=count, ms=int((time.perf_counter() - started) * 1000))
