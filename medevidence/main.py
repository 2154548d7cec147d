"""
MedEvidence - FastAPI Application Entry Point

Evidence retrieval and contextual reranking service for clinical questions.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from medevidence import __version__
from medevidence.pipelines.evidence_search import EvidenceSearchOrchestrator
from medevidence.rag.backends import InMemoryEvidenceBackend, PostgresEvidenceBackend
from medevidence.rag.cache import BoundedCache
from medevidence.rag.embedding import EmbeddingClient
from medevidence.rag.retriever import HybridRetriever
from medevidence.security.input_validation import EvidenceSearchRequest

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_backend(kind: str, corpus_path: str | None):
    """Create the retrieval backend named by EVIDENCE_BACKEND."""
    if kind == "memory":
        if corpus_path:
            return InMemoryEvidenceBackend.from_json_file(corpus_path)
        logger.warning("EVIDENCE_BACKEND=memory without EVIDENCE_CORPUS_PATH; corpus is empty")
        return InMemoryEvidenceBackend([])
    if kind == "postgres":
        from medevidence.db.postgres import get_db_session

        return PostgresEvidenceBackend(get_db_session)
    raise ValueError(f"Unknown EVIDENCE_BACKEND: {kind!r}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    logger.info("Starting MedEvidence API v%s", __version__)

    backend_kind = os.environ.get("EVIDENCE_BACKEND", "postgres").lower()
    app.state.backend_kind = backend_kind

    if backend_kind == "postgres":
        try:
            from medevidence.db.postgres import init_db

            await init_db()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.warning("Database initialization failed: %s", e)

    app.state.embedding_client = EmbeddingClient(cache=BoundedCache())

    try:
        backend = build_backend(backend_kind, os.environ.get("EVIDENCE_CORPUS_PATH"))
        app.state.backend = backend
        app.state.orchestrator = EvidenceSearchOrchestrator(
            retriever=HybridRetriever(app.state.embedding_client, backend)
        )
        logger.info("Evidence search initialized with %s backend", backend_kind)
    except Exception as e:
        logger.error("Evidence backend initialization failed: %s", e)
        app.state.backend = None
        app.state.orchestrator = None

    yield

    # Shutdown
    if backend_kind == "postgres":
        from medevidence.db.postgres import close_db

        await close_db()
    logger.info("Shutting down MedEvidence API")


# Create FastAPI application
app = FastAPI(
    title="MedEvidence",
    description="Evidence retrieval and contextual reranking for clinical questions",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)


# ============================================
# Health Check Endpoints
# ============================================


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "service": "medevidence-api",
    }


@app.get("/ready", tags=["Health"])
async def readiness_check() -> dict[str, Any]:
    """Readiness check with dependency status."""
    embedding_client = getattr(app.state, "embedding_client", None)
    embedding_status = "unavailable"
    if embedding_client:
        embedding_status = "ok" if await embedding_client.health_check() else "degraded"

    backend_ready = getattr(app.state, "backend", None) is not None
    return {
        "ready": backend_ready,
        "checks": {
            "embedding_provider": embedding_status,
            "backend": getattr(app.state, "backend_kind", "unknown")
            if backend_ready
            else "unavailable",
        },
    }


# ============================================
# Evidence Search
# ============================================


def _validation_error_response(exc: ValidationError) -> JSONResponse:
    errors = exc.errors()
    query_invalid = any(err.get("loc", ())[:1] == ("query",) for err in errors)
    message = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in errors
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "Query is required" if query_invalid else "Invalid request",
            "message": message,
        },
    )


@app.post("/api/evidence", tags=["Evidence"])
async def evidence_endpoint(request: Request):
    """
    Search peer-reviewed evidence for a clinical question.

    Non-medical questions and retrieval failures return an empty citation
    list with shouldUseEvidence=false rather than an error.
    """
    try:
        body = await request.json()
    except ValueError as e:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid JSON body", "message": str(e)},
        )
    if not isinstance(body, dict):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request", "message": "Body must be a JSON object"},
        )

    try:
        search = EvidenceSearchRequest.model_validate(body)
    except ValidationError as e:
        return _validation_error_response(e)

    orchestrator: EvidenceSearchOrchestrator | None = getattr(
        app.state, "orchestrator", None
    )
    if orchestrator is None:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Failed to search evidence",
                "message": "Evidence search is not configured",
            },
        )

    try:
        result = await orchestrator.run(
            search.query,
            max_results=search.max_results,
            min_evidence_level=search.min_evidence_level,
            study_types=search.study_types,
            min_year=search.min_year,
        )
    except Exception as e:
        logger.exception("Evidence search failed unexpectedly: %s", e)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to search evidence", "message": str(e)},
        )

    return result.to_response()


# ============================================
# Metrics Endpoint
# ============================================


@app.get("/metrics", tags=["Monitoring"])
async def metrics_endpoint():
    """Prometheus metrics endpoint."""
    from medevidence.observability.metrics import get_metrics_text

    return PlainTextResponse(content=get_metrics_text(), media_type="text/plain")


@app.post("/metrics/reset", tags=["Monitoring"])
async def reset_metrics_endpoint():
    """Reset all metrics counters (for testing/demo)."""
    from medevidence.observability.metrics import reset_metrics

    reset_metrics()
    return {"status": "metrics_reset"}


# ============================================
# Exception Handlers
# ============================================


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": str(exc) if app.debug else "An unexpected error occurred",
        },
    )


# ============================================
# Main Entry Point
# ============================================


def main():
    """Run the application using uvicorn."""
    import uvicorn

    uvicorn.run(
        "medevidence.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
