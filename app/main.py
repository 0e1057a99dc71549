"""
Main FastAPI application for the CLO analysis backend.
Handles CORS, request logging middleware, error rendering, lifespan events,
and router registration.
"""
import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import close_db, init_db
from app.dependencies.services import get_ollama_service
from app.exceptions import CLOAnalysisError
from app.routers import analysis, clo_sets, health
from app.services.generative import OllamaGenerativeService

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Startup / shutdown helpers
# ---------------------------------------------------------------------------

async def _check_database() -> bool:
    """Initialise DB tables and verify the connection.  Returns True on success."""
    try:
        await init_db()
        logger.info("✓ Database connection OK")
        return True
    except Exception as exc:
        logger.error("✗ Database connection failed: %s", exc)
        raise


async def _check_ollama(service: OllamaGenerativeService) -> dict:
    """
    Verify Ollama is reachable and that the generative model is pulled.
    Returns a dict with status info.  Never raises; warnings are logged instead.
    """
    result = {"reachable": False, "llm_model": False, "models": []}
    available = await service.list_models()
    if available is None:
        logger.error("✗ Ollama unreachable at %s; generative analysis will fail", service.base_url)
        return result

    result["reachable"] = True
    result["models"] = available
    logger.info("✓ Ollama reachable, available models: %s", available)

    result["llm_model"] = service.has_model(available)
    if result["llm_model"]:
        logger.info("  ✓ LLM model '%s' is available", service.model)
    else:
        logger.warning(
            "  ⚠ LLM model '%s' not found, run: ollama pull %s",
            service.model,
            service.model,
        )
    return result


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown event handler."""
    logger.info("=" * 60)
    logger.info("  Starting CLO analysis backend …")
    logger.info("=" * 60)

    # 1 - Database (required; raises on failure)
    await _check_database()

    # 2 - Ollama (optional; keyword analysis works without it)
    ollama_status = await _check_ollama(get_ollama_service())
    if not ollama_status["reachable"]:
        logger.warning(
            "Ollama is not running.  Start it with: ollama serve\n"
            "  Generative segmentation and analysis will be unavailable until Ollama is up."
        )

    # 3 - Upload directory
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    logger.info("✓ Upload directory: %s", os.path.abspath(settings.UPLOAD_DIR))

    logger.info("=" * 60)
    logger.info("  CLO analysis backend ready on http://%s:%d", settings.HOST, settings.PORT)
    logger.info("  Swagger UI : http://%s:%d/docs", settings.HOST, settings.PORT)
    logger.info("  Health     : http://%s:%d/api/health", settings.HOST, settings.PORT)
    logger.info("=" * 60)

    yield  # ← server is running

    logger.info("Shutting down CLO analysis backend …")
    await close_db()
    logger.info("✓ Shutdown complete.")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CLO Analysis API",
    description=(
        "Map exam questions to Course Learning Outcomes.\n\n"
        "Upload a question paper (PDF/DOCX) or paste questions, extract them, "
        "score every question against every CLO with keyword matching or a "
        "generative model, and report CLO coverage.\n\n"
        "Key endpoints:\n"
        "- `POST /api/clo-sets/{id}/documents` - register a document for upload\n"
        "- `POST /api/clo-sets/{id}/documents/paste` - paste questions\n"
        "- `POST /api/documents/{id}/parse` - extract questions\n"
        "- `POST /api/documents/{id}/analyze` - map questions to CLOs\n"
        "- `GET  /api/clo-sets/{id}/coverage` - CLO coverage\n"
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / response logging middleware
# ---------------------------------------------------------------------------

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Log every request with method, path, status code, and elapsed time.
    Attaches an ``X-Process-Time`` header (milliseconds) to every response.
    """
    t0 = time.monotonic()
    response = await call_next(request)
    elapsed_ms = round((time.monotonic() - t0) * 1000, 2)

    # Skip noisy polling from the frontend
    if request.url.path not in ("/api/health", "/") and not request.url.path.endswith(
        "/analysis-status"
    ):
        logger.info(
            "%s %s → %d  (%.2f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )

    response.headers["X-Process-Time"] = f"{elapsed_ms}ms"
    return response


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(CLOAnalysisError)
async def analysis_error_handler(request: Request, exc: CLOAnalysisError):
    """Render a pipeline error as ``{"error": kind, "detail": message}``."""
    logger.warning(
        "%s %s failed: %s (%s)",
        request.method,
        request.url.path,
        exc.kind,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a generic JSON error for any unhandled exception."""
    logger.error(
        "Unhandled exception on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "InternalError",
            "detail": "An unexpected error occurred. Please try again.",
        },
    )


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(health.router,    prefix="/api/health",    tags=["Health"])
app.include_router(clo_sets.router,  prefix="/api/clo-sets",  tags=["CLO Sets"])
app.include_router(analysis.router,  prefix="/api/documents", tags=["Analysis"])


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

@app.get("/", tags=["Root"], include_in_schema=False)
async def root():
    """API root - returns basic service info."""
    return {
        "name": "CLO Analysis API",
        "version": "0.1.0",
        "description": "Course Learning Outcome analysis backend",
        "docs": "/docs",
        "health": "/api/health",
        "endpoints": {
            "clo_sets": "/api/clo-sets",
            "documents": "/api/documents",
        },
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=True,
        log_level="info",
    )
