"""
Wheel Matrix API - Main Application

Preview, submit and track build-matrix runs.  Execution itself happens in
the matrix worker; this service only plans definitions and talks to the
Redis queue.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.routers import matrix
from wheel_matrix import ORCHESTRATOR_VERSION, SCHEMA_VERSION
from wheel_matrix.core.errors import MatrixError
from wheel_matrix.policy.profile import Profile

_log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _log.info(
        "Wheel Matrix API up: orchestrator %s, queue %s on %s",
        ORCHESTRATOR_VERSION, settings.MATRIX_QUEUE, settings.redis_url,
    )
    yield
    _log.info("Wheel Matrix API stopped")


app = FastAPI(
    title=settings.API_TITLE,
    description="Build-matrix orchestration for multi-platform wheels: Expand → Build → Bundle",
    version=settings.API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# =============================================================================
# Error mapping
# =============================================================================

@app.exception_handler(MatrixError)
async def matrix_error_handler(request: Request, exc: MatrixError):
    """Definition-time errors (bad matrix, ambiguous cells, bad conditions) → 400."""
    _log.info("Rejected definition on %s: %s: %s", request.url.path, type(exc).__name__, exc)
    return JSONResponse(status_code=400, content={"detail": f"{type(exc).__name__}: {exc}"})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Schema errors in the submitted definition → 422 with field locations."""
    _log.warning("422 on %s %s errors=%s", request.method, request.url.path, exc.errors()[:3])
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


# =============================================================================
# Service info
# =============================================================================

@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "wheel-matrix-api",
        "version": settings.API_VERSION,
        "orchestrator_version": ORCHESTRATOR_VERSION,
        "schema_version": SCHEMA_VERSION,
        "profile": Profile.v1().profile_id,
        "queue": settings.MATRIX_QUEUE,
    }


@app.get("/")
async def root():
    return {
        "message": "Wheel Matrix API - Build Matrix Orchestrator",
        "endpoints": ["/matrix/expand", "/matrix/runs", "/matrix/runs/{run_id}"],
        "docs": "/docs",
    }


app.include_router(matrix.router, prefix="/matrix", tags=["matrix"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host=settings.API_HOST, port=settings.API_PORT)
