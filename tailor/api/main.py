"""CV Tailor API.

Turns a job posting into a tailored, page-constrained CV plus cover letter
and cold email, tracked as an approvable session:
- Generation runs with a live server-sent event stream
- Session log / status polling for clients that reconnect
- Refinement, direct edits, and approval (lock) of finished sessions
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tailor import __version__
from tailor.api.routes import generation, sessions
from tailor.executor.db import init_db
from tailor.executor.errors import TailorError
from tailor.executor.session_manager import recover_orphaned_sessions
from tailor.prompts.registry import get_prompt_registry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    "input_invalid": 400,
    "session_locked": 403,
    "session_not_found": 404,
    "concurrent_modification": 409,
    "upstream_fetch_failed": 502,
    "generation_backend_error": 502,
    "generation_backend_transient": 502,
    "generation_backend_permanent": 502,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    init_db()

    # Runs from a previous process died with it
    recovered = recover_orphaned_sessions()
    logger.info(f"Recovered {recovered} orphaned session(s)")

    logger.info("Loading prompt templates...")
    prompt_registry = get_prompt_registry()
    logger.info(f"Loaded {len(prompt_registry.list_keys())} prompt templates")

    logger.info("CV Tailor API ready")
    yield
    logger.info("Shutting down CV Tailor API")


app = FastAPI(
    title="CV Tailor API",
    description="""
## Tailored application documents

- `POST /v1/generate` - Start a run (server-sent events)
- `GET /v1/sessions/{id}/logs` - Persisted progress log
- `GET /v1/sessions/{id}/status` - Derived session status
- `POST /v1/sessions/{id}/approve` - Lock a finished session
""",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Run-Id"],
)

app.include_router(generation.router, prefix="/v1")
app.include_router(sessions.router, prefix="/v1")


@app.exception_handler(TailorError)
async def tailor_error_handler(request: Request, exc: TailorError):
    status_code = ERROR_STATUS_CODES.get(exc.code, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "CV Tailor API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "generate": "/v1/generate",
            "sessions": "/v1/sessions",
            "source_files": "/v1/source-files/{kind}",
            "export": "/v1/export",
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "prompts_loaded": len(get_prompt_registry().list_keys()),
    }


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "tailor.api.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8001")),
        reload=True,
    )
