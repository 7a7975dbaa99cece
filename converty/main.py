import os

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from converty.config import get_settings
from converty.converters import build_default_registry
from converty.database import AsyncSessionLocal, init_db
from converty.errors import (
    BlobNotFound,
    FileTooLarge,
    JobNotCompleted,
    JobNotFound,
    StoreError,
    ValidationError,
)
from converty.middleware.correlation import CorrelationMiddleware
from converty.routes import jobs
from converty.services.blob_store import LocalBlobStore
from converty.services.scheduler import WorkerPool
from converty.utils.file_handler import FileHandler
from converty.utils.logger import logger

settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version)
app.state.limiter = jobs.limiter
app.state.pool = None
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS - Explicit origins from config
allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Correlation-ID"],
)
app.add_middleware(CorrelationMiddleware)


# Error bodies: {"error": message, "status": code}
def _error_response(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message, "status": status})


@app.exception_handler(FileTooLarge)
async def file_too_large_handler(request: Request, exc: FileTooLarge):
    return _error_response(413, str(exc))


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error_response(400, str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return _error_response(400, f"Invalid request: {problems}")


@app.exception_handler(JobNotFound)
@app.exception_handler(BlobNotFound)
async def not_found_handler(request: Request, exc: Exception):
    return _error_response(404, str(exc))


@app.exception_handler(JobNotCompleted)
async def not_completed_handler(request: Request, exc: JobNotCompleted):
    return _error_response(202, str(exc))


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error("store.unavailable", extra={"path": request.url.path, "error": str(exc)[:500]})
    return _error_response(503, "Storage temporarily unavailable")


# Startup: database, blob store, optional in-process worker pool
@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting {settings.app_name}...")
    await init_db()

    blob_store = LocalBlobStore(settings.blob_dir)
    app.state.blob_store = blob_store
    app.state.uploads = FileHandler(os.path.join(settings.blob_dir, "uploads"), settings.max_file_size_bytes)

    if settings.run_workers_in_process:
        pool = WorkerPool(AsyncSessionLocal, blob_store, build_default_registry(blob_store, settings), settings)
        await pool.start()
        app.state.pool = pool

    logger.info(f"Backend ready at http://{settings.backend_host}:{settings.backend_port}")


@app.on_event("shutdown")
async def shutdown_event():
    pool = app.state.pool
    if pool is not None:
        await pool.stop()
        app.state.pool = None


# Health check endpoint (minimal response)
@app.get("/health")
async def health_check():
    return {"status": "ok"}


# Register routes
app.include_router(jobs.router, prefix="/api/v1", tags=["Conversions"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "converty.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.debug
    )
