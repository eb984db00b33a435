import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.datastructures import UploadFile

from common.config import Settings, load_settings
from common.errors import (
    InvalidStateTransition,
    JobFailed,
    NotFound,
    NotReady,
    StoreUnavailable,
    ValidationError,
)
from common.job_schema import ImagePayload, utcnow
from common.log_setup import configure_logging
from common.repository import JobRepository
from common.scoring import Scorer, load_scorer, scorer_status
from common.storage import create_store


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def build_limiter(settings: Settings) -> Limiter:
    """Per-client-address limiter for enqueue; a zero limit or window disables it."""
    return Limiter(
        key_func=get_remote_address,
        enabled=settings.rate_limit_enabled,
        headers_enabled=True,
    )


def enqueue_limit(settings: Settings) -> str:
    return f"{settings.rate_limit_max_requests}/{max(1, int(settings.rate_limit_window_seconds))} seconds"


async def _read_image(request: Request) -> ImagePayload:
    """Pull the ``image`` field out of a JSON or multipart body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        image = form.get("image")
        if isinstance(image, UploadFile):
            content = await image.read()
            if not content:
                raise ValidationError("Image is required")
            return ImagePayload.from_upload(content, image.filename, image.content_type)
    else:
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Request body must be JSON with an image field") from None
        image = body.get("image") if isinstance(body, dict) else None

    if not isinstance(image, str) or not image.strip():
        raise ValidationError("Image is required")
    return ImagePayload.from_inline(image)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"error": "Job not found"})

    @app.exception_handler(NotReady)
    async def _not_ready(request: Request, exc: NotReady):
        return JSONResponse(status_code=400, content={"error": "Job not completed yet", "status": exc.state})

    @app.exception_handler(JobFailed)
    async def _job_failed(request: Request, exc: JobFailed):
        return JSONResponse(status_code=400, content={"error": exc.error, "status": "failed"})

    @app.exception_handler(InvalidStateTransition)
    async def _invalid_transition(request: Request, exc: InvalidStateTransition):
        # Only enqueue raises this here: the generated job id was already taken.
        logger.error("Rejected write on {method} {path}: {err}",
                     method=request.method, path=request.url.path, err=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.exception_handler(StoreUnavailable)
    async def _store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error("Store unavailable during {method} {path}: {err}",
                     method=request.method, path=request.url.path, err=exc)
        return JSONResponse(status_code=503, content={"error": "Queue store unavailable"})

    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.opt(exception=exc).error("Unhandled error on {method} {path}",
                                        method=request.method, path=request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(
    settings: Optional[Settings] = None,
    *,
    repository: Optional[JobRepository] = None,
    scorer: Optional[Scorer] = None,
) -> FastAPI:
    settings = settings or load_settings()
    owns_store = repository is None
    if repository is None:
        repository = JobRepository.from_settings(create_store(settings), settings)
    if scorer is None:
        scorer = load_scorer(settings.scorer)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Face score API ready ({backend} store)", backend=settings.storage_backend)
        yield
        if owns_store:
            repository.store.close()

    app = FastAPI(title="Face Score Queue API", lifespan=lifespan)
    app.state.settings = settings
    app.state.repository = repository
    app.state.scorer = scorer
    limiter = build_limiter(settings)
    app.state.limiter = limiter
    _register_error_handlers(app)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "{method} {path} -> {status} ({client}, {ms:.1f} ms)",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            client=_client_address(request),
            ms=(time.perf_counter() - started) * 1000,
        )
        return response

    # ---------- API endpoints ----------

    @app.post("/api/score", status_code=202)
    @limiter.limit(enqueue_limit(settings))
    async def score(request: Request):
        payload = await _read_image(request)
        job = await run_in_threadpool(request.app.state.repository.enqueue, payload)
        return JSONResponse(status_code=202, content={"jobId": job.id})

    @app.get("/api/status/{job_id}")
    def read_status(job_id: str, request: Request):
        state = request.app.state.repository.status(job_id)
        return {"status": state.value}

    @app.get("/api/result/{job_id}")
    def read_result(job_id: str, request: Request):
        result = request.app.state.repository.result(job_id)
        return result.model_dump(mode="json")

    @app.get("/api/health")
    def health(request: Request):
        timestamp = utcnow().isoformat()
        try:
            request.app.state.repository.ping()
        except StoreUnavailable as exc:
            logger.error("Health check failed: {err}", err=exc)
            return JSONResponse(
                status_code=503,
                content={
                    "status": "degraded",
                    "timestamp": timestamp,
                    "services": {"store": "unreachable", "queue": "unavailable"},
                },
            )
        return {
            "status": "healthy",
            "timestamp": timestamp,
            "services": {"store": "connected", "queue": "active", "backend": settings.storage_backend},
        }

    @app.get("/api/ml-status")
    def ml_status(request: Request):
        return scorer_status(request.app.state.scorer)

    return app


def run() -> None:
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
