from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fieldllm.api.error_handling import register_exception_handlers
from fieldllm.api.routes import router
from fieldllm.config import Settings
from fieldllm.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its pools on shutdown."""
    from fieldllm.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="FieldLLM Router", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-User-ID",
        "X-Account-ID",
        "X-User-Role",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "X-Provider", "X-Model"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for log tracing.

    The id comes from the client's X-Request-ID header when present and is
    echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from fieldllm.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True

    if runtime.cache is not None:
        try:
            await runtime.cache.client.ping()
            checks["redis"] = {"status": "healthy"}
        except Exception as exc:
            healthy = False
            checks["redis"] = {"status": "unhealthy", "error": str(exc)}
    else:
        checks["redis"] = {"status": "disabled"}

    try:
        runtime.store.list_providers(None)
        checks["store"] = {"status": "healthy"}
    except Exception as exc:
        healthy = False
        checks["store"] = {"status": "unhealthy", "error": str(exc)}

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    if not healthy:
        return JSONResponse(status_code=503, content=body)
    return body
