from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from msusers.api.error_handling import register_exception_handlers
from msusers.api.routes import router
from msusers.config import Settings
from msusers.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the connection pool on shutdown."""
    from msusers.service.runtime import get_runtime

    try:
        get_runtime()
    except Exception as exc:
        logger.error("startup_runtime_failed", error=str(exc))
        raise

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="HealthChain Users", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_origins:
        return _settings.cors_origins
    # local dev hosts; no wildcard since credentials are allowed
    return [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id.

    Reuses the client's ``X-Request-ID`` when present and echoes it back.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # responses carry bearer tokens
    if request.url.path.startswith("/users"):
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health():
    """Liveness plus a bounded database probe when running on Postgres."""
    from msusers.service.runtime import get_runtime
    from msusers.storage.postgres import PostgresStore

    runtime = get_runtime()
    checks: Dict[str, Any] = {}
    healthy = True
    if isinstance(runtime.store, PostgresStore):

        def _db_probe() -> None:
            with runtime.store._connect("healthz") as conn:
                conn.execute("SELECT 1").fetchone()

        try:
            await asyncio.wait_for(
                asyncio.to_thread(_db_probe), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            checks["database"] = {"status": "ok"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            checks["database"] = {"status": "timeout"}
            healthy = False
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            checks["database"] = {"status": "error"}
            healthy = False
    else:
        checks["database"] = {"status": "memory"}

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def main() -> None:
    import uvicorn

    uvicorn.run("msusers.app:app", host="0.0.0.0", port=_settings.port)


if __name__ == "__main__":
    main()
