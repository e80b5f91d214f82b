from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from tokengate.api.error_handling import register_exception_handlers
from tokengate.api.routes import router
from tokengate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so configuration errors fail fast."""
    from tokengate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", store_type=type(runtime.store).__name__)
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tokengate", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind X-Request-ID (or a fresh UUID) to the log context and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report credential store and Redis reachability."""
    from tokengate.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
