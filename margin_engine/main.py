"""
Seller Margin Engine API

Main entry point for the margin evaluation and recalculation service.
"""

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
import structlog

from margin_engine.config import get_settings
from margin_engine.config.logging import configure_logging
from margin_engine.recalculation import (
    AsyncioScheduler,
    RecalculationController,
    RecalculationForbidden,
    RecalculationQueue,
)
from margin_engine.serving.api.middleware import (
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from margin_engine.serving.api.routes import health_router, margin_router
from margin_engine.serving.worker import dispatch_recalculation

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()

    logger.info("Starting Seller Margin Engine", environment=settings.app_env)

    queue = RecalculationQueue()
    app.state.queue = queue
    app.state.controller = RecalculationController(AsyncioScheduler(), enqueue=queue.put)
    app.state.worker = asyncio.create_task(queue.consume(dispatch_recalculation))

    yield

    logger.info("Shutting down...")
    app.state.controller.stop_all()

    app.state.worker.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.worker


app = FastAPI(
    title="Seller Margin Engine",
    description="Margin, ROI and COGS applicability for marketplace sellers",
    version=settings.version,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.security.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(RecalculationForbidden)
async def recalculation_forbidden_handler(request: Request, exc: RecalculationForbidden) -> JSONResponse:
    logger.warning("Recalculation forbidden", role=exc.role, path=request.url.path)
    return JSONResponse(status_code=403, content={"detail": str(exc)})


app.include_router(health_router, prefix="/api/v1", tags=["Health"])
app.include_router(margin_router, prefix="/api/v1/margin", tags=["Margin"])

app.mount("/metrics", make_asgi_app())


@app.get("/api/v1/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.version,
        "environment": settings.app_env,
        "documentation": "/docs",
    }


def run() -> None:
    """Console entry point"""
    import uvicorn

    uvicorn.run(
        "margin_engine.main:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
    )


if __name__ == "__main__":
    run()
