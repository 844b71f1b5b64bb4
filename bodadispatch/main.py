"""
Boda Dispatch — FastAPI Backend
Rider-order matching and order lifecycle for last-mile deliveries
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bodadispatch import __version__
from bodadispatch.config import settings
from bodadispatch.container import Platform, build_platform
from bodadispatch.errors import DispatchError
from bodadispatch.routers import orders, riders

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(platform: Platform | None = None) -> FastAPI:
    """Build the API. Tests pass a pre-wired ``platform``; otherwise one is built from settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        if getattr(app.state, "platform", None) is None:
            app.state.platform = build_platform(settings)
        logger.info("🚀 Boda Dispatch API starting...")
        await app.state.platform.start()
        yield
        await app.state.platform.aclose()
        logger.info("🛑 Boda Dispatch API shut down.")

    app = FastAPI(
        title="Boda Dispatch API",
        description="Rider-order matching and order lifecycle backend",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.platform = platform

    # ── CORS ───────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Restrict in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Errors ─────────────────────────────────────────────
    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    # ── Routers ────────────────────────────────────────────
    app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
    app.include_router(riders.router, prefix="/api/riders", tags=["Riders"])

    @app.get("/health")
    async def health_check(request: Request):
        platform: Platform = request.app.state.platform
        return {
            "status": "healthy",
            "service": f"Boda Dispatch API v{__version__}",
            "riders": len(platform.registry.list_all()),
            "orders": len(platform.ledger),
            "searching": len(platform.dispatcher.searching),
        }

    return app


app = create_app()
