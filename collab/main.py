import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from collab.api import (
    conversations,
    devices,
    health,
    notifications,
    payments,
    wallet,
    webhooks,
    ws,
)
from collab.core.config import settings
from collab.core.errors import FlowError
from collab.core.logging_config import setup_logging
from collab.core.middleware import RequestLoggingMiddleware
from collab.core.rate_limit import limiter
from collab.db.session import engine
from collab.realtime.push import dispatcher

# Configure structured JSON logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: verify the database, drain pushes on shutdown."""
    try:
        async with engine.begin():
            pass  # connection pool is initialised
        logger.info("Database connection established")
    except Exception as exc:
        logger.warning("Database connection not available at startup: %s", exc)
    yield
    await dispatcher.drain()
    await engine.dispose()


app = FastAPI(
    title="Collaboration Conversation Engine",
    description="Brand/influencer conversations, negotiation flow, escrow and payments.",
    version="1.0.0",
    openapi_url="/api/openapi.json",
    docs_url="/api/docs",
    debug=settings.debug,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ---------------------------------------------------------------------------
# CORS middleware
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------
app.add_middleware(RequestLoggingMiddleware)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------
@app.exception_handler(FlowError)
async def flow_error_handler(request: Request, exc: FlowError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(health.router, prefix="/api")
app.include_router(conversations.router, prefix="/api")
app.include_router(conversations.connect_router, prefix="/api")
app.include_router(payments.router, prefix="/api")
app.include_router(payments.admin_router, prefix="/api")
app.include_router(webhooks.router, prefix="/api")
app.include_router(notifications.router, prefix="/api")
app.include_router(devices.router, prefix="/api")
app.include_router(wallet.router, prefix="/api")
app.include_router(ws.router)
