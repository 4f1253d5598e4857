"""
FastAPI application factory and entry point.

This module creates and configures the FastAPI application:
  1. Logging — root logger level from LOG_LEVEL
  2. Lifespan manager — DB table creation, notification dispatcher start/stop
  3. CORS middleware — allows frontend origins to make cross-origin requests
  4. Exception handlers — maps domain errors to HTTP responses
  5. Router registration — holder, provider and sponsor endpoint groups

Running locally:
    uvicorn app.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import app.models  # noqa: F401  (registers every table on Base.metadata)
from app.config import settings
from app.database import engine, Base
from app.exceptions import register_exception_handlers
from app.routers import provider, sponsor, vouchers
from app.services.notification_service import dispatcher

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      Creates all database tables if they don't exist and starts the
      notification worker.

    Shutdown:
      Delivers queued notifications, stops the worker and disposes of the
      database engine.
    """
    # --- Startup ---
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await dispatcher.start()
    log.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)
    yield
    # --- Shutdown ---
    await dispatcher.stop()
    await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Welfare-fund voucher ledger: balances, redemption, provider approval and reporting",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(vouchers.router, prefix="/vouchers", tags=["Vouchers"])
app.include_router(provider.router, tags=["Provider"])
app.include_router(sponsor.router, prefix="/organizations", tags=["Sponsor"])


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness probe for load balancers and orchestrators."""
    return {"status": "ok", "version": settings.APP_VERSION}
