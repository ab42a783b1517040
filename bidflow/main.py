"""BidFlow API -- Main Application Entry Point

Creates the FastAPI application, configures logging and CORS, wires the
ledger store, payment gateway and workflow engines onto ``app.state``, and
registers all API route modules under the /api/v1 prefix.

Run with::

    uvicorn bidflow.main:app --host 0.0.0.0 --port 8000 --reload

Importing this module builds the default ``app``: the ledger store and the
Stripe SDK configuration come from the environment at that point. Tests
call ``create_app`` with their own store and gateway instead.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bidflow.api.responses import register_exception_handlers
from bidflow.api.routes import bids, jobs, payments, projects
from bidflow.core.config import Settings, settings as default_settings
from bidflow.core.database import LedgerStore
from bidflow.integrations.gateway import PaymentGateway
from bidflow.integrations.stripe import StripeGateway
from bidflow.services.auth_service import JWTIdentityResolver
from bidflow.services.bidEngine import BidEngine
from bidflow.services.escrowLedger import EscrowLedger
from bidflow.services.notificationService import NotificationService
from bidflow.services.projectEngine import ProjectEngine
from bidflow.services.workflowOrchestrator import WorkflowOrchestrator

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Set the root log format and level once per process."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT)
    root.setLevel(level.upper())


# ---------------------------------------------------------------------------
# Lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Shutdown:
      - Dispose of the ledger store's connection pool when the app owns it.
    """
    logger.info("%s %s starting", app.title, app.version)
    yield
    if app.state.owns_store:
        await app.state.store.dispose()
    logger.info("%s stopped", app.title)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[LedgerStore] = None,
    gateway: Optional[PaymentGateway] = None,
) -> FastAPI:
    """Build the application.

    ``store`` and ``gateway`` default to a store built from ``settings`` and
    the Stripe gateway; tests pass their own.
    """
    settings = settings or default_settings
    configure_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.state.owns_store = store is None
    store = store or LedgerStore.from_settings(settings)
    gateway = gateway or StripeGateway(settings)
    notifications = NotificationService(store)
    bid_engine = BidEngine(
        store,
        notifications,
        default_currency=settings.default_currency,
        max_page_size=settings.max_page_size,
    )
    project_engine = ProjectEngine(store, notifications, max_page_size=settings.max_page_size)

    app.state.settings = settings
    app.state.store = store
    app.state.identity_resolver = JWTIdentityResolver(settings)
    app.state.bid_engine = bid_engine
    app.state.project_engine = project_engine
    app.state.escrow_ledger = EscrowLedger(
        store,
        gateway,
        notifications,
        max_page_size=settings.max_page_size,
        payout_country=settings.payout_country,
        payout_refresh_url=settings.payout_refresh_url,
        payout_return_url=settings.payout_return_url,
    )
    app.state.orchestrator = WorkflowOrchestrator(store, bid_engine, project_engine, notifications)

    # -- CORS --
    origins = [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app, debug=settings.debug)

    # -- Health check --
    @app.get("/health", tags=["Health"])
    async def health():
        """Lightweight health check for load balancers and readiness probes."""
        return {"status": "ok", "version": settings.app_version}

    # -- Routers --
    # Each router defines its own prefix (e.g. /jobs, /bids); mounting them
    # under the shared /api/v1 prefix gives /api/v1/jobs, /api/v1/bids, etc.
    prefix = settings.api_v1_prefix
    app.include_router(jobs.router, prefix=prefix)
    app.include_router(bids.router, prefix=prefix)
    app.include_router(projects.router, prefix=prefix)
    app.include_router(payments.router, prefix=prefix)

    return app


app = create_app()
