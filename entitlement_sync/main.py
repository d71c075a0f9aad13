"""
FastAPI application entry point for the entitlement sync service.

Routes:
- /api/webhooks/billing: provider webhooks (signature verified, no user auth)
- /api/billing/*: user-facing entitlement, check and cancel (authenticated)
- /health
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from entitlement_sync.api.dependencies.auth import trusted_identity_header_middleware
from entitlement_sync.api.routes import billing, health, webhooks_billing
from entitlement_sync.config.settings import get_settings
from entitlement_sync.database.session import init_db

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting entitlement sync API")

    settings = get_settings()
    logger.info("Entitlement sync configured", extra={
        "provider_api_base_url": settings.provider_api_base_url,
        "provider_configured": bool(settings.provider_api_key),
        "webhook_secret_configured": bool(settings.webhook_secret),
        "check_cooldown_hours": settings.check_cooldown_hours,
    })

    app.state.database_configured = bool(os.getenv("DATABASE_URL"))
    if not app.state.database_configured:
        logger.error("DATABASE_URL is not set. All billing endpoints will return 503.")
    else:
        try:
            init_db()
        except Exception as e:
            logger.exception("Database initialization failed", extra={"error": str(e)})

    yield

    logger.info("Shutting down entitlement sync API")


# Create FastAPI app
app = FastAPI(
    title="Entitlement Sync API",
    description="Reconciles billing provider subscriptions into premium entitlements",
    version="1.0.0",
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Identity from an authenticating gateway, when one is deployed in front
identity_header = os.getenv("TRUSTED_USER_ID_HEADER")
if identity_header:
    app.middleware("http")(trusted_identity_header_middleware(identity_header))

app.include_router(health.router)
# Provider webhooks (signature verification, not user auth)
app.include_router(webhooks_billing.router)
# User-facing billing routes (requires authentication)
app.include_router(billing.router)
