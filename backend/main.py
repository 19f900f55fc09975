"""
FastAPI application entry point for the Umbrella identity service.

Identity sync (provider webhooks + webhook failure recovery) and session
authorization for the Umbrella marketplace API.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from umbrella import __version__
from umbrella.api.routes import health
from umbrella.api.routes import auth
from umbrella.api.routes import account
from umbrella.api.routes import webhooks_identity
from umbrella.config import get_settings
from umbrella.middleware.request_id import RequestIdMiddleware
from umbrella.monitoring.alerts import get_alert_manager
from umbrella.platform.errors import register_exception_handlers

# Configure structured logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting Umbrella identity API")

    settings = get_settings()
    logger.info("Identity configuration", extra={"config": settings.to_log_dict()})

    if not settings.session_token_secret:
        logger.error(
            "SESSION_TOKEN_SECRET is not set. Sign-in and session checks will fail."
        )
    if not settings.webhook_secret:
        logger.error(
            "IDENTITY_WEBHOOK_SECRET is not set. Identity webhooks will return 500."
        )
    if not settings.provider_secret_key:
        logger.warning(
            "IDENTITY_PROVIDER_SECRET_KEY is not set. Webhook failure recovery is disabled."
        )

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. All database-backed endpoints will fail.")
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else "(local)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})

    yield

    logger.info("Shutting down Umbrella identity API")
    get_alert_manager().shutdown()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Umbrella Identity API",
        description="Identity sync and session authorization for the Umbrella marketplace",
        version=__version__,
        lifespan=lifespan
    )

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in cors_origins if origin.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    register_exception_handlers(app)

    # Health check (no auth)
    app.include_router(health.router)

    # Identity provider webhooks (Svix signature, no session auth)
    app.include_router(webhooks_identity.router)

    # Session lifecycle
    app.include_router(auth.router)

    # Account, role selection and onboarding
    app.include_router(account.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
