"""
FastAPI application entry point for the language-learning billing core.

Authentication happens upstream: a gateway or middleware must place the
authenticated account ID on request.state.user_id (and optionally
request.state.user_email) before these routes run.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from langlearn import __version__
from langlearn.api.routes import ai_usage, subscriptions
from langlearn.config.plan_catalog import get_plan_catalog
from langlearn.config.settings import get_stripe_secret_key, get_stripe_webhook_secret
from langlearn.database.session import database_url, init_db

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _check_billing_config(app: FastAPI) -> None:
    app.state.billing_configured = bool(get_stripe_secret_key())
    app.state.webhooks_configured = bool(get_stripe_webhook_secret())
    if not app.state.billing_configured:
        logger.warning("STRIPE_SECRET_KEY is not set; provider-backed subscription routes return 503")
    if not app.state.webhooks_configured:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; the billing webhook returns 503")


def _check_database(app: FastAPI) -> None:
    try:
        url = database_url()
    except ValueError:
        logger.error("DATABASE_URL is not set; database-backed routes return 503")
        app.state.database_configured = False
        return

    app.state.database_configured = True
    logger.info("Database configured", extra={"host_db": url.rsplit("@", 1)[-1] if "@" in url else "(local)"})
    if os.getenv("AUTO_CREATE_TABLES", "false").lower() == "true":
        init_db()
        logger.info("Database tables ensured")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting language-learning billing API", extra={"version": __version__})

    # A broken plan catalog fails startup
    catalog = get_plan_catalog()
    logger.info("Plan catalog ready", extra={"entries": len(catalog.entries)})

    _check_billing_config(app)
    _check_database(app)

    yield

    logger.info("Shutting down language-learning billing API")


app = FastAPI(
    title="Language Learning Billing API",
    description="Subscriptions, feature entitlements and usage quotas",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# The webhook authenticates by Stripe signature, every other route by user
app.include_router(subscriptions.router)
app.include_router(ai_usage.router)


@app.get("/health")
async def health():
    """Liveness probe (bypasses authentication)."""
    return {"status": "ok", "version": __version__}
