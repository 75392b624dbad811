"""
FastAPI application for the subscription and usage entitlement engine.

``create_app`` wires settings, persistence gateway, entitlement cache, retry
policy and billing provider into ``app.state``. Collaborators left unset are
built from configuration at startup.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from listos.api import auth, billing, health, metrics, subscription
from listos.core.cache import EntitlementCache, build_cache
from listos.core.config import Settings, settings, validate_config
from listos.core.database import create_all_tables, init_engine
from listos.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from listos.core.logging import configure_logging
from listos.core.middleware.metrics import MetricsMiddleware
from listos.core.middleware.request_id import RequestIdMiddleware
from listos.core.retry import RetryOptions, RetryPolicy
from listos.core.validation import validate_env
from listos.features.billing.provider import BillingProvider
from listos.features.billing.reconciler import WebhookReconciler
from listos.features.billing.service import get_provider
from listos.features.entitlements.service import EntitlementService
from listos.features.persistence.gateway import PersistenceGateway
from listos.features.persistence.sql_gateway import SqlPersistenceGateway

logger = logging.getLogger("listos")


def wire_services(
    app: FastAPI,
    cfg: Settings,
    gateway: PersistenceGateway,
    *,
    cache: Optional[EntitlementCache] = None,
    provider: Optional[BillingProvider] = None,
    retry: Optional[RetryPolicy] = None,
) -> None:
    cache = cache if cache is not None else build_cache(cfg)
    request_retry = retry or RetryPolicy(RetryOptions.from_settings(cfg, deadline=cfg.REQUEST_TIMEOUT_SECONDS))
    webhook_retry = retry or RetryPolicy(
        RetryOptions.from_settings(cfg, initial_delay=cfg.WEBHOOK_RETRY_INITIAL_DELAY_SECONDS)
    )
    app.state.gateway = gateway
    app.state.cache = cache
    app.state.retry = request_retry
    app.state.billing_provider = provider
    app.state.entitlements = EntitlementService.from_settings(
        gateway, cache, cfg, retry=request_retry, provider=provider
    )
    app.state.reconciler = WebhookReconciler.from_settings(gateway, cache, cfg, retry=webhook_retry)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting entitlement service...")
    if getattr(app.state, "entitlements", None) is None:
        cfg = app.state.settings
        app.state.engine = init_engine()
        create_all_tables(app.state.engine)
        wire_services(
            app,
            cfg,
            SqlPersistenceGateway(app.state.engine),
            provider=app.state.billing_provider,
        )
    try:
        yield
    finally:
        logger.info("Stopping entitlement service...")


def create_app(
    settings_obj: Optional[Settings] = None,
    *,
    gateway: Optional[PersistenceGateway] = None,
    cache: Optional[EntitlementCache] = None,
    provider: Optional[BillingProvider] = None,
    retry: Optional[RetryPolicy] = None,
    engine=None,
) -> FastAPI:
    cfg = settings_obj or settings
    configure_logging(cfg.ENV)
    validate_env(settings_obj=cfg)
    validate_config(strict=cfg.CONFIG_STRICT, settings_obj=cfg)

    app = FastAPI(title="Listos - Entitlements", lifespan=lifespan)
    app.state.settings = cfg
    app.state.engine = engine
    app.state.billing_provider = provider if provider is not None else get_provider(cfg)
    app.state.entitlements = None
    if gateway is not None:
        wire_services(app, cfg, gateway, cache=cache, provider=app.state.billing_provider, retry=retry)

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cfg.CORS_ALLOWED_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth.router, prefix="/api")
    app.include_router(subscription.router, prefix="/api")
    app.include_router(billing.router, prefix="/api")
    app.include_router(health.root_router)
    app.include_router(metrics.router)
    return app


app = create_app()
