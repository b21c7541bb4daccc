"""Vreamio – Billing Gateway.

FastAPI app exposing end-user billing routes, the Stripe webhook and operator
routes. The lifespan builds the service container, creates tables and runs the
provisioning worker.

Run with ``uvicorn app.gateway.main:create_app --factory``.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.billing.payments import PaymentProviderError
from app.billing.service import (
    AlreadySubscribed,
    ConcurrentTransitionError,
    MissingPaymentCustomer,
    SubscriptionNotFound,
)
from app.billing.state_machine import InvalidTransition
from app.core.container import ServiceContainer, build_container
from app.core.crypto import DecryptionFailure
from app.core.instrumentation import router as metrics_router
from app.core.instrumentation import setup_instrumentation
from app.gateway.routers.billing import router as billing_router
from app.gateway.routers.internal import router as internal_router
from app.integrations.torbox.client import VendorError
from config.settings import Settings, get_settings

logger = structlog.get_logger()

# Domain exception → HTTP status
ERROR_STATUS: tuple[tuple[type[Exception], int], ...] = (
    (InvalidTransition, 409),
    (AlreadySubscribed, 409),
    (ConcurrentTransitionError, 409),
    (SubscriptionNotFound, 404),
    (MissingPaymentCustomer, 404),
    (PaymentProviderError, 502),
    (VendorError, 502),
    (DecryptionFailure, 500),
)


def _enforce_startup_guards(settings: Settings) -> None:
    if not settings.is_production:
        return
    errors = settings.production_errors()
    if errors:
        for error in errors:
            logger.critical("gateway.config_invalid", error=error)
        raise RuntimeError("Refusing startup in production: " + "; ".join(errors))


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Build services, start the worker; stop it and release clients on shutdown."""
    settings: Settings = app.state.settings
    _enforce_startup_guards(settings)

    owns_container = app.state.container is None
    if owns_container:
        app.state.container = build_container(settings)
    container: ServiceContainer = app.state.container
    container.db.create_all()

    if settings.provisioning_worker_enabled and settings.torbox_configured:
        container.worker.start()
    else:
        logger.warning(
            "gateway.worker_disabled",
            enabled=settings.provisioning_worker_enabled,
            torbox_configured=settings.torbox_configured,
        )
    logger.info("gateway.startup", env=settings.environment, payments=container.payments.name)

    yield

    if owns_container:
        await container.aclose()
        app.state.container = None
    else:
        await container.worker.stop()
    logger.info("gateway.shutdown")


def _register_error_handlers(app: FastAPI) -> None:
    for exc_type, status in ERROR_STATUS:
        async def handler(request: Request, exc: Exception, status: int = status) -> JSONResponse:
            if status >= 500:
                logger.error("gateway.request_failed", path=request.url.path, error=str(exc))
            return JSONResponse(status_code=status, content={"success": False, "detail": str(exc)})

        app.add_exception_handler(exc_type, handler)


def create_app(settings: Optional[Settings] = None, container: Optional[ServiceContainer] = None) -> FastAPI:
    settings = settings or (container.settings if container else get_settings())

    app = FastAPI(
        title="Vreamio Billing Gateway",
        description="Subscriptions, Stripe webhooks and TorBox vendor provisioning",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.container = container

    setup_instrumentation(app, settings.log_level)
    _register_error_handlers(app)

    app.include_router(metrics_router)
    app.include_router(billing_router)
    app.include_router(internal_router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(create_app(_settings), host=_settings.gateway_host, port=_settings.gateway_port)
