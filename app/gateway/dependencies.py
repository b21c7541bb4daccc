"""Shared dependencies for the Gateway routers.

The service container lives on ``app.state``; routers reach it through
``get_container`` so tests can hand in their own.
"""
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request

from app.core.auth import AuthContext, context_from_token, verify_internal_key
from app.core.container import ServiceContainer

logger = structlog.get_logger()


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return container


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization.removeprefix("Bearer ").strip()
    return None


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    container: ServiceContainer = Depends(get_container),
) -> AuthContext:
    token = _bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return context_from_token(token, container.settings.auth_secret)


def require_operator(
    authorization: Optional[str] = Header(default=None),
    container: ServiceContainer = Depends(get_container),
) -> None:
    expected = container.settings.internal_api_key
    if not expected:
        if container.settings.is_production:
            raise HTTPException(status_code=401, detail="Internal API key not configured")
        return
    if not verify_internal_key(_bearer(authorization), expected):
        logger.warning("gateway.internal.unauthorized")
        raise HTTPException(status_code=401, detail="Invalid internal API key")
