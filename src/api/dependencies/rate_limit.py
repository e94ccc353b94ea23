from typing import Any, Dict

from fastapi import Depends, Request, status

from src.api.dependencies.auth import get_current_user
from src.core.errors import ApiError
from src.logs import api_logger
from src.services.rate_limiter import client_address

MEDIA_UPLOAD = "media_upload"
COMMENT_MUTATION = "comment_mutation"


def _scope_limits(request: Request, scope: str):
    settings = request.app.state.settings
    if scope == MEDIA_UPLOAD:
        return settings.RATE_LIMIT_UPLOAD_MAX, settings.RATE_LIMIT_UPLOAD_WINDOW_MS
    return settings.RATE_LIMIT_COMMENT_MUTATION_MAX, settings.RATE_LIMIT_COMMENT_MUTATION_WINDOW_MS


def enforce_rate_limit(request: Request, user: Dict[str, Any], scope: str) -> None:
    """Count the request against ``scope``; 429 ``RATE_LIMITED`` with Retry-After when over."""
    limit, window_ms = _scope_limits(request, scope)
    address = client_address(request.headers, request.client.host if request.client else None)
    decision = request.app.state.rate_limiter.hit(scope, user["id"], address, limit, window_ms)
    if decision.allowed:
        return
    api_logger.warning(f"Rate limit {scope} exceeded by user {user['id']} from {address}")
    payload = decision.to_payload()
    payload.pop("error")
    raise ApiError(
        status.HTTP_429_TOO_MANY_REQUESTS,
        "RATE_LIMITED",
        headers={"Retry-After": str(decision.retry_after_seconds)},
        **payload,
    )


def rate_limited(scope: str):
    """Dependency factory: the authenticated user, after the ``scope`` limit was counted."""

    async def dependency(request: Request, user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        enforce_rate_limit(request, user, scope)
        return user

    return dependency
