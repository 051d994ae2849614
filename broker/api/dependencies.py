"""
FastAPI Dependencies - per-request context.

NO DICTIONARIES - All dependencies return typed objects.
"""

from fastapi import Header, HTTPException, status
from structlog import get_logger

from broker.models.domain import RequestContext

logger = get_logger(__name__)


async def get_request_context(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_request_id: str | None = Header(None, alias="X-Request-ID"),
    x_region: str | None = Header(None, alias="X-Region"),
) -> RequestContext:
    """
    Build the explicit request context from chat-layer headers.

    The chat layer has already authenticated the caller; the broker only
    needs to know which user it is acting for.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        logger.warning("request_context_missing_user", request_id=x_request_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID header is required",
        )
    region = (x_region or "").strip() or None
    return RequestContext(user_id=user_id, region=region, request_id=x_request_id)
