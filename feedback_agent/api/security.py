"""
Security dependencies for the API: service token and acting user.
"""

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from feedback_agent.config import settings
from feedback_agent.services.rbac_service import Actor
from feedback_agent.utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

api_key_header = APIKeyHeader(name=settings.api_token_header, auto_error=False)


async def verify_api_token(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header),
):
    """
    Verify the service token from the X-API-Key header.

    In development mode (no token configured), this is bypassed.
    In production, a valid token is required.
    """
    if not settings.api_token:
        if settings.is_production:
            logger.warning("API token not configured in production mode!")
        return None

    client = request.client.host if request.client else "unknown"
    if not api_key:
        logger.warning("Missing API key", client=client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing API key. Provide {settings.api_token_header} header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not secrets.compare_digest(api_key, settings.api_token):
        logger.warning("Invalid API key attempt", client=client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return api_key


async def get_actor(
    actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    role: Optional[str] = Header(None, alias="X-Actor-Role"),
    actor_tenant: Optional[str] = Header(None, alias="X-Tenant-Id"),
) -> Optional[Actor]:
    """
    The human on whose behalf the request is made.

    Identity is asserted by the fronting console, which holds the service
    token. A request without actor headers has no actor; RBAC denies it.
    """
    if not actor_id or not role or not actor_tenant:
        return None
    return Actor(actor_id=actor_id, role=role, tenant_id=actor_tenant)
