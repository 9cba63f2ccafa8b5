"""Dependencies that are used in the API endpoints."""

import secrets
import uuid
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from billflow import crud, schemas
from billflow.api.context import ApiContext
from billflow.core.config import settings
from billflow.core.exceptions import NotFoundException
from billflow.core.logging import logger
from billflow.db.session import get_db

__all__ = ["get_db", "get_tenant", "get_context", "require_system_token"]


async def get_tenant(
    x_tenant_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> schemas.Tenant:
    """Resolve the tenant a request acts for from the ``X-Tenant-ID`` header.

    Raises:
        HTTPException: If the header is missing or not a UUID.
        NotFoundException: If no such tenant exists.
    """
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    try:
        tenant_id = UUID(x_tenant_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="X-Tenant-ID must be a UUID") from e

    tenant = await crud.tenant.get(db, tenant_id)
    if tenant is None:
        raise NotFoundException(f"Tenant {tenant_id} not found")
    return schemas.Tenant.model_validate(tenant)


async def get_context(
    request: Request,
    tenant: schemas.Tenant = Depends(get_tenant),
) -> ApiContext:
    """Build the request context with a logger carrying the request and tenant."""
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    auth_method = "tenant_header"
    return ApiContext(
        request_id=request_id,
        tenant=tenant,
        auth_method=auth_method,
        logger=logger.with_context(
            request_id=request_id,
            tenant_id=str(tenant.id),
            auth_method=auth_method,
        ),
    )


async def require_system_token(authorization: Optional[str] = Header(None)) -> None:
    """Guard cron and admin endpoints with the ``SYSTEM_API_TOKEN`` bearer token.

    Raises:
        HTTPException: 403 when no token is configured, 401 when it does not match.
    """
    if not settings.SYSTEM_API_TOKEN:
        raise HTTPException(status_code=403, detail="System endpoints are disabled")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(
        token.encode(), settings.SYSTEM_API_TOKEN.encode()
    ):
        raise HTTPException(status_code=401, detail="Invalid system token")
