"""
FastAPI Dependencies

Provides dependency injection for database sessions, the tenant of the
request, and the shared campaign services.

Tenant context is explicit: every campaign call carries the X-Tenant-ID
header value down to the service layer.
"""

from typing import Annotated
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.database import get_db
from app.services.campaign_executor import CampaignExecutor, get_campaign_executor
from app.services.event_tracker import EventTracker, get_event_tracker

logger = logging.getLogger(__name__)


async def get_tenant_id(
    x_tenant_id: Annotated[str | None, Header(alias="X-Tenant-ID")] = None,
) -> str:
    """Tenant of the current request."""
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required",
        )
    return x_tenant_id.strip()


# Type aliases for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
TenantId = Annotated[str, Depends(get_tenant_id)]
Executor = Annotated[CampaignExecutor, Depends(get_campaign_executor)]
Tracker = Annotated[EventTracker, Depends(get_event_tracker)]
