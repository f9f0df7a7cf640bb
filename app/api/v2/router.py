from fastapi import APIRouter
from app.api.v2 import (
    campaigns,
    tracking,
    websocket,
)

api_router = APIRouter()

# Include all v2 routers
api_router.include_router(campaigns.router, prefix="/campaigns", tags=["campaigns"])
api_router.include_router(tracking.router, prefix="/tracking", tags=["tracking"])
api_router.include_router(websocket.router, tags=["websocket"])
