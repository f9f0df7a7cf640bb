"""
Delivery Tracking Endpoints

Public endpoints hit by recipients (open pixel, click redirect, unsubscribe)
and by channel providers (delivery callbacks). Recording happens in the
background after the response and never affects it: the pixel is always
served, and malformed tokens only change the response for click and
unsubscribe.
"""

import base64
import logging

from fastapi import APIRouter, BackgroundTasks, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response

from app.api.deps import Tracker
from app.exceptions import TrackingDecodeError
from app.schemas.tracking import (
    BouncedEmailsResponse,
    DeliveryStatusResponse,
    ProviderEventRequest,
    ProviderEventType,
    TrackingResponse,
)
from app.services.tracking_tokens import decode_token

logger = logging.getLogger(__name__)
router = APIRouter()

# 1x1 transparent PNG
TRACKING_PIXEL = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def get_client_ip(request: Request) -> str:
    """Extract real client IP from request, respecting proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def _error(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"status": "error", "message": message},
    )


@router.get("/open/{token}")
async def track_open(token: str, request: Request, background_tasks: BackgroundTasks, tracker: Tracker):
    """Serve the tracking pixel and record an open."""
    try:
        decoded = decode_token(token)
        background_tasks.add_task(
            tracker.track_open,
            decoded.event_id,
            decoded.email,
            get_client_ip(request),
            request.headers.get("user-agent"),
        )
    except TrackingDecodeError as e:
        logger.warning(f"Ignoring open with invalid token: {e}")

    return Response(content=TRACKING_PIXEL, media_type="image/png", headers=NO_CACHE_HEADERS)


@router.get("/click/{token}")
async def track_click(token: str, request: Request, background_tasks: BackgroundTasks, tracker: Tracker):
    """Record a click and redirect to the original URL."""
    try:
        decoded = decode_token(token, with_url=True)
    except TrackingDecodeError as e:
        logger.warning(f"Rejecting click with invalid token: {e}")
        return _error("Invalid tracking data")

    background_tasks.add_task(
        tracker.track_click,
        decoded.event_id,
        decoded.email,
        decoded.url,
        get_client_ip(request),
        request.headers.get("user-agent"),
    )
    return RedirectResponse(url=decoded.url, status_code=status.HTTP_302_FOUND)


@router.api_route("/unsubscribe/{token}", methods=["GET", "POST"], response_model=TrackingResponse)
async def unsubscribe(token: str, request: Request, background_tasks: BackgroundTasks, tracker: Tracker):
    """Unsubscribe the recipient the token was issued for."""
    try:
        decoded = decode_token(token)
    except TrackingDecodeError as e:
        logger.warning(f"Rejecting unsubscribe with invalid token: {e}")
        return _error("Invalid unsubscribe data")

    background_tasks.add_task(
        tracker.track_unsubscribe,
        decoded.event_id,
        decoded.email,
        get_client_ip(request),
        request.headers.get("user-agent"),
    )
    return TrackingResponse(status="success", message="You have been successfully unsubscribed")


@router.post("/events", status_code=status.HTTP_202_ACCEPTED, response_model=TrackingResponse)
async def provider_event(event: ProviderEventRequest, background_tasks: BackgroundTasks, tracker: Tracker):
    """Delivery callback from a channel provider."""
    if event.event_type == ProviderEventType.DELIVERED:
        background_tasks.add_task(tracker.track_delivered, event.event_ref, event.email)
    elif event.event_type == ProviderEventType.BOUNCED:
        background_tasks.add_task(
            tracker.handle_bounce, event.event_ref, event.email, event.bounce_type or "unknown", event.reason
        )
    else:
        background_tasks.add_task(tracker.track_complaint, event.event_ref, event.email, event.reason)
    return TrackingResponse(status="accepted", message=f"{event.event_type.value} event queued")


@router.get("/status/{event_ref}", response_model=DeliveryStatusResponse)
async def get_delivery_status(event_ref: int, tracker: Tracker):
    """Current delivery status of a sent message."""
    return DeliveryStatusResponse(event_ref=event_ref, status=await tracker.get_delivery_status(event_ref))


@router.get("/bounces", response_model=BouncedEmailsResponse)
async def get_bounced_emails(tracker: Tracker, hours: int = Query(24, ge=1, le=24 * 90)):
    """Addresses that bounced within the last ``hours``."""
    return BouncedEmailsResponse(hours=hours, emails=await tracker.get_bounced_emails(hours))
