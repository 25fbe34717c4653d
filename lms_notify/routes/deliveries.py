"""
Email delivery routes.

Admin reporting over the delivery ledger and the provider callback that
moves sent messages to delivered or bounced.
"""
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from lms_notify.database import get_db
from lms_notify.models.base import ensure_utc
from lms_notify.models.delivery import DeliveryRecord, DeliveryStatus
from lms_notify.services.delivery_tracker import DeliveryHistoryEntry, DeliveryStats, DeliveryTracker


admin_router = APIRouter(prefix="/api/admin/email-deliveries", tags=["email-deliveries"])
router = APIRouter(prefix="/api/email-deliveries", tags=["email-deliveries"])

# Provider events map onto these delivery statuses
PROVIDER_EVENTS = {
    "delivered": DeliveryStatus.DELIVERED,
    "bounced": DeliveryStatus.BOUNCED,
    "bounce": DeliveryStatus.BOUNCED,
    "failed": DeliveryStatus.FAILED,
}


class ProviderEventRequest(BaseModel):
    """Callback body sent by the email provider."""
    provider_message_id: str
    event: str
    error_message: str | None = None


class DeliveryResponse(BaseModel):
    """Response model for a delivery record."""
    id: int
    notification_id: int
    email_address: str
    status: str
    sent_at: str | None = None
    delivered_at: str | None = None
    failed_at: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = 0
    provider_message_id: str | None = None


def _iso(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value else None


def delivery_to_response(record: DeliveryRecord) -> DeliveryResponse:
    """Convert DeliveryRecord model to DeliveryResponse."""
    return DeliveryResponse(
        id=record.id,
        notification_id=record.notification_id,
        email_address=record.email_address,
        status=DeliveryStatus(record.status).value,
        sent_at=_iso(record.sent_at),
        delivered_at=_iso(record.delivered_at),
        failed_at=_iso(record.failed_at),
        error_message=record.error_message,
        retry_count=record.retry_count,
        max_retries=record.max_retries,
        provider_message_id=record.provider_message_id,
    )


@admin_router.get("/stats", response_model=DeliveryStats)
async def delivery_stats(hours: int = Query(24, ge=1, le=24 * 90), db: AsyncSession = Depends(get_db)):
    """Delivery statistics for records created in the last `hours` hours."""
    return await DeliveryTracker(db).stats(timedelta(hours=hours))


@admin_router.get("/history", response_model=list[DeliveryHistoryEntry])
async def delivery_history(
    email: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Deliveries to one address, newest first."""
    return await DeliveryTracker(db).history(email, limit=limit, offset=offset)


@admin_router.post("/retry-failed", response_model=list[DeliveryResponse])
async def retry_failed_deliveries(limit: int = Query(50, ge=1, le=500), db: AsyncSession = Depends(get_db)):
    """Reset failed deliveries that still have retries left."""
    records = await DeliveryTracker(db).retry_failed(limit)
    return [delivery_to_response(record) for record in records]


@router.post("/provider-events", response_model=DeliveryResponse)
async def provider_event(request: ProviderEventRequest, db: AsyncSession = Depends(get_db)):
    """
    Apply a provider delivery event.

    404 if no record carries the message id, 409 if the record cannot
    move to the reported status.
    """
    event = PROVIDER_EVENTS.get(request.event.lower())
    if event is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unsupported event: {request.event}"
        )

    tracker = DeliveryTracker(db)
    existing = await tracker.find_by_provider_message_id(request.provider_message_id)
    if not existing:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Delivery not found"
        )

    record = await tracker.apply_provider_event(
        request.provider_message_id, event, request.error_message
    )
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Delivery is {DeliveryStatus(existing.status).value} and cannot become {event.value}"
        )
    return delivery_to_response(record)
