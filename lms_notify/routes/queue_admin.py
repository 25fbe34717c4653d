"""
Administrative routes for the notification queue.

Enqueue, inspect, cancel and requeue items; run the sweeper and
retention on demand.
"""
from datetime import datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from lms_notify.config import settings
from lms_notify.database import get_db
from lms_notify.errors import QueueValidationError
from lms_notify.models.base import ensure_utc, utc_now
from lms_notify.models.queue_item import QueueItem, QueueStatus
from lms_notify.services.notification_service import NotificationService
from lms_notify.services.queue_manager import QueueManager, QueueStats


router = APIRouter(prefix="/api/admin/notification-queue", tags=["notification-queue"])


class EnqueueRequest(BaseModel):
    """Request model for enqueueing a notification."""
    notification_id: int
    priority: int | None = None
    scheduled_for: datetime | None = None
    max_attempts: int | None = None
    email_address: str | None = None


class RequeueRequest(BaseModel):
    """Optional overrides for a requeued item."""
    max_attempts: int | None = None
    scheduled_for: datetime | None = None


class QueueItemResponse(BaseModel):
    """Response model for a queue item."""
    id: int
    notification_id: int
    priority: int
    scheduled_for: str
    attempts: int
    max_attempts: int
    status: str
    error_message: str | None = None
    processing_started_at: str | None = None
    processing_completed_at: str | None = None
    worker_id: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: str | None = None


def _iso(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value else None


def item_to_response(item: QueueItem) -> QueueItemResponse:
    """Convert QueueItem model to QueueItemResponse."""
    return QueueItemResponse(
        id=item.id,
        notification_id=item.notification_id,
        priority=item.priority,
        scheduled_for=_iso(item.scheduled_for),
        attempts=item.attempts,
        max_attempts=item.max_attempts,
        status=QueueStatus(item.status).value,
        error_message=item.error_message,
        processing_started_at=_iso(item.processing_started_at),
        processing_completed_at=_iso(item.processing_completed_at),
        worker_id=item.worker_id,
        metadata=item.queue_metadata,
        created_at=_iso(item.created_at),
    )


@router.post("", response_model=QueueItemResponse, status_code=status.HTTP_201_CREATED)
async def enqueue_notification(request: EnqueueRequest, db: AsyncSession = Depends(get_db)):
    """
    Enqueue an existing notification for email delivery.

    Priority defaults to the notification type's priority.
    """
    service = NotificationService(db)
    notification = await service.get_notification(request.notification_id)
    if not notification:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Notification not found"
        )

    try:
        item = await service.dispatch(
            notification,
            priority=request.priority,
            scheduled_for=request.scheduled_for,
            max_attempts=request.max_attempts,
            email_address=request.email_address,
        )
    except QueueValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return item_to_response(item)


@router.get("", response_model=list[QueueItemResponse])
async def list_queue_items(
    status_filter: QueueStatus = Query(QueueStatus.PENDING, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """List queue items in one status, newest first."""
    items = await QueueManager(db).list_by_status(status_filter, limit=limit, offset=offset)
    return [item_to_response(item) for item in items]


@router.get("/stats", response_model=QueueStats)
async def queue_stats(hours: int = Query(24, ge=1, le=24 * 90), db: AsyncSession = Depends(get_db)):
    """Queue statistics for items created in the last `hours` hours."""
    return await QueueManager(db).stats(timedelta(hours=hours))


@router.post("/sweep")
async def sweep_now(db: AsyncSession = Depends(get_db)):
    """Reclaim items whose processing lease has expired."""
    older_than = utc_now() - timedelta(seconds=settings.NOTIFY_LEASE_TIMEOUT_SECONDS)
    swept = await QueueManager(db).sweep_stuck(older_than)
    return {"swept": swept, "older_than": older_than.isoformat()}


@router.post("/purge")
async def purge_old_items(
    days: int = Query(settings.QUEUE_RETENTION_DAYS, ge=1),
    db: AsyncSession = Depends(get_db),
):
    """Delete terminal items older than `days` days."""
    purged = await QueueManager(db).purge_old(utc_now() - timedelta(days=days))
    return {"purged": purged}


@router.get("/{item_id}", response_model=QueueItemResponse)
async def get_queue_item(item_id: int, db: AsyncSession = Depends(get_db)):
    """Get a queue item by ID."""
    item = await QueueManager(db).get(item_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Queue item not found"
        )
    return item_to_response(item)


@router.post("/{item_id}/cancel", response_model=QueueItemResponse)
async def cancel_queue_item(item_id: int, db: AsyncSession = Depends(get_db)):
    """Cancel a pending or processing item."""
    queue = QueueManager(db)
    existing = await queue.get(item_id)
    if not existing:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Queue item not found"
        )

    item = None
    if not QueueStatus(existing.status).is_terminal:
        item = await queue.cancel(item_id)
    if item is None:
        # Terminal already, or a worker finished it between the read and the cancel
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Queue item is already completed, failed or cancelled"
        )
    return item_to_response(item)


@router.post("/{item_id}/requeue", response_model=QueueItemResponse, status_code=status.HTTP_201_CREATED)
async def requeue_queue_item(
    item_id: int,
    request: RequeueRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Create a fresh item for the notification of a failed or cancelled item."""
    queue = QueueManager(db)
    existing = await queue.get(item_id)
    if not existing:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Queue item not found"
        )

    request = request or RequeueRequest()
    try:
        item = await queue.requeue(
            item_id,
            max_attempts=request.max_attempts,
            scheduled_for=request.scheduled_for,
        )
    except QueueValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    if item is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Queue item is {QueueStatus(existing.status).value}; only failed or cancelled items can be requeued"
        )
    return item_to_response(item)
