"""
Prometheus metrics endpoint.

Exposes notification pipeline metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Queue Metrics
# ============================================

queue_items_enqueued = Counter(
    'notification_queue_enqueued_total',
    'Total queue items enqueued',
    ['priority']
)

queue_items_claimed = Counter(
    'notification_queue_claimed_total',
    'Total queue items claimed by workers',
    ['worker_id']
)

queue_items_completed = Counter(
    'notification_queue_completed_total',
    'Total queue items completed successfully'
)

queue_items_failed = Counter(
    'notification_queue_failed_total',
    'Total queue item failures reported',
    ['outcome']  # retry | exhausted
)

queue_items_cancelled = Counter(
    'notification_queue_cancelled_total',
    'Total queue items cancelled'
)

queue_items_swept = Counter(
    'notification_queue_swept_total',
    'Total processing items reclaimed after lease expiry'
)

queue_items_purged = Counter(
    'notification_queue_purged_total',
    'Total terminal queue items deleted by retention'
)

queue_depth = Gauge(
    'notification_queue_pending_count',
    'Current number of pending queue items'
)

# ============================================
# Delivery Metrics
# ============================================

deliveries_total = Counter(
    'email_deliveries_total',
    'Email delivery status transitions',
    ['status']
)

send_duration = Histogram(
    'email_send_duration_seconds',
    'Send channel call duration in seconds',
    ['outcome'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_enqueued(priority: int):
    """Record a queue item being enqueued."""
    queue_items_enqueued.labels(priority=str(priority)).inc()


def track_claimed(worker_id: str, count: int):
    """Record items claimed by a worker."""
    if count:
        queue_items_claimed.labels(worker_id=worker_id).inc(count)


def track_completed():
    """Record a queue item completing successfully."""
    queue_items_completed.inc()


def track_failed(exhausted: bool):
    """Record a failure report, split by whether retries are exhausted."""
    queue_items_failed.labels(outcome="exhausted" if exhausted else "retry").inc()


def track_cancelled():
    """Record a queue item cancellation."""
    queue_items_cancelled.inc()


def track_swept(count: int):
    """Record items reclaimed by the recovery sweeper."""
    if count:
        queue_items_swept.inc(count)


def track_purged(count: int):
    """Record terminal items removed by retention."""
    if count:
        queue_items_purged.inc(count)


def update_queue_depth(depth: int):
    """Update pending item count."""
    queue_depth.set(depth)


def track_delivery(status: str):
    """Record a delivery record entering a status."""
    deliveries_total.labels(status=status).inc()


def track_send(outcome: str, duration_seconds: float):
    """Record one send channel call."""
    send_duration.labels(outcome=outcome).observe(duration_seconds)


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
