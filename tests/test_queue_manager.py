"""
Queue manager tests: state machine, claim exclusivity, ordering, scheduling,
recovery and statistics.
"""
import asyncio
from datetime import timedelta

import pytest

from lms_notify.errors import ErrorKind, QueueValidationError
from lms_notify.models.base import ensure_utc
from lms_notify.models.queue_item import QueueStatus
from lms_notify.services.queue_manager import QueueManager

from conftest import assert_worker_invariant


async def test_enqueue_creates_pending_item(queue, notification, clock):
    item = await queue.enqueue(notification.id, priority=3, metadata={"email_address": "a@b.c"})

    assert item.id is not None
    assert item.status == QueueStatus.PENDING
    assert item.attempts == 0
    assert item.max_attempts == 3
    assert item.queue_metadata == {"email_address": "a@b.c"}
    assert ensure_utc(item.scheduled_for) == clock.now
    assert_worker_invariant(item)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"priority": 0},
        {"priority": 11},
        {"max_attempts": 0},
        {"max_attempts": 11},
        {"scheduled_offset": timedelta(hours=-2)},
    ],
)
async def test_enqueue_rejects_invalid_requests(queue, notification, clock, kwargs):
    offset = kwargs.pop("scheduled_offset", None)
    if offset is not None:
        kwargs["scheduled_for"] = clock.now + offset

    with pytest.raises(QueueValidationError) as exc_info:
        await queue.enqueue(notification.id, **kwargs)

    assert exc_info.value.kind == ErrorKind.VALIDATION
    assert isinstance(exc_info.value, ValueError)
    assert await queue.queue_length() == 0


async def test_enqueue_rejects_non_positive_notification_id(queue):
    with pytest.raises(QueueValidationError):
        await queue.enqueue(0)


async def test_enqueue_accepts_recent_past_schedule(queue, notification, clock):
    item = await queue.enqueue(notification.id, scheduled_for=clock.now - timedelta(minutes=30))
    assert item.status == QueueStatus.PENDING


async def test_claim_orders_by_priority_then_schedule(queue, notification, clock):
    now = clock.now
    low = await queue.enqueue(notification.id, priority=5, scheduled_for=now - timedelta(minutes=30))
    urgent_late = await queue.enqueue(notification.id, priority=1, scheduled_for=now - timedelta(minutes=5))
    urgent_early = await queue.enqueue(notification.id, priority=1, scheduled_for=now - timedelta(minutes=20))
    middle = await queue.enqueue(notification.id, priority=3)

    claimed = await queue.claim_batch("worker-1", 10)

    assert [item.id for item in claimed] == [urgent_early.id, urgent_late.id, middle.id, low.id]


async def test_claim_respects_limit_and_takes_most_urgent(queue, notification):
    items = [await queue.enqueue(notification.id, priority=p) for p in (4, 2, 9, 1, 6)]

    claimed = await queue.claim_batch("worker-1", 2)

    assert sorted(item.priority for item in claimed) == [1, 2]
    assert await queue.queue_length() == 3
    for item in claimed:
        assert item.status == QueueStatus.PROCESSING
        assert item.worker_id == "worker-1"
        assert item.processing_started_at is not None
        assert_worker_invariant(item)
    assert len(items) == 5


async def test_claim_with_zero_limit_returns_nothing(queue, notification):
    await queue.enqueue(notification.id)
    assert await queue.claim_batch("worker-1", 0) == []
    assert await queue.queue_length() == 1


async def test_scheduled_items_wait_until_due(queue, notification, clock):
    item = await queue.enqueue(notification.id, scheduled_for=clock.now + timedelta(minutes=10))

    assert await queue.claim_batch("worker-1", 10) == []

    clock.advance(minutes=9)
    assert await queue.claim_batch("worker-1", 10) == []

    clock.advance(minutes=1)
    claimed = await queue.claim_batch("worker-1", 10)
    assert [c.id for c in claimed] == [item.id]


async def test_concurrent_claims_never_overlap(session_factory, db, notification, clock):
    producer = QueueManager(db, clock)
    expected = {(await producer.enqueue(notification.id, priority=(i % 10) + 1)).id for i in range(30)}

    async def drain(worker_id: str) -> list[int]:
        claimed_ids = []
        async with session_factory() as session:
            manager = QueueManager(session, clock)
            while True:
                batch = await manager.claim_batch(worker_id, 3)
                if not batch:
                    return claimed_ids
                for item in batch:
                    assert item.worker_id == worker_id
                claimed_ids.extend(item.id for item in batch)

    results = await asyncio.gather(*(drain(f"worker-{n}") for n in range(6)))

    all_claimed = [item_id for ids in results for item_id in ids]
    assert len(all_claimed) == len(set(all_claimed))
    assert set(all_claimed) == expected


async def test_report_success_completes_item(queue, notification, clock):
    await queue.enqueue(notification.id)
    [item] = await queue.claim_batch("worker-1", 1)

    clock.advance(seconds=5)
    done = await queue.report_success(item.id, "worker-1")

    assert done.status == QueueStatus.COMPLETED
    assert done.processing_completed_at is not None
    assert done.attempts == 0
    assert_worker_invariant(done)
    # Terminal: a second report is ignored
    assert await queue.report_success(item.id, "worker-1") is None
    assert await queue.report_failure(item.id, "late", "worker-1") is None


async def test_reports_from_another_worker_are_ignored(queue, notification):
    await queue.enqueue(notification.id)
    [item] = await queue.claim_batch("worker-1", 1)

    assert await queue.report_success(item.id, "worker-2") is None
    assert await queue.report_failure(item.id, "boom", "worker-2") is None

    current = await queue.get(item.id)
    assert current.status == QueueStatus.PROCESSING
    assert current.worker_id == "worker-1"
    assert current.attempts == 0


async def test_reports_on_pending_item_are_ignored(queue, notification):
    item = await queue.enqueue(notification.id)

    assert await queue.report_success(item.id) is None
    assert await queue.report_failure(item.id, "boom") is None
    assert (await queue.get(item.id)).status == QueueStatus.PENDING


async def test_failure_returns_item_to_pending(queue, notification):
    await queue.enqueue(notification.id, max_attempts=3)
    [item] = await queue.claim_batch("worker-1", 1)

    failed = await queue.report_failure(item.id, "smtp 451", "worker-1")

    assert failed.status == QueueStatus.PENDING
    assert failed.attempts == 1
    assert failed.error_message == "smtp 451"
    assert_worker_invariant(failed)
    # Reclaimable immediately with the default fast retry
    assert [c.id for c in await queue.claim_batch("worker-2", 1)] == [item.id]


async def test_attempts_exhaust_to_failed(queue, notification):
    await queue.enqueue(notification.id, max_attempts=2)

    [item] = await queue.claim_batch("worker-1", 1)
    first = await queue.report_failure(item.id, "first", "worker-1")
    assert (first.status, first.attempts) == (QueueStatus.PENDING, 1)

    [item] = await queue.claim_batch("worker-1", 1)
    second = await queue.report_failure(item.id, "second", "worker-1")
    assert (second.status, second.attempts) == (QueueStatus.FAILED, 2)
    assert_worker_invariant(second)

    assert await queue.report_failure(item.id, "third", "worker-1") is None
    assert await queue.claim_batch("worker-1", 1) == []
    final = await queue.get(item.id)
    assert final.attempts == 2
    assert final.error_message == "second"


async def test_retry_then_succeed(queue, notification):
    await queue.enqueue(notification.id, max_attempts=3)

    [item] = await queue.claim_batch("worker-1", 1)
    first = await queue.report_failure(item.id, "timeout", "worker-1")
    assert (first.status, first.attempts) == (QueueStatus.PENDING, 1)
    [item] = await queue.claim_batch("worker-2", 1)
    second = await queue.report_failure(item.id, "timeout", "worker-2")
    assert (second.status, second.attempts) == (QueueStatus.PENDING, 2)
    [item] = await queue.claim_batch("worker-3", 1)
    done = await queue.report_success(item.id, "worker-3")

    assert done.status == QueueStatus.COMPLETED
    assert done.attempts == 2


async def test_claim_takes_higher_priority_first(queue, notification, clock):
    await queue.enqueue(notification.id, priority=5, scheduled_for=clock.now)
    urgent = await queue.enqueue(notification.id, priority=1, scheduled_for=clock.now)

    [claimed] = await queue.claim_batch("worker-1", 1)

    assert claimed.id == urgent.id


async def test_claim_with_explicit_time(queue, notification, clock):
    item = await queue.enqueue(notification.id, scheduled_for=clock.now + timedelta(hours=1))

    assert await queue.claim_batch("worker-1", 10, now=clock.now) == []
    claimed = await queue.claim_batch("worker-1", 10, now=clock.now + timedelta(hours=2))
    assert [c.id for c in claimed] == [item.id]


async def test_attempts_never_decrease(queue, notification, clock):
    await queue.enqueue(notification.id, max_attempts=5)
    seen = []
    for _ in range(3):
        [item] = await queue.claim_batch("worker-1", 1)
        seen.append(item.attempts)
        await queue.report_failure(item.id, "again", "worker-1")
        clock.advance(minutes=10)
        await queue.sweep_stuck(clock.now)
        seen.append((await queue.get(item.id)).attempts)

    assert seen == sorted(seen)
    assert seen[-1] == 3


async def test_failure_with_retry_at_defers_item(queue, notification, clock):
    await queue.enqueue(notification.id, max_attempts=3)
    [item] = await queue.claim_batch("worker-1", 1)
    retry_at = clock.now + timedelta(minutes=5)

    failed = await queue.report_failure(item.id, "rate limited", "worker-1", retry_at=retry_at)

    assert failed.status == QueueStatus.PENDING
    assert ensure_utc(failed.scheduled_for) == retry_at
    assert await queue.claim_batch("worker-1", 1) == []
    clock.advance(minutes=5)
    assert len(await queue.claim_batch("worker-1", 1)) == 1


async def test_retry_at_ignored_when_exhausted(queue, notification, clock):
    await queue.enqueue(notification.id, max_attempts=1)
    [item] = await queue.claim_batch("worker-1", 1)

    failed = await queue.report_failure(
        item.id, "gone", "worker-1", retry_at=clock.now + timedelta(hours=1)
    )

    assert failed.status == QueueStatus.FAILED
    assert ensure_utc(failed.scheduled_for) == clock.now


async def test_cancel_pending_and_processing(queue, notification):
    pending = await queue.enqueue(notification.id, priority=9)
    await queue.enqueue(notification.id, priority=1)
    [processing] = await queue.claim_batch("worker-1", 1)

    cancelled_pending = await queue.cancel(pending.id)
    cancelled_processing = await queue.cancel(processing.id)

    assert cancelled_pending.status == QueueStatus.CANCELLED
    assert cancelled_processing.status == QueueStatus.CANCELLED
    assert_worker_invariant(cancelled_processing)
    # Worker reporting after cancellation loses
    assert await queue.report_success(processing.id, "worker-1") is None
    assert await queue.cancel(pending.id) is None


async def test_cancel_terminal_or_missing_item(queue, notification):
    await queue.enqueue(notification.id)
    [item] = await queue.claim_batch("worker-1", 1)
    await queue.report_success(item.id, "worker-1")

    assert await queue.cancel(item.id) is None
    assert await queue.cancel(999_999) is None
    assert (await queue.get(item.id)).status == QueueStatus.COMPLETED


async def test_sweep_recovers_expired_leases_only(queue, notification, clock):
    await queue.enqueue(notification.id, priority=1)
    await queue.enqueue(notification.id, priority=2)
    [stale] = await queue.claim_batch("crashed-worker", 1)

    clock.advance(minutes=10)
    [fresh] = await queue.claim_batch("live-worker", 1)

    swept = await queue.sweep_stuck(clock.now - timedelta(minutes=5))

    assert swept == 1
    recovered = await queue.get(stale.id)
    assert recovered.status == QueueStatus.PENDING
    assert recovered.attempts == 0
    assert recovered.processing_started_at is None
    assert_worker_invariant(recovered)
    assert (await queue.get(fresh.id)).worker_id == "live-worker"

    [reclaimed] = await queue.claim_batch("worker-2", 1)
    assert reclaimed.id == stale.id
    # The crashed worker's late report no longer owns the item
    assert await queue.report_success(stale.id, "crashed-worker") is None


async def test_sweep_without_stuck_items(queue, notification, clock):
    await queue.enqueue(notification.id)
    assert await queue.sweep_stuck(clock.now) == 0


async def test_list_stuck_and_queue_length(queue, notification, clock):
    await queue.enqueue(notification.id)
    await queue.enqueue(notification.id)
    [item] = await queue.claim_batch("worker-1", 1)
    clock.advance(minutes=10)

    stuck = await queue.list_stuck(clock.now - timedelta(minutes=5))

    assert [s.id for s in stuck] == [item.id]
    assert await queue.queue_length() == 1


async def test_stats_counts_partition_total(queue, notification, clock):
    window_start = clock.now - timedelta(minutes=1)
    for priority in range(1, 6):
        await queue.enqueue(notification.id, priority=priority)
    claimed = await queue.claim_batch("worker-1", 3)
    await queue.report_success(claimed[0].id, "worker-1")
    await queue.report_failure(claimed[1].id, "boom", "worker-1")
    pending = await queue.list_by_status(QueueStatus.PENDING)
    await queue.cancel(pending[0].id)

    stats = await queue.stats(window_start, clock.now)

    assert stats.total == 5
    assert stats.total == (
        stats.pending + stats.processing + stats.completed + stats.failed + stats.cancelled
    )
    assert stats.completed == 1
    assert stats.processing == 1
    assert stats.cancelled == 1
    assert stats.pending == 2
    assert stats.average_attempts == pytest.approx(1 / 5)


async def test_stats_window_and_processing_time(queue, notification, clock):
    await queue.enqueue(notification.id)
    clock.advance(hours=2)
    window_start = clock.now
    await queue.enqueue(notification.id, priority=1)
    [item] = await queue.claim_batch("worker-1", 1)
    clock.advance(seconds=30)
    await queue.report_success(item.id, "worker-1")

    stats = await queue.stats(window_start, clock.now)

    assert stats.total == 1
    assert stats.completed == 1
    assert stats.average_processing_time_seconds == pytest.approx(30.0)


async def test_stats_on_empty_window(queue, clock):
    stats = await queue.stats(clock.now - timedelta(hours=1), clock.now)
    assert stats.total == 0
    assert stats.average_attempts is None
    assert stats.average_processing_time_seconds is None


async def test_purge_removes_only_old_terminal_items(queue, notification, clock):
    clock.advance(days=-40)
    old_done = await queue.enqueue(notification.id, priority=1)
    old_pending = await queue.enqueue(notification.id, priority=2)
    [item] = await queue.claim_batch("worker-1", 1)
    await queue.report_success(item.id, "worker-1")
    clock.advance(days=40)
    recent = await queue.enqueue(notification.id, priority=1)
    [recent_item] = await queue.claim_batch("worker-1", 1)
    await queue.report_success(recent_item.id, "worker-1")

    purged = await queue.purge_old(clock.now - timedelta(days=30))

    assert purged == 1
    assert await queue.get(old_done.id) is None
    assert await queue.get(old_pending.id) is not None
    assert await queue.get(recent.id) is not None


async def test_requeue_failed_item(queue, notification):
    await queue.enqueue(notification.id, priority=2, max_attempts=1, metadata={"email_address": "x@y.z"})
    [item] = await queue.claim_batch("worker-1", 1)
    await queue.report_failure(item.id, "bounced", "worker-1")

    fresh = await queue.requeue(item.id, max_attempts=4)

    assert fresh.id != item.id
    assert fresh.status == QueueStatus.PENDING
    assert fresh.attempts == 0
    assert fresh.max_attempts == 4
    assert fresh.priority == 2
    assert fresh.queue_metadata == {"email_address": "x@y.z"}
    assert (await queue.get(item.id)).status == QueueStatus.FAILED


async def test_requeue_rejects_non_terminal_and_completed(queue, notification):
    pending = await queue.enqueue(notification.id, priority=9)
    await queue.enqueue(notification.id, priority=1)
    [item] = await queue.claim_batch("worker-1", 1)
    await queue.report_success(item.id, "worker-1")

    assert await queue.requeue(pending.id) is None
    assert await queue.requeue(item.id) is None
    assert await queue.requeue(999_999) is None


async def test_list_by_notification(queue, make_notification):
    first = await make_notification()
    second = await make_notification()
    a = await queue.enqueue(first.id)
    b = await queue.enqueue(first.id)
    await queue.enqueue(second.id)

    items = await queue.list_by_notification(first.id)

    assert {item.id for item in items} == {a.id, b.id}


async def test_stats_accepts_timedelta_window(queue, notification, clock):
    await queue.enqueue(notification.id)
    clock.advance(hours=2)
    await queue.enqueue(notification.id, priority=1)

    stats = await queue.stats(timedelta(hours=1))

    assert stats.total == 1
    assert ensure_utc(stats.window_end) == clock.now
    assert ensure_utc(stats.window_start) == clock.now - timedelta(hours=1)


async def test_renew_lease_restarts_processing_clock(queue, notification, clock):
    await queue.enqueue(notification.id)
    [item] = await queue.claim_batch("worker-1", 1)

    clock.advance(seconds=90)
    renewed = await queue.renew_lease(item.id, "worker-1")

    assert renewed.status == QueueStatus.PROCESSING
    assert renewed.worker_id == "worker-1"
    assert ensure_utc(renewed.processing_started_at) == clock.now
    # A sweep for leases older than the renewal leaves it alone
    assert await queue.sweep_stuck(clock.now - timedelta(seconds=1)) == 0


async def test_renew_lease_requires_ownership(queue, notification, clock):
    pending = await queue.enqueue(notification.id)
    assert await queue.renew_lease(pending.id, "worker-1") is None

    [item] = await queue.claim_batch("worker-1", 1)
    assert await queue.renew_lease(item.id, "worker-2") is None

    clock.advance(seconds=301)
    await queue.sweep_stuck(clock.now - timedelta(seconds=300))
    assert await queue.renew_lease(item.id, "worker-1") is None
    assert (await queue.get(item.id)).status == QueueStatus.PENDING


@pytest.mark.parametrize(
    "status, terminal",
    [
        (QueueStatus.PENDING, False),
        (QueueStatus.PROCESSING, False),
        (QueueStatus.COMPLETED, True),
        (QueueStatus.FAILED, True),
        (QueueStatus.CANCELLED, True),
    ],
)
def test_status_is_terminal(status, terminal):
    assert status.is_terminal is terminal
