"""Tests for the offline sync queue."""
import json
from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy import select

from drivesync.models import SyncOperation, MobileSession
from drivesync.services.session_registry import SessionInactiveError
from drivesync.services.sync_queue import (
    SyncQueueProcessor,
    DomainServiceClient,
    SyncConfigurationError,
)


class Recorder:
    """Handlers that record the order they were called in."""

    def __init__(self):
        self.applied = []
        self.failing = set()

    def handler(self, kind):
        async def _apply(op):
            self.applied.append((kind, op.entity_id))
            if kind in self.failing:
                raise RuntimeError(f"{kind} rejected")
            return {"ok": True, "entityId": op.entity_id}
        return _apply

    def handlers(self, *kinds):
        return {kind: self.handler(kind) for kind in kinds}


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def processor(recorder, session_factory):
    return SyncQueueProcessor(
        handlers=recorder.handlers("booking_create", "feedback_submit", "lesson_progress", "quiz_attempt"),
        session_factory=session_factory,
    )


async def _operation(session_factory, op_id):
    async with session_factory() as db:
        return await db.get(SyncOperation, op_id)


async def test_booking_synced_and_exhausted_feedback_fails(processor, recorder, make_session, session_factory):
    session = await make_session()
    booking = await processor.queue_operation(session.id, "booking_create", "booking", {"slot": "09:00"})
    feedback = await processor.queue_operation(session.id, "feedback_submit", "feedback", {"stars": 5})

    async with session_factory() as db:
        row = await db.get(SyncOperation, feedback.id)
        row.retry_count = 2
        row.max_retries = 3
        await db.commit()

    recorder.failing.add("feedback_submit")
    results = await processor.process_queue(session.id)

    assert [r["success"] for r in results] == [True, False]
    assert results[0]["result"] == {"ok": True, "entityId": None}
    assert results[1]["error"] == "feedback_submit rejected"

    booking_row = await _operation(session_factory, booking.id)
    feedback_row = await _operation(session_factory, feedback.id)
    assert booking_row.status == "synced"
    assert booking_row.synced_at is not None
    assert feedback_row.status == "failed"
    assert feedback_row.retry_count == 3
    assert feedback_row.error_details["type"] == "RuntimeError"

    status = await processor.get_sync_status(session.id)
    assert status["pendingCount"] == 0
    assert status["failedCount"] == 1
    assert status["lastSyncAt"] is not None


async def test_operations_apply_in_creation_order(processor, recorder, make_session):
    session = await make_session()
    for i in range(5):
        await processor.queue_operation(session.id, "lesson_progress", "lesson", entity_id=f"lesson-{i}")

    await processor.process_queue(session.id)

    assert [entity for _, entity in recorder.applied] == [f"lesson-{i}" for i in range(5)]


async def test_failure_returns_to_pending_until_retries_run_out(processor, recorder, make_session, session_factory):
    session = await make_session()
    op = await processor.queue_operation(session.id, "quiz_attempt", "quiz", max_retries=2)
    recorder.failing.add("quiz_attempt")

    await processor.process_queue(session.id)
    row = await _operation(session_factory, op.id)
    assert (row.status, row.retry_count) == ("pending", 1)

    await processor.process_queue(session.id)
    row = await _operation(session_factory, op.id)
    assert (row.status, row.retry_count) == ("failed", 2)

    # Terminal: a later run does not touch it
    recorder.failing.clear()
    assert await processor.process_queue(session.id) == []
    row = await _operation(session_factory, op.id)
    assert row.status == "failed"
    assert row.retry_count == 2


async def test_unknown_operation_follows_retry_path(processor, make_session, session_factory):
    session = await make_session()
    op = await processor.queue_operation(session.id, "teleport", "vehicle", max_retries=1)

    results = await processor.process_queue(session.id)

    assert results[0]["success"] is False
    assert "Unknown operation" in results[0]["error"]
    assert (await _operation(session_factory, op.id)).status == "failed"


async def test_interrupted_syncing_rows_are_picked_up(processor, recorder, make_session, session_factory):
    session = await make_session()
    op = await processor.queue_operation(session.id, "booking_create", "booking")
    async with session_factory() as db:
        row = await db.get(SyncOperation, op.id)
        row.status = "syncing"
        await db.commit()

    # Still waiting as far as the client is concerned
    assert (await processor.get_sync_status(session.id))["pendingCount"] == 1

    results = await processor.process_queue(session.id)

    assert results[0]["success"] is True
    assert (await _operation(session_factory, op.id)).status == "synced"
    assert (await processor.get_sync_status(session.id))["pendingCount"] == 0


async def test_session_locks_released_after_runs(processor, make_session):
    session = await make_session()
    inactive = await make_session(user_id="gone", is_active=False)
    await processor.queue_operation(session.id, "booking_create", "booking")

    await processor.process_queue(session.id)
    with pytest.raises(SessionInactiveError):
        await processor.process_queue(inactive.id)

    assert len(processor._session_locks) == 0


async def test_inactive_session_rejected(processor, make_session):
    session = await make_session(is_active=False)

    with pytest.raises(SessionInactiveError):
        await processor.queue_operation(session.id, "booking_create", "booking")
    with pytest.raises(SessionInactiveError):
        await processor.process_queue(session.id)


async def test_queues_are_per_session(processor, recorder, make_session):
    mine = await make_session(user_id="a")
    theirs = await make_session(user_id="b")
    await processor.queue_operation(mine.id, "booking_create", "booking", entity_id="mine")
    await processor.queue_operation(theirs.id, "booking_create", "booking", entity_id="theirs")

    results = await processor.process_queue(mine.id)

    assert len(results) == 1
    assert recorder.applied == [("booking_create", "mine")]
    assert (await processor.get_sync_status(theirs.id))["pendingCount"] == 1


async def test_sync_stamps_session_even_on_failure(processor, recorder, make_session, session_factory):
    session = await make_session()
    await processor.queue_operation(session.id, "feedback_submit", "feedback")
    recorder.failing.add("feedback_submit")

    await processor.process_queue(session.id)

    async with session_factory() as db:
        row = await db.get(MobileSession, session.id)
        assert row.last_sync_at is not None


async def test_prune_removes_only_old_terminal_rows(processor, make_session, session_factory):
    session = await make_session()
    old = datetime.utcnow() - timedelta(days=40)
    async with session_factory() as db:
        for status, updated in [("synced", old), ("failed", old), ("pending", old), ("synced", datetime.utcnow())]:
            db.add(SyncOperation(
                session_id=session.id,
                user_id=session.user_id,
                operation="booking_create",
                entity_type="booking",
                status=status,
                created_at=updated,
                updated_at=updated,
            ))
        await db.commit()

    pruned = await processor.prune(retention_days=30)

    assert pruned == 2
    async with session_factory() as db:
        statuses = sorted((await db.execute(select(SyncOperation.status))).scalars().all())
    assert statuses == ["pending", "synced"]


async def test_processing_requires_configured_domain_services(make_session, session_factory):
    session = await make_session()
    processor = SyncQueueProcessor(
        session_factory=session_factory,
        domain_client=DomainServiceClient(base_url=""),
    )

    with pytest.raises(SyncConfigurationError):
        await processor.process_queue(session.id)


async def test_domain_client_posts_operation(make_session, session_factory):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/api/feedback":
            return httpx.Response(422, text="invalid rating")
        return httpx.Response(201, json={"id": "booking-9"})

    client = DomainServiceClient(
        base_url="https://domain.test/api/",
        token="svc-token",
        transport=httpx.MockTransport(handler),
    )
    processor = SyncQueueProcessor(session_factory=session_factory, domain_client=client)
    session = await make_session(user_id="student-7")
    booking = await processor.queue_operation(session.id, "booking_create", "booking", {"slot": "09:00"}, entity_id="b1")
    await processor.queue_operation(session.id, "feedback_submit", "feedback", {"stars": 9})

    results = await processor.process_queue(session.id)

    assert results[0] == {"id": booking.id, "success": True, "result": {"id": "booking-9"}}
    assert results[1]["success"] is False
    assert "422" in results[1]["error"]

    first = seen[0]
    assert str(first.url) == "https://domain.test/api/bookings"
    assert first.headers["Authorization"] == "Bearer svc-token"
    assert first.headers["X-User-Id"] == "student-7"
    assert first.headers["X-Sync-Operation-Id"] == booking.id
    assert json.loads(first.content) == {"entityType": "booking", "entityId": "b1", "payload": {"slot": "09:00"}}
