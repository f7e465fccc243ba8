"""Tests for push dispatch, the dispatch log and receipt reconciliation."""
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from drivesync.models import MobileSession, PushNotification
from drivesync.services.push_dispatcher import (
    PushDispatchEngine,
    NO_DEVICES_ERROR,
    build_template,
    derive_status,
    push_history,
)
from drivesync.services.push_gateway import PushMessage


def token(i):
    return f"ExponentPushToken[{i:03d}]"


@pytest.fixture
def dispatcher(gateway, session_factory):
    return PushDispatchEngine(gateway=gateway, session_factory=session_factory)


async def _records(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(PushNotification).order_by(PushNotification.id))
        return list(result.scalars().all())


async def _tokens_in_db(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(MobileSession.push_token).where(MobileSession.push_token.is_not(None)))
        return set(result.scalars().all())


def test_derive_status():
    assert derive_status(3, 0) == "sent"
    assert derive_status(0, 0) == "sent"
    assert derive_status(2, 1) == "partial"
    assert derive_status(0, 4) == "failed"


def test_message_payload_uses_gateway_field_names():
    payload = PushMessage(to="tok", title="t", body="b", channel_id="bookings").to_payload()
    assert payload == {"to": "tok", "title": "t", "body": "b", "sound": "default", "channelId": "bookings"}


async def test_broadcast_with_one_unregistered_device(dispatcher, fake_expo, make_session, session_factory):
    for i in range(150):
        await make_session(user_id=f"user-{i}", push_token=token(i))

    def ticket_for(message, index):
        if message["to"] == token(42):
            return {
                "status": "error",
                "message": "not a registered push notification recipient",
                "details": {"error": "DeviceNotRegistered"},
            }
        return {"status": "ok", "id": f"r-{message['to']}"}

    fake_expo.ticket_for = ticket_for

    result = await dispatcher.dispatch_to_all("Hej", "Info")

    assert result.sent == 149
    assert result.failed == 1
    assert [len(call) for call in fake_expo.send_calls] == [100, 50]

    records = await _records(session_factory)
    assert len(records) == 1
    assert records[0].target_type == "all"
    assert records[0].target_id is None
    assert records[0].status == "partial"
    assert records[0].sent_count + records[0].failed_count == 150
    assert len(records[0].receipt_ids) == 149

    fake_expo.receipts = {rid: {"status": "ok"} for rid in records[0].receipt_ids}
    summary = await dispatcher.reconcile_receipts()

    assert summary["cleaned"] == 1
    remaining = await _tokens_in_db(session_factory)
    assert len(remaining) == 149
    assert token(42) not in remaining


async def test_failed_batch_does_not_abort_the_rest(dispatcher, fake_expo, make_session, session_factory):
    for i in range(250):
        await make_session(user_id=f"user-{i}", push_token=token(i))
    fake_expo.fail_send_call = {2}

    result = await dispatcher.dispatch_to_all("Hej", "Info")

    assert len(fake_expo.send_calls) == 3
    assert result.sent == 150
    assert result.failed == 100
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Batch 2/3 failed")

    records = await _records(session_factory)
    assert records[0].status == "partial"
    assert records[0].failed_count == 100


async def test_unreachable_gateway_counts_every_message_failed(dispatcher, fake_expo, make_session, session_factory):
    await make_session(user_id="user-1", push_token=token(1))
    await make_session(user_id="user-1", push_token=token(2), device_id="tablet")
    fake_expo.fail_send_call = {1}

    result = await dispatcher.dispatch_to_user("user-1", "Hej", "Info")

    assert result.sent == 0
    assert result.failed == 2
    records = await _records(session_factory)
    assert records[0].status == "failed"
    assert records[0].target_id == "user-1"


async def test_no_targets_skips_gateway(dispatcher, fake_expo, make_session, session_factory):
    await make_session(user_id="user-1", push_token=None)
    await make_session(user_id="user-1", push_token=token(1), is_active=False)

    result = await dispatcher.dispatch_to_user("user-1", "Hej", "Info")

    assert (result.sent, result.failed) == (0, 0)
    assert result.errors == [NO_DEVICES_ERROR]
    assert fake_expo.send_calls == []
    assert await _records(session_factory) == []


async def test_platform_filter(dispatcher, fake_expo, make_session):
    await make_session(user_id="a", platform="ios", push_token=token(1))
    await make_session(user_id="b", platform="android", push_token=token(2))

    result = await dispatcher.dispatch_to_platform("android", "Hej", "Info")

    assert result.sent == 1
    assert [m["to"] for m in fake_expo.send_calls[0]] == [token(2)]

    result = await dispatcher.dispatch_to_platform("ios", "Hej", "Info")
    assert result.sent == 1


async def test_device_without_active_session_is_a_failure(dispatcher, fake_expo, make_session, session_factory):
    await make_session(user_id="user-1", push_token=token(7), is_active=False)

    result = await dispatcher.dispatch_to_device(token(7), "Hej", "Info")

    assert result.sent == 0
    assert result.failed == 1
    assert fake_expo.send_calls == []
    records = await _records(session_factory)
    assert records[0].target_type == "device"
    assert records[0].status == "failed"


async def test_device_dispatch_passes_channel(dispatcher, fake_expo, make_session):
    await make_session(push_token=token(1))

    result = await dispatcher.dispatch_to_device(token(1), "Hej", "Info", {"k": "v"}, channel="bookings")

    assert result.sent == 1
    message = fake_expo.send_calls[0][0]
    assert message["channelId"] == "bookings"
    assert message["data"] == {"k": "v"}


async def test_log_failure_does_not_fail_dispatch(dispatcher, make_session):
    await make_session(push_token=token(1))

    with patch("drivesync.services.push_dispatcher.retry_on_lock", side_effect=RuntimeError("disk full")):
        result = await dispatcher.dispatch_to_all("Hej", "Info")

    assert result.sent == 1
    assert result.failed == 0


async def test_receipt_reports_unregistered_device(dispatcher, fake_expo, make_session, session_factory):
    await make_session(user_id="a", push_token=token(1))
    await make_session(user_id="b", push_token=token(2))
    await dispatcher.dispatch_to_all("Hej", "Info")

    fake_expo.receipts = {
        f"ticket-{token(1)}": {"status": "ok"},
        f"ticket-{token(2)}": {"status": "error", "message": "gone", "details": {"error": "DeviceNotRegistered"}},
    }

    summary = await dispatcher.reconcile_receipts()

    assert summary == {"checked": 2, "cleaned": 1, "pending": 0}
    assert await _tokens_in_db(session_factory) == {token(1)}

    async with session_factory() as db:
        sessions = (await db.execute(select(MobileSession))).scalars().all()
        assert all(s.is_active for s in sessions)

    record = (await _records(session_factory))[0]
    assert record.receipts_checked_at is not None
    assert record.sent_count == 2
    assert record.failed_count == 0
    assert record.diagnostics[-1]["receiptErrors"][0]["error"] == "DeviceNotRegistered"

    # Second run has nothing left to check
    again = await dispatcher.reconcile_receipts()
    assert again == {"checked": 0, "cleaned": 0, "pending": 0}


async def test_transient_receipt_failure_retries_next_run(dispatcher, fake_expo, make_session, session_factory):
    await make_session(push_token=token(1))
    await dispatcher.dispatch_to_all("Hej", "Info")
    fake_expo.fail_receipts = True

    summary = await dispatcher.reconcile_receipts()

    assert summary["pending"] == 1
    record = (await _records(session_factory))[0]
    assert record.receipts_checked_at is None

    fake_expo.fail_receipts = False
    fake_expo.receipts = {record.receipt_ids[0]: {"status": "ok"}}
    summary = await dispatcher.reconcile_receipts()

    assert summary["pending"] == 0
    assert (await _records(session_factory))[0].receipts_checked_at is not None


async def test_reregistered_token_survives_later_runs(dispatcher, fake_expo, make_session, session_factory):
    await make_session(user_id="a", push_token=token(1))
    await make_session(user_id="b", push_token=token(2))

    def ticket_for(message, index):
        if message["to"] == token(1):
            return {"status": "error", "message": "gone", "details": {"error": "DeviceNotRegistered"}}
        return {"status": "ok", "id": f"ticket-{message['to']}"}

    fake_expo.ticket_for = ticket_for
    await dispatcher.dispatch_to_all("Hej", "Info")

    # Receipt for token 2 not ready yet, so the record stays unchecked
    first = await dispatcher.reconcile_receipts()
    assert first["cleaned"] == 1
    assert first["pending"] == 1

    fresh = await make_session(user_id="c", push_token=token(1), device_id="new-phone")

    second = await dispatcher.reconcile_receipts()
    assert second["cleaned"] == 0
    assert second["pending"] == 1

    async with session_factory() as db:
        assert (await db.get(MobileSession, fresh.id)).push_token == token(1)


async def test_reconcile_ignores_records_outside_window(dispatcher, fake_expo, session_factory):
    async with session_factory() as db:
        db.add(PushNotification(
            target_type="all",
            title="old",
            body="old",
            status="sent",
            sent_count=1,
            failed_count=0,
            receipt_ids=["r-old"],
            receipt_tokens={"r-old": token(1)},
            dead_tokens=[],
            sent_at=datetime.utcnow() - timedelta(days=3),
        ))
        await db.commit()

    summary = await dispatcher.reconcile_receipts()

    assert summary == {"checked": 0, "cleaned": 0, "pending": 0}
    assert fake_expo.receipt_calls == []


async def test_push_history_filters_by_target_type(dispatcher, make_session, db_session):
    await make_session(user_id="user-1", push_token=token(1))
    await dispatcher.dispatch_to_all("Alla", "Info")
    await dispatcher.dispatch_to_user("user-1", "Du", "Info")

    records, total = await push_history(db_session)
    assert total == 2

    records, total = await push_history(db_session, target_type="user")
    assert total == 1
    assert records[0].title == "Du"


def test_build_template():
    message = build_template("bookingCancelled", {"date": "12 maj", "reason": "Sjuk lärare"})
    assert message["body"].endswith("Sjuk lärare")
    assert message["data"]["notificationType"] == "booking_cancelled"

    with pytest.raises(ValueError):
        build_template("nope")
