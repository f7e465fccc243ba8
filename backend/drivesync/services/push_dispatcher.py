"""Push dispatch engine - fans notifications out through the push gateway.

Every dispatch call resolves its target tokens, sends them in gateway-sized
batches and writes exactly one PushNotification summarizing the call. A failed
batch only fails its own messages; callers inspect ``failed`` on the result
instead of catching exceptions.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import async_session
from ..models import PushNotification
from ..utils.db_utils import retry_on_lock
from . import session_registry
from .push_gateway import (
    BATCH_SIZE,
    DEVICE_NOT_REGISTERED,
    ExpoPushClient,
    PushGatewayError,
    PushMessage,
    PushTicket,
)

logger = logging.getLogger(__name__)

TARGET_TYPES = ("all", "user", "device", "platform")

# Record statuses
STATUS_SENT = "sent"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"

NO_DEVICES_ERROR = "No active devices with push tokens"


@dataclass
class DispatchResult:
    """Aggregate outcome of one dispatch call."""
    sent: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    tickets: List[PushTicket] = field(default_factory=list)
    receipt_tokens: Dict[str, str] = field(default_factory=dict)
    dead_tokens: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "errors": self.errors or None,
        }


def derive_status(sent: int, failed: int) -> str:
    """sent = no failures, failed = no successes, partial otherwise."""
    if failed == 0:
        return STATUS_SENT
    if sent > 0:
        return STATUS_PARTIAL
    return STATUS_FAILED


def chunked(items: list, size: int = BATCH_SIZE) -> List[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class PushDispatchEngine:
    """Resolves targets, batches sends and keeps the dispatch log."""

    def __init__(self, gateway: Optional[ExpoPushClient] = None, session_factory=None):
        self.gateway = gateway or ExpoPushClient()
        self._session_factory = session_factory or async_session

    # ─── Public dispatch operations ─────────────────────────────────────

    async def dispatch_to_user(
        self,
        user_id: str,
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> DispatchResult:
        """Send to every active device of one user."""
        async with self._session_factory() as db:
            tokens = await session_registry.resolve_push_tokens(db, user_id=user_id)

        if not tokens:
            logger.info(f"No push targets for user {user_id}")
            return DispatchResult(errors=[NO_DEVICES_ERROR])

        return await self._dispatch(tokens, title, body, data, target_type="user", target_id=user_id)

    async def dispatch_to_device(
        self,
        token: str,
        title: str,
        body: str,
        data: Optional[dict] = None,
        channel: Optional[str] = None,
    ) -> DispatchResult:
        """Send to a single push token.

        A token that is not registered to an active session counts as a
        failed delivery and is never handed to the gateway.
        """
        async with self._session_factory() as db:
            active = await session_registry.active_token_set(db, [token])

        if token not in active:
            logger.warning(f"Push token {token[:16]}... has no active session, not sending")
            result = DispatchResult(
                failed=1,
                errors=[f"Push token {token[:16]}... is not registered to an active session"],
            )
            await self._log_dispatch("device", token, title, body, data, result)
            return result

        return await self._dispatch(
            [token], title, body, data, target_type="device", target_id=token, channel=channel,
        )

    async def dispatch_to_all(
        self,
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> DispatchResult:
        """Broadcast to every active device."""
        async with self._session_factory() as db:
            tokens = await session_registry.resolve_push_tokens(db)

        if not tokens:
            logger.info("No push targets for broadcast")
            return DispatchResult(errors=[NO_DEVICES_ERROR])

        return await self._dispatch(tokens, title, body, data, target_type="all", target_id=None)

    async def dispatch_to_platform(
        self,
        platform: str,
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> DispatchResult:
        """Send to every active device on one platform."""
        async with self._session_factory() as db:
            tokens = await session_registry.resolve_push_tokens(db, platform=platform)

        if not tokens:
            logger.info(f"No push targets on platform {platform}")
            return DispatchResult(errors=[f"No active {platform} devices"])

        return await self._dispatch(tokens, title, body, data, target_type="platform", target_id=platform)

    # ─── Sending ────────────────────────────────────────────────────────

    async def _dispatch(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Optional[dict],
        target_type: str,
        target_id: Optional[str],
        channel: Optional[str] = None,
    ) -> DispatchResult:
        messages = [
            PushMessage(to=token, title=title, body=body, data=data, channel_id=channel)
            for token in tokens
        ]
        result = await self.send_messages(messages)
        await self._log_dispatch(target_type, target_id, title, body, data, result)
        logger.info(
            f"Push to {target_type}{f' {target_id}' if target_id and target_type != 'device' else ''}: "
            f"{result.sent} sent, {result.failed} failed"
        )
        return result

    async def send_messages(self, messages: List[PushMessage]) -> DispatchResult:
        """Send messages in sequential batches, isolating batch-level failures."""
        result = DispatchResult()
        batches = chunked(messages)

        for index, batch in enumerate(batches, start=1):
            try:
                tickets = await self.gateway.send_batch(batch)
            except PushGatewayError as e:
                logger.warning(f"Push batch {index}/{len(batches)} failed: {e}")
                result.errors.append(f"Batch {index}/{len(batches)} failed: {e}")
                result.failed += len(batch)
                continue
            except Exception as e:
                logger.error(f"Unexpected error sending push batch {index}/{len(batches)}: {e}")
                result.errors.append(f"Batch {index}/{len(batches)} failed: {e}")
                result.failed += len(batch)
                continue

            for message, ticket in zip(batch, tickets):
                result.tickets.append(ticket)
                if ticket.ok:
                    result.sent += 1
                    if ticket.id:
                        result.receipt_tokens[ticket.id] = message.to
                else:
                    result.failed += 1
                    result.errors.append(ticket.message or f"Push error: {ticket.error}")
                    if ticket.error == DEVICE_NOT_REGISTERED:
                        result.dead_tokens.append(message.to)

        return result

    async def _log_dispatch(
        self,
        target_type: str,
        target_id: Optional[str],
        title: str,
        body: str,
        data: Optional[dict],
        result: DispatchResult,
    ) -> None:
        """Write the dispatch summary. Failures here never reach the caller."""
        try:
            async with self._session_factory() as db:
                db.add(PushNotification(
                    target_type=target_type,
                    target_id=target_id,
                    title=title,
                    body=body,
                    data=data or {},
                    status=derive_status(result.sent, result.failed),
                    sent_count=result.sent,
                    failed_count=result.failed,
                    receipt_ids=list(result.receipt_tokens.keys()),
                    receipt_tokens=dict(result.receipt_tokens),
                    dead_tokens=list(result.dead_tokens),
                    diagnostics=[],
                    sent_at=datetime.utcnow(),
                ))
                await retry_on_lock(db.commit)
        except Exception as e:
            logger.error(f"Failed to log push notification: {e}")

    # ─── Receipt reconciliation ─────────────────────────────────────────

    async def reconcile_receipts(self) -> dict:
        """Check delivery receipts of recent dispatches and drop dead registrations.

        Safe to run repeatedly. Receipts the gateway does not return (not ready
        yet, or the request failed) leave their record unchecked for the next
        run.
        """
        cutoff = datetime.utcnow() - timedelta(hours=settings.receipt_check_window_hours)

        async with self._session_factory() as db:
            rows = await db.execute(
                select(PushNotification)
                .where(
                    PushNotification.receipts_checked_at.is_(None),
                    PushNotification.sent_at >= cutoff,
                )
                .order_by(PushNotification.sent_at)
            )
            records = [
                r for r in rows.scalars().all()
                if r.status in (STATUS_SENT, STATUS_PARTIAL) or r.dead_tokens
            ]
            if not records:
                return {"checked": 0, "cleaned": 0, "pending": 0}

            receipt_ids = [rid for r in records for rid in (r.receipt_ids or [])]
            receipts = {}
            for batch in chunked(receipt_ids):
                try:
                    receipts.update(await self.gateway.get_receipts(batch))
                except PushGatewayError as e:
                    logger.warning(f"Receipt check failed, will retry next run: {e}")

            cleared_tokens = set()
            cleaned = 0
            pending = 0

            for record in records:
                # Tokens this record already cleared on an earlier run; a token
                # re-registered since then belongs to a new device
                already = {
                    token
                    for entry in record.diagnostics or []
                    for token in entry.get("clearedTokens", [])
                }
                dead = list(record.dead_tokens or [])
                notes = []
                missing = 0

                for receipt_id in record.receipt_ids or []:
                    receipt = receipts.get(receipt_id)
                    if receipt is None:
                        missing += 1
                        continue
                    if receipt.ok:
                        continue
                    notes.append({
                        "receiptId": receipt_id,
                        "error": receipt.error,
                        "message": receipt.message,
                    })
                    token = (record.receipt_tokens or {}).get(receipt_id)
                    if receipt.error == DEVICE_NOT_REGISTERED and token:
                        dead.append(token)

                to_clear = [token for token in dict.fromkeys(dead) if token not in already]
                for token in to_clear:
                    if token in cleared_tokens:
                        continue
                    cleared_tokens.add(token)
                    cleaned += await session_registry.clear_push_token(db, token)

                if missing:
                    pending += 1
                    if to_clear:
                        record.diagnostics = list(record.diagnostics or []) + [{
                            "checkedAt": datetime.utcnow().isoformat(),
                            "clearedTokens": to_clear,
                            "pendingReceipts": missing,
                        }]
                    continue

                record.diagnostics = list(record.diagnostics or []) + [{
                    "checkedAt": datetime.utcnow().isoformat(),
                    "receiptErrors": notes,
                    "clearedTokens": to_clear,
                }]
                record.receipts_checked_at = datetime.utcnow()

            await retry_on_lock(db.commit)

        logger.info(f"Receipt reconciliation: {len(receipt_ids)} checked, {cleaned} cleaned, {pending} pending")
        return {"checked": len(receipt_ids), "cleaned": cleaned, "pending": pending}


# ─── History ────────────────────────────────────────────────────────────────

async def push_history(
    db: AsyncSession,
    page: int = 1,
    limit: int = 25,
    target_type: Optional[str] = None,
) -> tuple[List[PushNotification], int]:
    """Paginated dispatch log, newest first."""
    count_stmt = select(func.count(PushNotification.id))
    list_stmt = select(PushNotification).order_by(PushNotification.sent_at.desc())
    if target_type in TARGET_TYPES:
        count_stmt = count_stmt.where(PushNotification.target_type == target_type)
        list_stmt = list_stmt.where(PushNotification.target_type == target_type)

    total = (await db.execute(count_stmt)).scalar() or 0
    result = await db.execute(list_stmt.limit(limit).offset((page - 1) * limit))
    return list(result.scalars().all()), total


# ─── Templates ──────────────────────────────────────────────────────────────

PUSH_TEMPLATES = {
    "bookingReminder": lambda p: {
        "title": "Påminnelse om körlektion",
        "body": f"Din lektion med {p.get('instructorName', '')} börjar {p.get('bookingTime', '')}",
        "data": {"notificationType": "booking_reminder"},
        "channelId": "bookings",
    },
    "bookingConfirmed": lambda p: {
        "title": "Bokning bekräftad",
        "body": f"Din körlektion den {p.get('date', '')} är nu bekräftad",
        "data": {"notificationType": "booking_confirmed"},
        "channelId": "bookings",
    },
    "bookingCancelled": lambda p: {
        "title": "Lektion avbokad",
        "body": (
            f"Din lektion den {p.get('date', '')} har avbokats: {p['reason']}"
            if p.get("reason")
            else f"Din lektion den {p.get('date', '')} har avbokats"
        ),
        "data": {"notificationType": "booking_cancelled"},
        "channelId": "bookings",
    },
    "lessonAvailable": lambda p: {
        "title": "Ny lektionstid tillgänglig",
        "body": f"En ledig tid finns den {p.get('date', '')}. Boka nu!",
        "data": {"notificationType": "lesson_available"},
        "channelId": "lessons",
    },
    "paymentReminder": lambda p: {
        "title": "Betalningspåminnelse",
        "body": f"Faktura på {p.get('amount', 0)} kr förfaller {p.get('dueDate', '')}",
        "data": {"notificationType": "payment_reminder"},
        "channelId": "payments",
    },
    "paymentReceived": lambda p: {
        "title": "Betalning mottagen",
        "body": f"Vi har mottagit din betalning på {p.get('amount', 0)} kr. Tack!",
        "data": {"notificationType": "payment_received"},
        "channelId": "payments",
    },
    "adminBroadcast": lambda p: {
        "title": "Meddelande från trafikskolan",
        "body": p.get("message", ""),
        "data": {"notificationType": "admin_broadcast"},
        "channelId": "general",
    },
}


def build_template(name: str, params: Optional[Dict[str, Any]] = None) -> dict:
    """Render a predefined notification. Raises ValueError for unknown names."""
    if name not in PUSH_TEMPLATES:
        raise ValueError(f"Unknown template. Available: {', '.join(PUSH_TEMPLATES)}")
    return PUSH_TEMPLATES[name](params or {})


# Global instance
push_dispatcher = PushDispatchEngine()
