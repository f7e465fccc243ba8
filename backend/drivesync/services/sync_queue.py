"""Offline sync queue - durable storage and replay of client mutations.

Operation lifecycle::

    pending -> syncing -> synced
                       -> pending (retry_count + 1, retries remain)
                       -> failed  (retry_count == max_retries, terminal)

Within one session operations are applied strictly in creation order, one at
a time. Different sessions may be processed concurrently.
"""
import asyncio
import logging
import weakref
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable, Awaitable, List

import httpx
from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import async_session
from ..models import SyncOperation
from ..models.sync_operation import PENDING, SYNCING, SYNCED, FAILED
from ..utils.db_utils import retry_on_lock
from . import session_registry

logger = logging.getLogger(__name__)

# Handler: (operation row) -> JSON-serializable result
OperationHandler = Callable[[SyncOperation], Awaitable[Any]]


class SyncConfigurationError(Exception):
    """The processor cannot run (no domain services configured)."""


class UnknownOperationError(Exception):
    """No handler is registered for an operation kind."""


class DomainServiceError(Exception):
    """A domain service rejected or failed to apply an operation."""


class DomainServiceClient:
    """Applies queued operations to the domain services over HTTP."""

    ROUTES = {
        "booking_create": "/bookings",
        "feedback_submit": "/feedback",
        "lesson_progress": "/lms/progress",
        "quiz_attempt": "/lms/quiz-attempts",
    }

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.domain_api_url or "").rstrip("/")
        self.token = token if token is not None else settings.domain_api_token
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def apply(self, op: SyncOperation) -> Any:
        path = self.ROUTES[op.operation]
        headers = {"X-User-Id": op.user_id, "X-Sync-Operation-Id": op.id}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}{path}",
                json={
                    "entityType": op.entity_type,
                    "entityId": op.entity_id,
                    "payload": op.payload,
                },
                headers=headers,
            )

        if response.status_code >= 400:
            raise DomainServiceError(f"{op.operation} rejected: {response.status_code} - {response.text}")
        try:
            return response.json()
        except ValueError:
            return None

    def handlers(self) -> Dict[str, OperationHandler]:
        return {kind: self.apply for kind in self.ROUTES}


class SyncQueueProcessor:
    """Queues, replays and reports on offline mutations."""

    def __init__(
        self,
        handlers: Optional[Dict[str, OperationHandler]] = None,
        session_factory=None,
        domain_client: Optional[DomainServiceClient] = None,
    ):
        self._session_factory = session_factory or async_session
        self._domain_client = domain_client
        self._handlers: Dict[str, OperationHandler] = dict(handlers or {})
        # Entries vanish once no run holds or waits on the lock
        self._session_locks = weakref.WeakValueDictionary()

    def register_handler(self, operation: str, handler: OperationHandler) -> None:
        self._handlers[operation] = handler

    def _resolve_handlers(self) -> Dict[str, OperationHandler]:
        if self._handlers:
            return self._handlers
        client = self._domain_client or DomainServiceClient()
        if not client.configured:
            raise SyncConfigurationError("DOMAIN_API_URL must be configured to process the sync queue")
        self._handlers = client.handlers()
        return self._handlers

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = self._session_locks[session_id] = asyncio.Lock()
        return lock

    async def queue_operation(
        self,
        session_id: str,
        operation: str,
        entity_type: str,
        payload: Any = None,
        entity_id: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> SyncOperation:
        """Durably store a mutation for later replay.

        Unknown operation kinds are accepted so that they surface as failed
        rows instead of being dropped.
        """
        async with self._session_factory() as db:
            session = await session_registry.require_active_session(db, session_id)
            now = datetime.utcnow()
            # created_at is the replay order, keep it strictly increasing per session
            latest = (await db.execute(
                select(func.max(SyncOperation.created_at)).where(SyncOperation.session_id == session.id)
            )).scalar()
            if latest is not None and now <= latest:
                now = latest + timedelta(microseconds=1)
            op = SyncOperation(
                session_id=session.id,
                user_id=session.user_id,
                operation=operation,
                entity_type=entity_type,
                entity_id=entity_id,
                payload=payload,
                status=PENDING,
                retry_count=0,
                max_retries=max_retries if max_retries is not None else settings.sync_max_retries,
                created_at=now,
                updated_at=now,
            )
            db.add(op)
            await retry_on_lock(db.commit)
            await db.refresh(op)

        logger.info(f"Queued {operation} ({entity_type}) for session {session_id}")
        return op

    async def process_queue(self, session_id: str) -> List[Dict[str, Any]]:
        """Apply a session's queued operations oldest first.

        Rows left in 'syncing' by an interrupted run are picked up again and
        treated like pending ones. The session's last-sync time is updated
        even when some operations fail.
        """
        handlers = self._resolve_handlers()

        async with self._lock_for(session_id):
            async with self._session_factory() as db:
                await session_registry.require_active_session(db, session_id)

                result = await db.execute(
                    select(SyncOperation)
                    .where(
                        SyncOperation.session_id == session_id,
                        SyncOperation.status.in_([PENDING, SYNCING]),
                    )
                    .order_by(SyncOperation.created_at, SyncOperation.id)
                )
                operations = list(result.scalars().all())

                results = []
                for op in operations:
                    results.append(await self._process_one(db, op, handlers))

                await session_registry.mark_synced(db, session_id)

        succeeded = sum(1 for r in results if r["success"])
        logger.info(f"Sync run for session {session_id}: {succeeded}/{len(results)} operations applied")
        return results

    async def _process_one(
        self,
        db: AsyncSession,
        op: SyncOperation,
        handlers: Dict[str, OperationHandler],
    ) -> Dict[str, Any]:
        op.status = SYNCING
        op.last_attempt_at = datetime.utcnow()
        await retry_on_lock(db.commit)

        try:
            handler = handlers.get(op.operation)
            if handler is None:
                raise UnknownOperationError(f"Unknown operation: {op.operation}")
            outcome = await handler(op)
        except Exception as e:
            op.retry_count = min(op.retry_count + 1, op.max_retries)
            op.status = FAILED if op.retry_count >= op.max_retries else PENDING
            op.error_message = str(e) or type(e).__name__
            op.error_details = {"type": type(e).__name__, "error": repr(e)}
            await retry_on_lock(db.commit)
            if op.status == FAILED:
                logger.warning(f"Sync operation {op.id} ({op.operation}) failed permanently: {op.error_message}")
            else:
                logger.info(
                    f"Sync operation {op.id} ({op.operation}) failed, "
                    f"retry {op.retry_count}/{op.max_retries}: {op.error_message}"
                )
            return {"id": op.id, "success": False, "error": op.error_message}

        op.status = SYNCED
        op.synced_at = datetime.utcnow()
        await retry_on_lock(db.commit)
        return {"id": op.id, "success": True, "result": outcome}

    async def get_sync_status(self, session_id: str) -> Dict[str, Any]:
        """Queue health for a session: pending count, failed count, last sync."""
        async with self._session_factory() as db:
            counts = await db.execute(
                select(SyncOperation.status, func.count(SyncOperation.id))
                .where(SyncOperation.session_id == session_id)
                .group_by(SyncOperation.status)
            )
            by_status = {status: count for status, count in counts.all()}
            session = await session_registry.get_session(db, session_id)

        return {
            "pendingCount": by_status.get(PENDING, 0) + by_status.get(SYNCING, 0),
            "failedCount": by_status.get(FAILED, 0),
            "lastSyncAt": session.last_sync_at if session else None,
        }

    async def prune(self, retention_days: Optional[int] = None) -> int:
        """Delete synced/failed rows older than the retention window."""
        days = retention_days if retention_days is not None else settings.sync_retention_days
        cutoff = datetime.utcnow() - timedelta(days=days)
        async with self._session_factory() as db:
            result = await db.execute(
                delete(SyncOperation).where(
                    SyncOperation.status.in_([SYNCED, FAILED]),
                    SyncOperation.updated_at < cutoff,
                )
            )
            await retry_on_lock(db.commit)
        pruned = result.rowcount or 0
        if pruned:
            logger.info(f"Pruned {pruned} sync queue rows older than {days} days")
        return pruned


# Global instance
sync_processor = SyncQueueProcessor()
