"""Scheduler service - periodic server-side maintenance jobs.

Jobs:
- reconcile_receipts: check push receipts and clear dead push tokens
- expire_sessions: deactivate sessions past their expiry time
- prune_sync_queue: delete terminal sync queue rows past retention
"""
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import settings
from ..database import async_session
from . import session_registry
from .push_dispatcher import push_dispatcher, PushDispatchEngine
from .sync_queue import sync_processor, SyncQueueProcessor

logger = logging.getLogger(__name__)


class SchedulerService:
    """Runs the maintenance jobs on fixed intervals."""

    def __init__(
        self,
        dispatcher: Optional[PushDispatchEngine] = None,
        processor: Optional[SyncQueueProcessor] = None,
        session_factory=None,
    ):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._dispatcher = dispatcher or push_dispatcher
        self._processor = processor or sync_processor
        self._session_factory = session_factory or async_session

    def start(self):
        """Start the scheduler."""
        if self._running:
            return

        self.scheduler = AsyncIOScheduler()

        self.scheduler.add_job(
            self._reconcile_receipts,
            trigger=IntervalTrigger(minutes=settings.receipt_check_interval_minutes),
            id="reconcile_receipts",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.add_job(
            self._expire_sessions,
            trigger=IntervalTrigger(minutes=settings.session_expiry_check_minutes),
            id="expire_sessions",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.add_job(
            self._prune_sync_queue,
            trigger=IntervalTrigger(hours=1),
            id="prune_sync_queue",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()
        self._running = True
        logger.info(
            f"Scheduler started (receipts every {settings.receipt_check_interval_minutes}m, "
            f"session expiry every {settings.session_expiry_check_minutes}m)"
        )

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler and self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")

    async def _reconcile_receipts(self):
        try:
            await self._dispatcher.reconcile_receipts()
        except Exception as e:
            logger.error(f"Error reconciling push receipts: {e}")

    async def _expire_sessions(self):
        try:
            async with self._session_factory() as db:
                await session_registry.expire_sessions(db)
        except Exception as e:
            logger.error(f"Error expiring sessions: {e}")

    async def _prune_sync_queue(self):
        try:
            await self._processor.prune()
        except Exception as e:
            logger.error(f"Error pruning sync queue: {e}")


# Global instance
scheduler_service = SchedulerService()
