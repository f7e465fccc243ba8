"""Services for push dispatch, polling, sync queue processing and scheduling."""
from .push_gateway import ExpoPushClient
from .push_dispatcher import PushDispatchEngine
from .notification_poller import NotificationPoller
from .sync_queue import SyncQueueProcessor
from .scheduler import SchedulerService

__all__ = ["ExpoPushClient", "PushDispatchEngine", "NotificationPoller", "SyncQueueProcessor", "SchedulerService"]
