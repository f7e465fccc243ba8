"""Database models."""
from .session import MobileSession
from .push_notification import PushNotification
from .user_notification import UserNotification
from .sync_operation import SyncOperation

__all__ = ["MobileSession", "PushNotification", "UserNotification", "SyncOperation"]
