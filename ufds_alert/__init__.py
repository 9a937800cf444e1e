"""Mail notifications for changes in the UFDS user directory."""

from __future__ import annotations

from .config import NotifierConfig, load_config, resolve_config_path
from .database import Database, DatabaseError, resolve_database_path
from .models import EventKind, NotificationEvent, UserRecord
from .notifier import Notifier


__all__ = [
    "Database",
    "DatabaseError",
    "EventKind",
    "NotificationEvent",
    "Notifier",
    "NotifierConfig",
    "UserRecord",
    "load_config",
    "resolve_config_path",
    "resolve_database_path",
]
