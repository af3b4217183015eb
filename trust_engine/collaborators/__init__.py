# External Collaborators
from .compensation import CompensationExecutor
from .notifier import LoggingNotifier, Notifier, safe_notify

__all__ = ["CompensationExecutor", "LoggingNotifier", "Notifier", "safe_notify"]
