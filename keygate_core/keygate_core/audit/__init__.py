"""Activity recording and webhook notification."""

from keygate_core.audit.dispatcher import NotificationBatch, NotificationDispatcher, validate_webhook_url
from keygate_core.audit.events import ActivityEvent, login_denial_event
from keygate_core.audit.recorder import ActivityRecorder

__all__ = [
    "ActivityEvent",
    "ActivityRecorder",
    "NotificationBatch",
    "NotificationDispatcher",
    "login_denial_event",
    "validate_webhook_url",
]
