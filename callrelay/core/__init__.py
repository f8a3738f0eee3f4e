# callrelay/core/__init__.py
"""
Core -- channel-agnostic call notification logic.

Status gate, timing annotations, chunking, message builders, the record
dispatcher and the service that owns the background tasks. Storage and the
operator channel are reached only through the protocols in ``ports``.

Canonical imports:
    from callrelay.core import CallNotificationService, NotificationDispatcher
    from callrelay.core.domain import NotificationRecord, CallStatus
    from callrelay.core.ports import AsyncCallNotificationStore, MessageTransport
"""
from callrelay.core.domain import (  # noqa: F401
    AckOutcome,
    CallStatus,
    NotificationRecord,
    NotificationType,
)
from callrelay.core.ports import (  # noqa: F401
    AsyncCallNotificationStore,
    DigitsDecryptor,
    MessageTransport,
)
from callrelay.core.status import StatusTracker  # noqa: F401
from callrelay.core.timing import TimingTracker  # noqa: F401
from callrelay.core.chunking import split_message  # noqa: F401
from callrelay.core.dispatcher import NotificationDispatcher, NotificationDispatchError  # noqa: F401
from callrelay.core.service import CallNotificationService, HealthStatus  # noqa: F401
