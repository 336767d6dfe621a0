"""Domain events emitted against Stack objects.

Events are observable behavior: operators read them with
``kubectl describe stack``. Each event has a fixed reason and type.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .models import Stack

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kubernetes event types."""

    NORMAL = "Normal"
    WARNING = "Warning"


class StackEvent(str, Enum):
    """Event reasons emitted by the Stack controller."""

    CONFIG_INVALID = "StackConfigInvalid"
    GIT_AUTH_FAILURE = "StackGitAuthenticationFailure"
    INITIALIZATION_FAILURE = "StackInitializationFailure"
    UPDATE_DETECTED = "StackUpdateDetected"
    UPDATE_CONFLICT_DETECTED = "StackUpdateConflictDetected"
    NOT_FOUND = "StackNotFound"
    OUTPUT_RETRIEVAL_FAILURE = "StackOutputRetrievalFailure"
    UPDATE_FAILURE = "StackUpdateFailure"
    UPDATE_SUCCESSFUL = "StackUpdateSuccessful"

    @property
    def reason(self) -> str:
        return self.value

    @property
    def event_type(self) -> EventType:
        if self in _NORMAL_EVENTS:
            return EventType.NORMAL
        return EventType.WARNING


_NORMAL_EVENTS = frozenset(
    {
        StackEvent.UPDATE_DETECTED,
        StackEvent.UPDATE_SUCCESSFUL,
    }
)


class EventRecorder(Protocol):
    """Sink for Stack events."""

    async def record(self, stack: Stack, event: StackEvent, message: str) -> None:
        """Record an event against a Stack. Must not raise."""
        ...


class LoggingEventRecorder:
    """Event recorder that only writes to the log.

    Used by the one-shot CLI reconcile when event posting is turned off.
    """

    async def record(self, stack: Stack, event: StackEvent, message: str) -> None:
        level = logging.INFO if event.event_type == EventType.NORMAL else logging.WARNING
        logger.log(
            level,
            message,
            extra={
                "stack": stack.key,
                "reason": event.reason,
                "event_type": event.event_type.value,
            },
        )
