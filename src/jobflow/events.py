"""Status notifications for jobs and workflows.

Subscribers are for observability only: a failing subscriber is logged and
never affects scheduling.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from jobflow.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class JobStatusEvent:
    job_id: str
    status: str
    message: str | None = None
    workflow_id: str | None = None
    stage_name: str | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class WorkflowStatusEvent:
    workflow_id: str
    status: str
    message: str
    progress_percentage: float
    finalized: bool = False
    created_at: datetime = field(default_factory=utc_now)


Event = JobStatusEvent | WorkflowStatusEvent
Subscriber = Callable[[Event], None]


class EventBus:
    """Synchronous fan-out of status events to subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; the returned callable unsubscribes it."""

        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", type(event).__name__)
