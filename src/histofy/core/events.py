"""Progress events and cancellation for a running migration."""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional, Union

from histofy.core.errors import MigrationTimeout, OperationCancelled
from histofy.models.events import Outcome, ProgressEvent, TerminalEvent

logger = logging.getLogger(__name__)

MigrationEvent = Union[ProgressEvent, TerminalEvent]
EventListener = Callable[[MigrationEvent], None]


class ProgressReporter:
    """Delivers events for one migration to listeners, in order, synchronously.

    Percent complete never goes backwards: a lower value than the last one
    reported is raised to the last value.
    """

    def __init__(self, transaction_id: str, listeners: Optional[List[EventListener]] = None):
        self.transaction_id = transaction_id
        self.listeners = list(listeners or [])
        self.percent = 0.0
        self.history: List[MigrationEvent] = []

    def progress(self, message: str, percent: float) -> ProgressEvent:
        self.percent = max(self.percent, min(float(percent), 100.0))
        event = ProgressEvent(
            transaction_id=self.transaction_id,
            message=message,
            percent_complete=self.percent,
            timestamp=datetime.now(),
        )
        logger.debug("[%s] %5.1f%% %s", self.transaction_id, self.percent, message)
        self._emit(event)
        return event

    def step(self, message: str, index: int, total: int, low: float = 20.0, high: float = 90.0) -> ProgressEvent:
        """Report step index (0-based, completed) of total within [low, high]."""
        fraction = (index + 1) / total if total else 1.0
        return self.progress(message, low + (high - low) * fraction)

    def finish(self, outcome: Outcome, error: Optional[str] = None) -> TerminalEvent:
        event = TerminalEvent(
            transaction_id=self.transaction_id,
            outcome=outcome,
            error=error,
            timestamp=datetime.now(),
        )
        self._emit(event)
        return event

    def _emit(self, event: MigrationEvent) -> None:
        self.history.append(event)
        for listener in self.listeners:
            listener(event)


class CancellationToken:
    """Cancellation flag plus an optional wall-clock deadline.

    ``check()`` is called at iteration boundaries; an in-flight git call is
    always allowed to finish first.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self.reason: Optional[str] = None
        self.deadline = time.monotonic() + timeout if timeout else None
        self.timeout = timeout

    def cancel(self, reason: str = "Operation cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "Operation cancelled")
        if self.expired:
            raise MigrationTimeout(f"Migration exceeded its {self.timeout:g}s timeout")
