"""
Diagnostics Channel - In-memory pub/sub for reconciliation failures.

The reconciler reports exactly one Diagnostic per failed operation. The
bus fans each diagnostic out to subscribers and keeps a bounded history so
a planner can collect them after the call returns.
"""

import asyncio
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional, Tuple

from errors import ClassifiedError, error_details

logger = logging.getLogger(__name__)


class Action(Enum):
    """Lifecycle action a diagnostic refers to."""

    CREATING = "creating"
    READING = "reading"
    UPDATING = "updating"
    DELETING = "deleting"
    IMPORTING = "importing"
    WAITING_FOR_CREATION = "waiting for creation"
    WAITING_FOR_UPDATE = "waiting for update"


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class Diagnostic:
    """One structured failure report."""

    action: Action
    resource_type: str
    resource_key: str
    error: ClassifiedError
    severity: Severity = Severity.ERROR
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def summary(self) -> str:
        key = f" ({self.resource_key})" if self.resource_key else ""
        return f"{self.action.value} {self.resource_type}{key}: {self.error}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "resource_type": self.resource_type,
            "resource_key": self.resource_key,
            "severity": self.severity.value,
            "error": error_details(self.error),
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class DiagnosticSubscription:
    """
    Async iterator over diagnostics delivered to one subscriber.

    A ``None`` sentinel stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[Diagnostic], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[Diagnostic]:
        return self

    async def __anext__(self) -> Diagnostic:
        while True:
            diagnostic = await self._queue.get()

            if diagnostic is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(diagnostic):
                return diagnostic


class DiagnosticsBus:
    """
    Diagnostics channel with per-subscriber queues and retained history.

    Publishing never blocks: diagnostics are dropped for subscribers whose
    queues are full. The history keeps the most recent ``history_size``.
    """

    def __init__(self, queue_size: int = 256, history_size: int = 1000):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._history: Deque[Diagnostic] = deque(maxlen=history_size)

    async def report(self, diagnostic: Diagnostic) -> None:
        """
        Record a diagnostic and publish it to all subscribers.

        Args:
            diagnostic: The failure report.
        """
        self._history.append(diagnostic)
        log = logger.warning if diagnostic.severity is Severity.WARNING else logger.error
        log(diagnostic.summary)

        for subscriber_id, queue in list(self._subscribers.items()):
            try:
                queue.put_nowait(diagnostic)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped diagnostic for subscriber {subscriber_id}: queue full"
                )

    def subscribe(
        self,
        filter_fn: Optional[Callable[[Diagnostic], bool]] = None,
    ) -> Tuple[str, DiagnosticSubscription]:
        """
        Subscribe to diagnostics.

        Args:
            filter_fn: Optional predicate; only matching diagnostics are yielded.

        Returns:
            A tuple of ``(subscriber_id, DiagnosticSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[subscriber_id] = queue
        logger.debug(f"New diagnostics subscriber: {subscriber_id}")
        return subscriber_id, DiagnosticSubscription(queue, filter_fn)

    def unsubscribe(self, subscriber_id: str) -> None:
        """Remove a subscriber and terminate its iterator."""
        queue = self._subscribers.pop(subscriber_id, None)
        if queue is not None:
            if queue.full():
                # Make room for the sentinel; the oldest diagnostic is lost.
                dropped = queue.get_nowait()
                logger.warning(
                    f"Dropped diagnostic {dropped.summary} for subscriber {subscriber_id}: "
                    "queue full on unsubscribe"
                )
            queue.put_nowait(None)
            logger.debug(f"Unsubscribed: {subscriber_id}")

    @property
    def history(self) -> List[Diagnostic]:
        return list(self._history)

    def for_resource(self, resource_type: str, resource_key: str) -> List[Diagnostic]:
        return [
            d
            for d in self._history
            if d.resource_type == resource_type and d.resource_key == resource_key
        ]

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
