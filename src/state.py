"""
State Store - Interface to the tool's persisted resource state.

The reconciler writes whole records only: observed state is either fully
replaced or the record is left untouched. Persistence and locking belong to
the store implementation; InMemoryStateStore is the reference one.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class LifecycleState(Enum):
    """Lifecycle of one remote object as seen by the reconciler."""

    ABSENT = "absent"
    CREATING = "creating"
    STABILIZING = "stabilizing"
    PRESENT = "present"
    UPDATING = "updating"
    DELETING = "deleting"
    ERRORED = "errored"


@dataclass
class ResourceRecord:
    """One stored resource: identifier, status and last observed state."""

    resource_type: str
    identifier: str
    status: LifecycleState = LifecycleState.PRESENT
    observed: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> Tuple[str, str]:
        return self.resource_type, self.identifier

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_type": self.resource_type,
            "identifier": self.identifier,
            "status": self.status.value,
            "observed": self.observed,
            "error": self.error,
            "updated_at": self.updated_at.isoformat(),
        }


class StateStore(ABC):
    """Abstract state store consumed by the reconciler."""

    @abstractmethod
    async def get(self, resource_type: str, identifier: str) -> Optional[ResourceRecord]:
        """Load a record, or None if the resource is not tracked."""

    @abstractmethod
    async def put(self, record: ResourceRecord) -> None:
        """Insert or fully replace a record."""

    @abstractmethod
    async def remove(self, resource_type: str, identifier: str) -> None:
        """Forget a resource. Removing an unknown resource is not an error."""

    @abstractmethod
    async def list(self, resource_type: Optional[str] = None) -> List[ResourceRecord]:
        """List tracked records, optionally for one resource kind."""


class InMemoryStateStore(StateStore):
    """Process-local state store; records are deep-copied in and out."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], ResourceRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, resource_type: str, identifier: str) -> Optional[ResourceRecord]:
        async with self._lock:
            record = self._records.get((resource_type, identifier))
            return copy.deepcopy(record)

    async def put(self, record: ResourceRecord) -> None:
        async with self._lock:
            self._records[record.key] = copy.deepcopy(record)
        logger.debug(f"Stored {record.resource_type} {record.identifier} ({record.status.value})")

    async def remove(self, resource_type: str, identifier: str) -> None:
        async with self._lock:
            self._records.pop((resource_type, identifier), None)
        logger.debug(f"Removed {resource_type} {identifier} from state")

    async def list(self, resource_type: Optional[str] = None) -> List[ResourceRecord]:
        async with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._records.values()
                if resource_type is None or r.resource_type == resource_type
            ]

    def __len__(self) -> int:
        return len(self._records)
