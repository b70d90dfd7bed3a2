"""Pytest configuration and fixtures."""

import copy
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

import pytest
from unittest.mock import AsyncMock, MagicMock

from config import RetryConfig, StabilizeConfig
from errors import ConflictError, NotFoundError
from events import DiagnosticsBus
from plugins.resources.base import RemoteClient
from plugins.resources.mq_user import MQUserKind
from reconciler import Reconciler
from state import InMemoryStateStore


class FakeRemoteClient(RemoteClient):
    """
    In-memory broker user API.

    Objects are stored in wire format. Scripted failures are raised in
    order by the next calls of the given method; ``hidden_reads`` makes
    that many reads return NotFound, like an eventually consistent provider.
    """

    def __init__(self):
        self.objects: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.errors: Dict[str, List[Exception]] = defaultdict(list)
        self.hidden_reads = 0

    def fail(self, method: str, *errors: Exception) -> None:
        self.errors[method].extend(errors)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _record(self, method: str, arg: Any) -> None:
        self.calls.append((method, copy.deepcopy(arg)))
        if self.errors[method]:
            raise self.errors[method].pop(0)

    async def create(self, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._record("create", request)
        key = (request["brokerId"], request["username"])
        if key in self.objects:
            raise ConflictError("user already exists")
        self.objects[key] = {k: v for k, v in request.items() if k != "password"}
        return None

    async def read(self, identifier) -> Optional[Dict[str, Any]]:
        self._record("read", str(identifier))
        if self.hidden_reads > 0:
            self.hidden_reads -= 1
            raise NotFoundError("user not yet visible")
        obj = self.objects.get(tuple(identifier.parts))
        if obj is None:
            raise NotFoundError("user not found")
        return copy.deepcopy(obj)

    async def update(self, identifier, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._record("update", fields)
        key = tuple(identifier.parts)
        if key not in self.objects:
            raise NotFoundError("user not found")
        self.objects[key].update({k: v for k, v in fields.items() if k != "password"})
        return None

    async def delete(self, identifier) -> None:
        self._record("delete", str(identifier))
        key = tuple(identifier.parts)
        if key not in self.objects:
            raise NotFoundError("user not found")
        del self.objects[key]

    async def list(self, parent: Optional[str] = None) -> List[Dict[str, Any]]:
        self._record("list", parent)
        return [
            {"username": username}
            for (broker_id, username) in self.objects
            if parent is None or broker_id == parent
        ]


@pytest.fixture
def kind():
    return MQUserKind()


@pytest.fixture
def client():
    return FakeRemoteClient()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def bus():
    return DiagnosticsBus()


@pytest.fixture
def fast_retry():
    """Retry config with millisecond delays."""
    return RetryConfig(
        max_attempts=3,
        base_delay=0.001,
        max_delay=0.01,
        jitter_factor=0.0,
        time_budget=5.0,
    )


@pytest.fixture
def fast_stabilize():
    """Stabilize config with millisecond polling."""
    return StabilizeConfig(timeout=1.0, poll_interval=0.001, max_poll_interval=0.005)


@pytest.fixture
def reconciler(kind, client, store, bus, fast_retry, fast_stabilize):
    return Reconciler(
        kind,
        client,
        store,
        diagnostics=bus,
        retry=fast_retry,
        stabilize=fast_stabilize,
    )


@pytest.fixture
def desired_user():
    """Desired state of one broker user."""
    return {
        "broker_id": "b-1234",
        "username": "app-user",
        "password": "correct-horse-battery",
        "console_access": False,
        "groups": ["admins", "devs"],
        "replication_user": False,
    }


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn
