"""
Reconcile Session - Per-caller scope for remote calls.

A session owns one aiohttp.ClientSession and builds RemoteClients and
Reconcilers bound to it. Sessions are created by the caller and closed
when it is done; nothing here is a process-wide singleton.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

import aiohttp

from config import Config, get_config
from db import PostgresStateStore
from events import DiagnosticsBus
from plugins.registry import ResourceRegistry, get_registry
from plugins.resources.base import RemoteClient
from reconciler import Reconciler
from state import StateStore

logger = logging.getLogger(__name__)


class ReconcileSession:
    """
    Async context manager scoping remote clients to one caller.

    Usage::

        async with ReconcileSession(config) as session:
            reconciler = session.reconciler_for("mq_user", store)
            outcome = await reconciler.read("b-1234/admin")
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        registry: Optional[ResourceRegistry] = None,
        diagnostics: Optional[DiagnosticsBus] = None,
    ):
        self.config = config or get_config()
        self.registry = registry or get_registry()
        self.diagnostics = diagnostics or DiagnosticsBus()
        self._http: Optional[aiohttp.ClientSession] = None
        self._clients: Dict[str, RemoteClient] = {}
        self._recorders: List[Tuple[str, asyncio.Task]] = []

    async def __aenter__(self) -> "ReconcileSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        """Open the HTTP session."""
        if self._http is None:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.remote.request_timeout)
            )
            logger.debug(f"Opened session to {self.config.remote.endpoint}")

    async def close(self) -> None:
        """Close the HTTP session after stopping any history recorders."""
        recorders, self._recorders = self._recorders, []
        for subscriber_id, task in recorders:
            self.diagnostics.unsubscribe(subscriber_id)
        if recorders:
            # Recorders drain what was reported before the session closed.
            results = await asyncio.gather(
                *(task for _, task in recorders), return_exceptions=True
            )
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Diagnostics history recorder failed: {result}")
        self._clients.clear()
        if self._http is not None:
            await self._http.close()
            self._http = None
            logger.debug("Closed session")

    @property
    def is_open(self) -> bool:
        return self._http is not None

    @property
    def http(self) -> aiohttp.ClientSession:
        if self._http is None:
            raise RuntimeError(
                "Session not open. Use 'async with ReconcileSession()' or call open() first."
            )
        return self._http

    def client_for(self, type_name: str) -> RemoteClient:
        """RemoteClient for a resource kind, built once per session."""
        if type_name not in self._clients:
            kind = self.registry.get_resource_kind(type_name)
            self._clients[type_name] = kind.new_client(self.http, self.config.remote)
        return self._clients[type_name]

    def reconciler_for(
        self,
        type_name: str,
        store: StateStore,
        diagnostics: Optional[DiagnosticsBus] = None,
    ) -> Reconciler:
        """
        Build a Reconciler for a resource kind.

        Args:
            type_name: Registered resource kind name (e.g. 'mq_user').
            store: State store the reconciler writes to.
            diagnostics: Channel for failure reports; defaults to the session's.

        Raises:
            ValueError: If the resource kind is not registered.
            RuntimeError: If the session is not open.
        """
        kind = self.registry.get_resource_kind(type_name)
        return Reconciler(
            kind,
            self.client_for(type_name),
            store,
            diagnostics=diagnostics or self.diagnostics,
            retry=self.config.retry_for(type_name),
            stabilize=self.config.stabilize_for(type_name),
        )

    def record_history(self, store: PostgresStateStore) -> None:
        """
        Persist this session's diagnostics in the store's history table.

        Recording runs in the background until the session is closed.
        """
        subscriber_id, subscription = self.diagnostics.subscribe()
        task = asyncio.create_task(store.persist_diagnostics(subscription))
        self._recorders.append((subscriber_id, task))
        logger.debug(f"Recording diagnostics history (subscriber {subscriber_id})")
