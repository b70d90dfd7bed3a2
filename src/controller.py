"""
Refresh Controller - Bounded-concurrency refresh of many resources.

Runs Reconciler.read for independent resources concurrently, limited by
a semaphore, and reports drift and disappearances. Each identifier is
refreshed at most once per call.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from config import ControllerConfig
from errors import ClassifiedError, PermanentError
from events import Action, Diagnostic
from reconciler import ReconcileOutcome, Reconciler
from session import ReconcileSession
from state import LifecycleState, StateStore

logger = logging.getLogger(__name__)

Target = Tuple[str, str]


@dataclass
class RefreshSummary:
    """Counts from one refresh pass."""

    total: int = 0
    drifted: int = 0
    removed: int = 0
    failed: int = 0


class RefreshController:
    """
    Refreshes observed state for many (resource_type, identifier) targets.

    Reconcilers are built once per resource kind through the session and
    shared between targets of that kind.
    """

    def __init__(
        self,
        session: ReconcileSession,
        store: StateStore,
        config: Optional[ControllerConfig] = None,
    ):
        self.session = session
        self.store = store
        self.config = config or session.config.controller
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self._reconcilers: Dict[str, Reconciler] = {}
        self.last_summary = RefreshSummary()

    def _reconciler(self, resource_type: str) -> Reconciler:
        if resource_type not in self._reconcilers:
            self._reconcilers[resource_type] = self.session.reconciler_for(
                resource_type, self.store
            )
        return self._reconcilers[resource_type]

    async def refresh(
        self,
        targets: Iterable[Target],
        cancel: Optional[asyncio.Event] = None,
    ) -> Dict[Target, ReconcileOutcome]:
        """
        Refresh the given resources.

        Args:
            targets: (resource_type, identifier) pairs; duplicates are refreshed once.
            cancel: Cancellation signal shared by all reads.

        Returns:
            Outcome per target.
        """
        unique: List[Target] = list(dict.fromkeys(targets))
        if not unique:
            return {}

        logger.info(f"Refreshing {len(unique)} resource(s)")
        tasks = [self._refresh_one(rt, ident, cancel) for rt, ident in unique]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes: Dict[Target, ReconcileOutcome] = {}
        for target, result in zip(unique, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                result = await self._unexpected_failure(target, result)
            outcomes[target] = result

        self.last_summary = self._summarize(outcomes)
        logger.info(
            f"Refreshed {self.last_summary.total} resource(s): "
            f"{self.last_summary.drifted} drifted, {self.last_summary.removed} removed, "
            f"{self.last_summary.failed} failed"
        )
        return outcomes

    async def refresh_all(
        self,
        resource_type: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Dict[Target, ReconcileOutcome]:
        """Refresh every resource tracked in the state store."""
        records = await self.store.list(resource_type)
        return await self.refresh([r.key for r in records], cancel)

    async def _refresh_one(
        self, resource_type: str, identifier: str, cancel: Optional[asyncio.Event]
    ) -> ReconcileOutcome:
        async with self.semaphore:
            reconciler = self._reconciler(resource_type)
            return await reconciler.read(identifier, cancel)

    async def _unexpected_failure(self, target: Target, exc: BaseException) -> ReconcileOutcome:
        resource_type, identifier = target
        logger.error(f"Error refreshing {resource_type} {identifier}: {exc}", exc_info=exc)
        error = exc if isinstance(exc, ClassifiedError) else PermanentError(str(exc), exc)
        await self.session.diagnostics.report(
            Diagnostic(Action.READING, resource_type, identifier, error)
        )
        return ReconcileOutcome(
            success=False,
            state=LifecycleState.ERRORED,
            identifier=identifier,
            error=error,
            message=str(error),
        )

    @staticmethod
    def _summarize(outcomes: Dict[Target, ReconcileOutcome]) -> RefreshSummary:
        summary = RefreshSummary(total=len(outcomes))
        for outcome in outcomes.values():
            if not outcome.success:
                summary.failed += 1
            elif outcome.removed:
                summary.removed += 1
            elif outcome.drift:
                summary.drifted += 1
        return summary
