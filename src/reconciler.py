"""
Reconciler - Lifecycle engine for one resource kind.

Drives Create -> Stabilize -> Read, conditional Update, idempotent Delete
and Import against an eventually-consistent, rate-limited remote API:

    Absent -> Creating -> Stabilizing -> Present -> Updating -> Present
           -> Deleting -> Absent            (Errored from any transition)

One Reconciler is instantiated per resource kind and shared by all of that
kind's objects. It holds no per-object mutable state; callers must not run
two operations concurrently for the same identifier.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from config import RetryConfig, StabilizeConfig
from diff import ChangeDetector, ChangeSet
from errors import (
    ClassifiedError,
    ConflictError,
    ErrorKind,
    NotFoundError,
    PermanentError,
    ReplacementRequired,
    StabilizeTimeout,
    error_details,
)
from events import Action, Diagnostic, DiagnosticsBus, Severity
from finder import Finder, FindOutcome
from identifiers import ResourceIdentifier
from plugins.resources.base import RemoteClient, ResourceKind
from retry import RetryPolicy, cancellable_sleep, check_cancelled
from schema import fingerprint, redact
from state import LifecycleState, ResourceRecord, StateStore
from translator import Translator

logger = logging.getLogger(__name__)

Identifier = Union[str, ResourceIdentifier]


@dataclass
class ReconcileOutcome:
    """Result of one lifecycle operation, returned to the planner."""

    success: bool = False
    state: LifecycleState = LifecycleState.ABSENT
    identifier: Optional[str] = None
    observed: Optional[Dict[str, Any]] = None
    change_set: Optional[ChangeSet] = None
    drift: List[str] = field(default_factory=list)
    error: Optional[ClassifiedError] = None
    message: str = ""
    removed: bool = False

    @property
    def replacement_required(self) -> bool:
        return isinstance(self.error, ReplacementRequired)

    @property
    def cancelled(self) -> bool:
        return self.error is not None and self.error.kind is ErrorKind.CANCELLED


class Reconciler:
    """
    Generic reconciler parameterized by a resource kind.

    Args:
        kind: The resource kind plugin (field table, identifier format).
        client: RemoteClient for the kind, scoped to the caller's session.
        store: State store receiving whole-record writes.
        diagnostics: Channel receiving one Diagnostic per failure.
        retry: Backoff for transient errors.
        stabilize: Post-create polling configuration.
        clock: Monotonic clock, replaceable in tests.
    """

    def __init__(
        self,
        kind: ResourceKind,
        client: RemoteClient,
        store: StateStore,
        diagnostics: Optional[DiagnosticsBus] = None,
        retry: Optional[RetryConfig] = None,
        stabilize: Optional[StabilizeConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.kind = kind
        self.client = client
        self.store = store
        self.diagnostics = diagnostics or DiagnosticsBus()
        self.stabilize_config = stabilize or StabilizeConfig()
        self.policy = RetryPolicy(retry, clock=clock)
        self._clock = clock

        self.schema = kind.schema
        self.translator = Translator(self.schema)
        self.detector = ChangeDetector(self.schema)
        self.finder = Finder(client, self.translator, kind.id_format, self.schema.label)

    @property
    def resource_type(self) -> str:
        return self.schema.type_name

    # ==================== Lifecycle operations ====================

    async def create(
        self, desired: Dict[str, Any], cancel: Optional[asyncio.Event] = None
    ) -> ReconcileOutcome:
        """
        Create the object, then wait until it is readable.

        Nothing is stored unless the provider accepted the create. If the
        object was created but never became visible (timeout or cancel), the
        identifier is stored with Errored status so a later Read or Delete
        can recover it.
        """
        outcome = ReconcileOutcome()
        key = ""
        if isinstance(desired, Mapping):
            key = str(self.kind.id_format.from_attributes(desired))
        self._transition(outcome, LifecycleState.CREATING, key)

        try:
            check_cancelled(cancel, f"creating {self.schema.label}")
            request = self.translator.to_remote_request(desired)
        except ClassifiedError as e:
            return await self._fail(outcome, Action.CREATING, key, e)

        logger.debug(f"Creating {self.schema.label} ({key}): {redact(desired, self.schema)}")
        try:
            response = await self.policy.run(
                lambda: self.client.create(request),
                f"creating {self.schema.label} ({key})",
                cancel,
            )
        except ClassifiedError as e:
            if e.kind is ErrorKind.CONFLICT:
                e = ConflictError(
                    f"{self.schema.label} ({key}) already exists; import it instead", e
                )
            return await self._fail(outcome, Action.CREATING, key, e)

        created = None
        if isinstance(response, Mapping):
            created = self.translator.to_observed_state(response)
        identifier = self.kind.identifier_from(desired, created)
        if not identifier.is_complete:
            error = PermanentError(
                f"provider did not return an identifier for {self.schema.label} ({key})"
            )
            return await self._fail(outcome, Action.CREATING, key, error)

        key = str(identifier)
        outcome.identifier = key
        self._transition(outcome, LifecycleState.STABILIZING, key)
        logger.info(f"Created {self.schema.label} {key}, waiting for it to become readable")

        try:
            observed = await self._stabilize(identifier, cancel)
        except ClassifiedError as e:
            await self.store.put(
                ResourceRecord(
                    self.resource_type,
                    key,
                    LifecycleState.ERRORED,
                    observed=None,
                    error=error_details(e),
                )
            )
            return await self._fail(outcome, Action.WAITING_FOR_CREATION, key, e)

        observed = self._with_write_only(observed, desired)
        await self.store.put(
            ResourceRecord(self.resource_type, key, LifecycleState.PRESENT, observed)
        )
        logger.info(f"{self.schema.label} {key} is present")
        return self._succeed(outcome, LifecycleState.PRESENT, observed)

    async def read(
        self, identifier: Identifier, cancel: Optional[asyncio.Event] = None
    ) -> ReconcileOutcome:
        """
        Refresh observed state with a single read.

        NotFound removes the object from state and reports that it no longer
        exists. Any other failure leaves stored state untouched.
        """
        key = str(identifier)
        outcome = ReconcileOutcome(identifier=key)
        try:
            check_cancelled(cancel, f"reading {self.schema.label}")
        except ClassifiedError as e:
            return await self._fail(outcome, Action.READING, key, e)

        previous = await self.store.get(self.resource_type, key)
        result = await self.finder.find(identifier)

        if result.outcome is FindOutcome.NOT_FOUND:
            return await self._remove_missing(outcome, key)
        if result.outcome is not FindOutcome.FOUND:
            return await self._fail(outcome, Action.READING, key, result.error)

        prior = previous.observed if previous else None
        observed = self._with_write_only(result.observed, prior)
        outcome.drift = self.detector.drift(prior, observed)
        if outcome.drift:
            logger.info(
                f"Drift detected for {self.schema.label} {key}: {', '.join(outcome.drift)}"
            )

        await self.store.put(
            ResourceRecord(self.resource_type, key, LifecycleState.PRESENT, observed)
        )
        return self._succeed(outcome, LifecycleState.PRESENT, observed)

    async def update(
        self,
        identifier: Identifier,
        desired: Dict[str, Any],
        cancel: Optional[asyncio.Event] = None,
    ) -> ReconcileOutcome:
        """
        Apply desired state in place.

        The ChangeSet is recomputed from stored observed state on every call.
        No remote call is made when it is empty; immutable changes fail with
        ReplacementRequired. On success the object is re-read rather than
        assuming the request reflects final state.
        """
        key = str(identifier)
        outcome = ReconcileOutcome(identifier=key, state=LifecycleState.PRESENT)
        parsed = self.kind.id_format.try_parse(identifier)

        try:
            check_cancelled(cancel, f"updating {self.schema.label}")
            if parsed is None:
                raise NotFoundError(f"cannot update {self.schema.label} with identifier {key!r}")
            self.translator.validate(desired)
        except ClassifiedError as e:
            return await self._fail(outcome, Action.UPDATING, key, e)

        record = await self.store.get(self.resource_type, key)
        observed = record.observed if record else None
        refreshed = False
        if observed is None:
            result = await self.finder.find(parsed)
            if result.outcome is FindOutcome.NOT_FOUND:
                await self._remove_missing(outcome, key)
                return await self._fail(outcome, Action.UPDATING, key, result.error)
            if result.outcome is not FindOutcome.FOUND:
                return await self._fail(outcome, Action.UPDATING, key, result.error)
            observed = self._with_write_only(result.observed, None)
            refreshed = True

        change_set = self.detector.diff(desired, observed)
        outcome.change_set = change_set

        if change_set.is_empty:
            logger.info(f"No changes needed for {self.schema.label} {key}")
            if refreshed:
                await self.store.put(
                    ResourceRecord(self.resource_type, key, LifecycleState.PRESENT, observed)
                )
            return self._succeed(outcome, LifecycleState.PRESENT, observed)

        if change_set.requires_replacement:
            error = ReplacementRequired(change_set.force_replace)
            return await self._fail(outcome, Action.UPDATING, key, error)

        self._transition(outcome, LifecycleState.UPDATING, key)

        async def attempt() -> None:
            nonlocal observed, change_set
            if change_set.is_empty:
                return
            if self.kind.full_document_update:
                names = None
            else:
                names = change_set.updatable
            fields = self.translator.to_remote_request(
                desired, only=names, include=self.kind.update_includes
            )
            try:
                await self.client.update(parsed, fields)
            except ConflictError:
                fresh = await self.finder.find(parsed)
                if fresh.outcome is FindOutcome.NOT_FOUND:
                    raise fresh.error
                if fresh.found:
                    observed = self._with_write_only(fresh.observed, observed)
                    change_set = self.detector.diff(desired, observed)
                    outcome.change_set = change_set
                    if change_set.requires_replacement:
                        raise ReplacementRequired(change_set.force_replace)
                raise

        try:
            await self.policy.run(
                attempt,
                f"updating {self.schema.label} ({key})",
                cancel,
                retry_on=(ErrorKind.TRANSIENT, ErrorKind.CONFLICT),
            )
        except ClassifiedError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                await self._remove_missing(outcome, key)
            return await self._fail(outcome, Action.UPDATING, key, e)

        try:
            fresh_observed = await self._read_after_write(parsed, cancel)
        except ClassifiedError as e:
            return await self._fail(outcome, Action.WAITING_FOR_UPDATE, key, e)

        fresh_observed = self._with_write_only(fresh_observed, desired)
        await self.store.put(
            ResourceRecord(self.resource_type, key, LifecycleState.PRESENT, fresh_observed)
        )
        logger.info(
            f"Updated {self.schema.label} {key}: {', '.join(outcome.change_set.updatable)}"
        )
        return self._succeed(outcome, LifecycleState.PRESENT, fresh_observed)

    async def delete(
        self, identifier: Identifier, cancel: Optional[asyncio.Event] = None
    ) -> ReconcileOutcome:
        """
        Delete the object. NotFound counts as success.

        A permanent failure or cancellation leaves stored state unchanged so
        an operator can intervene.
        """
        key = str(identifier)
        outcome = ReconcileOutcome(identifier=key, state=LifecycleState.PRESENT)
        try:
            check_cancelled(cancel, f"deleting {self.schema.label}")
        except ClassifiedError as e:
            return await self._fail(outcome, Action.DELETING, key, e)

        parsed = self.kind.id_format.try_parse(identifier)
        self._transition(outcome, LifecycleState.DELETING, key)

        if parsed is None:
            logger.info(f"{self.schema.label} {key!r} has no valid identifier, nothing to delete")
        else:
            async def attempt() -> None:
                try:
                    await self.client.delete(parsed)
                except ConflictError:
                    fresh = await self.finder.find(parsed)
                    if fresh.not_found:
                        return
                    raise

            try:
                await self.policy.run(
                    attempt,
                    f"deleting {self.schema.label} ({key})",
                    cancel,
                    retry_on=(ErrorKind.TRANSIENT, ErrorKind.CONFLICT),
                )
            except NotFoundError:
                logger.info(f"{self.schema.label} {key} already absent")
            except ClassifiedError as e:
                return await self._fail(outcome, Action.DELETING, key, e)

        await self.store.remove(self.resource_type, key)
        outcome.removed = True
        logger.info(f"Deleted {self.schema.label} {key}")
        return self._succeed(outcome, LifecycleState.ABSENT, None)

    async def import_resource(
        self, raw_id: str, cancel: Optional[asyncio.Event] = None
    ) -> ReconcileOutcome:
        """
        Adopt an existing object by its import string.

        The string must match the kind's documented format exactly; a
        malformed one fails without any remote call.
        """
        outcome = ReconcileOutcome()
        try:
            check_cancelled(cancel, f"importing {self.schema.label}")
            identifier = self.kind.id_format.parse(raw_id)
        except ClassifiedError as e:
            return await self._fail(outcome, Action.IMPORTING, str(raw_id), e)

        key = str(identifier)
        outcome.identifier = key
        result = await self.finder.find(identifier)

        if result.outcome is FindOutcome.NOT_FOUND:
            error = NotFoundError(
                f"cannot import non-existent remote object {self.schema.label} ({key})",
                result.error,
            )
            return await self._fail(outcome, Action.IMPORTING, key, error)
        if result.outcome is not FindOutcome.FOUND:
            return await self._fail(outcome, Action.IMPORTING, key, result.error)

        observed = self._with_write_only(result.observed, None)
        await self.store.put(
            ResourceRecord(self.resource_type, key, LifecycleState.PRESENT, observed)
        )
        logger.info(f"Imported {self.schema.label} {key}")
        return self._succeed(outcome, LifecycleState.PRESENT, observed)

    # ==================== Internals ====================

    async def _stabilize(
        self, identifier: ResourceIdentifier, cancel: Optional[asyncio.Event]
    ) -> Dict[str, Any]:
        """
        Poll until the object is readable.

        NotFound and transient reads mean "not yet visible" here. A permanent
        read error stops polling immediately.

        Raises:
            StabilizeTimeout: If the object is not readable within the timeout.
            ReconcileCancelled: If the cancellation signal fires.
            PermanentError: On a permanent read failure.
        """
        config = self.stabilize_config
        started = self._clock()
        interval = config.poll_interval
        polls = 0
        what = f"waiting for {self.schema.label} {identifier}"

        while True:
            check_cancelled(cancel, what)
            result = await self.finder.find(identifier)
            polls += 1
            if result.found:
                logger.debug(f"{self.schema.label} {identifier} visible after {polls} read(s)")
                return result.observed
            if result.outcome is FindOutcome.PERMANENT:
                raise result.error

            elapsed = self._clock() - started
            if elapsed >= config.timeout:
                raise StabilizeTimeout(
                    f"timeout while waiting for {self.schema.label} {identifier} "
                    f"to become readable ({config.timeout}s, {polls} read(s))",
                    timeout=config.timeout,
                    cause=result.error,
                )

            logger.debug(
                f"{self.schema.label} {identifier} not yet readable "
                f"({result.outcome.value}), polling again in {interval:.2f}s"
            )
            await cancellable_sleep(min(interval, config.timeout - elapsed), cancel, what)
            interval = min(interval * 2, config.max_poll_interval)

    async def _read_after_write(
        self, identifier: ResourceIdentifier, cancel: Optional[asyncio.Event]
    ) -> Dict[str, Any]:
        async def attempt() -> Dict[str, Any]:
            result = await self.finder.find(identifier)
            if result.found:
                return result.observed
            raise result.error

        return await self.policy.run(
            attempt, f"reading {self.schema.label} {identifier}", cancel
        )

    def _with_write_only(
        self,
        observed: Dict[str, Any],
        source: Optional[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        """
        Complete an observed record with write-only attributes.

        The provider never returns them, so their fingerprints are carried
        over from the desired state just applied or the previous record.
        """
        result = dict(observed)
        for attribute in self.schema.write_only:
            value = (source or {}).get(attribute.name)
            result[attribute.name] = fingerprint(value) if value is not None else None
        return result

    async def _remove_missing(self, outcome: ReconcileOutcome, key: str) -> ReconcileOutcome:
        logger.warning(f"{self.schema.label} {key} not found, removing from state")
        await self.store.remove(self.resource_type, key)
        outcome.removed = True
        outcome.message = "resource no longer exists"
        return self._succeed(outcome, LifecycleState.ABSENT, None)

    def _transition(
        self, outcome: ReconcileOutcome, state: LifecycleState, key: str
    ) -> None:
        logger.debug(
            f"{self.resource_type} {key}: {outcome.state.value} -> {state.value}"
        )
        outcome.state = state

    def _succeed(
        self,
        outcome: ReconcileOutcome,
        state: LifecycleState,
        observed: Optional[Dict[str, Any]],
    ) -> ReconcileOutcome:
        outcome.success = True
        outcome.state = state
        outcome.observed = observed
        return outcome

    async def _fail(
        self,
        outcome: ReconcileOutcome,
        action: Action,
        key: str,
        error: ClassifiedError,
    ) -> ReconcileOutcome:
        outcome.success = False
        outcome.state = LifecycleState.ERRORED
        outcome.error = error
        outcome.message = str(error)
        severity = Severity.WARNING if error.kind is ErrorKind.CANCELLED else Severity.ERROR
        await self.diagnostics.report(
            Diagnostic(action, self.resource_type, key, error, severity=severity)
        )
        return outcome
