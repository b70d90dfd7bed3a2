"""Unit tests for reconciler.py - Resource lifecycle."""

import asyncio

import pytest

from config import StabilizeConfig
from diff import ChangeSet
from errors import (
    ConflictError,
    ErrorKind,
    ImportFormatError,
    MalformedInputError,
    PermanentError,
    ReconcileCancelled,
    ReplacementRequired,
    RetriesExhausted,
    StabilizeTimeout,
    TransientError,
)
from events import Action, Severity
from reconciler import ReconcileOutcome, Reconciler
from schema import fingerprint
from state import LifecycleState

USER_ID = "b-1234/app-user"


def wire_user(**overrides):
    user = {
        "brokerId": "b-1234",
        "username": "app-user",
        "consoleAccess": False,
        "groups": ["admins", "devs"],
        "replicationUser": False,
    }
    user.update(overrides)
    return user


def calls_of(client, method):
    return [arg for name, arg in client.calls if name == method]


class TestReconcileOutcome:
    """Tests for the ReconcileOutcome dataclass."""

    def test_default_values(self):
        outcome = ReconcileOutcome()
        assert outcome.success is False
        assert outcome.state is LifecycleState.ABSENT
        assert outcome.identifier is None
        assert outcome.drift == []
        assert outcome.removed is False
        assert not outcome.replacement_required
        assert not outcome.cancelled

    def test_replacement_required(self):
        outcome = ReconcileOutcome(error=ReplacementRequired(["username"]))
        assert outcome.replacement_required

    def test_cancelled(self):
        outcome = ReconcileOutcome(error=ReconcileCancelled("creating cancelled"))
        assert outcome.cancelled


@pytest.mark.asyncio
class TestCreate:
    """Tests for Reconciler.create."""

    async def test_create_success(self, reconciler, client, store, desired_user):
        outcome = await reconciler.create(desired_user)

        assert outcome.success
        assert outcome.state is LifecycleState.PRESENT
        assert outcome.identifier == USER_ID
        assert client.count("create") == 1
        assert client.count("read") == 1

        record = await store.get("mq_user", USER_ID)
        assert record.status is LifecycleState.PRESENT
        assert record.observed["groups"] == ["admins", "devs"]

    async def test_request_uses_wire_names(self, reconciler, client, desired_user):
        await reconciler.create(desired_user)
        request = calls_of(client, "create")[0]
        assert request["brokerId"] == "b-1234"
        assert request["consoleAccess"] is False
        assert request["password"] == "correct-horse-battery"

    async def test_round_trip(self, reconciler, desired_user):
        outcome = await reconciler.create(desired_user)

        expected = {k: v for k, v in desired_user.items() if k != "password"}
        assert {k: outcome.observed[k] for k in expected} == expected

    async def test_password_stored_as_fingerprint(self, reconciler, store, desired_user):
        await reconciler.create(desired_user)

        record = await store.get("mq_user", USER_ID)
        assert record.observed["password"] == fingerprint("correct-horse-battery")
        assert "correct-horse-battery" not in str(record.to_dict())

    async def test_malformed_input_makes_no_calls(self, reconciler, client, store, bus, desired_user):
        desired_user["password"] = "short"
        outcome = await reconciler.create(desired_user)

        assert not outcome.success
        assert outcome.state is LifecycleState.ERRORED
        assert isinstance(outcome.error, MalformedInputError)
        assert "short" not in outcome.message
        assert client.calls == []
        assert await store.list() == []
        assert len(bus.history) == 1

    async def test_conflict_suggests_import(self, reconciler, client, desired_user):
        await reconciler.create(desired_user)
        outcome = await reconciler.create(desired_user)

        assert not outcome.success
        assert isinstance(outcome.error, ConflictError)
        assert "already exists; import it instead" in outcome.message
        assert client.count("create") == 2

    async def test_transient_retries_are_bounded(
        self, reconciler, client, store, bus, desired_user, fast_retry
    ):
        client.fail("create", *[TransientError("throttled") for _ in range(10)])
        outcome = await reconciler.create(desired_user)

        assert not outcome.success
        assert isinstance(outcome.error, RetriesExhausted)
        assert outcome.error.kind is ErrorKind.TRANSIENT
        assert client.count("create") == fast_retry.max_attempts
        assert await store.list() == []
        assert [d.action for d in bus.history] == [Action.CREATING]

    async def test_transient_then_success(self, reconciler, client, desired_user):
        client.fail("create", TransientError("throttled"))
        outcome = await reconciler.create(desired_user)

        assert outcome.success
        assert client.count("create") == 2

    async def test_cancelled_before_start(self, reconciler, client, bus, desired_user):
        cancel = asyncio.Event()
        cancel.set()
        outcome = await reconciler.create(desired_user, cancel)

        assert outcome.cancelled
        assert client.calls == []
        assert bus.history[0].severity is Severity.WARNING


@pytest.mark.asyncio
class TestStabilize:
    """Tests for post-create stabilization."""

    async def test_not_found_then_found(self, reconciler, client, desired_user):
        client.hidden_reads = 3
        outcome = await reconciler.create(desired_user)

        assert outcome.success
        assert client.count("read") == 4

    async def test_transient_reads_keep_polling(self, reconciler, client, desired_user):
        client.fail("read", TransientError("throttled"), TransientError("throttled"))
        outcome = await reconciler.create(desired_user)

        assert outcome.success
        assert client.count("read") == 3

    async def test_unclassified_read_error_keeps_polling(self, reconciler, client, desired_user):
        client.fail("read", RuntimeError("socket hiccup"))
        outcome = await reconciler.create(desired_user)

        assert outcome.success
        assert outcome.state is LifecycleState.PRESENT
        assert client.count("read") == 2

    async def test_timeout_preserves_identifier(
        self, kind, client, store, bus, fast_retry, desired_user
    ):
        reconciler = Reconciler(
            kind,
            client,
            store,
            diagnostics=bus,
            retry=fast_retry,
            stabilize=StabilizeConfig(timeout=0.05, poll_interval=0.001, max_poll_interval=0.005),
        )
        client.hidden_reads = 10**6
        outcome = await reconciler.create(desired_user)

        assert not outcome.success
        assert isinstance(outcome.error, StabilizeTimeout)
        assert outcome.identifier == USER_ID
        assert bus.history[-1].action is Action.WAITING_FOR_CREATION

        record = await store.get("mq_user", USER_ID)
        assert record.status is LifecycleState.ERRORED
        assert record.observed is None
        assert record.error["kind"] == "transient"

        # A later refresh recovers the object
        client.hidden_reads = 0
        refreshed = await reconciler.read(USER_ID)
        assert refreshed.success
        assert (await store.get("mq_user", USER_ID)).status is LifecycleState.PRESENT

    async def test_permanent_read_stops_polling(self, reconciler, client, store, desired_user):
        client.fail("read", PermanentError("access denied"))
        outcome = await reconciler.create(desired_user)

        assert not outcome.success
        assert isinstance(outcome.error, PermanentError)
        assert client.count("read") == 1
        assert (await store.get("mq_user", USER_ID)).status is LifecycleState.ERRORED

    async def test_cancelled_while_waiting(self, kind, client, store, bus, fast_retry, desired_user):
        reconciler = Reconciler(
            kind,
            client,
            store,
            diagnostics=bus,
            retry=fast_retry,
            stabilize=StabilizeConfig(timeout=30.0, poll_interval=0.001, max_poll_interval=0.005),
        )
        client.hidden_reads = 10**6
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.02, cancel.set)

        outcome = await asyncio.wait_for(reconciler.create(desired_user, cancel), timeout=5.0)

        assert outcome.cancelled
        assert outcome.identifier == USER_ID
        record = await store.get("mq_user", USER_ID)
        assert record.status is LifecycleState.ERRORED


@pytest.mark.asyncio
class TestRead:
    """Tests for Reconciler.read."""

    async def test_read_refreshes_state(self, reconciler, store, desired_user):
        await reconciler.create(desired_user)
        outcome = await reconciler.read(USER_ID)

        assert outcome.success
        assert outcome.drift == []
        assert outcome.observed["password"] == fingerprint("correct-horse-battery")

    async def test_read_detects_drift(self, reconciler, client, store, desired_user):
        await reconciler.create(desired_user)
        client.objects[("b-1234", "app-user")]["groups"] = ["admins"]

        outcome = await reconciler.read(USER_ID)

        assert outcome.success
        assert outcome.drift == ["groups"]
        assert (await store.get("mq_user", USER_ID)).observed["groups"] == ["admins"]

    async def test_not_found_removes_from_state(self, reconciler, client, store, desired_user):
        await reconciler.create(desired_user)
        client.objects.clear()

        outcome = await reconciler.read(USER_ID)

        assert outcome.success
        assert outcome.removed
        assert outcome.state is LifecycleState.ABSENT
        assert outcome.message == "resource no longer exists"
        assert await store.get("mq_user", USER_ID) is None

    async def test_transient_failure_keeps_state(self, reconciler, client, store, desired_user):
        await reconciler.create(desired_user)
        before = await store.get("mq_user", USER_ID)
        client.fail("read", TransientError("throttled"))

        outcome = await reconciler.read(USER_ID)

        assert not outcome.success
        assert not outcome.removed
        after = await store.get("mq_user", USER_ID)
        assert after.observed == before.observed
        assert after.status is LifecycleState.PRESENT

    async def test_empty_identifier_makes_no_call(self, reconciler, client):
        outcome = await reconciler.read("/app-user")

        assert outcome.success
        assert outcome.removed
        assert client.calls == []


@pytest.mark.asyncio
class TestUpdate:
    """Tests for Reconciler.update."""

    async def test_no_op_update_makes_no_calls(self, reconciler, client, desired_user):
        await reconciler.create(desired_user)
        calls_before = list(client.calls)

        outcome = await reconciler.update(USER_ID, desired_user)

        assert outcome.success
        assert outcome.change_set == ChangeSet()
        assert client.calls == calls_before

    async def test_sends_only_changed_fields(self, reconciler, client, store, desired_user):
        await reconciler.create(desired_user)
        desired_user["groups"] = ["admins"]

        outcome = await reconciler.update(USER_ID, desired_user)

        assert outcome.success
        assert outcome.change_set.updatable == ["groups"]
        assert calls_of(client, "update") == [{"groups": ["admins"]}]
        assert (await store.get("mq_user", USER_ID)).observed["groups"] == ["admins"]

    async def test_password_change(self, reconciler, client, store, desired_user):
        await reconciler.create(desired_user)
        desired_user["password"] = "another-long-password"

        outcome = await reconciler.update(USER_ID, desired_user)

        assert outcome.success
        assert calls_of(client, "update") == [{"password": "another-long-password"}]
        record = await store.get("mq_user", USER_ID)
        assert record.observed["password"] == fingerprint("another-long-password")

    async def test_immutable_change_requires_replacement(self, reconciler, client, store, desired_user):
        await reconciler.create(desired_user)
        desired_user["username"] = "other-user"

        outcome = await reconciler.update(USER_ID, desired_user)

        assert not outcome.success
        assert outcome.replacement_required
        assert outcome.change_set.force_replace == ["username"]
        assert client.count("update") == 0
        assert (await store.get("mq_user", USER_ID)).status is LifecycleState.PRESENT

    async def test_conflict_rereads_and_retries(self, reconciler, client, desired_user):
        await reconciler.create(desired_user)
        desired_user["console_access"] = True
        client.fail("update", ConflictError("concurrent modification"))
        reads_before = client.count("read")

        outcome = await reconciler.update(USER_ID, desired_user)

        assert outcome.success
        assert client.count("update") == 2
        # One re-read after the conflict, one after the successful write
        assert client.count("read") == reads_before + 2

    async def test_transient_retries_are_bounded(
        self, reconciler, client, store, bus, desired_user, fast_retry
    ):
        await reconciler.create(desired_user)
        before = await store.get("mq_user", USER_ID)
        desired_user["console_access"] = True
        client.fail("update", *[TransientError("throttled") for _ in range(10)])

        outcome = await reconciler.update(USER_ID, desired_user)

        assert not outcome.success
        assert outcome.state is LifecycleState.ERRORED
        assert isinstance(outcome.error, RetriesExhausted)
        assert client.count("update") == fast_retry.max_attempts
        assert await store.get("mq_user", USER_ID) == before
        assert [d.action for d in bus.history] == [Action.UPDATING]

    async def test_conflict_retries_are_bounded(
        self, reconciler, client, store, bus, desired_user, fast_retry
    ):
        await reconciler.create(desired_user)
        before = await store.get("mq_user", USER_ID)
        reads_before = client.count("read")
        desired_user["console_access"] = True
        client.fail("update", *[ConflictError("busy") for _ in range(10)])

        outcome = await reconciler.update(USER_ID, desired_user)

        assert not outcome.success
        assert isinstance(outcome.error, RetriesExhausted)
        assert isinstance(outcome.error.last_error, ConflictError)
        assert client.count("update") == fast_retry.max_attempts
        # Every conflict is followed by a fresh read
        assert client.count("read") == reads_before + fast_retry.max_attempts
        assert await store.get("mq_user", USER_ID) == before
        assert [d.action for d in bus.history] == [Action.UPDATING]

    async def test_remote_deletion_removes_state(self, reconciler, client, store, desired_user):
        await reconciler.create(desired_user)
        client.objects.clear()
        desired_user["groups"] = []

        outcome = await reconciler.update(USER_ID, desired_user)

        assert not outcome.success
        assert outcome.removed
        assert outcome.error.kind is ErrorKind.NOT_FOUND
        assert await store.get("mq_user", USER_ID) is None

    async def test_without_stored_state_reads_first(self, reconciler, client, store, desired_user):
        client.objects[("b-1234", "app-user")] = wire_user()

        outcome = await reconciler.update(USER_ID, desired_user)

        assert outcome.success
        # Nothing but the password is known to differ
        assert calls_of(client, "update") == [{"password": "correct-horse-battery"}]
        assert (await store.get("mq_user", USER_ID)).status is LifecycleState.PRESENT

    async def test_invalid_identifier(self, reconciler, client, desired_user):
        outcome = await reconciler.update("b-1234", desired_user)

        assert not outcome.success
        assert outcome.error.kind is ErrorKind.NOT_FOUND
        assert client.calls == []

    async def test_malformed_input(self, reconciler, client, desired_user):
        await reconciler.create(desired_user)
        calls_before = list(client.calls)
        desired_user["console_access"] = "sometimes"

        outcome = await reconciler.update(USER_ID, desired_user)

        assert isinstance(outcome.error, MalformedInputError)
        assert client.calls == calls_before


@pytest.mark.asyncio
class TestDelete:
    """Tests for Reconciler.delete."""

    async def test_delete(self, reconciler, client, store, desired_user):
        await reconciler.create(desired_user)
        outcome = await reconciler.delete(USER_ID)

        assert outcome.success
        assert outcome.removed
        assert outcome.state is LifecycleState.ABSENT
        assert client.objects == {}
        assert await store.get("mq_user", USER_ID) is None

    async def test_delete_is_idempotent(self, reconciler, client, desired_user):
        await reconciler.create(desired_user)

        first = await reconciler.delete(USER_ID)
        second = await reconciler.delete(USER_ID)

        assert first.success and second.success
        assert client.count("delete") == 2

    async def test_delete_never_created(self, reconciler, bus):
        outcome = await reconciler.delete("b-1234/ghost")
        assert outcome.success
        assert bus.history == []

    async def test_delete_retries_transient(self, reconciler, client, desired_user):
        await reconciler.create(desired_user)
        client.fail("delete", TransientError("throttled"))

        outcome = await reconciler.delete(USER_ID)

        assert outcome.success
        assert client.count("delete") == 2

    async def test_transient_retries_are_bounded(
        self, reconciler, client, store, bus, desired_user, fast_retry
    ):
        await reconciler.create(desired_user)
        before = await store.get("mq_user", USER_ID)
        client.fail("delete", *[TransientError("throttled") for _ in range(10)])

        outcome = await reconciler.delete(USER_ID)

        assert not outcome.success
        assert outcome.state is LifecycleState.ERRORED
        assert isinstance(outcome.error, RetriesExhausted)
        assert client.count("delete") == fast_retry.max_attempts
        assert await store.get("mq_user", USER_ID) == before
        assert [d.action for d in bus.history] == [Action.DELETING]

    async def test_delete_conflict_rereads(self, reconciler, client, desired_user):
        await reconciler.create(desired_user)
        client.fail("delete", ConflictError("user is being updated"))

        outcome = await reconciler.delete(USER_ID)

        assert outcome.success
        assert client.count("delete") == 2

    async def test_permanent_failure_keeps_state(self, reconciler, client, store, bus, desired_user):
        await reconciler.create(desired_user)
        client.fail("delete", PermanentError("access denied"))

        outcome = await reconciler.delete(USER_ID)

        assert not outcome.success
        assert (await store.get("mq_user", USER_ID)).status is LifecycleState.PRESENT
        assert bus.history[-1].action is Action.DELETING

    async def test_cancelled_keeps_state(self, reconciler, client, store, desired_user):
        await reconciler.create(desired_user)
        cancel = asyncio.Event()
        cancel.set()

        outcome = await reconciler.delete(USER_ID, cancel)

        assert outcome.cancelled
        assert client.count("delete") == 0
        assert await store.get("mq_user", USER_ID) is not None


@pytest.mark.asyncio
class TestImport:
    """Tests for Reconciler.import_resource."""

    @pytest.mark.parametrize("raw_id", ["b-1234", "b-1234/", "/app-user", "a/b/c"])
    async def test_wrong_format_makes_no_calls(self, reconciler, client, raw_id):
        outcome = await reconciler.import_resource(raw_id)

        assert not outcome.success
        assert isinstance(outcome.error, ImportFormatError)
        assert "use: broker-id/username" in outcome.message
        assert client.calls == []

    async def test_import_existing(self, reconciler, client, store):
        client.objects[("b-1234", "app-user")] = wire_user()

        outcome = await reconciler.import_resource(USER_ID)

        assert outcome.success
        assert outcome.identifier == USER_ID
        assert outcome.observed["password"] is None
        assert client.count("read") == 1
        assert (await store.get("mq_user", USER_ID)).status is LifecycleState.PRESENT

    async def test_import_then_read(self, reconciler, client):
        client.objects[("b-1234", "app-user")] = wire_user()
        imported = await reconciler.import_resource(USER_ID)

        refreshed = await reconciler.read(USER_ID)

        assert refreshed.success
        assert refreshed.drift == []
        assert refreshed.observed == imported.observed

    async def test_import_missing(self, reconciler, store):
        outcome = await reconciler.import_resource("b-1234/ghost")

        assert not outcome.success
        assert "cannot import non-existent remote object" in outcome.message
        assert await store.list() == []


@pytest.mark.asyncio
class TestSharedReconciler:
    """One reconciler serves independent objects concurrently."""

    async def test_concurrent_creates(self, reconciler, store, desired_user):
        other = dict(desired_user, username="other-user")

        first, second = await asyncio.gather(
            reconciler.create(desired_user), reconciler.create(other)
        )

        assert first.success and second.success
        assert {r.identifier for r in await store.list("mq_user")} == {
            USER_ID,
            "b-1234/other-user",
        }
