"""
Tests for the Account Reconciler.

Covers the provisioning state machine, group convergence, checkpointing
after every side effect, and recovery from failures at each stage.
"""

import threading
from unittest.mock import Mock

import pytest

from iam_provisioner.connectors import ConnectorResult, MockIamClient
from iam_provisioner.engine import (
    AccountReconciler,
    MemorySecretSink,
    PersistError,
    ResourceStore,
)
from iam_provisioner.models import ACCOUNT_STATE_ORDER, AccountResource, AccountState, ReconcileResult

BOOTSTRAP_CALLS = ["create_user", "create_login_profile", "create_access_key_pair"]


class FlakyStore(ResourceStore):
    """Resource store whose next status writes can be made to fail."""

    def __init__(self):
        super().__init__()
        self.fail_updates = 0
        self.fail_after_updates = None
        self.written_states = []

    def update_status(self, resource: AccountResource) -> AccountResource:
        if self.fail_after_updates is not None:
            if self.fail_after_updates == 0:
                self.fail_after_updates = None
                raise PersistError("connection reset")
            self.fail_after_updates -= 1

        if self.fail_updates > 0:
            self.fail_updates -= 1
            raise PersistError("connection reset")

        stored = super().update_status(resource)
        self.written_states.append(stored.status.account_state)
        return stored


def call_names(client: MockIamClient):
    return [name for name, _ in client.calls]


class TestBootstrap:
    """Test cases for the provisioning stages."""

    def test_full_provisioning_from_new(self, reconciler, store, iam_client, secret_sink, make_resource):
        make_resource(groups=["a", "b"])

        result = reconciler.reconcile("alice")

        assert isinstance(result, ReconcileResult)
        assert result.success is True
        assert result.state == AccountState.CREATED
        assert call_names(iam_client) == BOOTSTRAP_CALLS + ["add_user_to_group", "add_user_to_group"]

        resource = store.get("alice")
        assert resource.status.account_state == AccountState.CREATED
        assert resource.status.user_groups == ["a", "b"]
        # one write per stage and per group, on top of the initial apply
        assert resource.resource_version == 1 + 3 + 2

    def test_login_profile_requires_password_change(self, reconciler, iam_client, make_resource):
        make_resource()

        reconciler.reconcile("alice")

        assert ("create_login_profile", ("alice", True)) in iam_client.calls
        assert iam_client.users["alice"]["login_profile"]["password_reset_required"] is True

    def test_secrets_go_to_sink_not_store(self, reconciler, store, iam_client, secret_sink, make_resource):
        make_resource()

        reconciler.reconcile("alice")

        secrets = secret_sink.secrets["alice"]
        assert secrets["password"] == iam_client.users["alice"]["login_profile"]["password"]
        assert secrets["access_key_id"] == iam_client.users["alice"]["access_keys"][0]
        assert secrets["secret_access_key"]

        dumped = store.get("alice").model_dump_json()
        assert secrets["password"] not in dumped
        assert secrets["secret_access_key"] not in dumped

    def test_empty_state_is_treated_as_new(self, reconciler, store, iam_client):
        store.apply(AccountResource.from_manifest({
            "metadata": {"name": "bob"},
            "spec": {"userName": "bob"},
            "status": {"accountState": ""},
        }))

        result = reconciler.reconcile("bob")

        assert result.success is True
        assert iam_client.call_count("create_user") == 1
        assert store.get("bob").status.account_state == AccountState.CREATED

    def test_creating_user_state_creates_user(self, reconciler, iam_client, make_resource):
        make_resource(state=AccountState.CREATING_USER)

        result = reconciler.reconcile("alice")

        assert result.success is True
        assert call_names(iam_client) == BOOTSTRAP_CALLS

    @pytest.mark.parametrize("state,expected_calls", [
        (AccountState.CREATING_LOGIN_PROFILE, ["create_login_profile", "create_access_key_pair"]),
        (AccountState.CREATING_ACCESS_KEY, ["create_access_key_pair"]),
        (AccountState.CREATED, []),
    ])
    def test_resumes_from_persisted_state(self, reconciler, iam_client, make_resource, state, expected_calls):
        make_resource(state=state)

        result = reconciler.reconcile("alice")

        assert result.success is True
        assert result.state == AccountState.CREATED
        assert call_names(iam_client) == expected_calls

    def test_not_found_is_success_without_action(self, reconciler, iam_client):
        result = reconciler.reconcile("ghost")

        assert result.success is True
        assert result.found is False
        assert result.requeue is False
        assert iam_client.calls == []

    def test_each_stage_runs_once_per_pass(self, reconciler, iam_client, make_resource):
        make_resource(groups=["a"])

        reconciler.reconcile("alice")

        for name in BOOTSTRAP_CALLS:
            assert iam_client.call_count(name) == 1


class TestIdempotence:
    """Reconciling a fully provisioned account changes nothing."""

    def test_created_and_synced_issues_no_calls(self, reconciler, store, iam_client, make_resource):
        make_resource(groups=["a", "b"], state=AccountState.CREATED, user_groups=["b", "a"])
        before = store.get("alice")

        result = reconciler.reconcile("alice")

        assert result.success is True
        assert iam_client.calls == []
        assert result.actions_taken == []

        after = store.get("alice")
        assert after.model_dump_json() == before.model_dump_json()

    def test_second_pass_is_a_no_op(self, reconciler, store, iam_client, make_resource):
        make_resource(groups=["a"])
        reconciler.reconcile("alice")
        iam_client.calls.clear()
        version = store.get("alice").resource_version

        reconciler.reconcile("alice")

        assert iam_client.calls == []
        assert store.get("alice").resource_version == version


class TestFailures:
    """A failing step aborts the pass and is not marked complete."""

    def test_login_profile_failure(self, reconciler, store, iam_client, secret_sink, make_resource):
        make_resource(groups=["a"])
        iam_client.inject_failure("create_login_profile")

        result = reconciler.reconcile("alice")

        assert result.success is False
        assert result.requeue is True
        assert result.failed_stage == AccountState.CREATING_LOGIN_PROFILE.value
        assert result.state == AccountState.CREATING_LOGIN_PROFILE
        assert call_names(iam_client) == ["create_user", "create_login_profile"]
        assert store.get("alice").status.account_state == AccountState.CREATING_LOGIN_PROFILE
        assert "password" not in secret_sink.secrets.get("alice", {})

        iam_client.calls.clear()
        result = reconciler.reconcile("alice")

        assert result.success is True
        assert call_names(iam_client) == ["create_login_profile", "create_access_key_pair", "add_user_to_group"]

    def test_create_user_failure_leaves_status_untouched(self, reconciler, store, iam_client, make_resource):
        make_resource()
        iam_client.inject_failure("create_user")
        before = store.get("alice")

        result = reconciler.reconcile("alice")

        assert result.success is False
        assert result.failed_stage == AccountState.CREATING_USER.value
        assert store.get("alice").model_dump_json() == before.model_dump_json()

    def test_client_exception_is_external_error(self, store, make_resource):
        make_resource()
        client = Mock()
        client.create_user.side_effect = RuntimeError("socket closed")
        reconciler = AccountReconciler(store, client)

        result = reconciler.reconcile("alice")

        assert result.success is False
        assert "socket closed" in result.error
        assert store.get("alice").status.account_state == AccountState.NEW

    def test_missing_access_key_data(self, store, make_resource):
        make_resource(state=AccountState.CREATING_ACCESS_KEY)
        client = Mock()
        client.create_access_key_pair.return_value = ConnectorResult(True, "ok", data=None)
        reconciler = AccountReconciler(store, client)

        result = reconciler.reconcile("alice")

        assert result.success is False
        assert store.get("alice").status.account_state == AccountState.CREATING_ACCESS_KEY

    def test_password_generation_failure(self, store, iam_client, make_resource):
        make_resource(state=AccountState.CREATING_LOGIN_PROFILE)
        generator = Mock()
        generator.generate_login_password.side_effect = ValueError("policy unsatisfiable")
        reconciler = AccountReconciler(store, iam_client, password_generator=generator)

        result = reconciler.reconcile("alice")

        assert result.success is False
        assert result.failed_stage == AccountState.CREATING_LOGIN_PROFILE.value
        assert "Unable to generate password" in result.error
        assert iam_client.calls == []

    def test_secret_sink_failure_does_not_advance(self, store, iam_client, make_resource):
        make_resource(state=AccountState.CREATING_ACCESS_KEY)
        sink = Mock()
        sink.store_secret.side_effect = OSError("vault unavailable")
        reconciler = AccountReconciler(store, iam_client, secret_sink=sink)

        result = reconciler.reconcile("alice")

        assert result.success is False
        assert "vault unavailable" in result.error
        assert store.get("alice").status.account_state == AccountState.CREATING_ACCESS_KEY

    def test_cancelled_before_side_effect(self, store, iam_client, make_resource):
        make_resource(groups=["a"])
        stop_event = threading.Event()
        stop_event.set()
        reconciler = AccountReconciler(store, iam_client, stop_event=stop_event)

        result = reconciler.reconcile("alice")

        assert result.success is False
        assert "cancelled" in result.error
        assert iam_client.calls == []
        assert store.get("alice").status.account_state == AccountState.NEW

    def test_cancelled_mid_pass_keeps_checkpoint(self, store, make_resource):
        make_resource()
        stop_event = threading.Event()

        class StoppingClient(MockIamClient):
            def create_user(self, user_name):
                outcome = super().create_user(user_name)
                stop_event.set()
                return outcome

        client = StoppingClient()
        reconciler = AccountReconciler(store, client, stop_event=stop_event)

        result = reconciler.reconcile("alice")

        assert result.success is False
        assert result.failed_stage == AccountState.CREATING_LOGIN_PROFILE.value
        assert store.get("alice").status.account_state == AccountState.CREATING_LOGIN_PROFILE
        assert client.call_count("create_login_profile") == 0


class TestCrashSafety:
    """A lost checkpoint replays exactly the one call it covered."""

    @pytest.fixture
    def flaky_store(self):
        return FlakyStore()

    @pytest.fixture
    def flaky_reconciler(self, flaky_store, iam_client):
        return AccountReconciler(flaky_store, iam_client, secret_sink=MemorySecretSink())

    def _declare(self, store, groups=None):
        store.apply(AccountResource.from_manifest({
            "metadata": {"name": "alice"},
            "spec": {"userName": "alice", "groups": groups or []},
        }))

    def test_persist_failure_after_create_user(self, flaky_reconciler, flaky_store, iam_client):
        self._declare(flaky_store)
        flaky_store.fail_updates = 1

        result = flaky_reconciler.reconcile("alice")

        assert result.success is False
        assert result.failed_stage == AccountState.CREATING_USER.value
        assert flaky_store.get("alice").status.account_state == AccountState.NEW
        assert call_names(iam_client) == ["create_user"]

        result = flaky_reconciler.reconcile("alice")

        assert result.success is True
        assert iam_client.call_count("create_user") == 2
        assert iam_client.call_count("create_login_profile") == 1
        assert iam_client.call_count("create_access_key_pair") == 1

    def test_persist_failure_after_access_key(self, flaky_reconciler, flaky_store, iam_client):
        self._declare(flaky_store)
        flaky_store.fail_after_updates = 2

        result = flaky_reconciler.reconcile("alice")

        assert result.success is False
        assert flaky_store.get("alice").status.account_state == AccountState.CREATING_ACCESS_KEY

        flaky_reconciler.reconcile("alice")

        assert iam_client.call_count("create_user") == 1
        assert iam_client.call_count("create_login_profile") == 1
        assert iam_client.call_count("create_access_key_pair") == 2
        assert flaky_store.get("alice").status.account_state == AccountState.CREATED

    def test_persist_failure_after_group_join(self, flaky_reconciler, flaky_store, iam_client):
        self._declare(flaky_store, groups=["a", "b"])
        # three stage checkpoints succeed, the checkpoint for "a" fails
        flaky_store.fail_after_updates = 3

        result = flaky_reconciler.reconcile("alice")

        assert result.success is False
        assert result.failed_stage == "UserGroups"
        assert flaky_store.get("alice").status.user_groups == []
        assert "alice" in iam_client.groups["a"]

        result = flaky_reconciler.reconcile("alice")

        assert result.success is True
        assert flaky_store.get("alice").status.user_groups == ["a", "b"]
        assert iam_client.call_count("create_user") == 1
        assert iam_client.calls[-2:] == [
            ("add_user_to_group", ("a", "alice")),
            ("add_user_to_group", ("b", "alice")),
        ]

    def test_concurrent_spec_change_is_a_conflict(self, store, make_resource):
        make_resource()

        class EditingClient(MockIamClient):
            def create_user(self, user_name):
                resource = store.get("alice")
                resource.spec.groups = ["late"]
                store.apply(resource)
                return super().create_user(user_name)

        client = EditingClient()
        reconciler = AccountReconciler(store, client)

        result = reconciler.reconcile("alice")

        assert result.success is False
        assert "modified" in result.error
        assert store.get("alice").status.account_state == AccountState.NEW

    def test_state_only_moves_forward(self, flaky_store, iam_client):
        reconciler = AccountReconciler(flaky_store, iam_client)
        self._declare(flaky_store, groups=["a"])
        iam_client.inject_failure("create_login_profile", times=2)
        iam_client.inject_failure("create_access_key_pair")

        for attempt in range(6):
            flaky_store.fail_updates = 1 if attempt == 3 else 0
            reconciler.reconcile("alice")

        ranks = [ACCOUNT_STATE_ORDER.index(state) for state in flaky_store.written_states]
        assert ranks == sorted(ranks)
        assert flaky_store.get("alice").status.account_state == AccountState.CREATED


class TestGroupConvergence:
    """Group membership converges by joining missing groups only."""

    def test_joins_desired_groups(self, reconciler, store, iam_client, make_resource):
        make_resource(groups=["a", "b"], state=AccountState.CREATED)

        result = reconciler.reconcile("alice")

        assert result.success is True
        assert store.get("alice").status.user_groups == ["a", "b"]
        assert iam_client.call_count("add_user_to_group") == 2
        assert iam_client.call_count("remove_user_from_group") == 0

    def test_partial_failure_containment(self, reconciler, store, iam_client, make_resource):
        make_resource(groups=["a", "b", "c"], state=AccountState.CREATED)
        iam_client.inject_failure("add_user_to_group", target="b")

        result = reconciler.reconcile("alice")

        assert result.success is False
        assert result.error
        assert store.get("alice").status.user_groups == ["a"]

        iam_client.calls.clear()
        result = reconciler.reconcile("alice")

        assert result.success is True
        assert iam_client.calls == [
            ("add_user_to_group", ("b", "alice")),
            ("add_user_to_group", ("c", "alice")),
        ]
        assert store.get("alice").status.user_groups == ["a", "b", "c"]

    def test_removal_is_computed_but_not_applied(self, reconciler, store, iam_client, make_resource):
        make_resource(groups=["a"], state=AccountState.CREATED, user_groups=["a", "b", "c"])

        result = reconciler.reconcile("alice")

        assert result.success is True
        assert result.groups_to_remove == ["b", "c"]
        assert store.get("alice").status.user_groups == ["a", "b", "c"]
        assert iam_client.call_count("remove_user_from_group") == 0
        assert iam_client.calls == []

    def test_spec_change_adds_new_group_in_order(self, reconciler, store, iam_client, make_resource):
        make_resource(groups=["a"], state=AccountState.CREATED, user_groups=["a"])
        resource = store.get("alice")
        resource.spec.groups = ["c", "a", "b"]
        store.apply(resource)

        reconciler.reconcile("alice")

        assert store.get("alice").status.user_groups == ["a", "c", "b"]

    def test_duplicate_desired_group_joined_once(self, reconciler, store, iam_client, make_resource):
        make_resource(groups=["a", "a"], state=AccountState.CREATED)

        reconciler.reconcile("alice")

        assert iam_client.call_count("add_user_to_group") == 1
        assert store.get("alice").status.user_groups == ["a"]

    def test_groups_not_touched_when_bootstrap_fails(self, reconciler, iam_client, make_resource):
        make_resource(groups=["a"])
        iam_client.inject_failure("create_access_key_pair")

        reconciler.reconcile("alice")

        assert iam_client.call_count("add_user_to_group") == 0


class TestAuditTrail:
    """Side effects and failures are recorded in the audit log."""

    def test_records_every_side_effect(self, reconciler, audit_logger, make_resource):
        make_resource(groups=["a"])

        result = reconciler.reconcile("alice")

        records = audit_logger.get_events(resource_name="alice")
        actions = sorted(r.action for r in records)
        assert actions == sorted(["create_user", "create_login_profile", "create_access_key", "add_user_to_group"])
        assert all(r.reconcile_id == result.reconcile_id for r in records)
        assert all(r.success for r in records)

    def test_records_failure(self, reconciler, audit_logger, iam_client, make_resource):
        make_resource()
        iam_client.inject_failure("create_user")

        reconciler.reconcile("alice")

        records = audit_logger.get_events(resource_name="alice")
        assert any(not r.success and r.action == "create_user" for r in records)

    def test_no_secrets_in_audit_log(self, reconciler, audit_logger, secret_sink, make_resource):
        make_resource()

        reconciler.reconcile("alice")

        log_text = "".join(p.read_text() for p in audit_logger.audit_dir.glob("*.jsonl"))
        assert secret_sink.secrets["alice"]["password"] not in log_text
        assert secret_sink.secrets["alice"]["secret_access_key"] not in log_text

    def test_audit_write_failure_does_not_abort(self, store, iam_client, make_resource):
        make_resource()
        audit = Mock()
        audit.log_event.side_effect = OSError("disk full")
        reconciler = AccountReconciler(store, iam_client, audit_logger=audit)

        result = reconciler.reconcile("alice")

        assert result.success is True
        assert store.get("alice").status.account_state == AccountState.CREATED
