"""
Shared fixtures for the IAM Provisioner tests.
"""

import pytest

from iam_provisioner.audit import AuditLogger
from iam_provisioner.connectors import MockIamClient
from iam_provisioner.engine import AccountReconciler, MemorySecretSink, ResourceStore
from iam_provisioner.models import AccountResource, AccountSpec, AccountState, AccountStatus


@pytest.fixture
def store():
    """In-memory resource store."""
    return ResourceStore()


@pytest.fixture
def iam_client():
    """Simulated IAM backend that records every call."""
    return MockIamClient()


@pytest.fixture
def secret_sink():
    return MemorySecretSink()


@pytest.fixture
def audit_logger(tmp_path):
    return AuditLogger(str(tmp_path / "audit"))


@pytest.fixture
def reconciler(store, iam_client, secret_sink, audit_logger):
    return AccountReconciler(store, iam_client, secret_sink=secret_sink, audit_logger=audit_logger)


@pytest.fixture
def make_resource(store, iam_client):
    """
    Factory that declares a resource in the store and returns its name.

    For resources seeded past user creation, the user (and its joined
    groups) is also created in the simulated backend; the call log is
    cleared afterwards.
    """

    def _make(name="alice", user_name="alice", groups=None, state=AccountState.NEW, user_groups=None):
        resource = AccountResource(
            name=name,
            spec=AccountSpec(user_name=user_name, groups=groups or []),
            status=AccountStatus(account_state=state, user_groups=user_groups or []),
        )
        store.apply(resource)

        if state not in (AccountState.NEW, AccountState.CREATING_USER):
            iam_client.create_user(user_name)
            for group in user_groups or []:
                iam_client.add_user_to_group(group, user_name)
            iam_client.calls.clear()

        return name

    return _make
