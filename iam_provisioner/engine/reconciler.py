"""
Account Reconciler for the IAM Provisioner.

Drives one AccountResource from whatever state it is persisted in toward a
fully provisioned account:

    New -> CreatingLoginProfile -> CreatingAccessKey -> Created

then joins every desired group the account is not yet known to be in.
Each completed side effect is checkpointed to the resource store before
the next one starts, so a pass that dies anywhere resumes where it left
off and replays at most one (duplicate-tolerant) provider call.
"""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..audit.audit_logger import AuditLogger
from ..connectors import BaseIamClient, ConnectorResult
from ..models import AccountResource, AccountState, AuditRecord, ReconcileResult
from .errors import (
    ExternalAPIError,
    PersistError,
    ReconcileCancelled,
    ReconcileError,
    SecretSinkError,
)
from .group_diff import group_diff
from .password import PasswordGenerator
from .resource_store import ResourceStore
from .secret_sink import BaseSecretSink, LoggingSecretSink

logger = logging.getLogger(__name__)

GROUPS_STAGE = "UserGroups"


class AccountReconciler:
    """
    Reconciles AccountResources against an IAM provider.

    Holds no per-resource state between calls; the scheduler guarantees
    that a given resource is never reconciled by two callers at once.
    """

    def __init__(
        self,
        store: ResourceStore,
        iam_client: BaseIamClient,
        password_generator: Optional[PasswordGenerator] = None,
        secret_sink: Optional[BaseSecretSink] = None,
        audit_logger: Optional[AuditLogger] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the reconciler.

        Args:
            store: Resource store holding spec and status
            iam_client: Provider client performing the side effects
            password_generator: Generator for login passwords
            secret_sink: Receives generated credentials; defaults to the debug log
            audit_logger: Audit trail for side effects; None disables auditing
            stop_event: When set, the pass aborts before its next side effect
        """
        self.store = store
        self.iam_client = iam_client
        self.password_generator = password_generator or PasswordGenerator()
        self.secret_sink = secret_sink or LoggingSecretSink()
        self.audit_logger = audit_logger
        self.stop_event = stop_event

    def reconcile(self, name: str) -> ReconcileResult:
        """
        Run one reconciliation pass over a resource.

        Args:
            name: Name of the AccountResource

        Returns:
            ReconcileResult; ``success`` False means the caller should retry later
        """
        result = ReconcileResult(reconcile_id=str(uuid.uuid4()), resource_name=name)

        resource = self.store.get(name)
        if resource is None:
            logger.info(f"AccountResource {name} not found, nothing to reconcile")
            result.found = False
            result.completed_at = datetime.now(timezone.utc)
            return result

        logger.debug(
            f"Reconciling {name}: state={resource.status.account_state.value}, "
            f"groups={resource.status.user_groups}"
        )

        try:
            self._bootstrap(resource, result)
            self._sync_groups(resource, result)
        except ReconcileError as e:
            result.success = False
            result.failed_stage = e.stage
            result.error = str(e)
            logger.error(f"Reconcile of {name} failed at stage {e.stage}: {e}")
            self._audit(resource, result, e.stage or "", "reconcile", "", False, str(e))

        result.state = resource.status.account_state
        result.completed_at = datetime.now(timezone.utc)
        return result

    def _bootstrap(self, resource: AccountResource, result: ReconcileResult):
        """Advance through the provisioning stages, each at most once in this pass."""
        user_name = resource.spec.user_name

        if resource.status.account_state in (AccountState.NEW, AccountState.CREATING_USER):
            stage = AccountState.CREATING_USER.value
            outcome = self._call(
                resource, result, stage, "create_user", user_name,
                self.iam_client.create_user, user_name,
            )
            self._checkpoint(resource, stage, account_state=AccountState.CREATING_LOGIN_PROFILE)
            logger.info(f"Created user {user_name} for {resource.name}")
            logger.debug(f"User details for {user_name}: {outcome.data}")

        if resource.status.account_state == AccountState.CREATING_LOGIN_PROFILE:
            stage = AccountState.CREATING_LOGIN_PROFILE.value
            try:
                password = self.password_generator.generate_login_password()
            except ValueError as e:
                raise ExternalAPIError(f"Unable to generate password: {e}", stage) from e

            self._call(
                resource, result, stage, "create_login_profile", user_name,
                self.iam_client.create_login_profile, password, user_name, True,
            )
            self._hand_over_secret(resource, stage, {"user_name": user_name, "password": password})
            self._checkpoint(resource, stage, account_state=AccountState.CREATING_ACCESS_KEY)
            logger.info(f"Created login profile for {user_name}")

        if resource.status.account_state == AccountState.CREATING_ACCESS_KEY:
            stage = AccountState.CREATING_ACCESS_KEY.value
            outcome = self._call(
                resource, result, stage, "create_access_key", user_name,
                self.iam_client.create_access_key_pair, user_name,
            )
            key_pair = outcome.data
            if key_pair is None:
                raise ExternalAPIError(f"Provider returned no access key for {user_name}", stage)

            self._hand_over_secret(
                resource,
                stage,
                {
                    "access_key_id": key_pair.access_key_id,
                    "secret_access_key": key_pair.secret_access_key,
                },
            )
            self._checkpoint(resource, stage, account_state=AccountState.CREATED)
            logger.info(f"Created access key {key_pair.access_key_id} for {user_name}")

    def _sync_groups(self, resource: AccountResource, result: ReconcileResult):
        """Join desired groups one at a time, checkpointing after each join."""
        user_name = resource.spec.user_name
        to_add, to_remove = group_diff(resource.spec.groups, resource.status.user_groups)
        result.groups_to_remove = to_remove

        if to_remove:
            # Removal is intentionally inert: neither the provider nor the status changes
            logger.info(f"Group removal is disabled; {user_name} stays in {to_remove}")

        for group in to_add:
            self._call(
                resource, result, GROUPS_STAGE, "add_user_to_group", group,
                self.iam_client.add_user_to_group, group, user_name,
            )
            self._checkpoint(resource, GROUPS_STAGE, user_groups=resource.status.user_groups + [group])
            logger.info(f"Added {user_name} to group {group}")

    def _call(
        self,
        resource: AccountResource,
        result: ReconcileResult,
        stage: str,
        action: str,
        target: str,
        operation: Callable[..., ConnectorResult],
        *args: Any,
    ) -> ConnectorResult:
        """Perform one provider side effect, raising ExternalAPIError if it failed."""
        if self.stop_event is not None and self.stop_event.is_set():
            raise ReconcileCancelled(f"Reconcile of {resource.name} cancelled before {action}", stage)

        try:
            outcome = operation(*args)
        except Exception as e:
            outcome = ConnectorResult(False, f"{action} raised {type(e).__name__}: {e}", error=str(e))

        self._audit(resource, result, stage, action, target, outcome.success, outcome.error)

        if not outcome.success:
            raise ExternalAPIError(outcome.message or f"{action} failed: {outcome.error}", stage)

        return outcome

    def _checkpoint(self, resource: AccountResource, stage: str, **status_update: Any):
        """
        Persist a status change, then apply it to ``resource``.

        ``resource`` is left untouched if the write fails.
        """
        candidate = resource.model_copy(deep=True)
        candidate.status = resource.status.model_copy(update=status_update, deep=True)

        try:
            self.store.update_status(candidate)
        except PersistError as e:
            raise type(e)(f"Unable to update status of {resource.name}: {e}", stage) from e
        except Exception as e:
            raise PersistError(f"Unable to update status of {resource.name}: {e}", stage) from e

        resource.status = candidate.status
        resource.resource_version = candidate.resource_version

    def _hand_over_secret(self, resource: AccountResource, stage: str, fields: dict):
        try:
            self.secret_sink.store_secret(resource.name, fields)
        except Exception as e:
            raise SecretSinkError(f"Unable to store credentials of {resource.name}: {e}", stage) from e

    def _audit(
        self,
        resource: AccountResource,
        result: ReconcileResult,
        stage: str,
        action: str,
        target: str,
        success: bool,
        error: Optional[str] = None,
    ):
        result.actions_taken.append(
            {"stage": stage, "action": action, "target": target, "success": success, "error": error}
        )

        if self.audit_logger is None:
            return

        record = AuditRecord(
            id=str(uuid.uuid4()),
            resource_name=resource.name,
            user_name=resource.spec.user_name,
            stage=stage,
            action=action,
            target=target,
            success=success,
            error_message=error,
            reconcile_id=result.reconcile_id,
        )
        try:
            self.audit_logger.log_event(record)
        except (OSError, ValueError) as e:
            # A lost audit record must not abort the pass
            logger.warning(f"Failed to write audit record for {resource.name}: {e}")
