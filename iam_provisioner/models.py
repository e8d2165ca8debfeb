"""
Core data models for the IAM Provisioner.

This module defines the Pydantic models used throughout the system
for account resources, their persisted status, generated credentials,
audit records, and reconciliation results.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountState(str, Enum):
    """Provisioning stages of an account, in the only order they may be reached."""
    NEW = "New"
    CREATING_USER = "CreatingUser"
    CREATING_LOGIN_PROFILE = "CreatingLoginProfile"
    CREATING_ACCESS_KEY = "CreatingAccessKey"
    CREATED = "Created"

    @property
    def rank(self) -> int:
        """Position of this state in the provisioning order."""
        return ACCOUNT_STATE_ORDER.index(self)

    def is_before(self, other: "AccountState") -> bool:
        return self.rank < other.rank


ACCOUNT_STATE_ORDER = [
    AccountState.NEW,
    AccountState.CREATING_USER,
    AccountState.CREATING_LOGIN_PROFILE,
    AccountState.CREATING_ACCESS_KEY,
    AccountState.CREATED,
]


class AccountSpec(BaseModel):
    """Desired state of an account, as declared by the user."""
    model_config = ConfigDict(populate_by_name=True)

    user_name: str = Field(..., alias="userName", min_length=1, description="IAM user name")
    groups: List[str] = Field(default_factory=list, description="Desired group memberships")


class AccountStatus(BaseModel):
    """Persisted progress of an account; the only durable checkpoint."""
    model_config = ConfigDict(populate_by_name=True)

    account_state: AccountState = Field(AccountState.NEW, alias="accountState")
    user_groups: List[str] = Field(
        default_factory=list,
        alias="userGroups",
        description="Groups confirmed joined, in join order",
    )

    @field_validator("account_state", mode="before")
    @classmethod
    def _empty_state_is_new(cls, value: Any) -> Any:
        if value is None or value == "":
            return AccountState.NEW
        return value


class AccountResource(BaseModel):
    """Declarative account resource: identity, desired spec and persisted status."""
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, description="Stable resource identity")
    spec: AccountSpec
    status: AccountStatus = Field(default_factory=AccountStatus)
    resource_version: int = Field(0, alias="resourceVersion", description="Bumped by the store on every write")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> "AccountResource":
        """Build a resource from a manifest with ``metadata``/``spec``/``status`` sections."""
        metadata = manifest.get("metadata") or {}
        name = metadata.get("name") or manifest.get("name")
        if not name:
            raise ValueError("Manifest is missing metadata.name")

        return cls(
            name=name,
            spec=AccountSpec(**(manifest.get("spec") or {})),
            status=AccountStatus(**(manifest.get("status") or {})),
        )

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "metadata": {"name": self.name, "resourceVersion": self.resource_version},
            "spec": self.spec.model_dump(by_alias=True),
            "status": self.status.model_dump(mode="json", by_alias=True),
        }


class AccessKeyPair(BaseModel):
    """Access key returned by the provider. The secret is never persisted by the engine."""
    access_key_id: str
    secret_access_key: str = Field(..., repr=False)
    user_name: Optional[str] = None
    status: str = "Active"


class AuditRecord(BaseModel):
    """Audit record for every provisioning side effect."""
    id: str = Field(..., description="Unique audit record ID")
    timestamp: datetime = Field(default_factory=_utcnow)
    resource_name: str
    user_name: str
    stage: str = Field(..., description="Provisioning stage the action belongs to")
    action: str = Field(..., description="Specific action taken")
    target: str = Field("", description="Group name or other affected object")
    success: bool
    error_message: Optional[str] = None
    reconcile_id: Optional[str] = Field(None, description="ID of the reconcile pass")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReconcileResult(BaseModel):
    """Result of one reconciliation pass over a single resource."""
    reconcile_id: str
    resource_name: str
    found: bool = True
    success: bool = True
    state: Optional[AccountState] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    actions_taken: List[Dict[str, Any]] = Field(default_factory=list)
    groups_to_remove: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def requeue(self) -> bool:
        """Whether the scheduler should retry this resource later."""
        return not self.success


AccountResources = List[AccountResource]
AuditRecords = List[AuditRecord]
