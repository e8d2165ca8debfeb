"""
Reconciliation error types.

Every error raised while reconciling carries the provisioning stage it
happened in, so failures can be logged and audited with that context.
"""

from typing import Optional


class ReconcileError(Exception):
    """Base class for failures that abort a reconciliation pass."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class ExternalAPIError(ReconcileError):
    """The IAM provisioning client or the password generator failed."""


class SecretSinkError(ReconcileError):
    """A generated credential could not be handed to the secret sink."""


class PersistError(ReconcileError):
    """The resource store could not write the status."""


class ConflictError(PersistError):
    """The status write was based on a stale resource version."""


class ReconcileCancelled(ReconcileError):
    """The stop signal was set before the next side effect was attempted."""
