"""
Reconciliation Engine Package.

This package provides the core reconciliation components: the group diff,
the account reconciler with its checkpointing resource store, and the
controller that schedules reconcile passes.
"""

from .controller import Controller, WorkQueue
from .errors import (
    ConflictError,
    ExternalAPIError,
    PersistError,
    ReconcileCancelled,
    ReconcileError,
    SecretSinkError,
)
from .group_diff import contains, get_difference, group_diff
from .password import PasswordGenerator
from .reconciler import AccountReconciler
from .resource_store import ResourceStore
from .secret_sink import BaseSecretSink, LoggingSecretSink, MemorySecretSink

__all__ = [
    "AccountReconciler",
    "BaseSecretSink",
    "ConflictError",
    "Controller",
    "ExternalAPIError",
    "LoggingSecretSink",
    "MemorySecretSink",
    "PasswordGenerator",
    "PersistError",
    "ReconcileCancelled",
    "ReconcileError",
    "ResourceStore",
    "SecretSinkError",
    "WorkQueue",
    "contains",
    "get_difference",
    "group_diff",
]
