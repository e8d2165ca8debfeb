"""
IAM Provisioner

Declarative provisioning of IAM user accounts: login credentials, access
keys and group memberships, driven by a checkpointed reconciliation loop
that resumes safely after any failure.
"""

__version__ = "1.0.0"
__author__ = "IAM Provisioner Team"
__email__ = "team@example.com"

from .engine.controller import Controller
from .engine.reconciler import AccountReconciler
from .engine.resource_store import ResourceStore
from .models import AccountResource, AccountState

__all__ = [
    "AccountReconciler",
    "AccountResource",
    "AccountState",
    "Controller",
    "ResourceStore",
]
