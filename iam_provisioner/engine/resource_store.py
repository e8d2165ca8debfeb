"""
Resource Store for the IAM Provisioner.

Holds the declared spec and the persisted status of every account resource.
Status writes are the reconciler's checkpoints, so every write reaches
storage before the call returns and failures are raised, never swallowed.
"""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..models import AccountResource, AccountState
from .errors import ConflictError, PersistError

logger = logging.getLogger(__name__)


class ResourceStore:
    """
    Stores account resources by name.

    Provides in-memory storage with optional JSON file persistence. Every
    write bumps the resource version; status updates carrying a stale
    version are rejected with ConflictError.
    """

    def __init__(self, storage_path: Optional[Union[str, Path]] = None):
        """
        Initialize the resource store.

        Args:
            storage_path: Path to store resources as JSON.
                         If None, resources are kept in memory only.
        """
        self.storage_path = Path(storage_path) if storage_path else None
        self.resources: Dict[str, AccountResource] = {}
        self._lock = threading.RLock()

        if self.storage_path:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

        logger.info(
            f"Initialized ResourceStore with {'persistent' if self.storage_path else 'in-memory'} storage"
        )

    def get(self, name: str) -> Optional[AccountResource]:
        """
        Get a copy of a resource.

        Args:
            name: Resource name to look up

        Returns:
            AccountResource if found, None otherwise
        """
        with self._lock:
            resource = self.resources.get(name)
            return resource.model_copy(deep=True) if resource else None

    def update_status(self, resource: AccountResource) -> AccountResource:
        """
        Persist the status of a resource.

        Only ``status`` is taken from the argument; the stored spec is kept.
        On success the argument's ``resource_version`` is advanced to the
        stored one so the caller can keep writing with it.

        Args:
            resource: Resource carrying the new status

        Returns:
            The stored resource (a copy)

        Raises:
            PersistError: If the resource no longer exists or cannot be written
            ConflictError: If ``resource.resource_version`` is stale
        """
        with self._lock:
            stored = self.resources.get(resource.name)
            if stored is None:
                raise PersistError(f"Resource {resource.name} not found")

            if stored.resource_version != resource.resource_version:
                raise ConflictError(
                    f"Resource {resource.name} was modified "
                    f"(version {resource.resource_version} != {stored.resource_version})"
                )

            updated = stored.model_copy(
                update={
                    "status": resource.status.model_copy(deep=True),
                    "resource_version": stored.resource_version + 1,
                    "updated_at": datetime.now(timezone.utc),
                },
                deep=True,
            )

            self._commit(resource.name, updated)
            resource.resource_version = updated.resource_version

            logger.debug(
                f"Updated status of {resource.name}: state={updated.status.account_state.value}, "
                f"groups={updated.status.user_groups}"
            )
            return updated.model_copy(deep=True)

    def apply(self, resource: AccountResource) -> AccountResource:
        """
        Create a resource or update the spec of an existing one.

        The stored status is always preserved for existing resources.

        Args:
            resource: Resource with the desired spec

        Returns:
            The stored resource (a copy)

        Raises:
            ValueError: If the user name of a provisioned account would change
            PersistError: If the resource cannot be written
        """
        with self._lock:
            existing = self.resources.get(resource.name)

            if existing is None:
                stored = resource.model_copy(update={"resource_version": 1}, deep=True)
                logger.info(f"Created resource {resource.name} for user {resource.spec.user_name}")
            else:
                if (
                    existing.spec.user_name != resource.spec.user_name
                    and existing.status.account_state != AccountState.NEW
                ):
                    raise ValueError(
                        f"spec.userName of {resource.name} is immutable once provisioning started "
                        f"({existing.spec.user_name!r} -> {resource.spec.user_name!r})"
                    )

                stored = existing.model_copy(
                    update={
                        "spec": resource.spec.model_copy(deep=True),
                        "resource_version": existing.resource_version + 1,
                        "updated_at": datetime.now(timezone.utc),
                    },
                    deep=True,
                )
                logger.info(f"Updated spec of resource {resource.name}")

            self._commit(resource.name, stored)
            return stored.model_copy(deep=True)

    def delete(self, name: str) -> bool:
        """
        Remove a resource from the store. The provider account is left untouched.

        Returns:
            True if removed, False if not found
        """
        with self._lock:
            if name not in self.resources:
                return False

            previous = self.resources.pop(name)
            try:
                self._save_state()
            except PersistError:
                self.resources[name] = previous
                raise

            logger.info(f"Deleted resource {name}")
            return True

    def list_resources(self) -> List[AccountResource]:
        """Get copies of all resources, ordered by name."""
        with self._lock:
            return [self.resources[name].model_copy(deep=True) for name in sorted(self.resources)]

    def list_names(self) -> List[str]:
        with self._lock:
            return sorted(self.resources)

    def get_summary(self) -> Dict[str, Any]:
        """
        Get a summary of the stored resources.

        Returns:
            Dictionary with resource statistics
        """
        summary = {
            "total_resources": 0,
            "resources_by_state": {},
            "total_groups_joined": 0,
            "resources_pending_groups": 0,
        }

        for resource in self.list_resources():
            summary["total_resources"] += 1

            state = resource.status.account_state.value
            summary["resources_by_state"][state] = summary["resources_by_state"].get(state, 0) + 1

            summary["total_groups_joined"] += len(resource.status.user_groups)
            if set(resource.spec.groups) - set(resource.status.user_groups):
                summary["resources_pending_groups"] += 1

        return summary

    def _commit(self, name: str, resource: AccountResource):
        """Replace a stored resource and persist; restore the previous one on failure."""
        previous = self.resources.get(name)
        self.resources[name] = resource
        try:
            self._save_state()
        except PersistError:
            if previous is None:
                self.resources.pop(name, None)
            else:
                self.resources[name] = previous
            raise

    def _save_state(self):
        """Save current state to persistent storage, atomically."""
        if not self.storage_path:
            return

        state_data = {
            "resources": {
                name: resource.model_dump(mode="json", by_alias=True)
                for name, resource in self.resources.items()
            },
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }

        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=self.storage_path.parent, prefix=f".{self.storage_path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(state_data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.storage_path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.error(f"Failed to save state to {self.storage_path}: {e}")
            raise PersistError(f"Failed to save state to {self.storage_path}: {e}") from e

    def _load_state(self):
        """Load state from persistent storage."""
        if not self.storage_path or not self.storage_path.exists():
            return

        with open(self.storage_path, encoding="utf-8") as f:
            state_data = json.load(f)

        for name, resource_data in state_data.get("resources", {}).items():
            self.resources[name] = AccountResource.model_validate(resource_data)

        logger.info(f"Loaded {len(self.resources)} resources from {self.storage_path}")
