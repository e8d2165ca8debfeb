"""
Base IAM Client Classes for the IAM Provisioner.

This module defines the provisioning operations the reconciler needs from
an identity provider, with both a real API implementation (see
aws_connector) and a simulated backend that can be kept in a JSON file.
"""

import json
import logging
import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ..models import AccessKeyPair

logger = logging.getLogger(__name__)


class ConnectorResult:
    """Result of an IAM client operation."""

    def __init__(self, success: bool, message: str = "", data: Optional[Any] = None,
                 error: Optional[str] = None):
        self.success = success
        self.message = message
        self.data = data
        self.error = error

    def __bool__(self):
        return self.success

    def __str__(self):
        return f"{'✓' if self.success else '✗'} {self.message}"

    def __repr__(self):
        return f"ConnectorResult(success={self.success!r}, message={self.message!r}, error={self.error!r})"


class BaseIamClient(ABC):
    """
    Abstract base class for IAM provisioning clients.

    Every create operation must tolerate the object already existing: a
    reconcile pass that crashed before checkpointing will issue the same
    call again.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, mock_mode: bool = False):
        """
        Initialize the client.

        Args:
            config: Configuration dictionary with API credentials, endpoints, etc.
            mock_mode: If True, this client talks to a simulated backend
        """
        self.config = config or {}
        self.mock_mode = mock_mode

        logger.info(f"Initialized {self.__class__.__name__} (mock_mode={mock_mode})")

    @abstractmethod
    def create_user(self, user_name: str) -> ConnectorResult:
        """
        Create a user account.

        Args:
            user_name: Name of the user to create

        Returns:
            ConnectorResult with the provider's user data
        """
        pass

    @abstractmethod
    def create_login_profile(self, password: str, user_name: str,
                             must_change_password: bool = True) -> ConnectorResult:
        """
        Give a user console login credentials.

        Args:
            password: Initial password
            user_name: User to create the profile for
            must_change_password: Force a password reset on first login

        Returns:
            ConnectorResult with success status
        """
        pass

    @abstractmethod
    def create_access_key_pair(self, user_name: str) -> ConnectorResult:
        """
        Create a programmatic access key for a user.

        Args:
            user_name: User to create the key for

        Returns:
            ConnectorResult whose data is an AccessKeyPair
        """
        pass

    @abstractmethod
    def add_user_to_group(self, group_name: str, user_name: str) -> ConnectorResult:
        """
        Add a user to a group.

        Args:
            group_name: Group to join
            user_name: User to add

        Returns:
            ConnectorResult with success status
        """
        pass

    @abstractmethod
    def remove_user_from_group(self, group_name: str, user_name: str) -> ConnectorResult:
        """
        Remove a user from a group.

        Args:
            group_name: Group to leave
            user_name: User to remove

        Returns:
            ConnectorResult with success status
        """
        pass

    def validate_config(self) -> bool:
        """
        Validate that the client has all required configuration.

        Returns:
            True if configuration is valid, False otherwise
        """
        return True

    def is_mock_mode(self) -> bool:
        """Check if this client is running against a simulated backend."""
        return self.mock_mode


class MockIamClient(BaseIamClient):
    """
    Simulated IAM backend for testing and local simulation.

    Every call is recorded in ``calls``. Failures can be injected per
    operation and target with ``inject_failure``. With a ``state_path``
    users and groups survive across processes, so a CLI run can resume an
    account provisioned by an earlier one. Passwords are never written.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 state_path: Optional[Union[str, Path]] = None):
        super().__init__(config, mock_mode=True)

        self.state_path = Path(state_path) if state_path else None
        self.users: Dict[str, Dict[str, Any]] = {}
        self.groups: Dict[str, List[str]] = {}  # group_name -> list of user names
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self._failures: Dict[Tuple[str, Optional[str]], int] = {}

        if self.state_path:
            self._load_state()

    def inject_failure(self, operation: str, target: Optional[str] = None, times: int = 1):
        """
        Make the next ``times`` calls of ``operation`` fail.

        Args:
            operation: Method name, e.g. ``add_user_to_group``
            target: Only fail for this user or group name; None matches any
            times: Number of calls to fail
        """
        self._failures[(operation, target)] = times

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def _should_fail(self, operation: str, target: str) -> bool:
        for key in ((operation, target), (operation, None)):
            remaining = self._failures.get(key, 0)
            if remaining > 0:
                self._failures[key] = remaining - 1
                return True
        return False

    def create_user(self, user_name: str) -> ConnectorResult:
        """Mock user creation; an existing user counts as success."""
        self.calls.append(("create_user", (user_name,)))
        if self._should_fail("create_user", user_name):
            return ConnectorResult(False, f"Failed to create user {user_name}", error="Injected failure")

        if user_name in self.users:
            logger.info(f"Mock user {user_name} already exists")
            return ConnectorResult(True, f"User {user_name} already exists", self.users[user_name])

        self.users[user_name] = {
            "user_name": user_name,
            "user_id": f"AIDA{secrets.token_hex(8).upper()}",
            "created_at": datetime.now(timezone.utc).isoformat(),
            "login_profile": None,
            "access_keys": [],
            "groups": [],
        }

        self._save_state()
        logger.info(f"Mock created user: {user_name}")
        return ConnectorResult(True, f"Created user {user_name}", self.users[user_name])

    def create_login_profile(self, password: str, user_name: str,
                             must_change_password: bool = True) -> ConnectorResult:
        """Mock login profile creation; an existing profile is overwritten."""
        self.calls.append(("create_login_profile", (user_name, must_change_password)))
        if self._should_fail("create_login_profile", user_name):
            return ConnectorResult(False, f"Failed to create login profile for {user_name}",
                                   error="Injected failure")

        if user_name not in self.users:
            return ConnectorResult(False, f"User {user_name} not found", error="NoSuchEntity")

        self.users[user_name]["login_profile"] = {
            "password": password,
            "password_reset_required": must_change_password,
        }

        self._save_state()
        logger.info(f"Mock created login profile for {user_name}")
        return ConnectorResult(True, f"Created login profile for {user_name}")

    def create_access_key_pair(self, user_name: str) -> ConnectorResult:
        """Mock access key creation."""
        self.calls.append(("create_access_key_pair", (user_name,)))
        if self._should_fail("create_access_key_pair", user_name):
            return ConnectorResult(False, f"Failed to create access key for {user_name}",
                                   error="Injected failure")

        if user_name not in self.users:
            return ConnectorResult(False, f"User {user_name} not found", error="NoSuchEntity")

        key_pair = AccessKeyPair(
            access_key_id=f"AKIA{secrets.token_hex(8).upper()}",
            secret_access_key=secrets.token_urlsafe(30),
            user_name=user_name,
        )
        self.users[user_name]["access_keys"].append(key_pair.access_key_id)

        self._save_state()
        logger.info(f"Mock created access key {key_pair.access_key_id} for {user_name}")
        return ConnectorResult(True, f"Created access key for {user_name}", key_pair)

    def add_user_to_group(self, group_name: str, user_name: str) -> ConnectorResult:
        """Mock add to group."""
        self.calls.append(("add_user_to_group", (group_name, user_name)))
        if self._should_fail("add_user_to_group", group_name):
            return ConnectorResult(False, f"Failed to add {user_name} to {group_name}",
                                   error="Injected failure")

        if user_name not in self.users:
            return ConnectorResult(False, f"User {user_name} not found", error="NoSuchEntity")

        members = self.groups.setdefault(group_name, [])
        if user_name not in members:
            members.append(user_name)
            self.users[user_name]["groups"].append(group_name)

        self._save_state()
        logger.info(f"Mock added {user_name} to group {group_name}")
        return ConnectorResult(True, f"Added {user_name} to {group_name}")

    def remove_user_from_group(self, group_name: str, user_name: str) -> ConnectorResult:
        """Mock remove from group."""
        self.calls.append(("remove_user_from_group", (group_name, user_name)))
        if self._should_fail("remove_user_from_group", group_name):
            return ConnectorResult(False, f"Failed to remove {user_name} from {group_name}",
                                   error="Injected failure")

        if user_name not in self.users:
            return ConnectorResult(False, f"User {user_name} not found", error="NoSuchEntity")

        if user_name in self.groups.get(group_name, []):
            self.groups[group_name].remove(user_name)
            self.users[user_name]["groups"].remove(group_name)

        self._save_state()
        logger.info(f"Mock removed {user_name} from group {group_name}")
        return ConnectorResult(True, f"Removed {user_name} from {group_name}")

    def get_mock_state(self) -> Dict[str, Any]:
        """Get current mock state for inspection."""
        return {
            "users": self.users,
            "groups": self.groups,
        }

    def _save_state(self):
        """Write users and groups to ``state_path``, leaving out passwords."""
        if not self.state_path:
            return

        users = {}
        for user_name, user in self.users.items():
            user = dict(user)
            if user.get("login_profile"):
                user["login_profile"] = {
                    "password_reset_required": user["login_profile"]["password_reset_required"]
                }
            users[user_name] = user

        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.state_path, "w", encoding="utf-8") as f:
            json.dump({"users": users, "groups": self.groups}, f, indent=2)

    def _load_state(self):
        if not self.state_path.exists():
            return

        with open(self.state_path, encoding="utf-8") as f:
            state_data = json.load(f)

        self.users = state_data.get("users", {})
        self.groups = state_data.get("groups", {})
        logger.info(f"Loaded {len(self.users)} mock users from {self.state_path}")
