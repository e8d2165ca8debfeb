"""
AWS IAM Client for the IAM Provisioner.

Provides the provisioning operations against AWS Identity and Access
Management: users, login profiles, access keys and group membership.
"""

import logging
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..models import AccessKeyPair
from .base_connector import BaseIamClient, ConnectorResult

logger = logging.getLogger(__name__)

MANAGED_BY_TAG = {"Key": "ManagedBy", "Value": "iam-provisioner"}


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class AWSIamClient(BaseIamClient):
    """AWS IAM client for provisioning users, credentials and group membership."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, iam_client: Any = None):
        super().__init__(config, mock_mode=False)

        if iam_client is not None:
            self.iam_client = iam_client
        else:
            # Bounded timeouts so an interrupted call surfaces as an error
            botocore_config = Config(
                connect_timeout=self.config.get("connect_timeout", 10),
                read_timeout=self.config.get("read_timeout", 30),
                retries={"max_attempts": self.config.get("max_attempts", 3), "mode": "standard"},
            )
            self.iam_client = boto3.client(
                "iam",
                aws_access_key_id=self.config.get("aws_access_key_id"),
                aws_secret_access_key=self.config.get("aws_secret_access_key"),
                region_name=self.config.get("region", "us-east-1"),
                config=botocore_config,
            )

    def create_user(self, user_name: str) -> ConnectorResult:
        """Create an IAM user; an existing user counts as success."""
        try:
            response = self.iam_client.create_user(UserName=user_name, Tags=[MANAGED_BY_TAG])
            user = response["User"]
            logger.info(f"Created AWS IAM user: {user_name} (ID: {user['UserId']})")
            return ConnectorResult(True, f"Created IAM user {user_name}", user)

        except ClientError as e:
            if _error_code(e) == "EntityAlreadyExists":
                logger.info(f"AWS IAM user {user_name} already exists")
                return ConnectorResult(True, f"IAM user {user_name} already exists",
                                       {"UserName": user_name})
            error_msg = f"Failed to create IAM user {user_name}: {e}"
            logger.error(error_msg)
            return ConnectorResult(False, error_msg, error=str(e))
        except BotoCoreError as e:
            error_msg = f"Failed to create IAM user {user_name}: {e}"
            logger.error(error_msg)
            return ConnectorResult(False, error_msg, error=str(e))

    def create_login_profile(self, password: str, user_name: str,
                             must_change_password: bool = True) -> ConnectorResult:
        """
        Create a console login profile.

        If the profile already exists (a retried pass), its password is
        replaced so the newly generated one is the one in effect.
        """
        try:
            try:
                self.iam_client.create_login_profile(
                    UserName=user_name,
                    Password=password,
                    PasswordResetRequired=must_change_password,
                )
                logger.info(f"Created login profile for {user_name}")
                return ConnectorResult(True, f"Created login profile for {user_name}")
            except ClientError as e:
                if _error_code(e) != "EntityAlreadyExists":
                    raise

            self.iam_client.update_login_profile(
                UserName=user_name,
                Password=password,
                PasswordResetRequired=must_change_password,
            )
            logger.info(f"Login profile for {user_name} already existed, password replaced")
            return ConnectorResult(True, f"Updated existing login profile for {user_name}")

        except (ClientError, BotoCoreError) as e:
            error_msg = f"Failed to create login profile for {user_name}: {e}"
            logger.error(error_msg)
            return ConnectorResult(False, error_msg, error=str(e))

    def create_access_key_pair(self, user_name: str) -> ConnectorResult:
        """Create an access key. AWS allows at most two keys per user."""
        try:
            response = self.iam_client.create_access_key(UserName=user_name)
            key = response["AccessKey"]
            key_pair = AccessKeyPair(
                access_key_id=key["AccessKeyId"],
                secret_access_key=key["SecretAccessKey"],
                user_name=key.get("UserName", user_name),
                status=key.get("Status", "Active"),
            )
            logger.info(f"Created access key {key_pair.access_key_id} for {user_name}")
            return ConnectorResult(True, f"Created access key for {user_name}", key_pair)

        except (ClientError, BotoCoreError) as e:
            error_msg = f"Failed to create access key for {user_name}: {e}"
            logger.error(error_msg)
            return ConnectorResult(False, error_msg, error=str(e))

    def add_user_to_group(self, group_name: str, user_name: str) -> ConnectorResult:
        """Add user to an existing IAM group. Repeating the call is harmless."""
        try:
            self.iam_client.add_user_to_group(GroupName=group_name, UserName=user_name)
            logger.info(f"Added {user_name} to IAM group {group_name}")
            return ConnectorResult(True, f"Added {user_name} to group {group_name}")

        except (ClientError, BotoCoreError) as e:
            error_msg = f"Failed to add {user_name} to group {group_name}: {e}"
            logger.error(error_msg)
            return ConnectorResult(False, error_msg, error=str(e))

    def remove_user_from_group(self, group_name: str, user_name: str) -> ConnectorResult:
        """Remove user from IAM group."""
        try:
            self.iam_client.remove_user_from_group(GroupName=group_name, UserName=user_name)
            logger.info(f"Removed {user_name} from IAM group {group_name}")
            return ConnectorResult(True, f"Removed {user_name} from group {group_name}")

        except ClientError as e:
            if _error_code(e) == "NoSuchEntity":
                return ConnectorResult(True, f"{user_name} is not a member of {group_name}")
            error_msg = f"Failed to remove {user_name} from group {group_name}: {e}"
            logger.error(error_msg)
            return ConnectorResult(False, error_msg, error=str(e))
        except BotoCoreError as e:
            error_msg = f"Failed to remove {user_name} from group {group_name}: {e}"
            logger.error(error_msg)
            return ConnectorResult(False, error_msg, error=str(e))

    def validate_config(self) -> bool:
        """Credentials may come from the environment, so only the region is required."""
        return bool(self.config.get("region", "us-east-1"))
