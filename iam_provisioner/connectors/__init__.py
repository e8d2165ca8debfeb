"""
Connectors Package for the IAM Provisioner.

This package provides the IAM provisioning clients: AWS IAM through boto3
and an in-memory simulated backend.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

from .aws_connector import AWSIamClient
from .base_connector import BaseIamClient, ConnectorResult, MockIamClient


def create_iam_client(config: Optional[Dict[str, Any]] = None, mock: bool = True,
                      mock_state_path: Optional[Union[str, Path]] = None) -> BaseIamClient:
    """Create the IAM client selected by configuration."""
    if mock:
        return MockIamClient(config, state_path=mock_state_path)
    return AWSIamClient(config)


__all__ = [
    "BaseIamClient",
    "MockIamClient",
    "ConnectorResult",
    "AWSIamClient",
    "create_iam_client",
]
