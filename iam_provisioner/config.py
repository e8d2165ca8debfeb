"""
Configuration loading for the IAM Provisioner.

Configuration is a JSON file merged over built-in defaults. Nested
sections (``aws``, ``controller``) are merged key by key.
"""

import copy
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .audit import AuditLogger
from .connectors import create_iam_client
from .engine import AccountReconciler, Controller, LoggingSecretSink, ResourceStore

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "IAM_PROVISIONER_CONFIG"

DEFAULT_CONFIG: Dict[str, Any] = {
    "mock_mode": True,
    "state_file": "state/accounts.json",
    "audit_dir": "audit",
    "reveal_secrets": False,
    "aws": {
        "region": "us-east-1",
        "aws_access_key_id": None,
        "aws_secret_access_key": None,
        "connect_timeout": 10,
        "read_timeout": 30,
        "max_attempts": 3,
    },
    "controller": {
        "workers": 4,
        "resync_seconds": 300,
        "backoff_base": 1.0,
        "backoff_max": 300.0,
    },
}


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load configuration from a JSON file, falling back to defaults.

    Args:
        config_path: Path to the config file; defaults to $IAM_PROVISIONER_CONFIG

    Returns:
        Merged configuration dictionary

    Raises:
        ValueError: If the file exists but is not valid JSON
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    config_path = config_path or os.environ.get(CONFIG_ENV_VAR)
    if not config_path:
        return config

    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file {path} not found, using defaults")
        return config

    try:
        with open(path, encoding="utf-8") as f:
            file_config = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid configuration file {path}: {e}") from e

    for key, value in file_config.items():
        if isinstance(value, dict) and isinstance(config.get(key), dict):
            config[key].update(value)
        else:
            config[key] = value

    logger.info(f"Loaded configuration from {path}")
    return config


def mock_state_path(state_file: Optional[Union[str, Path]]) -> Optional[Path]:
    """Where the simulated IAM backend keeps its users, next to the state file."""
    if not state_file:
        return None
    path = Path(state_file)
    return path.with_name(f"{path.stem}.mock_iam.json")


class Components:
    """The store, client, reconciler and controller wired from one configuration."""

    def __init__(self, config: Dict[str, Any], stop_event: Optional[threading.Event] = None):
        self.config = config
        self.stop_event = stop_event or threading.Event()

        self.store = ResourceStore(config.get("state_file"))
        self.iam_client = create_iam_client(
            config.get("aws"),
            mock=config.get("mock_mode", True),
            mock_state_path=mock_state_path(config.get("state_file")),
        )
        self.audit_logger = AuditLogger(config.get("audit_dir", "audit"))
        self.secret_sink = LoggingSecretSink(reveal=config.get("reveal_secrets", False))

        self.reconciler = AccountReconciler(
            self.store,
            self.iam_client,
            secret_sink=self.secret_sink,
            audit_logger=self.audit_logger,
            stop_event=self.stop_event,
        )

        controller_config = config.get("controller", {})
        self.controller = Controller(
            self.reconciler,
            self.store,
            workers=controller_config.get("workers", 4),
            resync_seconds=controller_config.get("resync_seconds", 300),
            backoff_base=controller_config.get("backoff_base", 1.0),
            backoff_max=controller_config.get("backoff_max", 300.0),
        )
