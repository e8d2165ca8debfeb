"""
Secret sinks for generated credentials.

The reconciler hands every credential it generates (login password,
access key pair) to a sink right after the provider accepted it. Where
those credentials end up durably is the sink's business; the resource
store never sees them.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict

logger = logging.getLogger(__name__)

MASK = "********"


class BaseSecretSink(ABC):
    """Destination for generated credentials."""

    @abstractmethod
    def store_secret(self, resource_name: str, fields: Dict[str, str]) -> None:
        """
        Hand over credentials generated for a resource.

        Args:
            resource_name: Identity of the account resource
            fields: Credential fields, e.g. ``{"password": ...}``

        Raises:
            Exception: Any failure; the reconciler treats it as fatal for the pass
        """
        pass


class LoggingSecretSink(BaseSecretSink):
    """
    Exposes credentials only through the debug log.

    Values are masked unless ``reveal`` is set, in which case they are
    written at DEBUG level and nowhere else.
    """

    def __init__(self, reveal: bool = False):
        self.reveal = reveal

    def store_secret(self, resource_name: str, fields: Dict[str, str]) -> None:
        shown = {key: (value if self.reveal else MASK) for key, value in fields.items()}
        logger.debug(f"Generated credentials for {resource_name}: {shown}")


class MemorySecretSink(BaseSecretSink):
    """Keeps credentials in memory, for tests and local simulation."""

    def __init__(self):
        self.secrets: Dict[str, Dict[str, str]] = {}

    def store_secret(self, resource_name: str, fields: Dict[str, str]) -> None:
        self.secrets.setdefault(resource_name, {}).update(fields)
        logger.debug(f"Stored {sorted(fields)} for {resource_name} in memory")
