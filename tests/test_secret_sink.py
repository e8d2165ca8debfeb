"""
Tests for the secret sinks.
"""

import logging

from iam_provisioner.engine import LoggingSecretSink, MemorySecretSink


class TestLoggingSecretSink:
    """Test cases for LoggingSecretSink."""

    def test_masks_values(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="iam_provisioner.engine.secret_sink"):
            LoggingSecretSink().store_secret("alice", {"password": "hunter2!"})

        assert "hunter2!" not in caplog.text
        assert "password" in caplog.text

    def test_reveal(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="iam_provisioner.engine.secret_sink"):
            LoggingSecretSink(reveal=True).store_secret("alice", {"password": "hunter2!"})

        assert "hunter2!" in caplog.text

    def test_nothing_above_debug(self, caplog):
        with caplog.at_level(logging.INFO):
            LoggingSecretSink(reveal=True).store_secret("alice", {"password": "hunter2!"})

        assert caplog.text == ""


class TestMemorySecretSink:
    """Test cases for MemorySecretSink."""

    def test_accumulates_fields(self):
        sink = MemorySecretSink()
        sink.store_secret("alice", {"user_name": "alice", "password": "pw"})
        sink.store_secret("alice", {"access_key_id": "AKIA", "secret_access_key": "s"})

        assert sink.secrets["alice"] == {
            "user_name": "alice",
            "password": "pw",
            "access_key_id": "AKIA",
            "secret_access_key": "s",
        }
