"""
Tests for configuration loading and component wiring.
"""

import json
from pathlib import Path

import pytest

from iam_provisioner.config import CONFIG_ENV_VAR, Components, load_config, mock_state_path
from iam_provisioner.connectors import MockIamClient


class TestLoadConfig:
    """Test cases for load_config."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)

        config = load_config()

        assert config["mock_mode"] is True
        assert config["controller"]["workers"] == 4
        assert config["aws"]["region"] == "us-east-1"

    def test_nested_sections_merge(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"aws": {"region": "eu-west-1"}, "controller": {"workers": 8}}))

        config = load_config(path)

        assert config["aws"]["region"] == "eu-west-1"
        assert config["aws"]["read_timeout"] == 30
        assert config["controller"]["workers"] == 8
        assert config["controller"]["backoff_max"] == 300.0

    def test_defaults_not_mutated(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"aws": {"region": "eu-west-1"}}))
        load_config(path)

        assert load_config(tmp_path / "missing.json")["aws"]["region"] == "us-east-1"

    def test_env_var(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"reveal_secrets": True}))
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

        assert load_config()["reveal_secrets"] is True

    def test_default_state_file(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)

        assert load_config()["state_file"] == "state/accounts.json"
        assert mock_state_path("state/accounts.json") == Path("state/accounts.mock_iam.json")
        assert mock_state_path(None) is None

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{broken")

        with pytest.raises(ValueError, match="Invalid configuration"):
            load_config(path)


class TestComponents:
    """Test cases for component wiring."""

    def test_wiring(self, tmp_path):
        config = load_config(None)
        config["audit_dir"] = str(tmp_path / "audit")
        config["state_file"] = str(tmp_path / "accounts.json")
        config["controller"]["workers"] = 2

        components = Components(config)

        assert isinstance(components.iam_client, MockIamClient)
        assert components.reconciler.store is components.store
        assert components.reconciler.stop_event is components.stop_event
        assert components.controller.workers == 2
        assert components.iam_client.state_path == tmp_path / "accounts.mock_iam.json"
        assert (tmp_path / "audit").is_dir()
