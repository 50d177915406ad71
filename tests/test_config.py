"""Tests for settings loading."""

import pytest

from twoloop_kernel.config import KernelSettings, load_settings, load_yaml_config
from twoloop_kernel.models.task import TaskType


def _write_config(tmp_path, text: str):
    path = tmp_path / "twoloop.yaml"
    path.write_text(text)
    return path


class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings(environ={})
        assert settings == KernelSettings()
        assert settings.engine.convergence_threshold == 0.8
        assert settings.engine.escalation_confidence_threshold == 0.9
        assert settings.orchestrator.max_auto_approvals_per_day == 100

    def test_yaml_file(self, tmp_path):
        path = _write_config(tmp_path, """
engine:
  max_iterations: 3
  dimensions: [quality]
sensitive_task_types: [SEND_OFFER]
orchestrator:
  approval_expiry_hours: 24
logging:
  level: DEBUG
""")
        settings = load_settings(path, environ={})

        assert settings.engine.max_iterations == 3
        assert settings.engine.dimensions == ["quality"]
        assert settings.sensitive_task_types == [TaskType.SEND_OFFER]
        assert settings.orchestrator.approval_expiry_hours == 24
        assert settings.logging.level == "DEBUG"

    def test_environment_overrides_yaml(self, tmp_path):
        path = _write_config(tmp_path, "engine:\n  max_iterations: 3\n")
        settings = load_settings(path, environ={
            "TWOLOOP_MAX_ITERATIONS": "7",
            "TWOLOOP_AUTO_APPROVAL_ENABLED": "false",
            "TWOLOOP_LEDGER_PATH": "/var/lib/twoloop/runs.db",
        })

        assert settings.engine.max_iterations == 7
        assert settings.orchestrator.auto_approval_enabled is False
        assert settings.ledger_path == "/var/lib/twoloop/runs.db"

    def test_unprefixed_variables_ignored(self):
        settings = load_settings(environ={"MAX_ITERATIONS": "9"})
        assert settings.engine.max_iterations == 5

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml_config(tmp_path / "nope.yaml")

    def test_empty_file(self, tmp_path):
        assert load_yaml_config(_write_config(tmp_path, "")) == {}
