"""
Kernel configuration.

Settings are read from an optional YAML file, then overridden by
``TWOLOOP_*`` environment variables (a ``.env`` file in the working
directory is loaded first).
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

from twoloop_kernel.models.convergence import RunConfig
from twoloop_kernel.models.evaluation import EvaluatorConfig
from twoloop_kernel.models.orchestration import OrchestratorConfig
from twoloop_kernel.models.task import TaskType

ENV_PREFIX = "TWOLOOP_"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_format: bool = True


class KernelSettings(BaseModel):
    engine: RunConfig = RunConfig()
    sensitive_task_types: List[TaskType] = [TaskType.PREPARE_OFFER, TaskType.SEND_OFFER]
    evaluator: EvaluatorConfig = EvaluatorConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    logging: LoggingConfig = LoggingConfig()
    ledger_path: str = ":memory:"


# Environment variable -> (section, field)
_ENV_OVERRIDES = {
    "LOG_LEVEL": ("logging", "level"),
    "LOG_JSON": ("logging", "json_format"),
    "LEDGER_PATH": (None, "ledger_path"),
    "MAX_ITERATIONS": ("engine", "max_iterations"),
    "CONVERGENCE_THRESHOLD": ("engine", "convergence_threshold"),
    "ESCALATION_CONFIDENCE_THRESHOLD": ("engine", "escalation_confidence_threshold"),
    "RUN_TIMEOUT_SECONDS": ("engine", "timeout_seconds"),
    "AUTO_APPROVAL_ENABLED": ("orchestrator", "auto_approval_enabled"),
    "AUTO_APPROVAL_THRESHOLD": ("orchestrator", "auto_approval_threshold"),
    "MAX_AUTO_APPROVALS_PER_DAY": ("orchestrator", "max_auto_approvals_per_day"),
    "MAX_CONCURRENT_EXECUTIONS": ("orchestrator", "max_concurrent_executions"),
}


def load_yaml_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a settings mapping from a YAML file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        return yaml.safe_load(f) or {}


def _apply_env_overrides(raw: Dict[str, Any], environ: Dict[str, str]) -> Dict[str, Any]:
    for suffix, (section, field) in _ENV_OVERRIDES.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value is None:
            continue
        if section is None:
            raw[field] = value
        else:
            raw.setdefault(section, {})[field] = value
    return raw


def load_settings(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> KernelSettings:
    """
    Build KernelSettings from YAML and the environment.

    Pydantic coerces the string values that come from the environment.
    """
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    raw: Dict[str, Any] = load_yaml_config(path) if path else {}
    raw = _apply_env_overrides(raw, environ)
    return KernelSettings.model_validate(raw)
