"""Shared nodeflow configuration utilities.

Centralises reading of ~/.nodeflow/configuration.json so that the CLI and
embedding applications share one implementation. ``NODEFLOW_CONFIG`` points
at an alternative file.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from nodeflow.graph.plan import ExecutionConfig
from nodeflow.graph.retry import RetryPolicy

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

NODEFLOW_CONFIG_FILE = Path.home() / ".nodeflow" / "configuration.json"


def get_config_path() -> Path:
    override = os.environ.get("NODEFLOW_CONFIG")
    return Path(override).expanduser() if override else NODEFLOW_CONFIG_FILE


def get_nodeflow_config() -> dict[str, Any]:
    """Load nodeflow configuration. Missing or unreadable files yield {}."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"⚠ Ignoring unreadable config {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_default_execution_config(**overrides: Any) -> ExecutionConfig:
    """
    Build the run configuration from the ``execution`` section plus overrides.

    Overrides set to None are ignored, so unset CLI flags fall through to
    the file (and then to the built-in defaults).

    Raises:
        pydantic.ValidationError: if the merged options are out of range
    """
    section = get_nodeflow_config().get("execution", {})
    options = _by_field_name(ExecutionConfig, section if isinstance(section, dict) else {})
    retry = options.get("retry_policy")
    retry = _by_field_name(RetryPolicy, retry if isinstance(retry, dict) else {})

    retry_overrides = overrides.pop("retry_policy", None) or {}
    options.update({key: value for key, value in overrides.items() if value is not None})
    retry.update({key: value for key, value in retry_overrides.items() if value is not None})
    if retry:
        options["retry_policy"] = retry

    return ExecutionConfig.from_options(**options)


def _by_field_name(model: type[BaseModel], options: dict[str, Any]) -> dict[str, Any]:
    """Rename camelCase aliases to field names so file values and overrides merge."""
    aliases = {f.alias: name for name, f in model.model_fields.items() if f.alias}
    return {aliases.get(key, key): value for key, value in options.items()}


def get_log_level() -> str:
    return get_nodeflow_config().get("logging", {}).get("level", "INFO")


def get_log_format() -> str:
    return get_nodeflow_config().get("logging", {}).get("format", "auto")


# ---------------------------------------------------------------------------
# RuntimeConfig – what an embedding application needs to bootstrap
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Runtime configuration loaded from ~/.nodeflow/configuration.json."""

    log_level: str = field(default_factory=get_log_level)
    log_format: str = field(default_factory=get_log_format)
    execution: ExecutionConfig = field(default_factory=get_default_execution_config)
    event_history: int = 1000
    execution_history: int = 100
