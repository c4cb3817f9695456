"""Load optional engine configuration from `.pdca/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_APPROVAL_TIMEOUT,
    DEFAULT_MAX_WORKERS,
    DEFAULT_RETRY_BUDGET,
    DEFAULT_TASK_TIMEOUT,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .io_utils import _load_data_with_error


def load_engine_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional engine config file.

    Args:
        project_dir: Project root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def get_engine_section(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the `engine` block, or an empty dict if not present."""
    raw = _get_nested(config, "engine")
    return raw if isinstance(raw, dict) else {}


def get_approval_section(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the `approval` block, or an empty dict if not present."""
    raw = _get_nested(config, "approval")
    return raw if isinstance(raw, dict) else {}


@dataclass(frozen=True)
class ApprovalConfig:
    """Step approval gate settings."""

    enabled: bool = False
    required: bool = False  # If True, never auto-approves on timeout
    timeout: int = DEFAULT_APPROVAL_TIMEOUT


@dataclass(frozen=True)
class EngineConfig:
    """Typed engine settings with the documented defaults."""

    retry_budget: int = DEFAULT_RETRY_BUDGET
    task_timeout: Optional[float] = DEFAULT_TASK_TIMEOUT
    max_workers: int = DEFAULT_MAX_WORKERS
    refactor_after_fix: bool = True
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)

    def __post_init__(self) -> None:
        if self.retry_budget < 0:
            raise ConfigError(f"retry_budget must be >= 0, got {self.retry_budget}")
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.task_timeout is not None and self.task_timeout <= 0:
            raise ConfigError(f"task_timeout must be positive, got {self.task_timeout}")
        if self.approval.timeout < 0:
            raise ConfigError(f"approval.timeout must be >= 0, got {self.approval.timeout}")

    @classmethod
    def from_mapping(cls, config: dict[str, Any]) -> "EngineConfig":
        """Build from a parsed config file, falling back to defaults."""
        engine = get_engine_section(config)
        approval = get_approval_section(config)
        try:
            timeout_raw = engine.get("task_timeout", DEFAULT_TASK_TIMEOUT)
            return cls(
                retry_budget=int(engine.get("retry_budget", DEFAULT_RETRY_BUDGET)),
                task_timeout=float(timeout_raw) if timeout_raw is not None else None,
                max_workers=int(engine.get("max_workers", DEFAULT_MAX_WORKERS)),
                refactor_after_fix=bool(engine.get("refactor_after_fix", True)),
                approval=ApprovalConfig(
                    enabled=bool(approval.get("enabled", False)),
                    required=bool(approval.get("required", False)),
                    timeout=int(approval.get("timeout", DEFAULT_APPROVAL_TIMEOUT)),
                ),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid engine configuration: {exc}") from exc

    def with_overrides(self, **overrides: Any) -> "EngineConfig":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "approve_steps" in changes:
            changes["approval"] = replace(self.approval, enabled=bool(changes.pop("approve_steps")))
        return replace(self, **changes)


def load_config(project_dir: Path) -> EngineConfig:
    """Load and validate the project's engine configuration."""
    data, err = load_engine_config(project_dir)
    if err:
        raise ConfigError(err)
    return EngineConfig.from_mapping(data)
