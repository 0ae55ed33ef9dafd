"""
Oracle configuration.

Settings live in a YAML file; every key is optional:

    project_root: .
    poll_interval_seconds: 30
    persist_path: .devfactory/oracle/interventions.json
    stuck_detector:
      no_progress_threshold_ms: 300000
      repeated_error_threshold: 3
      task_timeout_ms: 1800000
      activity_window_ms: 120000
    takeover:
      max_attempts: 3
      session_retention_seconds: 3600
    store:
      lock_retries: 5
      min_retry_delay: 0.1
      max_retry_delay: 0.5
      stale_after_seconds: 10
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from .storage import StoreConfig
from .stuck_detector import StuckDetectorConfig
from .takeover import TakeoverConfig

DEFAULT_PERSIST_PATH = Path(".devfactory/oracle/interventions.json")


class Config:
    """
    YAML-backed configuration with dotted-key lookup.
    """

    def __init__(self, config_path: Union[str, Path]):
        self.config_path = config_path
        self.config = self.load_config()

    def load_config(self) -> dict:
        """
        Loads the configuration from a YAML file.

        Returns:
            A dictionary containing the configuration. Empty files yield {}.
        """
        with open(self.config_path) as f:
            return yaml.safe_load(f) or {}

    def get(self, key: str, default=None):
        """
        Gets a configuration value.

        Args:
            key: Dotted key, e.g. "stuck_detector.task_timeout_ms".
            default: The default value to return if the key is not found.

        Returns:
            The configuration value.
        """
        value = self.config
        for k in key.split("."):
            if not isinstance(value, dict) or k not in value:
                return default
            value = value[k]
        return value

    def section(self, key: str) -> dict[str, Any]:
        value = self.get(key, {})
        return value if isinstance(value, dict) else {}


@dataclass
class OracleConfig:
    """Configuration for the Oracle."""

    project_root: Path = field(default_factory=Path.cwd)
    poll_interval_seconds: float = 30.0
    persist_path: Optional[Path] = None
    stuck_detector: StuckDetectorConfig = field(default_factory=StuckDetectorConfig)
    takeover: TakeoverConfig = field(default_factory=TakeoverConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


def load_oracle_config(config_path: Union[str, Path]) -> OracleConfig:
    """Build an ``OracleConfig`` from a YAML file, keeping defaults for missing keys."""
    config = Config(config_path)
    oracle_config = OracleConfig(
        stuck_detector=_build(StuckDetectorConfig, config.section("stuck_detector")),
        takeover=_build(TakeoverConfig, config.section("takeover")),
        store=_build(StoreConfig, config.section("store")),
    )

    project_root = config.get("project_root")
    if project_root is not None:
        oracle_config.project_root = Path(project_root)

    poll_interval = config.get("poll_interval_seconds")
    if poll_interval is not None:
        oracle_config.poll_interval_seconds = float(poll_interval)

    persist_path = config.get("persist_path")
    if persist_path is not None:
        oracle_config.persist_path = Path(persist_path)

    return oracle_config


def _build(cls, values: dict[str, Any]):
    """Instantiate a config dataclass from the keys it knows about."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in values.items() if k in known})
