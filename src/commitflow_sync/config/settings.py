"""
Configuration management for the CommitFlow sync engine.

Supports multiple configuration sources with proper precedence:
1. Environment variables (highest priority)
2. Project-level .commitflow.yaml
3. User-level ~/.commitflow/config.yaml
4. Default values (lowest priority)
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class SyncConfig:
    """Sync engine configuration options"""

    # Remote API
    api_base_url: str = "http://localhost:3000"
    api_token: Optional[str] = None
    request_timeout_seconds: float = 15.0

    # Durable state
    storage_dir: str = field(
        default_factory=lambda: str(Path.home() / ".commitflow" / "state")
    )
    max_queue_depth: int = 1000

    # Flush scheduling
    max_per_run: int = 6
    retry_limit: int = 4
    flush_interval_seconds: float = 7.0

    # Error classification
    unrecoverable_statuses: List[int] = field(default_factory=lambda: [400, 404])
    unrecoverable_patterns: List[str] = field(
        default_factory=lambda: ["project not found", "task not found"]
    )

    # Active scope used for fallbacks and cache invalidation
    active_workspace_id: Optional[str] = None
    active_project_id: Optional[str] = None

    log_level: str = "INFO"

    def validate(self) -> List[str]:
        """Return a list of problems; empty when the configuration is usable"""
        problems = []
        if self.max_per_run < 1:
            problems.append("max_per_run must be at least 1")
        if self.retry_limit < 0:
            problems.append("retry_limit must not be negative")
        if self.flush_interval_seconds <= 0:
            problems.append("flush_interval_seconds must be positive")
        if self.max_queue_depth < 1:
            problems.append("max_queue_depth must be at least 1")
        if self.request_timeout_seconds <= 0:
            problems.append("request_timeout_seconds must be positive")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            problems.append(f"Unknown log level: {self.log_level}")
        return problems

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        if redact and data.get("api_token"):
            data["api_token"] = "***"
        return data


class ConfigurationLoader:
    """Loads configuration from multiple sources with proper precedence"""

    CONFIG_NAMES = [".commitflow.yaml", ".commitflow.yml"]

    def __init__(
        self,
        project_root: Optional[Path] = None,
        user_config_dir: Optional[Path] = None,
    ):
        self.project_root = Path(project_root) if project_root else Path.cwd()
        self.user_config_dir = (
            Path(user_config_dir) if user_config_dir else Path.home() / ".commitflow"
        )

    def load_config(self) -> SyncConfig:
        """Load configuration from all sources with proper precedence"""
        config_dict: Dict[str, Any] = {}

        # 1. Load user-level configuration
        user_config = self._load_user_config()
        if user_config:
            config_dict.update(user_config)

        # 2. Load project-level configuration
        project_config = self._load_project_config()
        if project_config:
            config_dict.update(project_config)

        # 3. Override with environment variables
        config_dict.update(self._load_env_config())

        known = {f.name for f in fields(SyncConfig)}
        unknown = sorted(set(config_dict) - known)
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")

        return SyncConfig(**{k: v for k, v in config_dict.items() if k in known})

    def _read_yaml(self, config_file: Path) -> Optional[Dict[str, Any]]:
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, IOError) as e:
            logger.warning(f"Failed to load config from {config_file}: {e}")
            return None

        if not isinstance(data, dict):
            logger.warning(f"Config file {config_file} does not contain a mapping")
            return None
        return data

    def _load_user_config(self) -> Optional[Dict[str, Any]]:
        """Load user-level configuration from ~/.commitflow/config.yaml"""
        for name in ["config.yaml", "config.yml"]:
            config_file = self.user_config_dir / name
            if config_file.exists():
                return self._read_yaml(config_file)
        return None

    def _load_project_config(self) -> Optional[Dict[str, Any]]:
        """Load project-level configuration from .commitflow.yaml"""
        for name in self.CONFIG_NAMES:
            config_file = self.project_root / name
            if config_file.exists():
                data = self._read_yaml(config_file)
                if data is not None:
                    return data
        return None

    def _load_env_config(self) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        env_config: Dict[str, Any] = {}

        env_mappings = {
            "COMMITFLOW_API_URL": "api_base_url",
            "COMMITFLOW_API_TOKEN": "api_token",
            "COMMITFLOW_STORAGE_DIR": "storage_dir",
            "COMMITFLOW_MAX_PER_RUN": ("max_per_run", int),
            "COMMITFLOW_RETRY_LIMIT": ("retry_limit", int),
            "COMMITFLOW_FLUSH_INTERVAL": ("flush_interval_seconds", float),
            "COMMITFLOW_MAX_QUEUE_DEPTH": ("max_queue_depth", int),
            "COMMITFLOW_REQUEST_TIMEOUT": ("request_timeout_seconds", float),
            "COMMITFLOW_LOG_LEVEL": "log_level",
            "COMMITFLOW_WORKSPACE_ID": "active_workspace_id",
            "COMMITFLOW_PROJECT_ID": "active_project_id",
        }

        for env_var, config_key in env_mappings.items():
            env_value = os.environ.get(env_var)
            if env_value is None:
                continue
            if isinstance(config_key, tuple):
                key, converter = config_key
                try:
                    env_config[key] = converter(env_value)
                except (ValueError, TypeError) as e:
                    logger.warning(f"Invalid value for {env_var}: {env_value} ({e})")
            else:
                env_config[config_key] = env_value

        return env_config


def load_configuration(project_root: Optional[Path] = None) -> SyncConfig:
    """Load configuration using the default loader"""
    return ConfigurationLoader(project_root).load_config()


def get_config_paths(project_root: Optional[Path] = None) -> Dict[str, Path]:
    """
    Get paths to configuration files.

    Returns:
        Dict mapping config type to file path
    """
    loader = ConfigurationLoader(project_root)

    return {
        "user": loader.user_config_dir / "config.yaml",
        "project": loader.project_root / ".commitflow.yaml",
    }
