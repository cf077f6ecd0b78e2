"""
Configuration loading for the CommitFlow sync engine.
"""

from .settings import (
    ConfigurationLoader,
    SyncConfig,
    get_config_paths,
    load_configuration,
)

__all__ = ["SyncConfig", "ConfigurationLoader", "get_config_paths", "load_configuration"]
