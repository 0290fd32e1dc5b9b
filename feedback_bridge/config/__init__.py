"""Configuration module for Feedback Bridge."""

from feedback_bridge.config.loader import get_config_path, load_config, save_config
from feedback_bridge.config.schema import (
    CadenceConfig,
    Config,
    HybridConfig,
    PollingConfig,
)

__all__ = [
    "CadenceConfig",
    "Config",
    "HybridConfig",
    "PollingConfig",
    "get_config_path",
    "load_config",
    "save_config",
]
