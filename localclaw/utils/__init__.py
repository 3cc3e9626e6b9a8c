"""
Utilities Module
================

Common utilities shared across the gateway:
- logger: Context-aware console logging
- config: Layered configuration (defaults, JSON file, environment)
"""

from localclaw.utils.logger import Logger
from localclaw.utils.config import get_config, Config, ConfigError

__all__ = ["Logger", "get_config", "Config", "ConfigError"]
