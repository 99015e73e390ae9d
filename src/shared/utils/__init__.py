"""Shared utilities: root logging setup, .env loading and env-var validation."""

from .logging import setup_logging
from .env import get_env, load_env
from .config_validator import ConfigurationError

__all__ = ["setup_logging", "load_env", "get_env", "ConfigurationError"]
