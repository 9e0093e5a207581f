"""Shared utilities: logging, secret lookup and async bridging."""
from .async_utils import run_sync
from .logger import setup_logger, get_logger
from .secrets import get_env_secret

__all__ = ["setup_logger", "get_logger", "get_env_secret", "run_sync"]
