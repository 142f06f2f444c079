"""
Configuration loading.
"""

from .loader import SpendGuardConfig, default_config, load_config

__all__ = ["SpendGuardConfig", "default_config", "load_config"]
