"""
Configuration loading and validation.
"""

from .settings import AppSettings, ConfigurationManager, config_manager, get_settings, load_config

__all__ = [
    "AppSettings",
    "ConfigurationManager",
    "config_manager",
    "get_settings",
    "load_config",
]
