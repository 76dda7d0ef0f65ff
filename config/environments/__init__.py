"""
Per-environment overrides on top of the base AppConfig, selected by APP_ENV.
"""

import os

from config.app_config import AppConfig


def get_environment_config() -> AppConfig:
    """
    Build the configuration for the current APP_ENV

    "development" and "production" get their override classes; any other
    value (e.g. "staging", "testing") uses the base AppConfig.load().
    """
    env = os.getenv("APP_ENV", "development").strip().lower()

    if env == "production":
        from .production import get_production_config
        return get_production_config()
    if env == "development":
        from .development import get_development_config
        return get_development_config()
    return AppConfig.load()
