"""
Development environment configuration overrides
"""

from dataclasses import dataclass
from config.app_config import AppConfig


@dataclass
class DevelopmentConfig(AppConfig):
    """Development environment configuration"""

    def __post_init__(self):
        # Backend settings still come from secrets/environment
        base_config = AppConfig.load()
        self.backend = base_config.backend
        self.storage = base_config.storage
        self.chat = base_config.chat

        self.environment = "development"
        self.debug = True

        # More verbose logging in development
        self.logging.level = "DEBUG"
        self.logging.enable_file_logging = True
        self.logging.log_file = "logs/dev-app.log"

        # Short cache window so catalog edits show up quickly
        self.cache.expiry_seconds = 5 * 60

        # Fail fast against a local backend
        self.retry.max_attempts = 1
        self.retry.base_delay = 0.5


def get_development_config() -> DevelopmentConfig:
    """Get development-specific configuration"""
    return DevelopmentConfig()
