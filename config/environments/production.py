"""
Production environment configuration overrides
"""

from dataclasses import dataclass
from config.app_config import AppConfig


@dataclass
class ProductionConfig(AppConfig):
    """Production environment configuration"""

    def __post_init__(self):
        base_config = AppConfig.load()
        self.backend = base_config.backend
        self.storage = base_config.storage
        self.chat = base_config.chat

        self.environment = "production"
        self.debug = False

        # Production logging - less verbose, focus on errors
        self.logging.level = "INFO"
        self.logging.enable_file_logging = True
        self.logging.log_file = "logs/prod-app.log"

        self.cache.expiry_seconds = 30 * 60

        self.retry.max_attempts = 3
        self.retry.base_delay = 1.0
        self.retry.max_delay = 30.0


def get_production_config() -> ProductionConfig:
    """Get production-specific configuration"""
    return ProductionConfig()
