"""
Unified Configuration System for the customer chat engine

This module provides a centralized configuration system that consolidates all chat settings,
supports environment-based overrides, and provides type-safe configuration access.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
import streamlit as st
import os
from pathlib import Path


def _read_setting(name: str, default: str = "") -> str:
    """Read a setting from Streamlit secrets, falling back to environment variables"""
    # In test environment, prefer environment variables
    if os.getenv("PYTEST_CURRENT_TEST") is not None:
        return os.getenv(name, default)

    try:
        value = st.secrets.get(name)
        if value is not None:
            return str(value)
    except Exception:
        # Secrets file missing or unreadable
        pass
    return os.getenv(name, default)


def _read_bool(name: str, default: bool) -> bool:
    return _read_setting(name, "true" if default else "false").lower() in ("1", "true", "yes")


@dataclass
class BackendConfig:
    """REST backend settings"""
    base_url: str = "http://localhost:8000"
    image_url: str = "http://localhost:8000"
    page_id: int = 1
    app_name: str = "Customer Support"
    request_timeout: float = 15.0
    auth_token: str = ""
    ai_path: str = "/customerChat/api/ai/{page_id}"

    @classmethod
    def from_secrets(cls) -> 'BackendConfig':
        """Load backend config from Streamlit secrets or environment"""
        defaults = cls()
        base_url = _read_setting("CHAT_BASE_URL", defaults.base_url).rstrip("/")
        try:
            page_id = int(_read_setting("CHAT_PAGE_ID", str(defaults.page_id)))
        except ValueError:
            page_id = 0
        return cls(
            base_url=base_url,
            image_url=_read_setting("CHAT_IMAGE_URL", base_url).rstrip("/"),
            page_id=page_id,
            app_name=_read_setting("CHAT_APP_NAME", defaults.app_name),
            request_timeout=float(_read_setting("CHAT_REQUEST_TIMEOUT", str(defaults.request_timeout))),
            auth_token=_read_setting("CHAT_AUTH_TOKEN", ""),
            ai_path=_read_setting("CHAT_AI_PATH", defaults.ai_path),
        )

    def ai_endpoint(self) -> str:
        return self.ai_path.format(page_id=self.page_id)


@dataclass
class ChatConfig:
    """Conversation engine behaviour"""
    poll_interval: float = 10.0
    enable_chat_ai: bool = True
    enable_customer_chat: bool = True
    waiting_message_interval: float = 4.0


@dataclass
class RetryConfig:
    """Bounded retry policy for network operations"""
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0


@dataclass
class CacheConfig:
    """Catalog cache configuration"""
    expiry_seconds: int = 30 * 60
    search_limit: int = 10
    min_score: float = 30.0
    context_item_limit: int = 20
    core_sources: List[str] = field(default_factory=lambda: [
        "brand", "product", "service", "article", "book"
    ])
    # Block name prefixes on the page that map to catalog sources
    block_sources: List[str] = field(default_factory=lambda: [
        "Article", "Brand", "Product", "Service", "Course", "Book", "University",
        "Project", "Testimonial", "Address", "Advantage", "Client", "CustomSlider",
        "Certificate", "Page"
    ])


@dataclass
class StorageConfig:
    """Local device storage configuration"""
    db_path: str = "data/local_store.db"


@dataclass
class LoggingConfig:
    """Logging and monitoring configuration"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    enable_file_logging: bool = True
    log_file: str = "logs/app.log"


@dataclass
class AppConfig:
    """Main application configuration"""
    backend: BackendConfig = field(default_factory=BackendConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Environment settings
    environment: str = field(default_factory=lambda: os.getenv("APP_ENV", "development"))
    debug: bool = field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")

    @classmethod
    def load(cls) -> 'AppConfig':
        """Load configuration with environment overrides"""
        config = cls()

        config.backend = BackendConfig.from_secrets()
        config.chat.enable_chat_ai = _read_bool("CHAT_ENABLE_AI", config.chat.enable_chat_ai)
        config.chat.enable_customer_chat = _read_bool("CHAT_ENABLE_CUSTOMER_CHAT", config.chat.enable_customer_chat)
        config.storage.db_path = _read_setting("CHAT_LOCAL_DB", config.storage.db_path)

        # Apply environment-specific overrides
        if config.environment == "production":
            config.debug = False
            config.logging.level = "WARNING"
        elif config.environment == "development":
            config.debug = True
            config.logging.level = "DEBUG"

        return config

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = []

        if not self.backend.base_url:
            errors.append("Backend base URL is required")

        if self.backend.page_id <= 0:
            errors.append("Page id must be a positive integer")

        if self.chat.poll_interval <= 0:
            errors.append("Poll interval must be positive")

        if self.retry.max_attempts < 0:
            errors.append("Retry max_attempts cannot be negative")

        if self.storage.db_path != ":memory:":
            db_dir = Path(self.storage.db_path).parent
            if not db_dir.exists():
                db_dir.mkdir(parents=True, exist_ok=True)

        if self.logging.enable_file_logging:
            log_dir = Path(self.logging.log_file).parent
            if not log_dir.exists():
                log_dir.mkdir(parents=True, exist_ok=True)

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Non-secret settings, for diagnostics"""
        return {
            "environment": self.environment,
            "base_url": self.backend.base_url,
            "page_id": self.backend.page_id,
            "poll_interval": self.chat.poll_interval,
            "enable_chat_ai": self.chat.enable_chat_ai,
            "cache_expiry_seconds": self.cache.expiry_seconds,
        }


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        from config.environments import get_environment_config
        _config = get_environment_config()

        # Validate configuration
        errors = _config.validate()
        if errors:
            import warnings
            for error in errors:
                warnings.warn(f"Configuration error: {error}")

    return _config


def reload_config() -> AppConfig:
    """Reload configuration (useful for testing)"""
    global _config
    _config = None
    return get_config()
