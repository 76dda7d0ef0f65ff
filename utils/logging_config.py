"""
Structured logging for the chat engine: JSON records, page-scoped context,
chat event helpers and an error tracker for the Streamlit entry point.
"""

import json
import logging
import logging.handlers
import threading
import time
import traceback
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from config.app_config import AppConfig, get_config

# LogRecord attributes that are not user-supplied `extra` fields
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class ChatContextFilter(logging.Filter):
    """Stamps every record with the page and environment the process serves"""

    def __init__(self, page_id: Any, environment: str):
        super().__init__()
        self.page_id = page_id
        self.environment = environment

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "page_id"):
            record.page_id = self.page_id
        record.environment = self.environment
        return True


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record. Fields passed through `extra=` are nested
    under "extra" so they can't collide with the base keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Configure the root logger: console (readable in debug, JSON otherwise)
    plus an optional rotating JSON file.

    Returns:
        logging.Logger: Configured root logger
    """
    config = config or get_config()
    level = getattr(logging, config.logging.level.upper(), logging.INFO)
    context_filter = ChatContextFilter(config.backend.page_id, config.environment)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    if config.debug:
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - [page %(page_id)s] %(message)s'
        ))
    else:
        console_handler.setFormatter(StructuredFormatter())
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if config.logging.enable_file_logging:
        log_file_path = Path(config.logging.log_file)
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file_path,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8"
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(StructuredFormatter())
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)

    # Retries are reported by RetryService, not by the connection pool
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


@contextmanager
def log_execution_time(logger: logging.Logger, operation: str, **extra_fields):
    """
    Log how long the wrapped block took; failures are logged and re-raised

    Args:
        logger: Logger instance
        operation: Description of the operation
        **extra_fields: Additional fields to include in log
    """
    started = time.monotonic()
    logger.debug(f"Starting {operation}", extra={"operation": operation, **extra_fields})
    try:
        yield
    except Exception as e:
        duration_ms = round((time.monotonic() - started) * 1000)
        logger.error(f"Failed {operation} after {duration_ms}ms: {e}", extra={
            "operation": operation,
            "duration_ms": duration_ms,
            "status": "error",
            "error_type": type(e).__name__,
            **extra_fields
        }, exc_info=True)
        raise

    duration_ms = round((time.monotonic() - started) * 1000)
    logger.info(f"Completed {operation} in {duration_ms}ms", extra={
        "operation": operation,
        "duration_ms": duration_ms,
        "status": "success",
        **extra_fields
    })


def log_user_interaction(logger: logging.Logger, interaction_type: str, **details):
    """
    Log a guest or admin action (send, quick_reply, ai_feedback, toggle_ai)
    """
    logger.info(f"User interaction: {interaction_type}", extra={
        "event_type": "user_interaction",
        "interaction_type": interaction_type,
        **details
    })


def log_conversation_event(logger: logging.Logger, event_type: str, conversation_id: str, **details):
    """
    Log a conversation lifecycle event

    Args:
        logger: Logger instance
        event_type: registered, message_sent, ai_reply, message_deleted, record_deleted, ended
        conversation_id: Guest id of the conversation
        **details: Additional event details
    """
    logger.info(f"Conversation event: {event_type}", extra={
        "event_type": "conversation_event",
        "conversation_event_type": event_type,
        "conversation_id": conversation_id,
        **details
    })


class ErrorTracker:
    """
    Counts errors by type and context. The poll thread and the Streamlit
    script thread both report here.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.error_counts: Dict[str, int] = {}
        self.last_errors: Dict[str, str] = {}
        self._lock = threading.Lock()

    def track_error(self, error: Exception, context: str = "", **extra_info):
        """
        Count and log an error with context

        Args:
            error: Exception that occurred
            context: Where it occurred (e.g. "chat_session_initialization")
            **extra_info: Additional error information
        """
        error_type = type(error).__name__
        error_key = f"{error_type}:{context}"

        with self._lock:
            count = self.error_counts.get(error_key, 0) + 1
            self.error_counts[error_key] = count
            self.last_errors[error_key] = str(error)

        self.logger.error(f"Error in {context}: {error}", extra={
            "event_type": "error",
            "error_type": error_type,
            "context": context,
            "error_count": count,
            **extra_info
        }, exc_info=error)

    def get_error_summary(self) -> Dict[str, Any]:
        """Error statistics for the diagnostics panel"""
        with self._lock:
            return {
                "total_errors": sum(self.error_counts.values()),
                "unique_errors": len(self.error_counts),
                "error_breakdown": dict(self.error_counts),
                "last_errors": dict(self.last_errors),
            }


_logger_setup = False
_error_tracker: Optional[ErrorTracker] = None


def initialize_logging() -> ErrorTracker:
    """
    Configure logging once per process and return the error tracker

    Returns:
        ErrorTracker: Global error tracker instance
    """
    global _logger_setup, _error_tracker

    if not _logger_setup:
        setup_logging()
        _logger_setup = True

    if _error_tracker is None:
        _error_tracker = ErrorTracker(logging.getLogger("customer_chat"))

    return _error_tracker
