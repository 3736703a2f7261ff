# Structured logging with multi-channel support
from typing import Any, Dict, Optional

import structlog

from core.config.settings import Settings
from .channels import LogChannel
from .enhanced_logging import (
    configure_enhanced_logging,
    get_audit_logger,
    get_channel_logger,
    get_database_logger,
    get_enhanced_logger,
    get_error_logger,
    get_logging_statistics,
    get_trading_logger,
    reset_logging,
)


def configure_logging(settings: Settings) -> None:
    """Configure logging system once per process."""
    configure_enhanced_logging(settings)


def get_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return get_enhanced_logger(name, component)


def get_statistics() -> Dict[str, Any]:
    """Get logging system statistics."""
    return get_logging_statistics()


def get_trading_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a settlement logger, falling back to a component logger."""
    try:
        return get_trading_logger(name)
    except Exception:
        return get_enhanced_logger(name, "settlement")


def get_audit_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an audit logger, falling back to a component logger."""
    try:
        return get_audit_logger(name)
    except Exception:
        return get_enhanced_logger(name, "audit")


def get_database_logger_safe(name: str) -> structlog.BoundLogger:
    """Get a database logger, falling back to a component logger."""
    try:
        return get_database_logger(name)
    except Exception:
        return get_enhanced_logger(name, "database")


def get_error_logger_safe(name: str) -> structlog.BoundLogger:
    """Get an error logger, falling back to a component logger."""
    try:
        return get_error_logger(name)
    except Exception:
        return get_enhanced_logger(name, "error")


__all__ = [
    "LogChannel",
    "configure_logging",
    "reset_logging",
    "get_logger",
    "get_statistics",
    "get_channel_logger",
    "get_trading_logger_safe",
    "get_audit_logger_safe",
    "get_database_logger_safe",
    "get_error_logger_safe",
]
