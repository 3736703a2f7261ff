# structlog over stdlib logging with one rotating file per channel
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from core.config.settings import Settings
from .channels import (
    CHANNEL_CONFIGS,
    LogChannel,
    channel_for_component,
    channel_statistics,
    parse_size,
)

COMBINED_LOG_FILENAME = "share_ledger.log"

# Process-wide manager, set by configure_enhanced_logging()
_logger_manager: Optional["EnhancedLoggerManager"] = None


class ChannelFilter(logging.Filter):
    """Passes only records whose event dict names this channel.

    structlog hands its event dict to stdlib as ``record.msg``; records from
    plain stdlib loggers may carry ``channel`` as an attribute instead.
    """

    def __init__(self, channel: LogChannel):
        super().__init__()
        self.channel = channel.value

    def filter(self, record: logging.LogRecord) -> bool:
        event = record.msg if isinstance(record.msg, dict) else {}
        return str(event.get("channel", getattr(record, "channel", None))) == self.channel


class EnhancedLoggerManager:
    """Owns the root handlers and the structlog configuration for this process."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.level = getattr(logging, settings.logging.level.upper())
        self.handlers: Dict[str, logging.Handler] = {}
        self.loggers: Dict[str, structlog.BoundLogger] = {}

        root_logger = logging.getLogger()
        root_logger.setLevel(self.level)
        for name, handler in self._build_handlers().items():
            root_logger.addHandler(handler)
            self.handlers[name] = handler

        if LogChannel.DATABASE.value in self.handlers:
            for name in ("sqlalchemy.engine", "sqlalchemy.pool"):
                driver_logger = logging.getLogger(name)
                if driver_logger.level == logging.NOTSET:
                    driver_logger.setLevel(logging.WARNING)

        self._configure_structlog()

    def _formatter(self, renderer) -> structlog.stdlib.ProcessorFormatter:
        return structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
            ],
        )

    def _file_renderer(self):
        if self.settings.logging.json_format:
            return structlog.processors.JSONRenderer()
        return structlog.processors.KeyValueRenderer(key_order=["timestamp", "level", "event"])

    def _rotating_file(self, filename: str, level: int, max_size: str,
                       backup_count: int) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            filename=Path(self.settings.logs_dir) / filename,
            maxBytes=parse_size(max_size),
            backupCount=backup_count,
            encoding="utf-8",
        )
        handler.setLevel(level)
        handler.setFormatter(self._formatter(self._file_renderer()))
        return handler

    def _build_handlers(self) -> Dict[str, logging.Handler]:
        config = self.settings.logging
        handlers: Dict[str, logging.Handler] = {}

        if config.console_enabled:
            console = logging.StreamHandler(sys.stdout)
            console.setLevel(self.level)
            renderer = (structlog.processors.JSONRenderer() if config.console_json_format
                        else structlog.dev.ConsoleRenderer())
            console.setFormatter(self._formatter(renderer))
            handlers["console"] = console

        if not config.file_enabled:
            return handlers

        Path(self.settings.logs_dir).mkdir(parents=True, exist_ok=True)
        handlers["combined"] = self._rotating_file(
            COMBINED_LOG_FILENAME, self.level, config.file_max_size, config.file_backup_count
        )

        if config.multi_channel_enabled:
            for channel, channel_config in CHANNEL_CONFIGS.items():
                handler = self._rotating_file(
                    channel_config.filename,
                    getattr(logging, channel_config.level),
                    channel_config.max_size,
                    channel_config.backup_count,
                )
                # error.log collects ERROR+ from every channel
                if channel != LogChannel.ERROR:
                    handler.addFilter(ChannelFilter(channel))
                handlers[channel.value] = handler

        return handlers

    def _configure_structlog(self) -> None:
        environment = self.settings.environment.value
        app_name = self.settings.app_name

        def add_service_context(logger, method_name, event_dict):
            event_dict.setdefault("env", environment)
            event_dict.setdefault("service", app_name)
            return event_dict

        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                add_service_context,
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                # Rendering happens in each handler's ProcessorFormatter
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str, component: Optional[str] = None) -> structlog.BoundLogger:
        key = f"{name}:{component or ''}"
        if key not in self.loggers:
            logger = structlog.get_logger(name)
            if component:
                logger = logger.bind(component=component,
                                     channel=channel_for_component(component).value)
            self.loggers[key] = logger
        return self.loggers[key]

    def get_statistics(self) -> Dict[str, Any]:
        config = self.settings.logging
        stats = {
            "total_loggers": len(self.loggers),
            "multi_channel_enabled": config.multi_channel_enabled,
            "file_logging_enabled": config.file_enabled,
            "console_logging_enabled": config.console_enabled,
            "json_format": config.json_format,
            "logs_directory": self.settings.logs_dir,
        }
        stats.update(channel_statistics())
        stats["channel_handlers"] = {ch.value: ch.value in self.handlers for ch in LogChannel}
        return stats


def configure_enhanced_logging(settings: Settings) -> None:
    """Install handlers once per process; later calls are no-ops until reset_logging()."""
    global _logger_manager

    if _logger_manager is None:
        _logger_manager = EnhancedLoggerManager(settings)


def reset_logging() -> None:
    """Remove the installed handlers so logging can be configured again."""
    global _logger_manager

    if _logger_manager is None:
        return
    root_logger = logging.getLogger()
    for handler in _logger_manager.handlers.values():
        root_logger.removeHandler(handler)
        handler.close()
    structlog.reset_defaults()
    _logger_manager = None


def get_enhanced_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    if _logger_manager is not None:
        return _logger_manager.get_logger(name, component)

    logger = structlog.get_logger(name)
    if component:
        logger = logger.bind(component=component, channel=channel_for_component(component).value)
    return logger


def get_channel_logger(name: str, channel: LogChannel) -> structlog.BoundLogger:
    return get_enhanced_logger(name).bind(channel=channel.value)


def get_logging_statistics() -> Dict[str, Any]:
    if _logger_manager is None:
        return {"error": "Logger manager not initialized"}
    return _logger_manager.get_statistics()


def get_trading_logger(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.TRADING)


def get_audit_logger(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.AUDIT)


def get_database_logger(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.DATABASE)


def get_error_logger(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.ERROR)
