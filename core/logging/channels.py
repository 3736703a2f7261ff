"""
Log channels for the share ledger.

Every channel writes its own rotating file. Records are routed by the
``channel`` key bound onto the structlog logger that emitted them.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict


class LogChannel(str, Enum):
    APPLICATION = "application"  # startup, configuration, CLI
    TRADING = "trading"          # settlement sagas, order validation, issuer locks
    AUDIT = "audit"              # supply audits, repairs, owner summaries
    DATABASE = "database"        # ledger store and driver warnings
    ERROR = "error"              # every ERROR+ record whatever its channel


@dataclass(frozen=True)
class ChannelConfig:
    filename: str
    level: str = "INFO"
    max_size: str = "50MB"
    backup_count: int = 5

    def path_in(self, logs_dir: str) -> Path:
        return Path(logs_dir) / self.filename


CHANNEL_CONFIGS: Dict[LogChannel, ChannelConfig] = {
    LogChannel.APPLICATION: ChannelConfig("application.log", max_size="100MB", backup_count=10),
    # Settlement and audit trails keep the most rotations
    LogChannel.TRADING: ChannelConfig("trading.log", backup_count=20),
    LogChannel.AUDIT: ChannelConfig("audit.log", max_size="100MB", backup_count=50),
    LogChannel.DATABASE: ChannelConfig("database.log", level="WARNING"),
    LogChannel.ERROR: ChannelConfig("error.log", level="ERROR", backup_count=20),
}

COMPONENT_CHANNELS: Dict[str, LogChannel] = {
    "settlement": LogChannel.TRADING,
    "order_validator": LogChannel.TRADING,
    "position_ledger": LogChannel.TRADING,
    "lock_manager": LogChannel.TRADING,
    "auditor": LogChannel.AUDIT,
    "audit": LogChannel.AUDIT,
    "ledger_store": LogChannel.DATABASE,
    "database": LogChannel.DATABASE,
    "redis": LogChannel.DATABASE,
    "error": LogChannel.ERROR,
}


def channel_for_component(component: str) -> LogChannel:
    """Channel for loggers requested by component name; unknown components log to application."""
    return COMPONENT_CHANNELS.get(component, LogChannel.APPLICATION)


def parse_size(size: str) -> int:
    """Byte count for sizes like ``50MB``, ``512K`` or ``1048576``."""
    size = size.strip().upper().rstrip("B")
    for suffix, multiplier in (("K", 1024), ("M", 1024 ** 2), ("G", 1024 ** 3)):
        if size.endswith(suffix):
            return int(float(size[:-1]) * multiplier)
    return int(size)


def channel_statistics() -> Dict[str, Any]:
    return {
        "total_channels": len(LogChannel),
        "channels": {
            channel.value: {
                "filename": config.filename,
                "level": config.level,
                "max_size": config.max_size,
                "backup_count": config.backup_count,
            }
            for channel, config in CHANNEL_CONFIGS.items()
        },
    }
