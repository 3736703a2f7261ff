"""
Startup checks for the share ledger.

Verifies that the configured ledger backend and the Redis lock service are
reachable, and flags settings that are legal but probably unintended.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import redis.asyncio as redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from core.logging import get_logger
from .settings import Environment, Settings


@dataclass
class ValidationResult:
    is_valid: bool
    component: str
    message: str
    severity: str = "error"  # error | warning | info


class ConfigurationValidator:
    """Collects ValidationResults; only ``error`` results fail startup."""

    def __init__(self, settings: Settings, connect_timeout_seconds: float = 5.0):
        self.settings = settings
        self.connect_timeout_seconds = connect_timeout_seconds
        self.validation_results: List[ValidationResult] = []
        self.logger = get_logger("config_validator", component="application")

    def _record(self, component: str, message: str, severity: str = "error") -> None:
        self.validation_results.append(ValidationResult(
            is_valid=severity != "error",
            component=component,
            message=message,
            severity=severity,
        ))

    def _by_severity(self, severity: str) -> List[ValidationResult]:
        return [r for r in self.validation_results if r.severity == severity]

    async def validate_all(self) -> bool:
        self.validation_results = []
        self._check_logs_dir()
        self._check_settlement_settings()
        if self.settings.uses_database():
            await self._check_database()
        if self.settings.settlement.distributed_locks_enabled:
            await self._check_redis()

        errors, warnings = self._by_severity("error"), self._by_severity("warning")
        for result in errors:
            self.logger.error("Configuration check failed", check=result.component, detail=result.message)
        for result in warnings:
            self.logger.warning("Configuration check warning", check=result.component, detail=result.message)

        if errors:
            self.logger.error("Configuration validation failed", errors=len(errors), warnings=len(warnings))
        else:
            self.logger.info("Configuration validation passed", warnings=len(warnings))
        return not errors

    def _check_logs_dir(self):
        if not self.settings.logging.file_enabled:
            return
        parent = Path(self.settings.logs_dir).parent
        if not parent.exists():
            self._record("File System", f"Logs directory parent {parent} does not exist")

    def _check_settlement_settings(self):
        settlement = self.settings.settlement
        if self.settings.environment == Environment.PRODUCTION and not self.settings.uses_database():
            self._record("Ledger",
                         "In-memory ledger backend loses all balances on restart; use LEDGER__BACKEND=database",
                         severity="warning")
        if settlement.lock_timeout_seconds * settlement.max_attempts > 60:
            self._record("Settlement",
                         "Lock timeout times max attempts exceeds 60s; callers may wait a long time for Contended",
                         severity="warning")

    async def _check_database(self):
        engine = create_async_engine(self.settings.database.postgres_url)
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            self._record("Database", "Ledger database reachable", severity="info")
        except Exception as e:
            self._record("Database", f"Ledger database unreachable: {e}")
        finally:
            await engine.dispose()

    async def _check_redis(self):
        client = redis.from_url(self.settings.redis.url, socket_connect_timeout=self.connect_timeout_seconds)
        try:
            await client.ping()
            self._record("Redis", "Redis reachable for distributed issuer locks", severity="info")
        except Exception as e:
            self._record("Redis", f"Distributed locks enabled but Redis is unreachable: {e}")
        finally:
            await client.aclose()

    def get_validation_summary(self) -> Dict[str, Any]:
        errors, warnings = self._by_severity("error"), self._by_severity("warning")
        return {
            "total_checks": len(self.validation_results),
            "errors": len(errors),
            "warnings": len(warnings),
            "is_valid": not errors,
            "error_details": [{"component": r.component, "message": r.message} for r in errors],
            "warning_details": [{"component": r.component, "message": r.message} for r in warnings],
        }


async def validate_startup_configuration(settings: Settings) -> bool:
    """True when no check reported an error."""
    return await ConfigurationValidator(settings).validate_all()
