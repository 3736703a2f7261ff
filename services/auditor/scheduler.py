import asyncio
from typing import Optional

from core.logging import get_audit_logger_safe, get_error_logger_safe
from .auditor import InvariantAuditor
from .models import AuditSweep


class AuditScheduler:
    """Runs an audit sweep across all issuers every ``interval_seconds``."""

    def __init__(self, auditor: InvariantAuditor, interval_seconds: float = 3600.0,
                 auto_repair: bool = False):
        self.auditor = auditor
        self.interval_seconds = interval_seconds
        self.auto_repair = auto_repair
        self.logger = get_audit_logger_safe("audit_scheduler")
        self.error_logger = get_error_logger_safe("audit_scheduler")

        self._running = False
        self._audit_task: Optional[asyncio.Task] = None
        self.last_sweep: Optional[AuditSweep] = None
        self.sweeps_completed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            self.logger.warning("Audit scheduler already running")
            return

        self.logger.info("Starting audit scheduler",
                         interval_seconds=self.interval_seconds,
                         auto_repair=self.auto_repair)
        self._running = True
        self._audit_task = asyncio.create_task(self._audit_loop())

    async def stop(self):
        if not self._running:
            return

        self._running = False
        if self._audit_task:
            self._audit_task.cancel()
            try:
                await self._audit_task
            except asyncio.CancelledError:
                pass
            self._audit_task = None

        self.logger.info("Audit scheduler stopped", sweeps_completed=self.sweeps_completed)

    async def run_once(self) -> AuditSweep:
        if self.auto_repair:
            sweep = await self.auditor.repair_all()
        else:
            sweep = await self.auditor.audit_all()
        self.last_sweep = sweep
        self.sweeps_completed += 1
        return sweep

    async def _audit_loop(self):
        while self._running:
            try:
                sweep = await self.run_once()
                if not sweep.clean:
                    self.logger.warning("Scheduled audit found problems",
                                        discrepancies=len(sweep.discrepancies),
                                        repairs=len(sweep.repairs),
                                        failures=len(sweep.failures))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Keep the schedule alive; the next sweep retries
                self.error_logger.error("Scheduled audit sweep failed", error=str(e),
                                        error_type=type(e).__name__)

            await asyncio.sleep(self.interval_seconds)
