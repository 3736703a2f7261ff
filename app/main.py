# Settlement engine application entry point

import asyncio
import signal
import sys

from app.containers import AppContainer
from core.config.validator import validate_startup_configuration
from core.logging import configure_logging, get_logger


class ApplicationOrchestrator:
    """Starts the ledger backend and the scheduled invariant audit."""

    def __init__(self, container: AppContainer = None):
        self.container = container or AppContainer()
        self._shutdown_event = asyncio.Event()

        self.settings = self.container.settings()
        configure_logging(self.settings)
        self.logger = get_logger("share_ledger.main", component="application")
        self._db_started = False
        self._scheduler_started = False

        self.logger.info("Share ledger initializing",
                         environment=self.settings.environment.value,
                         ledger_backend=self.settings.ledger.backend.value,
                         distributed_locks=self.settings.settlement.distributed_locks_enabled)

    async def startup(self):
        """Initialize application with proper startup sequence."""
        if not await validate_startup_configuration(self.settings):
            self.logger.critical("Configuration validation failed - cannot proceed with startup")
            await self.shutdown()
            sys.exit(1)

        # Step 1: Database schema and readiness
        if self.settings.uses_database():
            db_manager = self.container.db_manager()
            await db_manager.init()
            self._db_started = True
            await db_manager.wait_for_ready(timeout=30)
            self.logger.info("Database initialized and verified ready")

        # Step 2: Scheduled reconciliation of issuer supply counters
        if self.settings.auditor.enabled:
            scheduler = self.container.audit_scheduler()
            await scheduler.start()
            self._scheduler_started = True

        self.logger.info("Share ledger started")

    async def shutdown(self):
        """Gracefully shutdown application."""
        self.logger.info("Shutting down share ledger...")
        if self._scheduler_started:
            await self.container.audit_scheduler().stop()
            self._scheduler_started = False

        if self.settings.settlement.distributed_locks_enabled:
            try:
                await self.container.redis_client().aclose()
            except Exception as e:
                self.logger.warning("Error closing Redis client", error=str(e))

        if self._db_started:
            await self.container.db_manager().shutdown()
            self._db_started = False

        self.logger.info("Share ledger shutdown complete")

    def request_shutdown(self):
        self._shutdown_event.set()

    async def run(self):
        """Run until SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown)

        await self.startup()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.shutdown()


async def main():
    app = ApplicationOrchestrator()
    await app.run()


if __name__ == "__main__":
    asyncio.run(main())
