# PostgreSQL connection management
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from core.logging import get_database_logger_safe, get_error_logger_safe

# The base class for all SQLAlchemy models
Base = declarative_base()


class DatabaseManager:
    """Manages the connection to the ledger database"""

    def __init__(self, db_url: str, environment: str = "development", schema_management: str = "auto",
                 pool_size: int = 10, max_overflow: int = 20):
        self._engine = create_async_engine(
            db_url,
            echo=False,
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_recycle=3600,
        )
        self._session_factory = async_sessionmaker(
            self._engine,
            expire_on_commit=False,
            class_=AsyncSession
        )
        self._environment = environment
        self._schema_management = schema_management
        self.logger = get_database_logger_safe("database_manager")
        self.error_logger = get_error_logger_safe("database_manager")

    async def init(self):
        """Initialize database with environment-specific approach"""
        # Register table metadata before create_all / verification
        from core.database import models  # noqa: F401

        if self._environment == "production" or self._schema_management == "migrations_only":
            await self._verify_tables_present()
            self.logger.info("Database ready - schema managed externally")
        else:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self.logger.info("Database initialized with create_all",
                             schema_management=self._schema_management)

    async def _verify_tables_present(self):
        """Fail fast if the ledger tables have not been created."""
        async with self._engine.connect() as conn:
            existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        missing = sorted(set(Base.metadata.tables) - existing)
        if missing:
            self.error_logger.error("Ledger schema incomplete", missing_tables=missing)
            raise RuntimeError(f"Ledger database not ready, missing tables: {', '.join(missing)}")

    async def verify_connection(self) -> bool:
        """Verify database connection is ready"""
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
                return True
        except Exception as e:
            self.logger.error("Database connection verification failed", error=str(e))
            return False

    async def wait_for_ready(self, timeout: int = 30, check_interval: float = 1.0):
        """Wait for database to be ready with timeout"""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while (loop.time() - start_time) < timeout:
            if await self.verify_connection():
                self.logger.info("Database connection verified")
                return True

            self.logger.info("Database not ready, waiting...")
            await asyncio.sleep(check_interval)

        raise RuntimeError(f"Database not ready after {timeout} seconds")

    async def shutdown(self):
        """Closes the database connection pool"""
        await self._engine.dispose()
        self.logger.info("Database connection pool closed")

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """Provides a new database session WITHOUT auto-commit.

        Callers own the transaction boundary.
        """
        session_start_time = time.time()
        async with self._session_factory() as session:
            try:
                yield session
            except Exception as session_error:
                await session.rollback()
                # Version conflicts also land here; callers log at the level they warrant
                self.logger.debug("Database session rolled back",
                                  error_type=type(session_error).__name__,
                                  error=str(session_error),
                                  session_duration_ms=(time.time() - session_start_time) * 1000,
                                  environment=self._environment)
                raise
