# DI container for the settlement engine
import redis.asyncio as redis
from dependency_injector import containers, providers
from prometheus_client import CollectorRegistry

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.monitoring.prometheus_metrics import SettlementMetrics
from services.auditor.auditor import InvariantAuditor
from services.auditor.scheduler import AuditScheduler
from services.ledger.locks import IssuerLockManager
from services.ledger.stores.database_store import DatabaseLedgerStore
from services.ledger.stores.memory_store import InMemoryLedgerStore
from services.settlement.coordinator import SettlementCoordinator
from services.settlement.position_ledger import PositionLedger
from services.settlement.validator import OrderValidator


def _ledger_backend(settings: Settings) -> str:
    return settings.ledger.backend.value


def _metrics_or_none(settings: Settings, registry: CollectorRegistry):
    if not settings.monitoring.metrics_enabled:
        return None
    return SettlementMetrics(registry=registry)


class AppContainer(containers.DeclarativeContainer):
    """Application dependency injection container"""

    # Configuration
    settings = providers.Singleton(Settings)

    # --- Observability: Prometheus ---
    prometheus_registry = providers.Singleton(CollectorRegistry)
    settlement_metrics = providers.Singleton(
        _metrics_or_none,
        settings=settings,
        registry=prometheus_registry,
    )

    # Database with environment awareness
    db_manager = providers.Singleton(
        DatabaseManager,
        db_url=settings.provided.database.postgres_url,
        environment=settings.provided.environment.value,
        schema_management=settings.provided.database.schema_management,
        pool_size=settings.provided.database.pool_size,
        max_overflow=settings.provided.database.max_overflow,
    )

    # Redis backs the distributed issuer locks
    redis_client = providers.Singleton(
        redis.from_url,
        settings.provided.redis.url
    )

    # Ledger store selected by LEDGER__BACKEND
    ledger_store = providers.Selector(
        providers.Callable(_ledger_backend, settings),
        database=providers.Singleton(DatabaseLedgerStore, db_manager=db_manager),
        memory=providers.Singleton(InMemoryLedgerStore),
    )

    lock_manager = providers.Singleton(
        IssuerLockManager,
        lock_timeout_seconds=settings.provided.settlement.lock_timeout_seconds,
        redis_client=redis_client,
        distributed=settings.provided.settlement.distributed_locks_enabled,
    )

    order_validator = providers.Singleton(
        OrderValidator,
        money_quantum=settings.provided.settlement.money_quantum,
    )

    position_ledger = providers.Singleton(PositionLedger)

    settlement_coordinator = providers.Singleton(
        SettlementCoordinator,
        store=ledger_store,
        lock_manager=lock_manager,
        validator=order_validator,
        position_ledger=position_ledger,
        settings=settings.provided.settlement,
        metrics=settlement_metrics,
    )

    invariant_auditor = providers.Singleton(
        InvariantAuditor,
        store=ledger_store,
        lock_manager=lock_manager,
        metrics=settlement_metrics,
    )

    audit_scheduler = providers.Singleton(
        AuditScheduler,
        auditor=invariant_auditor,
        interval_seconds=settings.provided.auditor.interval_seconds,
        auto_repair=settings.provided.auditor.auto_repair,
    )
