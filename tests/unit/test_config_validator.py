from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from core.config.settings import LedgerSettings, SettlementSettings, Settings
from core.config.validator import ConfigurationValidator, validate_startup_configuration


def memory_settings(**overrides):
    return Settings(_env_file=None, ledger=LedgerSettings(backend="memory"), **overrides)


@pytest.mark.asyncio
async def test_memory_backend_passes_without_infrastructure():
    assert await validate_startup_configuration(memory_settings())


@pytest.mark.asyncio
async def test_production_memory_backend_warns():
    validator = ConfigurationValidator(memory_settings(environment="production"))
    assert await validator.validate_all()

    summary = validator.get_validation_summary()
    assert summary["is_valid"]
    assert [w["component"] for w in summary["warning_details"]] == ["Ledger"]


@pytest.mark.asyncio
async def test_long_lock_waits_warn():
    settings = memory_settings(settlement=SettlementSettings(lock_timeout_seconds=30, max_attempts=3))
    validator = ConfigurationValidator(settings)
    assert await validator.validate_all()
    assert validator.get_validation_summary()["warnings"] == 1


@pytest.mark.asyncio
async def test_unreachable_redis_is_an_error():
    settings = memory_settings(settlement=SettlementSettings(distributed_locks_enabled=True))
    client = MagicMock()
    client.ping = AsyncMock(side_effect=ConnectionError("refused"))
    client.aclose = AsyncMock()

    with patch("core.config.validator.redis.from_url", return_value=client):
        validator = ConfigurationValidator(settings)
        assert not await validator.validate_all()

    summary = validator.get_validation_summary()
    assert summary["errors"] == 1
    assert summary["error_details"][0]["component"] == "Redis"
    client.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_reachable_redis_is_info():
    settings = memory_settings(settlement=SettlementSettings(distributed_locks_enabled=True))
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()

    with patch("core.config.validator.redis.from_url", return_value=client):
        validator = ConfigurationValidator(settings)
        assert await validator.validate_all()

    assert validator.get_validation_summary()["total_checks"] == 1
