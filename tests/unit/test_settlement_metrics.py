from core.monitoring.prometheus_metrics import SettlementTimer, get_metrics_for_testing


def test_counters_land_on_isolated_registry():
    metrics = get_metrics_for_testing()
    metrics.record_outcome("buy", "settled")
    metrics.record_outcome("buy", "settled")
    metrics.record_retry("LockAcquisitionError")
    metrics.record_compensation_failure("cash_account")
    metrics.record_audit_discrepancy()

    registry = metrics.registry
    assert registry.get_sample_value("settlement_outcomes_total", {"side": "buy", "outcome": "settled"}) == 2.0
    assert registry.get_sample_value("settlement_retries_total", {"reason": "LockAcquisitionError"}) == 1.0
    assert registry.get_sample_value(
        "settlement_compensation_failures_total", {"record_type": "cash_account"}) == 1.0
    assert registry.get_sample_value("audit_supply_discrepancies_total") == 1.0

    # A second instance does not share state
    assert get_metrics_for_testing().registry.get_sample_value("audit_supply_discrepancies_total") == 0.0


def test_timer_observes_latency():
    metrics = get_metrics_for_testing()
    with SettlementTimer(metrics, "sell"):
        pass
    assert metrics.registry.get_sample_value("settlement_latency_seconds_count", {"side": "sell"}) == 1.0


def test_timer_without_metrics_is_noop():
    with SettlementTimer(None, "buy") as timer:
        pass
    assert timer.start_time is not None


def test_export_is_prometheus_text():
    metrics = get_metrics_for_testing()
    metrics.record_repair()
    body = metrics.export().decode()
    assert "audit_supply_repairs_total 1.0" in body
    assert "# TYPE settlement_latency_seconds histogram" in body
