"""
Prometheus metrics for settlement and invariant auditing
"""

import time
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest


class SettlementMetrics:
    """Settlement and audit metrics registered on a dedicated registry"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Outcomes
        self.settlement_outcomes = Counter(
            'settlement_outcomes_total',
            'Settlement outcomes by order side and outcome status',
            ['side', 'outcome'],
            registry=self.registry
        )

        self.settlement_retries = Counter(
            'settlement_retries_total',
            'Optimistic settlement attempts retried after a concurrency conflict',
            ['reason'],
            registry=self.registry
        )

        self.compensation_failures = Counter(
            'settlement_compensation_failures_total',
            'Compensating writes that could not be completed',
            ['record_type'],
            registry=self.registry
        )

        # Latency
        self.settlement_latency = Histogram(
            'settlement_latency_seconds',
            'Wall time of settle() including retries',
            ['side'],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
            registry=self.registry
        )

        # Auditor
        self.audit_discrepancies = Counter(
            'audit_supply_discrepancies_total',
            'Issuer supply counters found out of line with the transaction log',
            registry=self.registry
        )

        self.audit_repairs = Counter(
            'audit_supply_repairs_total',
            'Issuer supply counters overwritten by the auditor',
            registry=self.registry
        )

    def record_outcome(self, side: str, outcome: str):
        self.settlement_outcomes.labels(side=side, outcome=outcome).inc()

    def record_retry(self, reason: str):
        self.settlement_retries.labels(reason=reason).inc()

    def record_compensation_failure(self, record_type: str):
        self.compensation_failures.labels(record_type=record_type).inc()

    def record_settlement_latency(self, side: str, duration_seconds: float):
        self.settlement_latency.labels(side=side).observe(duration_seconds)

    def record_audit_discrepancy(self):
        self.audit_discrepancies.inc()

    def record_repair(self):
        self.audit_repairs.inc()

    def export(self) -> bytes:
        """Prometheus text exposition of this registry"""
        return generate_latest(self.registry)


class SettlementTimer:
    """Context manager for timing one settlement"""

    def __init__(self, metrics: Optional[SettlementMetrics], side: str):
        self.metrics = metrics
        self.side = side
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.metrics and self.start_time:
            self.metrics.record_settlement_latency(self.side, time.perf_counter() - self.start_time)


def get_metrics_for_testing() -> SettlementMetrics:
    """Metrics on an isolated registry for tests"""
    return SettlementMetrics(registry=CollectorRegistry())
