"""
Monitoring components for the settlement engine
"""

from .prometheus_metrics import SettlementMetrics, SettlementTimer, get_metrics_for_testing

__all__ = [
    "SettlementMetrics",
    "SettlementTimer",
    "get_metrics_for_testing",
]
