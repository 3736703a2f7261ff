"""
Invariant Auditor Service

Recomputes issuer supply from the transaction log and repairs drift.
"""

from .auditor import InvariantAuditor
from .models import AuditReport, AuditSweep, OwnerTradingSummary, RepairResult
from .scheduler import AuditScheduler

__all__ = [
    "InvariantAuditor",
    "AuditScheduler",
    "AuditReport",
    "AuditSweep",
    "OwnerTradingSummary",
    "RepairResult",
]
