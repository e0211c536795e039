"""
Clearhouse Maturity Module.

Settles matured claims: debtor notification, instrument recording,
collection and overdue escalation.
"""

from clearhouse.core.maturity.engine import MaturitySettlementEngine

__all__ = [
    "MaturitySettlementEngine",
]
