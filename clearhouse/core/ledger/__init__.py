"""External ledger adapter contract and implementations"""
from clearhouse.core.ledger.gateway import (
    InstrumentState,
    LedgerGateway,
    LedgerOutcome,
    LedgerResult,
    TimeoutLedgerGateway,
    load_gateway,
)
from clearhouse.core.ledger.simulated import Fault, SimulatedLedger

__all__ = [
    "InstrumentState",
    "LedgerGateway",
    "LedgerOutcome",
    "LedgerResult",
    "TimeoutLedgerGateway",
    "load_gateway",
    "Fault",
    "SimulatedLedger",
]
