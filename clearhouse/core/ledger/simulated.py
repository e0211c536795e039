"""
Simulated Ledger - in-memory stand-in for the external ledger.

Keeps balances, payment instruments and claim-token ownership in memory
and applies the same rules a real ledger would (an instrument cashes only
while open and only if its source can cover it; only the current owner
can transfer a token).

Faults can be queued per operation to exercise the settlement engines'
failure paths:

    ledger.inject("cash_instrument", Fault.FAIL)
    ledger.inject("transfer_ownership", Fault.TIMEOUT_APPLIED)

Used by the test suite and by the CLI demo mode.
"""

import secrets
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple

from clearhouse.core.exceptions import GatewayError
from clearhouse.core.ledger.gateway import InstrumentState, LedgerGateway, LedgerResult
from clearhouse.utils.logger import get_logger

logger = get_logger("ledger.simulated")


class Fault(str, Enum):
    """Injected behavior for the next call of an operation."""
    FAIL = "fail"                          # Rejected, nothing applied
    TIMEOUT_APPLIED = "timeout_applied"    # Applied, but reported indeterminate
    TIMEOUT_LOST = "timeout_lost"          # Not applied, reported indeterminate
    UNREACHABLE = "unreachable"            # Raises GatewayError


@dataclass
class SimInstrument:
    instrument_id: str
    source: str
    destination: str
    amount: int
    state: InstrumentState = InstrumentState.OPEN


class SimulatedLedger(LedgerGateway):
    """
    Thread-safe in-memory ledger.

    Attributes:
        currency: The single settlement currency this ledger tracks
        balances: identity -> amount
        instruments: instrument_id -> SimInstrument
        owners: asset_id -> owner identity
        calls: (operation, args) log for assertions
    """

    def __init__(self, currency: str = "RLUSD"):
        self.currency = currency
        self.balances: Dict[str, int] = defaultdict(int)
        self.instruments: Dict[str, SimInstrument] = {}
        self.owners: Dict[str, str] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self._faults: Dict[str, Deque[Fault]] = defaultdict(deque)
        self._lock = threading.RLock()

    # =========================================================================
    # Setup helpers
    # =========================================================================

    def fund(self, identity: str, amount: int) -> None:
        with self._lock:
            self.balances[identity] += amount

    def set_balance(self, identity: str, amount: int) -> None:
        with self._lock:
            self.balances[identity] = amount

    def register_asset(self, asset_id: str, owner: str) -> None:
        with self._lock:
            self.owners[asset_id] = owner

    def inject(self, operation: str, *faults: Fault) -> None:
        """Queue faults for the next calls of ``operation``."""
        with self._lock:
            self._faults[operation].extend(faults)

    def count_calls(self, operation: str) -> int:
        with self._lock:
            return sum(1 for op, _ in self.calls if op == operation)

    def _enter(self, operation: str, *args) -> Optional[Fault]:
        self.calls.append((operation, args))
        queue = self._faults.get(operation)
        fault = queue.popleft() if queue else None
        if fault is Fault.UNREACHABLE:
            raise GatewayError("Simulated ledger unreachable", {"operation": operation})
        return fault

    @staticmethod
    def _tx_hash() -> str:
        return secrets.token_hex(32).upper()

    def _finish(self, fault: Optional[Fault], result: LedgerResult) -> LedgerResult:
        """Apply TIMEOUT_APPLIED after the operation already ran."""
        if fault is Fault.TIMEOUT_APPLIED:
            return LedgerResult.unknown("simulated timeout after apply")
        return result

    # =========================================================================
    # Queries
    # =========================================================================

    def get_balance(self, identity: str, currency: str) -> LedgerResult:
        with self._lock:
            fault = self._enter("get_balance", identity, currency)
            if fault is Fault.FAIL:
                return LedgerResult.fail("simulated failure")
            if fault in (Fault.TIMEOUT_APPLIED, Fault.TIMEOUT_LOST):
                return LedgerResult.unknown("simulated timeout")
            if currency != self.currency:
                return LedgerResult.ok(value=0)
            return LedgerResult.ok(value=self.balances[identity])

    def instrument_status(self, instrument_id: str) -> LedgerResult:
        with self._lock:
            fault = self._enter("instrument_status", instrument_id)
            if fault is Fault.FAIL:
                return LedgerResult.fail("simulated failure")
            if fault in (Fault.TIMEOUT_APPLIED, Fault.TIMEOUT_LOST):
                return LedgerResult.unknown("simulated timeout")
            instrument = self.instruments.get(instrument_id)
            state = instrument.state if instrument else InstrumentState.MISSING
            return LedgerResult.ok(value=state)

    def owner_of(self, asset_id: str) -> LedgerResult:
        with self._lock:
            fault = self._enter("owner_of", asset_id)
            if fault is Fault.FAIL:
                return LedgerResult.fail("simulated failure")
            if fault in (Fault.TIMEOUT_APPLIED, Fault.TIMEOUT_LOST):
                return LedgerResult.unknown("simulated timeout")
            if asset_id not in self.owners:
                return LedgerResult.fail(f"unknown asset {asset_id}")
            return LedgerResult.ok(value=self.owners[asset_id])

    # =========================================================================
    # Mutations
    # =========================================================================

    def create_instrument(self, source: str, destination: str, amount: int) -> LedgerResult:
        with self._lock:
            fault = self._enter("create_instrument", source, destination, amount)
            if fault is Fault.FAIL:
                return LedgerResult.fail("simulated failure")
            if fault is Fault.TIMEOUT_LOST:
                return LedgerResult.unknown("simulated timeout")
            if amount <= 0:
                return LedgerResult.fail("amount must be positive")
            instrument_id = secrets.token_hex(32).upper()
            self.instruments[instrument_id] = SimInstrument(instrument_id, source, destination, amount)
            return self._finish(fault, LedgerResult.ok(self._tx_hash(), instrument_id=instrument_id))

    def cash_instrument(self, instrument_id: str, amount: int) -> LedgerResult:
        with self._lock:
            fault = self._enter("cash_instrument", instrument_id, amount)
            if fault is Fault.FAIL:
                return LedgerResult.fail("simulated failure")
            if fault is Fault.TIMEOUT_LOST:
                return LedgerResult.unknown("simulated timeout")
            instrument = self.instruments.get(instrument_id)
            if instrument is None:
                return LedgerResult.fail("no such instrument")
            if instrument.state is not InstrumentState.OPEN:
                return LedgerResult.fail(f"instrument is {instrument.state.value}")
            if amount > instrument.amount:
                return LedgerResult.fail("amount exceeds instrument limit")
            if self.balances[instrument.source] < amount:
                return LedgerResult.fail("unfunded")
            self.balances[instrument.source] -= amount
            self.balances[instrument.destination] += amount
            instrument.state = InstrumentState.CASHED
            return self._finish(fault, LedgerResult.ok(self._tx_hash()))

    def cancel_instrument(self, instrument_id: str) -> LedgerResult:
        with self._lock:
            fault = self._enter("cancel_instrument", instrument_id)
            if fault is Fault.FAIL:
                return LedgerResult.fail("simulated failure")
            if fault is Fault.TIMEOUT_LOST:
                return LedgerResult.unknown("simulated timeout")
            instrument = self.instruments.get(instrument_id)
            if instrument is None or instrument.state is not InstrumentState.OPEN:
                return LedgerResult.fail("instrument not cancellable")
            instrument.state = InstrumentState.CANCELLED
            return self._finish(fault, LedgerResult.ok(self._tx_hash()))

    def transfer_ownership(self, asset_id: str, source: str, destination: str) -> LedgerResult:
        with self._lock:
            fault = self._enter("transfer_ownership", asset_id, source, destination)
            if fault is Fault.FAIL:
                return LedgerResult.fail("simulated failure")
            if fault is Fault.TIMEOUT_LOST:
                return LedgerResult.unknown("simulated timeout")
            if self.owners.get(asset_id) != source:
                return LedgerResult.fail(f"{source} does not own {asset_id}")
            self.owners[asset_id] = destination
            return self._finish(fault, LedgerResult.ok(self._tx_hash()))


def from_config(config=None) -> SimulatedLedger:
    """Gateway factory used when no real ledger is configured."""
    currency = config.settlement_currency if config is not None else "RLUSD"
    logger.warning("Using the in-memory simulated ledger; balances do not persist")
    return SimulatedLedger(currency=currency)
