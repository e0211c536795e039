"""
Ledger Gateway - adapter contract for the external settlement ledger.

Conceptual Background:
---------------------
The ledger is asynchronous and eventually final. Every operation the
engines run against it reports one of three outcomes:

1. **CONFIRMED**: the operation is final on the ledger.
2. **FAILED**: the ledger definitively rejected it; nothing changed.
3. **INDETERMINATE**: no answer within the timeout. The operation may or
   may not have happened.

An INDETERMINATE result must never be read as a failure. Callers resolve
it with the reconciliation queries (``instrument_status``, ``owner_of``,
``get_balance``) before committing any state transition.

Errors:
------
Implementations raise ``GatewayError`` when the ledger is unreachable or
misconfigured before anything was submitted. ``TimeoutLedgerGateway``
bounds every call and turns timeouts into INDETERMINATE results.
"""

import importlib
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from clearhouse.core.exceptions import GatewayError
from clearhouse.utils.logger import get_logger

logger = get_logger("ledger.gateway")


# =============================================================================
# Results
# =============================================================================


class LedgerOutcome(str, Enum):
    """Tri-state outcome of a ledger operation."""
    CONFIRMED = "confirmed"
    FAILED = "failed"
    INDETERMINATE = "indeterminate"


class InstrumentState(str, Enum):
    """Observed state of a payment instrument on the ledger."""
    OPEN = "open"            # Created, cashable
    CASHED = "cashed"
    CANCELLED = "cancelled"
    MISSING = "missing"      # Never existed or already removed


@dataclass
class LedgerResult:
    """
    Result of a ledger call.

    Attributes:
        outcome: Tri-state outcome
        confirmation: Opaque ledger reference (transaction hash)
        instrument_id: Set by instrument creation
        value: Query payload (balance, InstrumentState, owner identity)
        detail: Human-readable reason, mostly for failures
    """
    outcome: LedgerOutcome
    confirmation: Optional[str] = None
    instrument_id: Optional[str] = None
    value: Any = None
    detail: str = ""

    @property
    def confirmed(self) -> bool:
        return self.outcome is LedgerOutcome.CONFIRMED

    @property
    def failed(self) -> bool:
        return self.outcome is LedgerOutcome.FAILED

    @property
    def indeterminate(self) -> bool:
        return self.outcome is LedgerOutcome.INDETERMINATE

    @classmethod
    def ok(cls, confirmation: Optional[str] = None, **kwargs) -> "LedgerResult":
        return cls(LedgerOutcome.CONFIRMED, confirmation=confirmation, **kwargs)

    @classmethod
    def fail(cls, detail: str) -> "LedgerResult":
        return cls(LedgerOutcome.FAILED, detail=detail)

    @classmethod
    def unknown(cls, detail: str = "timeout") -> "LedgerResult":
        return cls(LedgerOutcome.INDETERMINATE, detail=detail)


# =============================================================================
# Contract
# =============================================================================


class LedgerGateway(ABC):
    """Operations the settlement engines need from the external ledger."""

    @abstractmethod
    def get_balance(self, identity: str, currency: str) -> LedgerResult:
        """Balance of ``identity`` in ``currency``, returned in ``value``."""

    @abstractmethod
    def create_instrument(self, source: str, destination: str, amount: int) -> LedgerResult:
        """Create a deferred, cashable promise-to-pay from source to destination."""

    @abstractmethod
    def cash_instrument(self, instrument_id: str, amount: int) -> LedgerResult:
        """Collect ``amount`` through a previously created instrument."""

    @abstractmethod
    def cancel_instrument(self, instrument_id: str) -> LedgerResult:
        """Cancel an uncashed instrument."""

    @abstractmethod
    def transfer_ownership(self, asset_id: str, source: str, destination: str) -> LedgerResult:
        """Move a claim token from source to destination."""

    @abstractmethod
    def instrument_status(self, instrument_id: str) -> LedgerResult:
        """Current InstrumentState of an instrument, returned in ``value``."""

    @abstractmethod
    def owner_of(self, asset_id: str) -> LedgerResult:
        """Current owner identity of a claim token, returned in ``value``."""

    def close(self) -> None:
        """Release connections. Default: nothing to release."""


# =============================================================================
# Timeout wrapper
# =============================================================================


class TimeoutLedgerGateway(LedgerGateway):
    """
    Bounds every call to an inner gateway.

    A call that does not return within ``timeout`` seconds yields an
    INDETERMINATE result; the worker thread is left to finish on its own.
    Exceptions other than GatewayError are wrapped in GatewayError.
    """

    def __init__(self, inner: LedgerGateway, timeout: float = 15.0, max_workers: int = 8):
        self.inner = inner
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ledger")

    def _call(self, name: str, fn: Callable[..., LedgerResult], *args) -> LedgerResult:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            logger.warning(f"Ledger call {name}{args} timed out after {self.timeout}s")
            return LedgerResult.unknown(f"{name} timed out after {self.timeout}s")
        except GatewayError:
            raise
        except Exception as e:
            raise GatewayError(f"Ledger call {name} raised", {"error": repr(e)}) from e

    def get_balance(self, identity: str, currency: str) -> LedgerResult:
        return self._call("get_balance", self.inner.get_balance, identity, currency)

    def create_instrument(self, source: str, destination: str, amount: int) -> LedgerResult:
        return self._call("create_instrument", self.inner.create_instrument, source, destination, amount)

    def cash_instrument(self, instrument_id: str, amount: int) -> LedgerResult:
        return self._call("cash_instrument", self.inner.cash_instrument, instrument_id, amount)

    def cancel_instrument(self, instrument_id: str) -> LedgerResult:
        return self._call("cancel_instrument", self.inner.cancel_instrument, instrument_id)

    def transfer_ownership(self, asset_id: str, source: str, destination: str) -> LedgerResult:
        return self._call("transfer_ownership", self.inner.transfer_ownership, asset_id, source, destination)

    def instrument_status(self, instrument_id: str) -> LedgerResult:
        return self._call("instrument_status", self.inner.instrument_status, instrument_id)

    def owner_of(self, asset_id: str) -> LedgerResult:
        return self._call("owner_of", self.inner.owner_of, asset_id)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.inner.close()


# =============================================================================
# Factory
# =============================================================================


def load_gateway(reference: str, config=None) -> LedgerGateway:
    """
    Build a gateway from a ``module:callable`` reference.

    The callable receives the SettlementConfig and returns a LedgerGateway.

    Raises:
        GatewayError: if the reference cannot be resolved
    """
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise GatewayError("Gateway factory must look like 'module:callable'", {"factory": reference})
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise GatewayError("Cannot load gateway factory", {"factory": reference, "error": str(e)}) from e

    gateway = factory(config)
    if not isinstance(gateway, LedgerGateway):
        raise GatewayError("Gateway factory returned a non-gateway", {"factory": reference})
    return gateway
