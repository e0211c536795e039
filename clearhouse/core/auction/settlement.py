"""
Auction Settlement - finalization state machine for expired auctions.

Conceptual Background:
---------------------
An auction leaves ``active`` exactly once, after its expiry, and ends in
one of two terminal states:

- **completed**: the highest bidder that can still pay was charged (its
  payment instrument cashed) and received the claim.
- **unlisted**: nobody bid, or every bidder failed; the escrowed claim
  went back to the original owner.

Settlement pass:
---------------
1. Take the per-auction lease; re-read the auction under it.
2. Resume a bid that was already cashed by an interrupted pass.
3. Walk active bids in priority order, one at a time:
   balance re-check -> cash instrument -> transfer claim.
   Each attempt yields a tagged CandidateResult; the first Success wins.
4. A failed candidate is superseded for cause and its instrument is
   cancelled best-effort. A cash with unknown outcome counts as failed
   only once the instrument is confirmed cancelled.
5. No winner -> return custody and unlist.

Indeterminate ledger outcomes are reconciled against ledger state. If
reconciliation cannot decide, the pass raises SettlementDeferred and the
auction stays active for the next tick.

The lease is renewed before each candidate, before custody return and
before the terminal commit, so no more than one candidate's ledger calls
run between renewals.
"""

import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Union

from pydantic import BaseModel, Field

from clearhouse.core.auction.bid_ledger import BidLedger
from clearhouse.core.config import SettlementConfig
from clearhouse.core.exceptions import (
    ClearhouseError, GatewayError, SettlementDeferred, StoreError,
)
from clearhouse.core.ledger.gateway import InstrumentState, LedgerGateway, LedgerResult
from clearhouse.core.models import Auction, Bid, BidStatus, ClaimState, now_ts
from clearhouse.core.storage import StorageManager
from clearhouse.utils.logger import get_logger

logger = get_logger("auction.settlement")

REASON_NO_BIDS = "no_bids"
REASON_NO_SOLVENT_BIDDER = "no_solvent_bidder"


# =============================================================================
# Candidate results
# =============================================================================


@dataclass(frozen=True)
class Success:
    bid_id: str
    cash_confirmation: Optional[str]
    transfer_confirmation: Optional[str]

    def describe(self) -> str:
        return "won"


@dataclass(frozen=True)
class InsufficientBalance:
    bid_id: str
    balance: Optional[int]
    required: int

    def describe(self) -> str:
        return f"insufficient_balance: has {self.balance}, needs {self.required}"


@dataclass(frozen=True)
class InstrumentFailure:
    bid_id: str
    reason: str
    released: bool = False      # Instrument already cancelled or gone on the ledger

    def describe(self) -> str:
        return f"instrument_failure: {self.reason}"


@dataclass(frozen=True)
class TransferFailure:
    bid_id: str
    reason: str

    def describe(self) -> str:
        return f"transfer_failure: {self.reason}"


CandidateResult = Union[Success, InsufficientBalance, InstrumentFailure, TransferFailure]


# =============================================================================
# Outcome
# =============================================================================


class FinalizeStatus(str, Enum):
    COMPLETED = "completed"
    UNLISTED = "unlisted"
    NOT_EXPIRED = "not_expired"
    DEFERRED = "deferred"       # Lease held elsewhere, or ledger outcome unresolved
    ERROR = "error"


class FinalizeOutcome(BaseModel):
    """Structured result of finalize_auction, returned to manual triggers."""
    auction_id: str
    outcome: FinalizeStatus
    detail: str = ""
    winner: Optional[str] = None
    final_price: Optional[int] = None
    recorded: bool = False      # True when reporting an earlier terminal transition
    attempts: List[str] = Field(default_factory=list)

    @property
    def settled(self) -> bool:
        """True if this call moved the auction to a terminal state."""
        return not self.recorded and self.outcome in (FinalizeStatus.COMPLETED, FinalizeStatus.UNLISTED)


def recorded_outcome(auction: Auction) -> FinalizeOutcome:
    """Outcome of an auction that is already terminal."""
    return FinalizeOutcome(
        auction_id=auction.auction_id,
        outcome=FinalizeStatus(auction.status.value),
        detail=auction.outcome_detail or "",
        winner=auction.winner,
        final_price=auction.final_price,
        recorded=True,
    )


# =============================================================================
# Engine
# =============================================================================


class AuctionSettlementEngine:
    """
    Settles expired auctions against the ledger.

    Stateless between calls; safe to share across threads. Mutual
    exclusion per auction comes from the store lease.
    """

    def __init__(
        self,
        storage: StorageManager,
        gateway: LedgerGateway,
        config: Optional[SettlementConfig] = None,
        bid_ledger: Optional[BidLedger] = None,
        clock: Callable[[], int] = now_ts,
    ):
        self.storage = storage
        self.gateway = gateway
        self.config = config or SettlementConfig()
        self.bids = bid_ledger or BidLedger(storage)
        self.clock = clock

    # =========================================================================
    # Entry points
    # =========================================================================

    def finalize_auction(self, auction_id: str) -> FinalizeOutcome:
        """
        Finalize one auction.

        Never raises for expected conditions; every result, including
        store and gateway failures, comes back as a FinalizeOutcome.
        """
        try:
            return self._finalize(auction_id)
        except (GatewayError, StoreError, sqlite3.Error) as e:
            logger.error(f"Auction {auction_id}: pass aborted: {e}")
            return FinalizeOutcome(auction_id=auction_id, outcome=FinalizeStatus.ERROR, detail=str(e))
        except ClearhouseError as e:
            logger.error(f"Auction {auction_id}: {e}")
            return FinalizeOutcome(auction_id=auction_id, outcome=FinalizeStatus.ERROR, detail=str(e))

    def process_expired_auctions(self) -> int:
        """
        Finalize every active auction past its expiry.

        Returns:
            Number of auctions moved to a terminal state by this pass
        """
        auction_ids = self.storage.find_expired_auction_ids(self.clock())
        logger.info(f"Found {len(auction_ids)} expired auctions to process")

        processed = 0
        for auction_id in auction_ids:
            outcome = self.finalize_auction(auction_id)
            logger.debug(f"Auction {auction_id} result: {outcome.outcome.value} {outcome.detail}")
            if outcome.settled:
                processed += 1
        return processed

    # =========================================================================
    # Pass
    # =========================================================================

    def _finalize(self, auction_id: str) -> FinalizeOutcome:
        now = self.clock()
        auction = self.storage.get_auction(auction_id)
        if auction is None:
            return FinalizeOutcome(auction_id=auction_id, outcome=FinalizeStatus.ERROR,
                                   detail="Auction not found")
        if auction.status.is_terminal:
            return recorded_outcome(auction)
        if not auction.is_expired(now):
            return FinalizeOutcome(auction_id=auction_id, outcome=FinalizeStatus.NOT_EXPIRED,
                                   detail="Auction has not expired yet")

        token = self.storage.acquire_auction_lease(auction_id, now, self.config.lease_seconds)
        if token is None:
            current = self.storage.get_auction(auction_id)
            if current is not None and current.status.is_terminal:
                return recorded_outcome(current)
            logger.info(f"Auction {auction_id}: settlement already in progress elsewhere")
            return FinalizeOutcome(auction_id=auction_id, outcome=FinalizeStatus.DEFERRED,
                                   detail="Settlement already in progress")

        try:
            # Re-check under the lease
            auction = self.storage.get_auction(auction_id)
            if auction.status.is_terminal:
                return recorded_outcome(auction)
            logger.info(f"Finalizing auction {auction_id}...")
            return self._settle(auction, token)
        except SettlementDeferred as e:
            logger.warning(f"Auction {auction_id}: deferred to next tick: {e}")
            return FinalizeOutcome(auction_id=auction_id, outcome=FinalizeStatus.DEFERRED, detail=str(e))
        finally:
            self.storage.release_auction_lease(auction_id, token)

    def _settle(self, auction: Auction, token: str) -> FinalizeOutcome:
        attempts: List[CandidateResult] = []

        # A previous pass may have collected payment and stopped before the transfer
        for bid in self.storage.get_bids_in_status(auction.auction_id, BidStatus.CASHED):
            self._renew(auction, token)
            logger.info(f"  Resuming delivery for already-cashed bid {bid.bid_id}")
            result = self._deliver(auction, bid, cash_confirmation=None)
            attempts.append(result)
            if isinstance(result, Success):
                return self._complete(auction, token, bid, attempts)
            self._retire(bid, result)

        candidates = self.bids.active_bids(auction.auction_id)
        if not candidates and not attempts:
            logger.info("  No bids received - returning custody")
            return self._return_custody(auction, token, REASON_NO_BIDS, attempts)

        for rank, bid in enumerate(candidates, 1):
            self._renew(auction, token)
            logger.info(f"  Checking bidder {rank}/{len(candidates)}: {bid.bidder} ({bid.amount})")
            result = self._attempt(auction, bid)
            attempts.append(result)
            if isinstance(result, Success):
                return self._complete(auction, token, bid, attempts)

            logger.warning(f"  Bidder {bid.bidder} failed ({result.describe()}), trying next...")
            self._retire(bid, result)

        logger.info("  No bidder could settle - returning custody")
        return self._return_custody(auction, token, REASON_NO_SOLVENT_BIDDER, attempts)

    # =========================================================================
    # Candidate attempt
    # =========================================================================

    def _attempt(self, auction: Auction, bid: Bid) -> CandidateResult:
        # Balance may have changed since the bid was placed
        balance = self.gateway.get_balance(bid.bidder, self.config.settlement_currency)
        if balance.indeterminate:
            raise SettlementDeferred("Balance query indeterminate", {"bidder": bid.bidder})
        if balance.failed:
            return InsufficientBalance(bid.bid_id, None, bid.amount)
        if balance.value < bid.amount:
            return InsufficientBalance(bid.bid_id, balance.value, bid.amount)

        if not bid.instrument_id:
            return InstrumentFailure(bid.bid_id, "no payment instrument")

        cash = self._mutate(lambda: self.gateway.cash_instrument(bid.instrument_id, bid.amount))
        if cash.indeterminate:
            state = self._instrument_state(bid.instrument_id)
            if state is InstrumentState.OPEN:
                # The cash may still be in flight
                state = self._void(bid)
            if state is not InstrumentState.CASHED:
                return InstrumentFailure(bid.bid_id, f"cash not applied (instrument {state.value})",
                                         released=True)
            logger.info(f"  Cash of {bid.instrument_id} confirmed by reconciliation")
            cash = LedgerResult.ok(None)
        elif cash.failed:
            return InstrumentFailure(bid.bid_id, cash.detail or "cash rejected")

        # Payment is collected; record it before touching the claim
        self.bids.mark_collected(bid, self.clock())
        return self._deliver(auction, bid, cash.confirmation)

    def _deliver(self, auction: Auction, bid: Bid, cash_confirmation: Optional[str]) -> CandidateResult:
        custodian = self._custodian(auction)
        transfer = self._mutate(
            lambda: self.gateway.transfer_ownership(auction.claim_id, custodian, bid.bidder)
        )
        if transfer.confirmed:
            return Success(bid.bid_id, cash_confirmation, transfer.confirmation)

        # Payment is already collected, so never give up on an unverified transfer
        owner = self._owner_of(auction.claim_id)
        if owner == bid.bidder:
            logger.info(f"  Transfer to {bid.bidder} confirmed by reconciliation")
            return Success(bid.bid_id, cash_confirmation, None)
        if owner != custodian:
            raise SettlementDeferred(
                "Claim held by unexpected owner", {"claim_id": auction.claim_id, "owner": owner}
            )
        if transfer.indeterminate:
            return TransferFailure(bid.bid_id, "transfer not applied")
        return TransferFailure(bid.bid_id, transfer.detail or "transfer rejected")

    def _retire(self, bid: Bid, result: CandidateResult) -> None:
        """Supersede a failed candidate and release its instrument."""
        now = self.clock()
        reason = result.describe()

        if isinstance(result, TransferFailure):
            # Transfers are only attempted after the payment was collected
            self.storage.set_bid_status(bid.bid_id, BidStatus.SUPERSEDED, now, reason,
                                        expected=BidStatus.CASHED)
            logger.error(
                f"  Bid {bid.bid_id}: payment of {bid.amount} collected from {bid.bidder} "
                f"but claim transfer failed; needs manual refund"
            )
            return

        self.bids.supersede(bid, reason, now)
        if not bid.instrument_id or (isinstance(result, InstrumentFailure) and result.released):
            return
        try:
            cancel = self.gateway.cancel_instrument(bid.instrument_id)
        except GatewayError as e:
            logger.warning(f"  Could not cancel instrument {bid.instrument_id}: {e}")
            return
        if not cancel.confirmed:
            logger.warning(
                f"  Could not cancel instrument {bid.instrument_id}: "
                f"{cancel.outcome.value} {cancel.detail}"
            )

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    def _complete(self, auction: Auction, token: str, bid: Bid,
                  attempts: List[CandidateResult]) -> FinalizeOutcome:
        self._renew(auction, token)
        now = self.clock()
        detail = f"won by {bid.bidder} at {bid.amount}"
        with self.storage.transaction():
            self.storage.set_bid_status(bid.bid_id, BidStatus.CASHED, now, "won",
                                        expected=BidStatus.CASHED)
            if not self.storage.complete_auction(auction.auction_id, token, bid.bidder, bid.amount, now, detail):
                raise StoreError("Lost settlement lease before commit", {"auction_id": auction.auction_id})
            self.storage.transition_claim(
                auction.claim_id, ClaimState.OWNED, [ClaimState.LISTED], now, holder=bid.bidder
            )

        logger.info(f"Auction {auction.auction_id} completed: winner {bid.bidder}, price {bid.amount}")
        return FinalizeOutcome(
            auction_id=auction.auction_id,
            outcome=FinalizeStatus.COMPLETED,
            detail=detail,
            winner=bid.bidder,
            final_price=bid.amount,
            attempts=[a.describe() for a in attempts],
        )

    def _return_custody(self, auction: Auction, token: str, reason: str,
                        attempts: List[CandidateResult]) -> FinalizeOutcome:
        confirmation = None
        if auction.custody:
            self._renew(auction, token)
            custodian = self._custodian(auction)
            logger.info(f"  Returning claim {auction.claim_id} to original owner {auction.original_owner}")
            transfer = self._mutate(
                lambda: self.gateway.transfer_ownership(auction.claim_id, custodian, auction.original_owner)
            )
            if transfer.confirmed:
                confirmation = transfer.confirmation
            else:
                owner = self._owner_of(auction.claim_id)
                if owner != auction.original_owner:
                    raise SettlementDeferred(
                        "Custody return not confirmed",
                        {"claim_id": auction.claim_id, "detail": transfer.detail or transfer.outcome.value},
                    )

        self._renew(auction, token)
        now = self.clock()
        with self.storage.transaction():
            if not self.storage.unlist_auction(auction.auction_id, token, now, reason, confirmation):
                raise StoreError("Lost settlement lease before commit", {"auction_id": auction.auction_id})
            self.storage.transition_claim(
                auction.claim_id, ClaimState.OWNED, [ClaimState.LISTED], now,
                holder=auction.original_owner,
            )

        logger.info(f"Auction {auction.auction_id} unlisted ({reason})")
        return FinalizeOutcome(
            auction_id=auction.auction_id,
            outcome=FinalizeStatus.UNLISTED,
            detail=reason,
            attempts=[a.describe() for a in attempts],
        )

    # =========================================================================
    # Ledger helpers
    # =========================================================================

    def _renew(self, auction: Auction, token: str) -> None:
        if not self.storage.renew_auction_lease(
            auction.auction_id, token, self.clock(), self.config.lease_seconds
        ):
            raise SettlementDeferred("Settlement lease lost", {"auction_id": auction.auction_id})

    def _custodian(self, auction: Auction) -> str:
        return self.config.platform_identity if auction.custody else auction.original_owner

    @staticmethod
    def _mutate(call: Callable[[], LedgerResult]) -> LedgerResult:
        """Run a mutating ledger call; an unreachable gateway is indeterminate."""
        try:
            return call()
        except GatewayError as e:
            return LedgerResult.unknown(str(e))

    def _void(self, bid: Bid) -> InstrumentState:
        """
        Cancel an open instrument whose cash outcome is unknown.

        Returns the state that settles the question: CANCELLED, or CASHED
        if the cash landed first. Anything else defers the pass.
        """
        cancel = self._mutate(lambda: self.gateway.cancel_instrument(bid.instrument_id))
        if cancel.confirmed:
            return InstrumentState.CANCELLED

        state = self._instrument_state(bid.instrument_id)
        if state is InstrumentState.OPEN:
            raise SettlementDeferred(
                "Instrument still open after unresolved cash",
                {"instrument_id": bid.instrument_id, "bidder": bid.bidder},
            )
        if state is InstrumentState.CASHED:
            logger.info(f"  Cash of {bid.instrument_id} landed before the cancel")
        return state

    def _instrument_state(self, instrument_id: str) -> InstrumentState:
        result = self.gateway.instrument_status(instrument_id)
        if not result.confirmed:
            raise SettlementDeferred("Cannot reconcile instrument", {"instrument_id": instrument_id})
        return result.value

    def _owner_of(self, asset_id: str) -> str:
        result = self.gateway.owner_of(asset_id)
        if not result.confirmed:
            raise SettlementDeferred("Cannot reconcile claim owner", {"claim_id": asset_id})
        return result.value
