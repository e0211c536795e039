"""
Unit tests for auction finalization.
"""

import logging

from clearhouse.core.auction import FinalizeStatus, REASON_NO_BIDS, REASON_NO_SOLVENT_BIDDER
from clearhouse.core.ledger import Fault, InstrumentState, LedgerResult, SimulatedLedger
from clearhouse.core.models import AuctionStatus, BidStatus, ClaimState
from clearhouse.core.service import SettlementService

from conftest import fund_and_bid, make_auction


# =============================================================================
# Eligibility
# =============================================================================


class TestEligibility:
    """Tests for the pre-lease checks."""

    def test_missing_auction(self, service):
        outcome = service.finalize_auction("auc_missing")
        assert outcome.outcome == FinalizeStatus.ERROR

    def test_not_expired(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, duration=3600)
        clock.advance(3599)

        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.outcome == FinalizeStatus.NOT_EXPIRED
        assert service.get_auction(auction.auction_id).status == AuctionStatus.ACTIVE

    def test_expiry_boundary_is_eligible(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, duration=3600)
        clock.advance(3600)

        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.outcome == FinalizeStatus.UNLISTED


# =============================================================================
# Fallback
# =============================================================================


class TestFallback:
    """Tests for sequential candidate processing."""

    def test_insolvent_top_bidder_falls_back(self, service, ledger, clock):
        """B bids 200 but cannot pay; A's 150 wins."""
        claim, auction = make_auction(service, ledger, min_bid=100)
        a = fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        b = fund_and_bid(service, ledger, auction.auction_id, "B", 200)
        ledger.set_balance("B", 50)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)

        assert outcome.outcome == FinalizeStatus.COMPLETED
        assert outcome.winner == "A"
        assert outcome.final_price == 150
        assert len(outcome.attempts) == 2
        assert outcome.attempts[0].startswith("insufficient_balance")

        stored = service.get_auction(auction.auction_id)
        assert stored.status == AuctionStatus.COMPLETED
        assert stored.winner == "A"
        assert stored.final_price == 150

        assert service.storage.get_bid(a.bid.bid_id).status == BidStatus.CASHED
        loser = service.storage.get_bid(b.bid.bid_id)
        assert loser.status == BidStatus.SUPERSEDED
        assert loser.status_reason.startswith("insufficient_balance")

        updated = service.get_claim(claim.claim_id)
        assert updated.state == ClaimState.OWNED
        assert updated.holder == "A"
        assert ledger.owners[claim.claim_id] == "A"
        assert ledger.balances["A"] == 0
        assert ledger.balances["creditor"] == 150

    def test_loser_instrument_cancelled(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        b = fund_and_bid(service, ledger, auction.auction_id, "B", 200)
        ledger.set_balance("B", 0)
        clock.advance(3601)

        service.finalize_auction(auction.auction_id)
        assert ledger.instruments[b.bid.instrument_id].state == InstrumentState.CANCELLED

    def test_cancel_failure_is_not_fatal(self, service, ledger, clock, caplog):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        fund_and_bid(service, ledger, auction.auction_id, "B", 200)
        ledger.set_balance("B", 0)
        ledger.inject("cancel_instrument", Fault.UNREACHABLE)
        clock.advance(3601)

        with caplog.at_level(logging.WARNING, logger="clearhouse"):
            outcome = service.finalize_auction(auction.auction_id)

        assert outcome.outcome == FinalizeStatus.COMPLETED
        assert outcome.winner == "A"
        assert "Could not cancel instrument" in caplog.text

    def test_cash_failure_falls_back(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        fund_and_bid(service, ledger, auction.auction_id, "B", 200)
        ledger.inject("cash_instrument", Fault.FAIL)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.winner == "A"
        assert outcome.attempts[0].startswith("instrument_failure")

    def test_all_bidders_fail_returns_custody(self, service, ledger, clock):
        claim, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        fund_and_bid(service, ledger, auction.auction_id, "B", 200)
        ledger.set_balance("A", 0)
        ledger.set_balance("B", 0)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)

        assert outcome.outcome == FinalizeStatus.UNLISTED
        assert outcome.detail == REASON_NO_SOLVENT_BIDDER
        assert service.active_bids(auction.auction_id) == []
        assert ledger.owners[claim.claim_id] == "creditor"
        assert service.get_claim(claim.claim_id).state == ClaimState.OWNED


# =============================================================================
# No bids
# =============================================================================


class TestNoBids:
    """Tests for custody return."""

    def test_zero_bids_unlists_and_returns_custody(self, service, ledger, clock, config):
        claim, auction = make_auction(service, ledger)
        assert ledger.owners[claim.claim_id] == config.platform_identity
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)

        assert outcome.outcome == FinalizeStatus.UNLISTED
        assert outcome.detail == REASON_NO_BIDS
        assert ledger.owners[claim.claim_id] == "creditor"
        updated = service.get_claim(claim.claim_id)
        assert updated.state == ClaimState.OWNED
        assert updated.holder == "creditor"
        assert service.get_auction(auction.auction_id).custody_confirmation is not None

    def test_without_custody_no_transfer(self, service, ledger, clock):
        claim, auction = make_auction(service, ledger, custody=False)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.outcome == FinalizeStatus.UNLISTED
        assert ledger.count_calls("transfer_ownership") == 0

    def test_custody_return_failure_defers(self, service, ledger, clock):
        _, auction = make_auction(service, ledger)
        ledger.inject("transfer_ownership", Fault.TIMEOUT_LOST)
        ledger.inject("owner_of", Fault.TIMEOUT_LOST)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.outcome == FinalizeStatus.DEFERRED
        assert service.get_auction(auction.auction_id).status == AuctionStatus.ACTIVE

        # Next tick succeeds
        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.outcome == FinalizeStatus.UNLISTED


# =============================================================================
# Idempotence
# =============================================================================


class TestIdempotence:
    """Tests for repeated finalization."""

    def test_second_call_returns_recorded_outcome(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        clock.advance(3601)

        first = service.finalize_auction(auction.auction_id)
        second = service.finalize_auction(auction.auction_id)

        assert first.settled
        assert not second.settled
        assert second.recorded
        assert second.outcome == first.outcome
        assert second.winner == first.winner
        assert second.final_price == first.final_price
        assert ledger.count_calls("cash_instrument") == 1

    def test_process_expired_counts_transitions(self, service, ledger, clock):
        make_auction(service, ledger, duration=100)
        make_auction(service, ledger, duration=100)
        make_auction(service, ledger, duration=10_000)
        clock.advance(200)

        assert service.process_expired_auctions() == 2
        assert service.process_expired_auctions() == 0


# =============================================================================
# Indeterminate outcomes
# =============================================================================


class TestReconciliation:
    """Tests for indeterminate ledger results."""

    def test_cash_timeout_applied_is_reconciled(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        ledger.inject("cash_instrument", Fault.TIMEOUT_APPLIED)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.outcome == FinalizeStatus.COMPLETED
        assert outcome.winner == "A"
        assert ledger.count_calls("instrument_status") == 1

    def test_cash_timeout_lost_is_a_candidate_failure(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        fund_and_bid(service, ledger, auction.auction_id, "B", 200)
        ledger.inject("cash_instrument", Fault.TIMEOUT_LOST)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.winner == "A"
        assert ledger.balances["B"] == 200

    def test_unresolvable_cash_defers(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        bid = fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        ledger.inject("cash_instrument", Fault.TIMEOUT_LOST)
        ledger.inject("instrument_status", Fault.TIMEOUT_LOST)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)

        assert outcome.outcome == FinalizeStatus.DEFERRED
        assert service.get_auction(auction.auction_id).status == AuctionStatus.ACTIVE
        assert service.storage.get_bid(bid.bid.bid_id).status == BidStatus.ACTIVE

    def test_balance_timeout_defers(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        ledger.inject("get_balance", Fault.TIMEOUT_LOST)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.outcome == FinalizeStatus.DEFERRED
        assert ledger.count_calls("cash_instrument") == 0

    def test_transfer_timeout_applied_is_reconciled(self, service, ledger, clock):
        claim, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        ledger.inject("transfer_ownership", Fault.TIMEOUT_APPLIED)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.outcome == FinalizeStatus.COMPLETED
        assert ledger.owners[claim.claim_id] == "A"

    def test_deferred_transfer_resumes_without_recharging(self, service, ledger, clock):
        """Payment collected, transfer unknown: the next pass only transfers."""
        claim, auction = make_auction(service, ledger, min_bid=100)
        bid = fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        ledger.inject("transfer_ownership", Fault.TIMEOUT_LOST)
        ledger.inject("owner_of", Fault.TIMEOUT_LOST)
        clock.advance(3601)

        first = service.finalize_auction(auction.auction_id)
        assert first.outcome == FinalizeStatus.DEFERRED
        assert service.storage.get_bid(bid.bid.bid_id).status == BidStatus.CASHED

        second = service.finalize_auction(auction.auction_id)
        assert second.outcome == FinalizeStatus.COMPLETED
        assert second.winner == "A"
        assert ledger.count_calls("cash_instrument") == 1
        assert ledger.owners[claim.claim_id] == "A"

    def test_unreachable_gateway_is_error(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        ledger.inject("get_balance", Fault.UNREACHABLE)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.outcome == FinalizeStatus.ERROR
        stored = service.get_auction(auction.auction_id)
        assert stored.status == AuctionStatus.ACTIVE

    def test_lease_released_after_error(self, service, ledger, clock, storage):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        ledger.inject("get_balance", Fault.UNREACHABLE)
        clock.advance(3601)

        service.finalize_auction(auction.auction_id)
        assert storage.acquire_auction_lease(auction.auction_id, clock(), 60) is not None


# =============================================================================
# Lease
# =============================================================================


class SlowLedger(SimulatedLedger):
    """Advances the test clock inside selected operations."""

    def __init__(self, clock):
        super().__init__()
        self.clock = clock
        self.delays = {}
        self.during_transfer = None

    def get_balance(self, identity, currency):
        self.clock.advance(self.delays.get("get_balance", 0))
        return super().get_balance(identity, currency)

    def transfer_ownership(self, asset_id, source, destination):
        self.clock.advance(self.delays.get("transfer_ownership", 0))
        if self.during_transfer is not None:
            self.during_transfer()
        return super().transfer_ownership(asset_id, source, destination)


class TestLease:
    """Tests for the per-auction settlement lease."""

    def test_held_lease_defers(self, service, ledger, clock, storage):
        _, auction = make_auction(service, ledger)
        clock.advance(3601)
        assert storage.acquire_auction_lease(auction.auction_id, clock(), 120)

        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.outcome == FinalizeStatus.DEFERRED

    def test_expired_lease_is_recovered(self, service, ledger, clock, storage):
        """A crashed holder's lease is taken over after it expires."""
        _, auction = make_auction(service, ledger)
        clock.advance(3601)
        assert storage.acquire_auction_lease(auction.auction_id, clock(), 120)
        clock.advance(121)

        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.outcome == FinalizeStatus.UNLISTED

    def test_lease_renewed_before_custody_return(self, config, storage, clock):
        """A slow candidate must not let a rival take over during custody return."""
        ledger = SlowLedger(clock)
        service = SettlementService(config, storage, ledger, clock=clock)
        claim, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150, balance=0)

        rivals = []
        ledger.delays = {"get_balance": config.lease_seconds - 10, "transfer_ownership": 20}
        ledger.during_transfer = lambda: rivals.append(
            storage.acquire_auction_lease(auction.auction_id, clock(), config.lease_seconds)
        )
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)

        assert outcome.outcome == FinalizeStatus.UNLISTED
        assert outcome.detail == REASON_NO_SOLVENT_BIDDER
        assert rivals == [None]
        assert ledger.owners[claim.claim_id] == "creditor"

    def test_lease_lost_before_commit_defers(self, config, storage, clock):
        ledger = SlowLedger(clock)
        service = SettlementService(config, storage, ledger, clock=clock)
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)

        rivals = []
        ledger.delays = {"transfer_ownership": config.lease_seconds + 1}
        ledger.during_transfer = lambda: rivals.append(
            storage.acquire_auction_lease(auction.auction_id, clock(), config.lease_seconds)
        )
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)

        assert rivals[0] is not None
        assert outcome.outcome == FinalizeStatus.DEFERRED
        assert service.get_auction(auction.auction_id).status == AuctionStatus.ACTIVE


# =============================================================================
# Leading bid during settlement
# =============================================================================


class StalledBalanceLedger(SimulatedLedger):
    """Balance queries for the given identities never resolve."""

    def __init__(self, *stalled):
        super().__init__()
        self.stalled = set(stalled)

    def get_balance(self, identity, currency):
        if identity in self.stalled:
            return LedgerResult.unknown("simulated timeout")
        return super().get_balance(identity, currency)


class TestCurrentBidDuringSettlement:
    """Tests for current_bid while a pass retires candidates."""

    def test_deferred_pass_keeps_current_bid_at_max_active(self, config, storage, clock):
        ledger = StalledBalanceLedger("A")
        service = SettlementService(config, storage, ledger, clock=clock)
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        fund_and_bid(service, ledger, auction.auction_id, "B", 200)
        ledger.set_balance("B", 50)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)

        assert outcome.outcome == FinalizeStatus.DEFERRED
        stored = service.get_auction(auction.auction_id)
        assert stored.status == AuctionStatus.ACTIVE
        assert stored.current_bid == storage.max_active_bid(auction.auction_id) == 150

    def test_exhausted_candidates_reset_to_min_bid(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        fund_and_bid(service, ledger, auction.auction_id, "B", 200)
        ledger.set_balance("A", 0)
        ledger.set_balance("B", 0)
        clock.advance(3601)

        service.finalize_auction(auction.auction_id)
        assert service.get_auction(auction.auction_id).current_bid == 100


# =============================================================================
# Cash with unknown outcome
# =============================================================================


class LateCashLedger(SimulatedLedger):
    """The next cash reports a timeout, then lands just before the next cancel."""

    def __init__(self):
        super().__init__()
        self.delay_next_cash = True
        self.in_flight = None

    def cash_instrument(self, instrument_id, amount):
        if self.delay_next_cash:
            self.delay_next_cash = False
            self.in_flight = (instrument_id, amount)
            return LedgerResult.unknown("simulated timeout")
        return super().cash_instrument(instrument_id, amount)

    def cancel_instrument(self, instrument_id):
        if self.in_flight is not None:
            pending, self.in_flight = self.in_flight, None
            super().cash_instrument(*pending)
        return super().cancel_instrument(instrument_id)


class TestUnresolvedCash:
    """A bidder whose cash outcome is unknown is never dropped while it can still land."""

    def test_late_cash_wins_instead_of_charging_next_bidder(self, config, storage, clock):
        ledger = LateCashLedger()
        service = SettlementService(config, storage, ledger, clock=clock)
        claim, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        b = fund_and_bid(service, ledger, auction.auction_id, "B", 200)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)

        assert outcome.outcome == FinalizeStatus.COMPLETED
        assert outcome.winner == "B"
        assert outcome.final_price == 200
        assert ledger.balances["A"] == 150
        assert ledger.balances["B"] == 0
        assert ledger.balances["creditor"] == 200
        assert ledger.owners[claim.claim_id] == "B"
        assert service.storage.get_bid(b.bid.bid_id).status == BidStatus.CASHED

    def test_confirmed_cancel_allows_fallback(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        b = fund_and_bid(service, ledger, auction.auction_id, "B", 200)
        ledger.inject("cash_instrument", Fault.TIMEOUT_LOST)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)

        assert outcome.winner == "A"
        assert outcome.attempts[0].startswith("instrument_failure")
        assert ledger.instruments[b.bid.instrument_id].state == InstrumentState.CANCELLED
        assert ledger.count_calls("cancel_instrument") == 1

    def test_unconfirmed_cancel_defers(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "A", 150)
        b = fund_and_bid(service, ledger, auction.auction_id, "B", 200)
        ledger.inject("cash_instrument", Fault.TIMEOUT_LOST)
        ledger.inject("cancel_instrument", Fault.TIMEOUT_LOST)
        clock.advance(3601)

        outcome = service.finalize_auction(auction.auction_id)

        assert outcome.outcome == FinalizeStatus.DEFERRED
        assert ledger.count_calls("cash_instrument") == 1
        assert ledger.balances["A"] == 150
        assert service.storage.get_bid(b.bid.bid_id).status == BidStatus.ACTIVE

        # Next tick the instrument is still open and cashes normally
        outcome = service.finalize_auction(auction.auction_id)
        assert outcome.outcome == FinalizeStatus.COMPLETED
        assert outcome.winner == "B"
