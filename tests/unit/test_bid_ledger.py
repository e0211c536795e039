"""
Unit tests for bid aggregation.
"""

import pytest

from clearhouse.core.auction import REASON_COLLECTED, REASON_REPLACED
from clearhouse.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from clearhouse.core.models import BidStatus

from conftest import fund_and_bid, make_auction


# =============================================================================
# Placement
# =============================================================================


class TestPlaceBid:
    """Tests for bid validation and current_bid maintenance."""

    def test_first_bid_at_min(self, service, ledger):
        """A first bid equal to min_bid is accepted."""
        _, auction = make_auction(service, ledger, min_bid=100)
        placement = fund_and_bid(service, ledger, auction.auction_id, "alice", 100)

        assert placement.bid.status == BidStatus.ACTIVE
        assert placement.superseded is None
        assert placement.current_bid == 100

    def test_below_min_rejected(self, service, ledger):
        _, auction = make_auction(service, ledger, min_bid=100)
        with pytest.raises(ValidationError):
            fund_and_bid(service, ledger, auction.auction_id, "alice", 99)

    def test_must_beat_current_bid(self, service, ledger):
        """Once there is a leading bid, equal offers are rejected."""
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "alice", 150)

        with pytest.raises(ValidationError):
            fund_and_bid(service, ledger, auction.auction_id, "bob", 150)

        placement = fund_and_bid(service, ledger, auction.auction_id, "bob", 151)
        assert placement.current_bid == 151
        assert service.get_auction(auction.auction_id).current_bid == 151

    def test_owner_cannot_bid(self, service, ledger):
        _, auction = make_auction(service, ledger)
        with pytest.raises(ValidationError):
            fund_and_bid(service, ledger, auction.auction_id, "creditor", 500)

    def test_requires_instrument(self, service, ledger):
        _, auction = make_auction(service, ledger)
        with pytest.raises(ValidationError):
            service.place_bid(auction.auction_id, "alice", 200, None)

    def test_unknown_auction(self, service):
        with pytest.raises(NotFoundError):
            service.place_bid("auc_missing", "alice", 200, "INSTR")

    def test_expired_auction_rejects_bids(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, duration=60)
        clock.advance(60)
        with pytest.raises(InvalidStateError):
            fund_and_bid(service, ledger, auction.auction_id, "alice", 200)


# =============================================================================
# Rebids
# =============================================================================


class TestRebid:
    """Tests for the one-active-bid-per-bidder rule."""

    def test_rebid_supersedes_previous(self, service, ledger):
        _, auction = make_auction(service, ledger, min_bid=100)
        first = fund_and_bid(service, ledger, auction.auction_id, "alice", 150)
        second = fund_and_bid(service, ledger, auction.auction_id, "alice", 200)

        assert second.superseded.bid_id == first.bid.bid_id
        old = service.storage.get_bid(first.bid.bid_id)
        assert old.status == BidStatus.SUPERSEDED
        assert old.status_reason == REASON_REPLACED

        active = service.active_bids(auction.auction_id)
        assert [b.bid_id for b in active] == [second.bid.bid_id]

    def test_rebid_cancels_old_instrument(self, service, ledger):
        """The replaced bid's instrument is released on the ledger."""
        _, auction = make_auction(service, ledger, min_bid=100)
        first = fund_and_bid(service, ledger, auction.auction_id, "alice", 150)
        fund_and_bid(service, ledger, auction.auction_id, "alice", 200)

        assert ledger.instruments[first.bid.instrument_id].state.value == "cancelled"

    def test_rebid_survives_cancel_failure(self, service, ledger):
        from clearhouse.core.ledger import Fault

        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "alice", 150)
        ledger.inject("cancel_instrument", Fault.UNREACHABLE)

        placement = fund_and_bid(service, ledger, auction.auction_id, "alice", 200)
        assert placement.bid.status == BidStatus.ACTIVE

    def test_current_bid_tracks_max_active(self, service, ledger):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "alice", 150)
        fund_and_bid(service, ledger, auction.auction_id, "bob", 300)
        fund_and_bid(service, ledger, auction.auction_id, "alice", 400)

        amounts = [b.amount for b in service.active_bids(auction.auction_id)]
        assert amounts == [400, 300]
        assert service.get_auction(auction.auction_id).current_bid == 400


# =============================================================================
# Ordering
# =============================================================================


class TestCandidateOrder:
    """Tests for settlement priority."""

    def test_amount_then_arrival(self, service, ledger, storage, clock):
        """Equal amounts settle first-come; bypass the raise rule via the store."""
        _, auction = make_auction(service, ledger, min_bid=100)
        now = clock()
        a = storage.create_bid(auction.auction_id, "alice", 200, "I1", None, now)
        b = storage.create_bid(auction.auction_id, "bob", 200, "I2", None, now)
        c = storage.create_bid(auction.auction_id, "carol", 300, "I3", None, now)

        order = [bid.bid_id for bid in service.active_bids(auction.auction_id)]
        assert order == [c.bid_id, a.bid_id, b.bid_id]

    def test_recompute_with_no_active_bids(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        placement = fund_and_bid(service, ledger, auction.auction_id, "alice", 150)
        service.bids.supersede(placement.bid, "test", clock())

        assert service.bids.recompute_current_bid(auction.auction_id) == 100
        assert service.bids.leading_bid(auction.auction_id) is None

    def test_supersede_lowers_current_bid(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        fund_and_bid(service, ledger, auction.auction_id, "alice", 150)
        top = fund_and_bid(service, ledger, auction.auction_id, "bob", 200)

        assert service.bids.supersede(top.bid, "insufficient_balance", clock())
        assert service.get_auction(auction.auction_id).current_bid == 150

    def test_collected_bid_leaves_active_set(self, service, ledger, clock):
        _, auction = make_auction(service, ledger, min_bid=100)
        placement = fund_and_bid(service, ledger, auction.auction_id, "alice", 150)

        assert service.bids.mark_collected(placement.bid, clock())
        stored = service.storage.get_bid(placement.bid.bid_id)
        assert stored.status == BidStatus.CASHED
        assert stored.status_reason == REASON_COLLECTED
        assert service.get_auction(auction.auction_id).current_bid == 100
