"""
Bid Ledger - per-auction bid aggregation for Clearhouse.

Keeps two invariants on top of the store:
- At most one active bid per (auction, bidder): a rebid supersedes the
  bidder's previous active bid in the same transaction that records it.
- ``auction.current_bid`` is always max(active bid amounts), or
  ``min_bid`` when there are none. It is recomputed inside the bid write
  so readers never see a stale leading bid.

Settlement priority is amount descending, then first-come among equal
amounts.
"""

from dataclasses import dataclass
from typing import List, Optional

from clearhouse.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from clearhouse.core.models import AuctionStatus, Bid, BidStatus
from clearhouse.core.storage import StorageManager
from clearhouse.utils.logger import get_logger

logger = get_logger("auction.bids")

REASON_REPLACED = "replaced"
REASON_COLLECTED = "payment_collected"


@dataclass
class BidPlacement:
    """Result of a successful bid."""
    bid: Bid
    superseded: Optional[Bid]
    current_bid: int


class BidLedger:
    """Aggregates bids per auction and orders settlement candidates."""

    def __init__(self, storage: StorageManager):
        self.storage = storage

    # =========================================================================
    # Reads
    # =========================================================================

    def active_bids(self, auction_id: str) -> List[Bid]:
        """Active bids in settlement priority order."""
        return self.storage.get_active_bids(auction_id)

    def leading_bid(self, auction_id: str) -> Optional[Bid]:
        bids = self.active_bids(auction_id)
        return bids[0] if bids else None

    # =========================================================================
    # Writes
    # =========================================================================

    def place_bid(
        self,
        auction_id: str,
        bidder: str,
        amount: int,
        instrument_id: Optional[str],
        instrument_confirmation: Optional[str],
        now: int,
    ) -> BidPlacement:
        """
        Record a bid, superseding the bidder's previous active bid.

        Args:
            auction_id: Auction to bid on
            bidder: Bidder identity
            amount: Offered price
            instrument_id: Ledger payment instrument backing the bid
            instrument_confirmation: Ledger reference of the instrument
            now: Current time

        Returns:
            BidPlacement with the new bid and the one it replaced

        Raises:
            NotFoundError: unknown auction
            InvalidStateError: auction closed or expired
            ValidationError: amount or instrument rejected
        """
        if amount is None or amount <= 0:
            raise ValidationError("Invalid bid amount", {"amount": amount})
        if not instrument_id:
            raise ValidationError("Bid requires a payment instrument", {"bidder": bidder})

        with self.storage.transaction():
            auction = self.storage.get_auction(auction_id)
            if auction is None:
                raise NotFoundError("Auction not found", {"auction_id": auction_id})
            if auction.status is not AuctionStatus.ACTIVE:
                raise InvalidStateError("Auction is closed", {"status": auction.status.value})
            if auction.is_expired(now):
                raise InvalidStateError("Auction has expired", {"expiry_ts": auction.expiry_ts})
            if bidder == auction.original_owner:
                raise ValidationError("Owner cannot bid on own auction", {"bidder": bidder})
            if amount < auction.min_bid:
                raise ValidationError(f"Bid must be at least {auction.min_bid}", {"amount": amount})
            if amount <= auction.current_bid and self.storage.max_active_bid(auction_id) is not None:
                raise ValidationError(
                    f"Bid must be greater than current bid of {auction.current_bid}",
                    {"amount": amount},
                )

            prior = self.storage.get_active_bid_for(auction_id, bidder)
            if prior is not None:
                self.storage.set_bid_status(prior.bid_id, BidStatus.SUPERSEDED, now, REASON_REPLACED)
                prior.status = BidStatus.SUPERSEDED
                prior.status_reason = REASON_REPLACED

            bid = self.storage.create_bid(
                auction_id, bidder, amount, instrument_id, instrument_confirmation, now
            )
            current = self.recompute_current_bid(auction_id)

        logger.info(
            f"Bid {bid.bid_id} on {auction_id}: {bidder} offers {amount}"
            + (f" (replaces {prior.bid_id})" if prior else "")
        )
        return BidPlacement(bid=bid, superseded=prior, current_bid=current)

    def recompute_current_bid(self, auction_id: str) -> int:
        """Set current_bid to the top active amount, or min_bid if none."""
        with self.storage.transaction():
            auction = self.storage.get_auction(auction_id)
            if auction is None:
                raise NotFoundError("Auction not found", {"auction_id": auction_id})
            top = self.storage.max_active_bid(auction_id)
            current = top if top is not None else auction.min_bid
            if current != auction.current_bid:
                self.storage.set_current_bid(auction_id, current)
        return current

    def supersede(self, bid: Bid, reason: str, now: int) -> bool:
        """Retire an active bid for cause during settlement."""
        return self._leave_active(bid, BidStatus.SUPERSEDED, reason, now)

    def mark_collected(self, bid: Bid, now: int) -> bool:
        """Record that the bid's payment instrument was cashed."""
        return self._leave_active(bid, BidStatus.CASHED, REASON_COLLECTED, now)

    def _leave_active(self, bid: Bid, status: BidStatus, reason: str, now: int) -> bool:
        with self.storage.transaction():
            changed = self.storage.set_bid_status(bid.bid_id, status, now, reason)
            if changed:
                self.recompute_current_bid(bid.auction_id)
        return changed
