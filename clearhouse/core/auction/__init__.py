"""
Clearhouse Auction Module.

This module provides the auction side of settlement:
- Bid aggregation and candidate ordering
- Finalization of expired auctions with payment fallback
- Custody return for unsold claims
"""

from clearhouse.core.auction.bid_ledger import BidLedger, BidPlacement, REASON_COLLECTED, REASON_REPLACED

from clearhouse.core.auction.settlement import (
    AuctionSettlementEngine,
    CandidateResult,
    FinalizeOutcome,
    FinalizeStatus,
    InstrumentFailure,
    InsufficientBalance,
    Success,
    TransferFailure,
    REASON_NO_BIDS,
    REASON_NO_SOLVENT_BIDDER,
)

__all__ = [
    # Bids
    "BidLedger",
    "BidPlacement",
    "REASON_COLLECTED",
    "REASON_REPLACED",
    # Settlement
    "AuctionSettlementEngine",
    "CandidateResult",
    "FinalizeOutcome",
    "FinalizeStatus",
    "InstrumentFailure",
    "InsufficientBalance",
    "Success",
    "TransferFailure",
    "REASON_NO_BIDS",
    "REASON_NO_SOLVENT_BIDDER",
]
