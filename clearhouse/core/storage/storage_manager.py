import secrets
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from clearhouse.core.models import (
    Auction, AuctionStatus, Bid, BidStatus, Claim, ClaimState,
    MaturityPayment, PaymentStatus,
)
from clearhouse.core.storage.sqlite_adapter import SQLiteAdapter
from clearhouse.utils.logger import get_logger

logger = get_logger("storage.manager")


def new_id(prefix: str) -> str:
    """Random entity identifier, e.g. ``auc_3f9c...``."""
    return f"{prefix}_{secrets.token_hex(12)}"


class StorageManager:
    """
    Persistent store for the settlement engines.

    Coordinates data persistence using the SQLite adapter and hands out
    model objects instead of rows. Handles:
    - Claims, auctions, bids and maturity payments
    - Conditional (compare-and-set) state transitions
    - The per-auction settlement lease
    """

    def __init__(self, data_dir: Path, db_name: str = "clearhouse.db"):
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path)

        logger.info(f"StorageManager initialized at {self.db_path}")

    @classmethod
    def from_path(cls, db_path: Path) -> "StorageManager":
        db_path = Path(db_path)
        return cls(db_path.parent, db_path.name)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group several store calls into one atomic unit."""
        with self.adapter.transaction():
            yield

    def close(self) -> None:
        self.adapter.close()

    # =========================================================================
    # Claims
    # =========================================================================

    def create_claim(self, face_value: int, maturity_ts: int, creator: str, holder: str,
                     now: int, claim_id: Optional[str] = None,
                     state: ClaimState = ClaimState.MINTING) -> Claim:
        claim = Claim(
            claim_id=claim_id or new_id("clm"),
            face_value=face_value,
            maturity_ts=maturity_ts,
            creator=creator,
            holder=holder,
            state=state,
            created_at=now,
            updated_at=now,
        )
        self.adapter.insert_claim(
            claim.claim_id, face_value, maturity_ts, creator, holder, state.value, now
        )
        return claim

    def get_claim(self, claim_id: str) -> Optional[Claim]:
        row = self.adapter.get_claim(claim_id)
        return Claim.from_row(row) if row else None

    def transition_claim(self, claim_id: str, state: ClaimState, expected: Sequence[ClaimState],
                         now: int, holder: Optional[str] = None) -> bool:
        return self.adapter.update_claim_state(
            claim_id, state.value, [s.value for s in expected], now, holder
        )

    def find_matured_claims(self, now: int) -> List[Claim]:
        return [Claim.from_row(r) for r in self.adapter.find_matured_claims(now)]

    def delete_stale_claims(self, state: ClaimState, created_before: int) -> int:
        return self.adapter.delete_claims_in_state(state.value, created_before)

    # =========================================================================
    # Auctions
    # =========================================================================

    def create_auction(self, claim: Claim, expiry_ts: int, min_bid: int, original_owner: str,
                       custody: bool, now: int, custody_confirmation: Optional[str] = None) -> Auction:
        auction = Auction(
            auction_id=new_id("auc"),
            claim_id=claim.claim_id,
            face_value=claim.face_value,
            expiry_ts=expiry_ts,
            min_bid=min_bid,
            current_bid=min_bid,
            original_owner=original_owner,
            custody=custody,
            custody_confirmation=custody_confirmation,
            created_at=now,
        )
        self.adapter.insert_auction(
            auction.auction_id, claim.claim_id, claim.face_value, expiry_ts, min_bid,
            original_owner, custody, custody_confirmation, now
        )
        return auction

    def get_auction(self, auction_id: str) -> Optional[Auction]:
        row = self.adapter.get_auction(auction_id)
        return Auction.from_row(row) if row else None

    def find_expired_auction_ids(self, now: int) -> List[str]:
        return self.adapter.find_expired_auction_ids(now)

    def auctions_won_by(self, winner: str) -> List[Auction]:
        return [Auction.from_row(r) for r in self.adapter.auctions_won_by(winner)]

    def set_current_bid(self, auction_id: str, current_bid: int) -> None:
        self.adapter.set_current_bid(auction_id, current_bid)

    def acquire_auction_lease(self, auction_id: str, now: int, duration: int) -> Optional[str]:
        """
        Try to take the settlement lease.

        Returns:
            The lease token, or None if another holder has it or the
            auction is no longer active
        """
        token = secrets.token_hex(16)
        if self.adapter.acquire_lease(auction_id, token, now, duration):
            return token
        return None

    def renew_auction_lease(self, auction_id: str, token: str, now: int, duration: int) -> bool:
        return self.adapter.renew_lease(auction_id, token, now, duration)

    def release_auction_lease(self, auction_id: str, token: str) -> None:
        self.adapter.release_lease(auction_id, token)

    def complete_auction(self, auction_id: str, token: str, winner: str, final_price: int,
                         now: int, detail: str) -> bool:
        return self.adapter.close_auction(
            auction_id, token, AuctionStatus.COMPLETED.value, now,
            winner=winner, final_price=final_price, outcome_detail=detail,
        )

    def unlist_auction(self, auction_id: str, token: str, now: int, detail: str,
                       custody_confirmation: Optional[str] = None) -> bool:
        return self.adapter.close_auction(
            auction_id, token, AuctionStatus.UNLISTED.value, now,
            outcome_detail=detail, custody_confirmation=custody_confirmation,
        )

    # =========================================================================
    # Bids
    # =========================================================================

    def create_bid(self, auction_id: str, bidder: str, amount: int, instrument_id: Optional[str],
                   instrument_confirmation: Optional[str], now: int) -> Bid:
        bid_id = new_id("bid")
        self.adapter.insert_bid(bid_id, auction_id, bidder, amount, instrument_id,
                                instrument_confirmation, now)
        return Bid.from_row(self.adapter.get_bid(bid_id))

    def get_bid(self, bid_id: str) -> Optional[Bid]:
        row = self.adapter.get_bid(bid_id)
        return Bid.from_row(row) if row else None

    def get_active_bids(self, auction_id: str) -> List[Bid]:
        return [Bid.from_row(r) for r in self.adapter.get_active_bids(auction_id)]

    def get_bids_in_status(self, auction_id: str, status: BidStatus) -> List[Bid]:
        return [Bid.from_row(r) for r in self.adapter.get_bids_in_status(auction_id, status.value)]

    def get_active_bid_for(self, auction_id: str, bidder: str) -> Optional[Bid]:
        row = self.adapter.get_active_bid_for(auction_id, bidder)
        return Bid.from_row(row) if row else None

    def get_bids_by_bidder(self, bidder: str) -> List[Bid]:
        return [Bid.from_row(r) for r in self.adapter.get_bids_by_bidder(bidder)]

    def max_active_bid(self, auction_id: str) -> Optional[int]:
        return self.adapter.max_active_bid(auction_id)

    def set_bid_status(self, bid_id: str, status: BidStatus, now: int,
                       reason: Optional[str] = None,
                       expected: BidStatus = BidStatus.ACTIVE) -> bool:
        return self.adapter.update_bid_status(bid_id, status.value, reason, now, expected.value)

    # =========================================================================
    # Maturity Payments
    # =========================================================================

    def create_payment(self, claim: Claim, now: int) -> Optional[MaturityPayment]:
        """
        Create the pending payment for a matured claim.

        Returns:
            The payment, or None if the claim already has one
        """
        payment_id = new_id("pay")
        inserted = self.adapter.insert_payment(
            payment_id, claim.claim_id, claim.creator, claim.holder,
            claim.face_value, claim.maturity_ts, now
        )
        if not inserted:
            return None
        return self.get_payment(payment_id)

    def get_payment(self, payment_id: str) -> Optional[MaturityPayment]:
        row = self.adapter.get_payment(payment_id)
        return MaturityPayment.from_row(row) if row else None

    def get_payment_for_claim(self, claim_id: str) -> Optional[MaturityPayment]:
        row = self.adapter.get_payment_for_claim(claim_id)
        return MaturityPayment.from_row(row) if row else None

    def record_payment_instrument(self, payment_id: str, instrument_id: str,
                                  confirmation: Optional[str], now: int,
                                  expected: Sequence[PaymentStatus],
                                  status: PaymentStatus = PaymentStatus.CREATED) -> bool:
        return self.adapter.record_payment_instrument(
            payment_id, instrument_id, confirmation, now, [s.value for s in expected], status.value
        )

    def mark_payment_cashed(self, payment_id: str, now: int,
                            expected: Sequence[PaymentStatus]) -> bool:
        return self.adapter.mark_payment_cashed(payment_id, now, [s.value for s in expected])

    def mark_payments_overdue(self, matured_before: int, now: int) -> List[str]:
        return self.adapter.mark_payments_overdue(matured_before, now)

    def get_payments(self, statuses: Sequence[PaymentStatus], debtor: Optional[str] = None,
                     creditor: Optional[str] = None) -> List[MaturityPayment]:
        rows = self.adapter.get_payments([s.value for s in statuses], debtor, creditor)
        return [MaturityPayment.from_row(r) for r in rows]

    def get_payments_for_party(self, identity: str) -> List[MaturityPayment]:
        return [MaturityPayment.from_row(r) for r in self.adapter.get_payments_for_party(identity)]

    # =========================================================================
    # Stats
    # =========================================================================

    def stats(self) -> dict:
        """Entity counts grouped by lifecycle state."""
        return {
            "claims": self.adapter.count_by_status("claims", "state"),
            "auctions": self.adapter.count_by_status("auctions", "status"),
            "bids": self.adapter.count_by_status("bids", "status"),
            "maturity_payments": self.adapter.count_by_status("maturity_payments", "status"),
        }
