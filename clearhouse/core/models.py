"""
Models - Claims, auctions, bids and maturity payments for Clearhouse.

These are plain records mirrored from the persistent store. Engines read
them at the start of a pass and never keep them between passes; the store
is the only source of truth.

Lifecycles:
    Claim:            minting -> issued -> owned <-> listed
                      owned -> matured -> redeemed
                      minting -> failed
    Auction:          active -> completed | unlisted
    Bid:              active -> superseded | cashed
    MaturityPayment:  pending -> created -> cashed
                      pending | created -> overdue
"""

import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


def now_ts() -> int:
    """Current Unix time in whole seconds."""
    return int(time.time())


# =============================================================================
# Enums
# =============================================================================


class ClaimState(str, Enum):
    """Lifecycle state of a tokenized receivable."""
    MINTING = "minting"
    ISSUED = "issued"
    OWNED = "owned"
    LISTED = "listed"
    MATURED = "matured"
    REDEEMED = "redeemed"
    FAILED = "failed"


class AuctionStatus(str, Enum):
    """Lifecycle state of an auction."""
    ACTIVE = "active"
    COMPLETED = "completed"
    UNLISTED = "unlisted"

    @property
    def is_terminal(self) -> bool:
        return self is not AuctionStatus.ACTIVE


class BidStatus(str, Enum):
    """Status of a bid."""
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    CASHED = "cashed"


class PaymentStatus(str, Enum):
    """Status of a maturity payment."""
    PENDING = "pending"      # Awaiting instrument from debtor
    CREATED = "created"      # Instrument created, awaiting cashing
    CASHED = "cashed"        # Creditor collected
    OVERDUE = "overdue"      # Grace period elapsed without collection


# =============================================================================
# Records
# =============================================================================


@dataclass
class Claim:
    """
    A tokenized receivable.

    Attributes:
        claim_id: Unique identifier (also the ledger asset id)
        face_value: Amount due at maturity
        maturity_ts: When face value becomes due from the creator
        creator: Debtor identity
        holder: Current holder identity
        state: Lifecycle state
    """
    claim_id: str
    face_value: int
    maturity_ts: int
    creator: str
    holder: str
    state: ClaimState = ClaimState.MINTING
    created_at: int = field(default_factory=now_ts)
    updated_at: int = field(default_factory=now_ts)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Claim":
        return cls(
            claim_id=row["claim_id"],
            face_value=row["face_value"],
            maturity_ts=row["maturity_ts"],
            creator=row["creator"],
            holder=row["holder"],
            state=ClaimState(row["state"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Auction:
    """
    Time-boxed sale of a claim.

    ``custody`` means the platform escrows the claim while the auction runs,
    so a settlement transfers from the platform and an unsold claim must be
    returned to ``original_owner``.
    """
    auction_id: str
    claim_id: str
    face_value: int
    expiry_ts: int
    min_bid: int
    current_bid: int
    original_owner: str
    custody: bool = True
    status: AuctionStatus = AuctionStatus.ACTIVE
    winner: Optional[str] = None
    final_price: Optional[int] = None
    outcome_detail: Optional[str] = None
    custody_confirmation: Optional[str] = None
    completed_at: Optional[int] = None
    created_at: int = field(default_factory=now_ts)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Auction":
        return cls(
            auction_id=row["auction_id"],
            claim_id=row["claim_id"],
            face_value=row["face_value"],
            expiry_ts=row["expiry_ts"],
            min_bid=row["min_bid"],
            current_bid=row["current_bid"],
            original_owner=row["original_owner"],
            custody=bool(row["custody"]),
            status=AuctionStatus(row["status"]),
            winner=row["winner"],
            final_price=row["final_price"],
            outcome_detail=row["outcome_detail"],
            custody_confirmation=row["custody_confirmation"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
        )

    def is_expired(self, now: int) -> bool:
        """An auction is eligible for settlement once its expiry has passed."""
        return self.expiry_ts <= now


@dataclass
class Bid:
    """An offer on an auction backed by a pre-created payment instrument."""
    bid_id: str
    auction_id: str
    bidder: str
    amount: int
    instrument_id: Optional[str] = None
    instrument_confirmation: Optional[str] = None
    status: BidStatus = BidStatus.ACTIVE
    status_reason: Optional[str] = None
    seq: int = 0  # Insertion order, breaks ties between equal amounts
    created_at: int = field(default_factory=now_ts)
    updated_at: int = field(default_factory=now_ts)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Bid":
        return cls(
            bid_id=row["bid_id"],
            auction_id=row["auction_id"],
            bidder=row["bidder"],
            amount=row["amount"],
            instrument_id=row["instrument_id"],
            instrument_confirmation=row["instrument_confirmation"],
            status=BidStatus(row["status"]),
            status_reason=row["status_reason"],
            seq=row["seq"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class MaturityPayment:
    """Obligation of a claim's creator to pay its holder at maturity."""
    payment_id: str
    claim_id: str
    debtor: str
    creditor: str
    amount: int
    maturity_ts: int
    status: PaymentStatus = PaymentStatus.PENDING
    instrument_id: Optional[str] = None
    instrument_confirmation: Optional[str] = None
    notified_at: Optional[int] = None
    instrument_created_at: Optional[int] = None
    paid_at: Optional[int] = None
    overdue_at: Optional[int] = None
    created_at: int = field(default_factory=now_ts)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MaturityPayment":
        return cls(
            payment_id=row["payment_id"],
            claim_id=row["claim_id"],
            debtor=row["debtor"],
            creditor=row["creditor"],
            amount=row["amount"],
            maturity_ts=row["maturity_ts"],
            status=PaymentStatus(row["status"]),
            instrument_id=row["instrument_id"],
            instrument_confirmation=row["instrument_confirmation"],
            notified_at=row["notified_at"],
            instrument_created_at=row["instrument_created_at"],
            paid_at=row["paid_at"],
            overdue_at=row["overdue_at"],
            created_at=row["created_at"],
        )
