"""
Settlement Service - the API surface of Clearhouse.

Wires storage, the ledger gateway and the engines together and exposes
the operations used by the scheduler and by manual triggers (CLI).

Manual payment triggers return an ActionOutcome instead of raising, the
same way finalize_auction returns a FinalizeOutcome. Issuance, listing
and bidding raise ClearhouseError subclasses for rejected input.
"""

import sqlite3
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from clearhouse.core.auction import AuctionSettlementEngine, BidLedger, BidPlacement, FinalizeOutcome
from clearhouse.core.config import SettlementConfig
from clearhouse.core.exceptions import (
    ClearhouseError, GatewayError, InvalidStateError, NotFoundError,
    SettlementDeferred, ValidationError,
)
from clearhouse.core.ledger import LedgerGateway, TimeoutLedgerGateway, load_gateway
from clearhouse.core.maturity import MaturitySettlementEngine
from clearhouse.core.models import Auction, Bid, Claim, MaturityPayment, now_ts
from clearhouse.core.registry import ClaimRegistry
from clearhouse.core.storage import StorageManager
from clearhouse.utils.logger import get_logger

logger = get_logger("service")


class ActionOutcome(BaseModel):
    """Structured result of a manual payment action."""
    action: str
    target: str
    outcome: str                # ok | rejected | not_found | deferred | error
    detail: str = ""
    record: Dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome == "ok"


class SettlementService:
    """
    Facade over the settlement engines.

    Example:
        service = SettlementService(load_config())
        outcome = service.finalize_auction("auc_...")
        print(outcome.model_dump_json())
    """

    def __init__(
        self,
        config: Optional[SettlementConfig] = None,
        storage: Optional[StorageManager] = None,
        gateway: Optional[LedgerGateway] = None,
        clock: Callable[[], int] = now_ts,
    ):
        self.config = config or SettlementConfig()
        self.storage = storage or StorageManager.from_path(self.config.db_path)
        if gateway is None:
            gateway = TimeoutLedgerGateway(
                load_gateway(self.config.gateway_factory, self.config),
                timeout=self.config.ledger_timeout_seconds,
            )
        self.gateway = gateway
        self.clock = clock

        self.bids = BidLedger(self.storage)
        self.registry = ClaimRegistry(self.storage, gateway, self.config, clock=clock)
        self.auctions = AuctionSettlementEngine(self.storage, gateway, self.config, self.bids, clock=clock)
        self.maturity = MaturitySettlementEngine(self.storage, gateway, self.config, clock=clock)

    def close(self) -> None:
        self.gateway.close()
        self.storage.close()

    # =========================================================================
    # Auction settlement
    # =========================================================================

    def finalize_auction(self, auction_id: str) -> FinalizeOutcome:
        return self.auctions.finalize_auction(auction_id)

    def process_expired_auctions(self) -> int:
        return self.auctions.process_expired_auctions()

    # =========================================================================
    # Maturity settlement
    # =========================================================================

    def process_matured_claims(self) -> int:
        return self.maturity.process_matured_claims()

    def mark_overdue_payments(self) -> int:
        return self.maturity.mark_overdue_payments()

    def record_instrument_created(self, payment_id: str, instrument_id: str,
                                  confirmation: Optional[str] = None) -> ActionOutcome:
        return self._guarded(
            "record_instrument", payment_id,
            lambda: self.maturity.record_instrument_created(payment_id, instrument_id, confirmation),
        )

    def confirm_instrument_cashed(self, payment_id: str) -> ActionOutcome:
        return self._guarded(
            "confirm_cashed", payment_id,
            lambda: self.maturity.confirm_instrument_cashed(payment_id),
        )

    # =========================================================================
    # Claims and bidding
    # =========================================================================

    def issue_claim(self, creator: str, holder: str, face_value: int, maturity_ts: int,
                    claim_id: Optional[str] = None) -> Claim:
        return self.registry.issue_claim(creator, holder, face_value, maturity_ts, claim_id)

    def confirm_minted(self, claim_id: str) -> Claim:
        return self.registry.confirm_minted(claim_id)

    def accept_claim(self, claim_id: str, holder: str) -> Claim:
        return self.registry.accept_claim(claim_id, holder)

    def mark_mint_failed(self, claim_id: str) -> Claim:
        return self.registry.mark_mint_failed(claim_id)

    def list_claim(self, claim_id: str, holder: str, expiry_ts: int, min_bid: int,
                   custody: bool = True) -> Auction:
        return self.registry.list_claim(claim_id, holder, expiry_ts, min_bid, custody)

    def cleanup_stale_claims(self) -> int:
        return self.registry.cleanup_stale_claims()

    def place_bid(self, auction_id: str, bidder: str, amount: int, instrument_id: str,
                  instrument_confirmation: Optional[str] = None) -> BidPlacement:
        """
        Place a bid and release the instrument of the bid it replaces.

        Cancelling the old instrument is best-effort; the new bid stands
        either way.
        """
        placement = self.bids.place_bid(
            auction_id, bidder, amount, instrument_id, instrument_confirmation, self.clock()
        )
        old = placement.superseded
        if old is not None and old.instrument_id and old.instrument_id != instrument_id:
            try:
                result = self.gateway.cancel_instrument(old.instrument_id)
                if not result.confirmed:
                    logger.warning(f"Could not cancel replaced instrument {old.instrument_id}: {result.detail}")
            except GatewayError as e:
                logger.warning(f"Could not cancel replaced instrument {old.instrument_id}: {e}")
        return placement

    # =========================================================================
    # Queries
    # =========================================================================

    def get_auction(self, auction_id: str) -> Optional[Auction]:
        return self.storage.get_auction(auction_id)

    def get_claim(self, claim_id: str) -> Optional[Claim]:
        return self.storage.get_claim(claim_id)

    def get_payment_for_claim(self, claim_id: str) -> Optional[MaturityPayment]:
        return self.storage.get_payment_for_claim(claim_id)

    def active_bids(self, auction_id: str) -> List[Bid]:
        return self.bids.active_bids(auction_id)

    def bids_by_user(self, bidder: str) -> List[Bid]:
        return self.storage.get_bids_by_bidder(bidder)

    def auctions_won_by(self, winner: str) -> List[Auction]:
        return self.storage.auctions_won_by(winner)

    def pending_payments(self, debtor: str) -> List[MaturityPayment]:
        return self.maturity.pending_for_debtor(debtor)

    def payments_awaiting_collection(self, creditor: str) -> List[MaturityPayment]:
        return self.maturity.awaiting_collection(creditor)

    def payment_history(self, identity: str) -> dict:
        return self.maturity.payment_history(identity)

    def stats(self) -> dict:
        return self.storage.stats()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _guarded(self, action: str, target: str, call: Callable[[], MaturityPayment]) -> ActionOutcome:
        try:
            payment = call()
        except NotFoundError as e:
            return ActionOutcome(action=action, target=target, outcome="not_found", detail=str(e))
        except (ValidationError, InvalidStateError) as e:
            logger.warning(f"{action} {target} rejected: {e}")
            return ActionOutcome(action=action, target=target, outcome="rejected", detail=str(e))
        except SettlementDeferred as e:
            logger.warning(f"{action} {target} deferred: {e}")
            return ActionOutcome(action=action, target=target, outcome="deferred", detail=str(e))
        except (ClearhouseError, sqlite3.Error) as e:
            logger.error(f"{action} {target} failed: {e}")
            return ActionOutcome(action=action, target=target, outcome="error", detail=str(e))
        record = asdict(payment)
        record["status"] = payment.status.value
        return ActionOutcome(action=action, target=target, outcome="ok", record=record)
