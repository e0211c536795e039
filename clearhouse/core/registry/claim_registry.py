"""
Claim Registry - issuance and listing of tokenized receivables.

This module provides:
- Claim issuance (minting -> issued -> owned)
- Listing an owned claim for auction, escrowing it with the platform
- Administrative cleanup of claims whose minting never completed
"""

from typing import Callable, Optional

from clearhouse.core.config import SettlementConfig
from clearhouse.core.exceptions import (
    GatewayError, InvalidStateError, NotFoundError, SettlementDeferred, ValidationError,
)
from clearhouse.core.ledger.gateway import LedgerGateway
from clearhouse.core.models import Auction, Claim, ClaimState, now_ts
from clearhouse.core.storage import StorageManager
from clearhouse.utils.logger import get_logger

logger = get_logger("registry")


class ClaimRegistry:
    """
    Lifecycle of claims up to the point they are auctioned.

    The ledger token for a claim shares its ``claim_id``.
    """

    def __init__(
        self,
        storage: StorageManager,
        gateway: LedgerGateway,
        config: Optional[SettlementConfig] = None,
        clock: Callable[[], int] = now_ts,
    ):
        self.storage = storage
        self.gateway = gateway
        self.config = config or SettlementConfig()
        self.clock = clock

    # =========================================================================
    # Issuance
    # =========================================================================

    def issue_claim(self, creator: str, holder: str, face_value: int, maturity_ts: int,
                    claim_id: Optional[str] = None) -> Claim:
        """
        Record a debtor's acknowledged obligation as a claim being minted.

        Args:
            creator: Debtor identity
            holder: Creditor who will receive the claim
            face_value: Amount due at maturity
            maturity_ts: Due date
            claim_id: Ledger token id if already known

        Raises:
            ValidationError: on non-positive amount, past maturity or
                self-issued claims
        """
        now = self.clock()
        if face_value is None or face_value <= 0:
            raise ValidationError("Face value must be positive", {"face_value": face_value})
        if maturity_ts <= now:
            raise ValidationError("Maturity must be in the future", {"maturity_ts": maturity_ts})
        if creator == holder:
            raise ValidationError("Debtor and creditor must differ", {"creator": creator})

        claim = self.storage.create_claim(face_value, maturity_ts, creator, holder, now, claim_id=claim_id)
        logger.info(f"Claim {claim.claim_id} minting: {creator} owes {holder} {face_value}")
        return claim

    def confirm_minted(self, claim_id: str) -> Claim:
        return self._transition(claim_id, ClaimState.ISSUED, [ClaimState.MINTING])

    def accept_claim(self, claim_id: str, holder: str) -> Claim:
        """Holder acknowledges receipt of the issued token."""
        claim = self._require(claim_id)
        if claim.holder != holder:
            raise ValidationError("Only the named holder can accept a claim", {"holder": holder})
        return self._transition(claim_id, ClaimState.OWNED, [ClaimState.ISSUED], holder=holder)

    def mark_mint_failed(self, claim_id: str) -> Claim:
        return self._transition(claim_id, ClaimState.FAILED, [ClaimState.MINTING])

    # =========================================================================
    # Listing
    # =========================================================================

    def list_claim(self, claim_id: str, holder: str, expiry_ts: int, min_bid: int,
                   custody: bool = True) -> Auction:
        """
        Open an auction for an owned claim.

        With ``custody`` the token moves to the platform identity first,
        and the listing is recorded only once that transfer is confirmed.

        Returns:
            The new active auction

        Raises:
            NotFoundError: unknown claim
            InvalidStateError: claim not owned
            ValidationError: caller is not the holder, or bad terms
            SettlementDeferred: custody transfer outcome unknown
        """
        now = self.clock()
        claim = self._require(claim_id)
        if claim.state is not ClaimState.OWNED:
            raise InvalidStateError("Only owned claims can be listed", {"state": claim.state.value})
        if claim.holder != holder:
            raise ValidationError("Only the holder can list a claim", {"holder": holder})
        if expiry_ts <= now:
            raise ValidationError("Auction expiry must be in the future", {"expiry_ts": expiry_ts})
        if expiry_ts >= claim.maturity_ts:
            raise ValidationError("Auction must end before maturity", {"maturity_ts": claim.maturity_ts})
        if min_bid is None or min_bid <= 0:
            raise ValidationError("Minimum bid must be positive", {"min_bid": min_bid})

        confirmation = None
        if custody:
            confirmation = self._escrow(claim)

        with self.storage.transaction():
            if not self.storage.transition_claim(claim_id, ClaimState.LISTED, [ClaimState.OWNED], now):
                raise InvalidStateError("Claim changed while listing", {"claim_id": claim_id})
            auction = self.storage.create_auction(
                claim, expiry_ts, min_bid, holder, custody, now, custody_confirmation=confirmation
            )

        logger.info(
            f"Claim {claim_id} listed as auction {auction.auction_id} "
            f"(min {min_bid}, expires {expiry_ts}, custody={custody})"
        )
        return auction

    def _escrow(self, claim: Claim) -> Optional[str]:
        platform = self.config.platform_identity
        try:
            result = self.gateway.transfer_ownership(claim.claim_id, claim.holder, platform)
        except GatewayError as e:
            result = None
            logger.warning(f"Custody transfer for {claim.claim_id} raised: {e}")

        if result is not None and result.confirmed:
            return result.confirmation
        if result is not None and result.failed:
            raise ValidationError("Custody transfer rejected", {"detail": result.detail})

        owner = self.gateway.owner_of(claim.claim_id)
        if owner.confirmed and owner.value == platform:
            return None
        if owner.confirmed and owner.value == claim.holder:
            raise ValidationError("Custody transfer not applied", {"claim_id": claim.claim_id})
        raise SettlementDeferred("Custody transfer outcome unknown", {"claim_id": claim.claim_id})

    # =========================================================================
    # Cleanup
    # =========================================================================

    def cleanup_stale_claims(self) -> int:
        """
        Delete claims stuck in minting or failed.

        Returns:
            Number of claims deleted
        """
        now = self.clock()
        minting = self.storage.delete_stale_claims(
            ClaimState.MINTING, now - self.config.stale_minting_seconds
        )
        failed = self.storage.delete_stale_claims(
            ClaimState.FAILED, now - self.config.stale_failed_seconds
        )
        if minting or failed:
            logger.info(f"Cleaned up {minting} stale minting and {failed} failed claims")
        return minting + failed

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require(self, claim_id: str) -> Claim:
        claim = self.storage.get_claim(claim_id)
        if claim is None:
            raise NotFoundError("Claim not found", {"claim_id": claim_id})
        return claim

    def _transition(self, claim_id: str, state: ClaimState, expected, holder: Optional[str] = None) -> Claim:
        claim = self._require(claim_id)
        if claim.state is state:
            return claim
        if not self.storage.transition_claim(claim_id, state, expected, self.clock(), holder=holder):
            raise InvalidStateError(
                f"Cannot move claim to {state.value}",
                {"claim_id": claim_id, "state": claim.state.value},
            )
        logger.info(f"Claim {claim_id}: {claim.state.value} -> {state.value}")
        return self._require(claim_id)
