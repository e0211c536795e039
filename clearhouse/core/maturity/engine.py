"""
Maturity Settlement - debtor repayment of matured claims.

Payment lifecycle:
    pending  - claim matured, debtor notified, no instrument yet
    created  - debtor created a payment instrument to the creditor
    cashed   - creditor collected; claim redeemed
    overdue  - grace period (measured from maturity) elapsed uncollected

A claim gets at most one payment. Creation is guarded by the unique
``claim_id`` column and a compare-and-set on the claim state, both inside
the same transaction, so concurrent scans cannot duplicate it.

Once a payment is overdue, any instrument recorded against it or cashing
confirmed for it must first be re-verified on the ledger.
"""

from typing import Callable, List, Optional

from clearhouse.core.config import SettlementConfig
from clearhouse.core.exceptions import (
    InvalidStateError, NotFoundError, SettlementDeferred, ValidationError,
)
from clearhouse.core.ledger.gateway import InstrumentState, LedgerGateway
from clearhouse.core.models import ClaimState, MaturityPayment, PaymentStatus, now_ts
from clearhouse.core.storage import StorageManager
from clearhouse.utils.logger import get_logger

logger = get_logger("maturity")


class MaturitySettlementEngine:
    """Drives matured claims through notification, collection and escalation."""

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
    # Scheduled passes
    # =========================================================================

    def process_matured_claims(self) -> int:
        """
        Open a pending payment for every owned claim past maturity.

        Returns:
            Number of payments created by this pass
        """
        now = self.clock()
        claims = self.storage.find_matured_claims(now)
        logger.info(f"Found {len(claims)} matured claims to process")

        created = 0
        for claim in claims:
            try:
                payment = self._open_payment(claim, now)
            except InvalidStateError as e:
                logger.warning(f"Skipping claim {claim.claim_id}: {e}")
                continue
            if payment is None:
                logger.debug(f"Claim {claim.claim_id} already has a payment, skipping")
                continue
            created += 1
            logger.info(
                f"Claim {claim.claim_id} matured: {payment.debtor} owes {payment.creditor} "
                f"{payment.amount} (payment {payment.payment_id})"
            )
        return created

    def _open_payment(self, claim, now: int) -> Optional[MaturityPayment]:
        with self.storage.transaction():
            payment = self.storage.create_payment(claim, now)
            if payment is None:
                return None
            if not self.storage.transition_claim(
                claim.claim_id, ClaimState.MATURED, [ClaimState.OWNED], now
            ):
                # Rolls back the payment insert
                raise InvalidStateError("Claim left owned state during maturity",
                                        {"claim_id": claim.claim_id})
        return payment

    def mark_overdue_payments(self) -> int:
        """
        Escalate payments still uncollected after the grace period.

        Returns:
            Number of payments marked overdue
        """
        now = self.clock()
        ids = self.storage.mark_payments_overdue(now - self.config.grace_period_seconds, now)
        for payment_id in ids:
            logger.warning(f"Payment {payment_id} is overdue")
        return len(ids)

    # =========================================================================
    # Debtor / creditor actions
    # =========================================================================

    def record_instrument_created(self, payment_id: str, instrument_id: str,
                                  confirmation: Optional[str] = None) -> MaturityPayment:
        """
        Record the debtor's payment instrument.

        Args:
            payment_id: Payment being settled
            instrument_id: Ledger instrument created by the debtor
            confirmation: Ledger reference of the creation

        Returns:
            The updated payment

        Raises:
            NotFoundError: unknown payment
            InvalidStateError: payment already cashed or holds another instrument
            ValidationError: instrument not open on the ledger (overdue payments)
            SettlementDeferred: ledger verification was indeterminate
        """
        if not instrument_id:
            raise ValidationError("Instrument id is required", {"payment_id": payment_id})
        payment = self._require(payment_id)

        if payment.instrument_id == instrument_id and payment.status is not PaymentStatus.PENDING:
            return payment
        if payment.status is PaymentStatus.CASHED:
            raise InvalidStateError("Payment already collected", {"payment_id": payment_id})
        if payment.status is PaymentStatus.CREATED:
            raise InvalidStateError(
                "Payment already has an instrument",
                {"payment_id": payment_id, "instrument_id": payment.instrument_id},
            )

        # Overdue payments stay overdue; the instrument is attached once verified
        new_status = PaymentStatus.CREATED
        if payment.status is PaymentStatus.OVERDUE:
            state = self._verify_instrument(instrument_id)
            if state is not InstrumentState.OPEN:
                raise ValidationError(
                    "Instrument is not open on the ledger",
                    {"instrument_id": instrument_id, "state": state.value},
                )
            new_status = PaymentStatus.OVERDUE

        if not self.storage.record_payment_instrument(
            payment_id, instrument_id, confirmation, self.clock(), [payment.status], new_status
        ):
            raise InvalidStateError("Payment changed concurrently", {"payment_id": payment_id})

        logger.info(f"Payment {payment_id}: instrument {instrument_id} recorded ({new_status.value})")
        return self._require(payment_id)

    def confirm_instrument_cashed(self, payment_id: str) -> MaturityPayment:
        """
        Confirm the creditor collected the payment and redeem the claim.

        Returns:
            The cashed payment

        Raises:
            NotFoundError: unknown payment
            InvalidStateError: no instrument recorded yet
            ValidationError: the ledger does not show the instrument cashed
            SettlementDeferred: ledger verification was indeterminate
        """
        payment = self._require(payment_id)
        if payment.status is PaymentStatus.CASHED:
            return payment
        if payment.status is PaymentStatus.PENDING or not payment.instrument_id:
            raise InvalidStateError("No payment instrument recorded", {"payment_id": payment_id})

        state = self._verify_instrument(payment.instrument_id)
        if state is not InstrumentState.CASHED:
            raise ValidationError(
                "Instrument has not been cashed",
                {"instrument_id": payment.instrument_id, "state": state.value},
            )

        now = self.clock()
        with self.storage.transaction():
            if not self.storage.mark_payment_cashed(payment_id, now, [payment.status]):
                raise InvalidStateError("Payment changed concurrently", {"payment_id": payment_id})
            self.storage.transition_claim(
                payment.claim_id, ClaimState.REDEEMED, [ClaimState.MATURED], now
            )

        logger.info(f"Payment {payment_id} collected; claim {payment.claim_id} redeemed")
        return self._require(payment_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def pending_for_debtor(self, debtor: str) -> List[MaturityPayment]:
        """Payments the debtor still has to fund."""
        return self.storage.get_payments([PaymentStatus.PENDING, PaymentStatus.OVERDUE], debtor=debtor)

    def awaiting_collection(self, creditor: str) -> List[MaturityPayment]:
        return self.storage.get_payments([PaymentStatus.CREATED], creditor=creditor)

    def payment_history(self, identity: str) -> dict:
        payments = self.storage.get_payments_for_party(identity)
        return {
            "as_debtor": [p for p in payments if p.debtor == identity],
            "as_creditor": [p for p in payments if p.creditor == identity],
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require(self, payment_id: str) -> MaturityPayment:
        payment = self.storage.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", {"payment_id": payment_id})
        return payment

    def _verify_instrument(self, instrument_id: str) -> InstrumentState:
        result = self.gateway.instrument_status(instrument_id)
        if result.indeterminate:
            raise SettlementDeferred("Instrument status indeterminate", {"instrument_id": instrument_id})
        if result.failed:
            raise ValidationError(
                "Instrument could not be verified",
                {"instrument_id": instrument_id, "detail": result.detail},
            )
        return result.value
