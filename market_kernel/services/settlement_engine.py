"""
SettlementEngine -- fee split and exactly-once payout issuance.

Responsibility:
    Turns a fulfilled contract (or a standalone sale transaction) into a
    Payout: computes the gross / platform fee / net split, claims the payout
    row, calls the payment processor once, and records the outcome.

Architecture position:
    Kernel > Services -- imperative shell around domain/settlement.py.
    Flush-only.  Called synchronously by ContractLedger.accept_offer and by
    MarketplaceService for explicit settle / manual payout requests.

Invariants enforced:
    - At most one Payout per (source_type, source_id, recipient_id).  The
      claim is an INSERT inside a SAVEPOINT against the unique constraint;
      a losing concurrent claimer gets IntegrityError and reuses the
      winner's row.
    - A COMPLETED payout is returned as-is and the processor is not called
      again.
    - A FAILED payout is retried with the SAME row and the SAME idempotency
      key, so the processor can deduplicate.
    - Payout issuance is never retried automatically (CollaboratorGateway
      write path).
    - net == gross - fee for every payout (SettlementSplit).

Failure modes:
    - PayoutUnavailableError: no recipient profile or payout destination, or
      the processor rejected the payout outright.
    - PayoutRetryableError: transient processor failure, timeout or outage.
      The payout is left FAILED (visible if the caller commits).
    - ContractNotFoundError, ContractNotFulfilledError,
      TransactionNotFoundError, ForbiddenError, AlreadyPaidError.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from market_kernel.domain.clock import Clock
from market_kernel.domain.collaborators import (
    FatalPaymentError,
    PartyDirectory,
    PaymentIssuer,
    RetryablePaymentError,
)
from market_kernel.domain.dtos import PayoutInfo, SaleTransactionInfo
from market_kernel.domain.lifecycle import (
    PAYOUT_WORKFLOW,
    ContractState,
    PayoutSource,
    PayoutStatus,
    TransactionPayoutStatus,
    can_perform,
)
from market_kernel.domain.settlement import (
    SettlementSplit,
    compute_settlement_split,
    gross_amount,
    validate_fee_rate,
)
from market_kernel.domain.values import Currency, Money
from market_kernel.exceptions import (
    AlreadyPaidError,
    ContractNotFoundError,
    ContractNotFulfilledError,
    ForbiddenError,
    InvalidInputError,
    PayoutRetryableError,
    PayoutUnavailableError,
    SettlementError,
    TransactionNotFoundError,
)
from market_kernel.logging_config import get_logger
from market_kernel.models.contract import Contract
from market_kernel.models.payout import Payout, SaleTransaction
from market_kernel.selectors.payout_selector import PayoutSelector
from market_kernel.services.base import BaseService
from market_kernel.services.collaborator_gateway import CollaboratorGateway
from market_kernel.utils.idempotency import generate_payout_key

logger = get_logger("services.settlement_engine")


class SettlementEngine(BaseService):
    """
    Payout derivation and issuance.

    Contract:
        Public methods return PayoutInfo / SaleTransactionInfo DTOs.  The
        caller decides whether a FAILED payout is committed (manual payout
        flow) or rolled back with everything else (contract accept flow).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        payment_issuer: PaymentIssuer,
        directory: PartyDirectory,
        gateway: CollaboratorGateway,
        fee_rate: Decimal = Decimal("0.05"),
        currency: str = "USD",
        rounding: str = ROUND_HALF_UP,
    ):
        super().__init__(session)
        self._clock = clock
        self._issuer = payment_issuer
        self._directory = directory
        self._gateway = gateway
        self._fee_rate = validate_fee_rate(fee_rate)
        self._currency = Currency(currency)
        self._rounding = rounding

    # -------------------------------------------------------------------------
    # Contract settlement
    # -------------------------------------------------------------------------

    def settle(self, contract_id: UUID) -> PayoutInfo:
        """
        Pay the winner of a fulfilled contract.  Idempotent.

        gross = winning quantity x winning price; fee = round(gross x rate);
        net = gross - fee.
        """
        contract = self.session.get(Contract, contract_id)
        if contract is None:
            raise ContractNotFoundError(str(contract_id))
        if contract.state != ContractState.FULFILLED or contract.winning_offer_id is None:
            raise ContractNotFulfilledError(str(contract_id), ContractState(contract.state).value)

        winner = contract.find_offer(contract.winning_offer_id)
        if winner is None:
            raise ContractNotFulfilledError(str(contract_id), ContractState(contract.state).value)

        gross = gross_amount(winner.quantity, winner.price_money(contract.currency), self._rounding)
        split = compute_settlement_split(gross, self._fee_rate, self._rounding)
        payout = self._issue(PayoutSource.CONTRACT, contract.id, winner.farmer_id, split)
        return payout.to_dto()

    def get_payout_for_contract(self, contract_id: UUID) -> PayoutInfo | None:
        return PayoutSelector(self.session).get_for_contract(contract_id)

    # -------------------------------------------------------------------------
    # Standalone sales
    # -------------------------------------------------------------------------

    def record_sale_transaction(
        self,
        buyer_id: UUID,
        seller_id: UUID,
        amount: Money,
        reference: str | None = None,
    ) -> SaleTransactionInfo:
        if not isinstance(amount, Money):
            raise InvalidInputError("amount", f"must be Money, got {type(amount).__name__}")
        if amount.currency != self._currency:
            raise InvalidInputError(
                "amount", f"currency {amount.currency} is not the marketplace currency"
            )
        if not amount.is_positive:
            raise InvalidInputError("amount", f"must be positive, got {amount}")
        if buyer_id == seller_id:
            raise InvalidInputError("seller_id", "buyer and seller must differ")

        now = self._clock.now()
        txn = SaleTransaction(
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount=amount.round(self._rounding).amount,
            currency=self._currency.code,
            payout_status=TransactionPayoutStatus.UNREQUESTED,
            reference=reference,
            created_at=now,
            updated_at=now,
        )
        self.session.add(txn)
        self.session.flush()

        logger.info(
            "sale_transaction_recorded",
            extra={
                "transaction_id": str(txn.id),
                "seller_id": str(seller_id),
                "amount": str(amount.amount),
            },
        )
        return txn.to_dto()

    def request_manual_payout(self, recipient_id: UUID, transaction_id: UUID) -> PayoutInfo:
        """
        Seller-initiated payout for a standalone sale.

        A previously FAILED attempt is retried on the same Payout row with
        the same idempotency key.

        Raises:
            TransactionNotFoundError, ForbiddenError, AlreadyPaidError,
            PayoutRetryableError, PayoutUnavailableError.
        """
        txn = self.session.execute(
            select(SaleTransaction)
            .where(SaleTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if txn is None:
            raise TransactionNotFoundError(str(transaction_id))
        if txn.seller_id != recipient_id:
            raise ForbiddenError(str(recipient_id), "transaction", str(transaction_id), "payout")
        if txn.payout_status == TransactionPayoutStatus.COMPLETED:
            raise AlreadyPaidError(str(transaction_id))

        split = compute_settlement_split(
            Money.of(txn.amount, txn.currency), self._fee_rate, self._rounding
        )
        now = self._clock.now()
        try:
            payout = self._issue(PayoutSource.TRANSACTION, txn.id, recipient_id, split)
        except SettlementError:
            failed = self._find_payout(PayoutSource.TRANSACTION, txn.id, recipient_id)
            txn.payout_status = TransactionPayoutStatus.FAILED
            txn.payout_id = failed.id if failed is not None else None
            txn.updated_at = now
            self.session.flush()
            raise

        txn.payout_status = TransactionPayoutStatus.COMPLETED
        txn.payout_id = payout.id
        txn.updated_at = now
        self.session.flush()
        return payout.to_dto()

    # -------------------------------------------------------------------------
    # Issuance
    # -------------------------------------------------------------------------

    def _find_payout(
        self,
        source_type: PayoutSource,
        source_id: UUID,
        recipient_id: UUID,
    ) -> Payout | None:
        return self.session.execute(
            select(Payout)
            .where(
                Payout.source_type == source_type,
                Payout.source_id == source_id,
                Payout.recipient_id == recipient_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _issue(
        self,
        source_type: PayoutSource,
        source_id: UUID,
        recipient_id: UUID,
        split: SettlementSplit,
    ) -> Payout:
        existing = self._find_payout(source_type, source_id, recipient_id)
        if existing is None:
            existing, claimed = self._claim(source_type, source_id, recipient_id, split)
            if claimed:
                return self._attempt(existing)

        if existing.status == PayoutStatus.COMPLETED:
            logger.info(
                "payout_already_issued",
                extra={
                    "payout_id": str(existing.id),
                    "source_type": source_type.value,
                    "source_id": str(source_id),
                },
            )
            return existing
        return self._attempt(existing)

    def _claim(
        self,
        source_type: PayoutSource,
        source_id: UUID,
        recipient_id: UUID,
        split: SettlementSplit,
    ) -> tuple[Payout, bool]:
        """
        Insert the PENDING payout row.

        Returns (payout, True) when this call won the claim, or the row
        another caller committed first and False.
        """
        now = self._clock.now()
        payout = Payout(
            recipient_id=recipient_id,
            source_type=source_type,
            source_id=source_id,
            gross_amount=split.gross.amount,
            platform_fee=split.platform_fee.amount,
            net_amount=split.net.amount,
            currency=split.gross.currency.code,
            fee_rate=split.fee_rate,
            idempotency_key=generate_payout_key(source_type, source_id, recipient_id),
            status=PayoutStatus(PAYOUT_WORKFLOW.initial_state),
            created_at=now,
            updated_at=now,
        )
        try:
            with self.session.begin_nested():
                self.session.add(payout)
                self.session.flush()
        except IntegrityError:
            logger.info(
                "payout_claim_conflict",
                extra={"source_type": source_type.value, "source_id": str(source_id)},
            )
            winner = self._find_payout(source_type, source_id, recipient_id)
            if winner is None:
                raise
            return winner, False

        logger.info(
            "payout_claimed",
            extra={
                "payout_id": str(payout.id),
                "source_type": source_type.value,
                "source_id": str(source_id),
                "gross_amount": str(split.gross.amount),
                "platform_fee": str(split.platform_fee.amount),
                "net_amount": str(split.net.amount),
            },
        )
        return payout, True

    def _attempt(self, payout: Payout) -> Payout:
        """Call the processor once for a PENDING or FAILED payout."""
        destination = self._resolve_destination(payout)
        net = payout.money(payout.net_amount)

        try:
            external_id = self._gateway.call_write(
                "issue_payout",
                self._issuer.issue_payout,
                destination,
                net.amount,
                net.currency.code,
                payout.idempotency_key,
            )
        except FatalPaymentError as exc:
            reason = f"processor rejected payout: {exc}"
            self._mark_failed(payout, reason)
            raise PayoutUnavailableError(
                str(payout.source_id), str(payout.recipient_id), reason
            ) from exc
        except RetryablePaymentError as exc:
            reason = f"processor error: {exc}"
            self._mark_failed(payout, reason)
            raise PayoutRetryableError(
                str(payout.source_id), payout.idempotency_key, reason
            ) from exc
        except Exception as exc:
            reason = f"processor unavailable: {type(exc).__name__}: {exc}"
            self._mark_failed(payout, reason)
            raise PayoutRetryableError(
                str(payout.source_id), payout.idempotency_key, reason
            ) from exc

        if not can_perform(PAYOUT_WORKFLOW, payout.status, "confirm"):
            raise RuntimeError(f"Payout {payout.id} cannot be confirmed from {payout.status}")
        now = self._clock.now()
        payout.status = PayoutStatus.COMPLETED
        payout.external_payout_id = external_id
        payout.failure_reason = None
        payout.completed_at = now
        payout.updated_at = now
        self.session.flush()

        logger.info(
            "payout_issued",
            extra={
                "payout_id": str(payout.id),
                "recipient_id": str(payout.recipient_id),
                "net_amount": str(net.amount),
                "currency": net.currency.code,
                "external_payout_id": external_id,
            },
        )
        return payout

    def _resolve_destination(self, payout: Payout) -> str:
        try:
            profile = self._gateway.call_read(
                "get_profile", self._directory.get_profile, payout.recipient_id
            )
        except Exception as exc:
            reason = f"party directory unavailable: {type(exc).__name__}: {exc}"
            self._mark_failed(payout, reason)
            raise PayoutRetryableError(
                str(payout.source_id), payout.idempotency_key, reason
            ) from exc

        if profile is None or not profile.payout_destination:
            reason = "recipient has no linked payout destination"
            self._mark_failed(payout, reason)
            raise PayoutUnavailableError(str(payout.source_id), str(payout.recipient_id), reason)
        return profile.payout_destination

    def _mark_failed(self, payout: Payout, reason: str) -> None:
        if not can_perform(PAYOUT_WORKFLOW, payout.status, "fail"):
            return
        payout.status = PayoutStatus.FAILED
        payout.failure_reason = reason[:1000]
        payout.updated_at = self._clock.now()
        self.session.flush()
        logger.warning(
            "payout_failed",
            extra={
                "payout_id": str(payout.id),
                "recipient_id": str(payout.recipient_id),
                "reason": reason,
            },
        )
