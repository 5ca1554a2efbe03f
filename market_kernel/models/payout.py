"""
Module: market_kernel.models.payout
Responsibility: ORM persistence for payouts and the standalone sale
    transactions that can be settled outside the contract flow.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/lifecycle.py only.

Invariants enforced:
    - At most one Payout per (source_type, source_id, recipient_id)
      (uq_payout_source_recipient).  This database constraint, not
      application locking alone, is what makes payout issuance exactly-once.
    - idempotency_key is unique (uq_payout_idempotency_key) and derived
      deterministically from the source and recipient.
    - net_amount == gross_amount - platform_fee (computed by
      domain.settlement; stored values are never recomputed).
    - Payouts are never deleted; only status moves, per PAYOUT_WORKFLOW.

Failure modes:
    - IntegrityError when a second payout is claimed for the same source and
      recipient (handled by SettlementEngine as "already settled").
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Enum as SAEnum, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from market_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from market_kernel.domain.dtos import PayoutInfo, SaleTransactionInfo
from market_kernel.domain.lifecycle import PayoutSource, PayoutStatus, TransactionPayoutStatus
from market_kernel.domain.values import Money


def _enum_column(enum_cls: type) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=30,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Payout(TrackedBase):
    """
    Money owed to (and sent to) the fulfilling party.

    Guarantees:
        - created once by SettlementEngine; status thereafter moves only
          PENDING -> COMPLETED / FAILED, FAILED -> COMPLETED on explicit retry.
    """

    __tablename__ = "payouts"

    __table_args__ = (
        UniqueConstraint(
            "source_type", "source_id", "recipient_id",
            name="uq_payout_source_recipient",
        ),
        UniqueConstraint("idempotency_key", name="uq_payout_idempotency_key"),
        Index("idx_payout_recipient", "recipient_id"),
        Index("idx_payout_status", "status"),
    )

    recipient_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    source_type: Mapped[PayoutSource] = mapped_column(_enum_column(PayoutSource), nullable=False)

    source_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    gross_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    platform_fee: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    net_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    fee_rate: Mapped[Decimal] = mapped_column(Numeric(18, 9), nullable=False)

    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)

    external_payout_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[PayoutStatus] = mapped_column(
        _enum_column(PayoutStatus),
        nullable=False,
        default=PayoutStatus.PENDING,
    )

    failure_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def money(self, amount: Decimal) -> Money:
        return Money.of(amount, self.currency).round()

    def to_dto(self) -> PayoutInfo:
        return PayoutInfo(
            id=self.id,
            recipient_id=self.recipient_id,
            source_type=self.source_type,
            source_id=self.source_id,
            gross_amount=self.money(self.gross_amount),
            platform_fee=self.money(self.platform_fee),
            net_amount=self.money(self.net_amount),
            status=self.status,
            idempotency_key=self.idempotency_key,
            external_payout_id=self.external_payout_id,
            failure_reason=self.failure_reason,
            created_at=self.created_at,
            completed_at=self.completed_at,
        )

    def __repr__(self) -> str:
        return f"<Payout {self.id} {self.net_amount} {self.currency} [{self.status}]>"


class SaleTransaction(TrackedBase):
    """
    A completed sale outside the contract flow, paid out on seller request.
    """

    __tablename__ = "sale_transactions"

    __table_args__ = (
        Index("idx_sale_seller", "seller_id"),
    )

    buyer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    seller_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    payout_status: Mapped[TransactionPayoutStatus] = mapped_column(
        _enum_column(TransactionPayoutStatus),
        nullable=False,
        default=TransactionPayoutStatus.UNREQUESTED,
    )

    payout_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("payouts.id"),
        nullable=True,
    )

    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def to_dto(self) -> SaleTransactionInfo:
        return SaleTransactionInfo(
            id=self.id,
            buyer_id=self.buyer_id,
            seller_id=self.seller_id,
            amount=Money.of(self.amount, self.currency).round(),
            payout_status=self.payout_status,
            payout_id=self.payout_id,
            reference=self.reference,
            created_at=self.created_at,
        )
