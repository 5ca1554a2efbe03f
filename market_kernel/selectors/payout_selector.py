"""
Module: market_kernel.selectors.payout_selector
Responsibility: Read-only payout queries: payout history, completed payout
    balance and sale transactions per seller.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - The balance is derived from COMPLETED payouts on every call; no
      running balance is stored.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from market_kernel.domain.dtos import PayoutInfo, SaleTransactionInfo
from market_kernel.domain.lifecycle import PayoutSource, PayoutStatus
from market_kernel.domain.values import Money
from market_kernel.models.payout import Payout, SaleTransaction
from market_kernel.selectors.base import BaseSelector


class PayoutSelector(BaseSelector):
    """Payout read side."""

    def list_for_recipient(self, recipient_id: UUID) -> list[PayoutInfo]:
        """Payout history, newest first."""
        payouts = self.session.execute(
            select(Payout)
            .where(Payout.recipient_id == recipient_id)
            .order_by(Payout.created_at.desc(), Payout.id)
        ).scalars().all()
        return [p.to_dto() for p in payouts]

    def balance(self, recipient_id: UUID, currency: str) -> Money:
        """Sum of net amounts of COMPLETED payouts."""
        total = self.session.execute(
            select(func.coalesce(func.sum(Payout.net_amount), 0)).where(
                Payout.recipient_id == recipient_id,
                Payout.status == PayoutStatus.COMPLETED,
                Payout.currency == currency,
            )
        ).scalar_one()
        return Money.of(Decimal(str(total)), currency).round()

    def get_for_contract(self, contract_id: UUID) -> PayoutInfo | None:
        payout = self.session.execute(
            select(Payout).where(
                Payout.source_type == PayoutSource.CONTRACT,
                Payout.source_id == contract_id,
            )
        ).scalar_one_or_none()
        return payout.to_dto() if payout is not None else None

    def list_sale_transactions(self, seller_id: UUID) -> list[SaleTransactionInfo]:
        txns = self.session.execute(
            select(SaleTransaction)
            .where(SaleTransaction.seller_id == seller_id)
            .order_by(SaleTransaction.created_at.desc(), SaleTransaction.id)
        ).scalars().all()
        return [t.to_dto() for t in txns]
