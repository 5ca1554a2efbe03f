"""
DTOs -- immutable read models returned by services and selectors.

Services and selectors never hand ORM entities to callers; they return these
frozen dataclasses, which carry Money values rather than raw Decimals.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from market_kernel.domain.lifecycle import (
    ContractState,
    OfferState,
    PayoutSource,
    PayoutStatus,
    TransactionPayoutStatus,
)
from market_kernel.domain.values import Money


@dataclass(frozen=True)
class OfferInfo:
    """A farmer's fulfillment offer as seen by callers."""

    id: UUID
    contract_id: UUID
    farmer_id: UUID
    sequence: int
    quantity: int
    price: Money
    state: OfferState
    submitted_at: datetime
    decided_at: datetime | None = None

    @property
    def total(self) -> Money:
        return (self.price * self.quantity).round()


@dataclass(frozen=True)
class ContractInfo:
    """
    Open contract projection.

    ``state`` is the effective state (expiry folded in at read time);
    ``stored_state`` is what is persisted.
    """

    id: UUID
    buyer_id: UUID
    product_type: str
    product_category: str | None
    quantity: int
    max_price: Money
    end_time: datetime
    state: ContractState
    stored_state: ContractState
    offers: tuple[OfferInfo, ...]
    winning_offer_id: UUID | None
    notified_parties: frozenset[UUID]
    created_at: datetime | None = None
    fulfilled_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def winning_offer(self) -> OfferInfo | None:
        if self.winning_offer_id is None:
            return None
        for offer in self.offers:
            if offer.id == self.winning_offer_id:
                return offer
        return None

    @property
    def is_accepting_offers(self) -> bool:
        return self.state in (ContractState.OPEN, ContractState.PENDING_FULFILLMENT)

    def offers_by(self, farmer_id: UUID) -> tuple[OfferInfo, ...]:
        return tuple(o for o in self.offers if o.farmer_id == farmer_id)


@dataclass(frozen=True)
class PayoutInfo:
    """Payout record projection."""

    id: UUID
    recipient_id: UUID
    source_type: PayoutSource
    source_id: UUID
    gross_amount: Money
    platform_fee: Money
    net_amount: Money
    status: PayoutStatus
    idempotency_key: str
    external_payout_id: str | None
    failure_reason: str | None
    created_at: datetime
    completed_at: datetime | None = None


@dataclass(frozen=True)
class SaleTransactionInfo:
    """Standalone sale awaiting (or having received) a manual payout."""

    id: UUID
    buyer_id: UUID
    seller_id: UUID
    amount: Money
    payout_status: TransactionPayoutStatus
    payout_id: UUID | None
    reference: str | None
    created_at: datetime


@dataclass(frozen=True)
class AcceptanceResult:
    """Outcome of a successful accept: the fulfilled contract and its payout."""

    contract: ContractInfo
    payout: PayoutInfo

    @property
    def winning_offer(self) -> OfferInfo | None:
        return self.contract.winning_offer
