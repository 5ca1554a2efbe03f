"""
Module: market_kernel.models.contract
Responsibility: ORM persistence for open contracts and the fulfillment offers
    they own.  A Contract is the aggregate root: offers are embedded elements
    ordered by submission sequence and addressed by id only within their
    contract.  ContractNotification rows record which farmers were already
    told about the contract.
Architecture position: Kernel > Models.  May import from db/base.py and domain/
    (enums, DTOs, Money).  MUST NOT import from services/
    or selectors/.

Invariants enforced:
    - (contract_id, sequence) is unique per offer (uq_offer_sequence); the
      sequence is allocated from Contract.offer_count under a row lock.
    - (contract_id, party_id) is unique per notification
      (uq_contract_notified_party): a farmer is notified at most once.
    - winning_offer_id is set iff state == FULFILLED (enforced by
      ContractLedger, which is the only writer).
    - quantity, max_price, end_time and product_type are immutable after
      creation; offer bounds are checked against them once, at submission.

Failure modes:
    - IntegrityError on a duplicate offer sequence or duplicate notification.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import BigInteger, Enum as SAEnum, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from market_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString
from market_kernel.domain.dtos import ContractInfo, OfferInfo
from market_kernel.domain.lifecycle import ContractState, OfferState, effective_state
from market_kernel.domain.values import Money


def _enum_column(enum_cls: type) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=30,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Contract(TrackedBase):
    """
    A buyer's standing purchase request.

    Guarantees:
        - offers are always loaded in submission order.
        - offer_count equals the highest allocated offer sequence.

    Non-goals:
        - Expiry is NOT stored eagerly; see domain.lifecycle.effective_state.
    """

    __tablename__ = "contracts"

    __table_args__ = (
        Index("idx_contract_buyer", "buyer_id"),
        Index("idx_contract_state", "state"),
        Index("idx_contract_product_type", "product_type"),
        Index("idx_contract_end_time", "end_time"),
    )

    buyer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    product_type: Mapped[str] = mapped_column(String(100), nullable=False)

    product_category: Mapped[str | None] = mapped_column(String(100), nullable=True)

    quantity: Mapped[int] = mapped_column(BigInteger, nullable=False)

    max_price: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        doc="Maximum acceptable unit price",
    )

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    end_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    state: Mapped[ContractState] = mapped_column(
        _enum_column(ContractState),
        nullable=False,
        default=ContractState.OPEN,
    )

    offer_count: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        doc="Counter row for offer sequence allocation",
    )

    winning_offer_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    fulfilled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    offers: Mapped[list[Offer]] = relationship(
        "Offer",
        back_populates="contract",
        order_by="Offer.sequence",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    notifications: Mapped[list[ContractNotification]] = relationship(
        "ContractNotification",
        back_populates="contract",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def max_price_money(self) -> Money:
        return Money.of(self.max_price, self.currency)

    @property
    def notified_party_ids(self) -> frozenset[UUID]:
        return frozenset(n.party_id for n in self.notifications)

    def find_offer(self, offer_id: UUID) -> Offer | None:
        for offer in self.offers:
            if offer.id == offer_id:
                return offer
        return None

    def to_dto(self, now: datetime) -> ContractInfo:
        """Convert to the frozen read model, folding expiry in as of ``now``."""
        return ContractInfo(
            id=self.id,
            buyer_id=self.buyer_id,
            product_type=self.product_type,
            product_category=self.product_category,
            quantity=self.quantity,
            max_price=self.max_price_money,
            end_time=self.end_time,
            state=effective_state(self.state, self.end_time, now),
            stored_state=self.state,
            offers=tuple(offer.to_dto(self.currency) for offer in self.offers),
            winning_offer_id=self.winning_offer_id,
            notified_parties=self.notified_party_ids,
            created_at=self.created_at,
            fulfilled_at=self.fulfilled_at,
            cancelled_at=self.cancelled_at,
        )

    def __repr__(self) -> str:
        return f"<Contract {self.id} {self.product_type} x{self.quantity} [{self.state}]>"


class Offer(Base):
    """
    A farmer's fulfillment offer, owned by exactly one Contract.

    Guarantees:
        - quantity and price were within the contract's bounds at submission.
        - state moves only PENDING -> ACCEPTED or PENDING -> REJECTED.
    """

    __tablename__ = "contract_offers"

    __table_args__ = (
        UniqueConstraint("contract_id", "sequence", name="uq_offer_sequence"),
        Index("idx_offer_farmer", "farmer_id"),
    )

    contract_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("contracts.id"),
        nullable=False,
    )

    farmer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    quantity: Mapped[int] = mapped_column(BigInteger, nullable=False)

    price: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    state: Mapped[OfferState] = mapped_column(
        _enum_column(OfferState),
        nullable=False,
        default=OfferState.PENDING,
    )

    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    decided_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    contract: Mapped[Contract] = relationship("Contract", back_populates="offers")

    def price_money(self, currency: str) -> Money:
        return Money.of(self.price, currency)

    def to_dto(self, currency: str) -> OfferInfo:
        return OfferInfo(
            id=self.id,
            contract_id=self.contract_id,
            farmer_id=self.farmer_id,
            sequence=self.sequence,
            quantity=self.quantity,
            price=self.price_money(currency),
            state=self.state,
            submitted_at=self.submitted_at,
            decided_at=self.decided_at,
        )

    def __repr__(self) -> str:
        return f"<Offer #{self.sequence} {self.quantity} @ {self.price} [{self.state}]>"


class ContractNotification(Base):
    """Record that a farmer has been told about a contract."""

    __tablename__ = "contract_notified_parties"

    __table_args__ = (
        UniqueConstraint("contract_id", "party_id", name="uq_contract_notified_party"),
    )

    contract_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("contracts.id"),
        nullable=False,
    )

    party_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    notified_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    contract: Mapped[Contract] = relationship("Contract", back_populates="notifications")
