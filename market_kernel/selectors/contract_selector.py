"""
Module: market_kernel.selectors.contract_selector
Responsibility: Read-only contract queries: single contract, a party's
    contracts by role, and the open-contract feed shown to farmers.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Every returned ContractInfo carries the effective state as of the
      injected clock, so expired contracts read as EXPIRED without any
      write having happened.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from market_kernel.domain.clock import Clock
from market_kernel.domain.dtos import ContractInfo
from market_kernel.domain.lifecycle import ACCEPTING_STATES, PartyRole
from market_kernel.exceptions import ContractNotFoundError, UnknownRoleError
from market_kernel.models.contract import Contract, Offer
from market_kernel.selectors.base import BaseSelector


class ContractSelector(BaseSelector):
    """Contract read side."""

    def __init__(self, session: Session, clock: Clock):
        super().__init__(session)
        self._clock = clock

    def get(self, contract_id: UUID) -> ContractInfo:
        contract = self.session.get(Contract, contract_id)
        if contract is None:
            raise ContractNotFoundError(str(contract_id))
        return contract.to_dto(self._clock.now())

    def list_for_party(self, party_id: UUID, role: PartyRole | str) -> list[ContractInfo]:
        """
        Contracts a party takes part in, newest first.

        Buyers see the contracts they posted; farmers see the contracts they
        have offered on.

        Raises:
            UnknownRoleError: role is not a known PartyRole.
        """
        try:
            role = PartyRole(role)
        except ValueError:
            raise UnknownRoleError(str(role)) from None

        if role == PartyRole.BUYER:
            stmt = select(Contract).where(Contract.buyer_id == party_id)
        else:
            offered_on = select(Offer.contract_id).where(Offer.farmer_id == party_id)
            stmt = select(Contract).where(Contract.id.in_(offered_on))

        contracts = self.session.execute(
            stmt.order_by(Contract.created_at.desc(), Contract.id)
        ).scalars().all()
        now = self._clock.now()
        return [c.to_dto(now) for c in contracts]

    def list_open(self, product_type: str | None = None) -> list[ContractInfo]:
        """Contracts still accepting offers, soonest deadline first."""
        now = self._clock.now()
        stmt = select(Contract).where(
            Contract.state.in_(list(ACCEPTING_STATES)),
            Contract.end_time > now,
        )
        if product_type is not None:
            stmt = stmt.where(Contract.product_type == product_type)

        contracts = self.session.execute(
            stmt.order_by(Contract.end_time, Contract.id)
        ).scalars().all()
        return [c.to_dto(now) for c in contracts]
