"""
ContractLedger -- owner of the contract negotiation state machine.

Responsibility:
    Creates contracts, admits fulfillment offers, selects exactly one
    winning offer and cancels contracts.  Every contract mutation in the
    system goes through this service; it consults CONTRACT_WORKFLOW and
    OFFER_WORKFLOW before changing state.

Architecture position:
    Kernel > Services -- imperative shell.  Flush-only: the caller owns the
    transaction.  Calls SettlementEngine synchronously from accept_offer.

Invariants enforced:
    - winning_offer_id is set iff state == FULFILLED, and the offer it names
      is the only ACCEPTED offer on the contract.
    - Offers are admitted only while the contract's effective state is OPEN
      or PENDING_FULFILLMENT, and only within the price and quantity bounds.
    - Offer sequence numbers come from Contract.offer_count under a row lock,
      so concurrent submissions are never lost or reordered.
    - Acceptance is a check-and-set on the stored state
      (UPDATE ... WHERE state IN (open, pending_fulfillment)); of K
      concurrent accepts exactly one sees rowcount == 1.
    - A failed settlement rolls the acceptance back (SAVEPOINT); the contract
      is left exactly as it was before the accept.

Failure modes:
    - ContractNotFoundError, OfferNotFoundError.
    - ForbiddenError when a caller acts on a contract that is not theirs,
      or a buyer offers on their own contract.
    - ContractNotOpenError, AlreadyFulfilledError.
    - InvalidInputError, PriceExceedsCeilingError,
      QuantityExceedsRequestedError.
    - SettlementFailedError (cause chained) when settlement fails on accept.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from market_kernel.domain.clock import Clock
from market_kernel.domain.dtos import AcceptanceResult, ContractInfo, OfferInfo
from market_kernel.domain.lifecycle import (
    ACCEPTING_STATES,
    CONTRACT_WORKFLOW,
    OFFER_WORKFLOW,
    ContractState,
    OfferState,
    can_perform,
    effective_state,
)
from market_kernel.domain.values import Currency, Money
from market_kernel.exceptions import (
    AlreadyFulfilledError,
    ContractNotFoundError,
    ContractNotOpenError,
    ForbiddenError,
    InvalidInputError,
    OfferNotFoundError,
    PayoutRetryableError,
    PayoutUnavailableError,
    PriceExceedsCeilingError,
    QuantityExceedsRequestedError,
    SettlementFailedError,
)
from market_kernel.logging_config import get_logger
from market_kernel.models.contract import Contract, ContractNotification, Offer
from market_kernel.services.base import BaseService
from market_kernel.services.settlement_engine import SettlementEngine

logger = get_logger("services.contract_ledger")


def _require_positive_int(field: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(field, f"must be an integer, got {type(value).__name__}")
    if value <= 0:
        raise InvalidInputError(field, f"must be positive, got {value}")
    return value


def _require_positive_money(field: str, value: object, currency: Currency) -> Money:
    if not isinstance(value, Money):
        raise InvalidInputError(field, f"must be Money, got {type(value).__name__}")
    if value.currency != currency:
        raise InvalidInputError(
            field, f"currency {value.currency} is not the marketplace currency {currency}"
        )
    if not value.is_positive:
        raise InvalidInputError(field, f"must be positive, got {value}")
    return value


class ContractLedger(BaseService):
    """
    Contract and offer lifecycle.

    Contract:
        Every public method returns frozen DTOs; ORM objects never leave
        the service.  Callers that mutate a contract are expected to hold
        that contract's ContractLockRegistry entry for the whole
        transaction.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        settlement: SettlementEngine | None = None,
        currency: str = "USD",
    ):
        super().__init__(session)
        self._clock = clock
        self._settlement = settlement
        self._currency = Currency(currency)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def create_contract(
        self,
        buyer_id: UUID,
        product_type: str,
        product_category: str | None,
        quantity: int,
        max_price: Money,
        end_time: datetime,
    ) -> ContractInfo:
        """
        Open a new contract.

        Postconditions:
            State OPEN, no offers, no notified parties.

        Raises:
            InvalidInputError: quantity <= 0, max_price <= 0 or in another
                currency, empty product_type, naive end_time, or end_time
                not in the future.
        """
        if not isinstance(product_type, str) or not product_type.strip():
            raise InvalidInputError("product_type", "must be a non-empty string")
        _require_positive_int("quantity", quantity)
        _require_positive_money("max_price", max_price, self._currency)
        if not isinstance(end_time, datetime):
            raise InvalidInputError("end_time", "must be a datetime")
        if end_time.tzinfo is None:
            raise InvalidInputError("end_time", "must be timezone-aware")

        now = self._clock.now()
        if end_time <= now:
            raise InvalidInputError("end_time", f"must be after {now.isoformat()}")

        contract = Contract(
            buyer_id=buyer_id,
            product_type=product_type.strip(),
            product_category=product_category,
            quantity=quantity,
            max_price=max_price.amount,
            currency=self._currency.code,
            end_time=end_time,
            state=ContractState(CONTRACT_WORKFLOW.initial_state),
            offer_count=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(contract)
        self.session.flush()

        logger.info(
            "contract_created",
            extra={
                "contract_id": str(contract.id),
                "buyer_id": str(buyer_id),
                "product_type": contract.product_type,
                "quantity": quantity,
                "max_price": str(max_price.amount),
                "end_time": end_time.isoformat(),
            },
        )
        return contract.to_dto(now)

    def submit_offer(
        self,
        contract_id: UUID,
        farmer_id: UUID,
        quantity: int,
        price: Money,
    ) -> OfferInfo:
        """
        Append a pending offer and move the contract to PENDING_FULFILLMENT.

        Raises:
            ContractNotFoundError, ContractNotOpenError, InvalidInputError,
            ForbiddenError, PriceExceedsCeilingError,
            QuantityExceedsRequestedError.
        """
        contract = self._load(contract_id, for_update=True)
        now = self._clock.now()
        state = effective_state(contract.state, contract.end_time, now)
        if not can_perform(CONTRACT_WORKFLOW, state, "submit_offer"):
            raise ContractNotOpenError(str(contract_id), state.value)

        _require_positive_int("quantity", quantity)
        _require_positive_money("price", price, self._currency)
        if farmer_id == contract.buyer_id:
            raise ForbiddenError(str(farmer_id), "contract", str(contract_id), "submit_offer")

        if price > contract.max_price_money:
            raise PriceExceedsCeilingError(
                str(contract_id), str(price.amount), str(contract.max_price_money.amount)
            )
        if quantity > contract.quantity:
            raise QuantityExceedsRequestedError(str(contract_id), quantity, contract.quantity)

        contract.offer_count += 1
        offer = Offer(
            farmer_id=farmer_id,
            sequence=contract.offer_count,
            quantity=quantity,
            price=price.amount,
            state=OfferState(OFFER_WORKFLOW.initial_state),
            submitted_at=now,
        )
        contract.offers.append(offer)
        contract.state = ContractState.PENDING_FULFILLMENT
        contract.updated_at = now
        self.session.flush()

        logger.info(
            "offer_submitted",
            extra={
                "contract_id": str(contract_id),
                "offer_id": str(offer.id),
                "farmer_id": str(farmer_id),
                "sequence": offer.sequence,
                "quantity": quantity,
                "price": str(price.amount),
            },
        )
        return offer.to_dto(contract.currency)

    def accept_offer(
        self,
        contract_id: UUID,
        buyer_id: UUID,
        offer_id: UUID,
    ) -> AcceptanceResult:
        """
        Select the winning offer, reject its siblings and settle.

        Preconditions:
            A SettlementEngine was injected.

        Postconditions:
            On success the contract is FULFILLED with a COMPLETED payout for
            the winner.  On any failure nothing this call changed persists.

        Raises:
            ContractNotFoundError, ForbiddenError, OfferNotFoundError,
            AlreadyFulfilledError, ContractNotOpenError,
            SettlementFailedError.
        """
        if self._settlement is None:
            raise RuntimeError("ContractLedger.accept_offer requires a SettlementEngine")

        contract = self._load(contract_id, for_update=True)
        if contract.buyer_id != buyer_id:
            raise ForbiddenError(str(buyer_id), "contract", str(contract_id), "accept_offer")

        offer = contract.find_offer(offer_id)
        if offer is None:
            raise OfferNotFoundError(str(contract_id), str(offer_id))

        now = self._clock.now()
        state = effective_state(contract.state, contract.end_time, now)
        if state == ContractState.FULFILLED:
            raise AlreadyFulfilledError(str(contract_id))
        if not can_perform(CONTRACT_WORKFLOW, state, "accept_offer"):
            raise ContractNotOpenError(str(contract_id), state.value)
        if not can_perform(OFFER_WORKFLOW, offer.state, "accept"):
            raise ContractNotOpenError(str(contract_id), state.value)

        try:
            with self.session.begin_nested():
                self._claim_fulfillment(contract, offer, now)
                for sibling in contract.offers:
                    if sibling.id == offer.id:
                        sibling.state = OfferState.ACCEPTED
                        sibling.decided_at = now
                    elif can_perform(OFFER_WORKFLOW, sibling.state, "reject"):
                        sibling.state = OfferState.REJECTED
                        sibling.decided_at = now
                self.session.flush()

                payout = self._settlement.settle(contract.id)
        except (PayoutRetryableError, PayoutUnavailableError) as exc:
            # Columns reloaded inside the savepoint are not dirty, so the
            # rollback leaves them stale in the identity map.
            self._discard_loaded_state(contract)
            logger.warning(
                "offer_accept_rolled_back",
                extra={
                    "contract_id": str(contract_id),
                    "offer_id": str(offer_id),
                    "cause_code": exc.code,
                },
            )
            raise SettlementFailedError(str(contract_id), exc.code, exc.reason) from exc

        logger.info(
            "offer_accepted",
            extra={
                "contract_id": str(contract_id),
                "offer_id": str(offer_id),
                "farmer_id": str(offer.farmer_id),
                "rejected_count": sum(
                    1 for o in contract.offers if o.state == OfferState.REJECTED
                ),
                "payout_id": str(payout.id),
            },
        )
        return AcceptanceResult(contract=contract.to_dto(now), payout=payout)

    def cancel_contract(self, contract_id: UUID, buyer_id: UUID) -> ContractInfo:
        """
        Withdraw an open contract; pending offers are rejected.

        Raises:
            ContractNotFoundError, ForbiddenError, AlreadyFulfilledError,
            ContractNotOpenError.
        """
        contract = self._load(contract_id, for_update=True)
        if contract.buyer_id != buyer_id:
            raise ForbiddenError(str(buyer_id), "contract", str(contract_id), "cancel")

        now = self._clock.now()
        state = effective_state(contract.state, contract.end_time, now)
        if state == ContractState.FULFILLED:
            raise AlreadyFulfilledError(str(contract_id))
        if not can_perform(CONTRACT_WORKFLOW, state, "cancel"):
            raise ContractNotOpenError(str(contract_id), state.value)

        contract.state = ContractState.CANCELLED
        contract.cancelled_at = now
        contract.updated_at = now
        for offer in contract.offers:
            if can_perform(OFFER_WORKFLOW, offer.state, "reject"):
                offer.state = OfferState.REJECTED
                offer.decided_at = now
        self.session.flush()

        logger.info(
            "contract_cancelled",
            extra={"contract_id": str(contract_id), "offer_count": len(contract.offers)},
        )
        return contract.to_dto(now)

    def record_notified(
        self,
        contract_id: UUID,
        candidates: Iterable[UUID],
    ) -> frozenset[UUID]:
        """
        Add matched farmers to the contract's notified parties.

        Returns only the parties recorded by this call: the buyer and anyone
        already notified are skipped.  A contract that no longer accepts
        offers records nobody.
        """
        contract = self._load(contract_id, for_update=True)
        now = self._clock.now()
        if effective_state(contract.state, contract.end_time, now) not in ACCEPTING_STATES:
            return frozenset()

        already = contract.notified_party_ids
        fresh = frozenset(
            party_id
            for party_id in candidates
            if party_id != contract.buyer_id and party_id not in already
        )
        for party_id in sorted(fresh, key=str):
            contract.notifications.append(
                ContractNotification(party_id=party_id, notified_at=now)
            )
        self.session.flush()

        if fresh:
            logger.info(
                "contract_parties_notified",
                extra={"contract_id": str(contract_id), "count": len(fresh)},
            )
        return fresh

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_contract(self, contract_id: UUID) -> ContractInfo:
        return self._load(contract_id).to_dto(self._clock.now())

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _load(self, contract_id: UUID, for_update: bool = False) -> Contract:
        stmt = select(Contract).where(Contract.id == contract_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        contract = self.session.execute(stmt).scalar_one_or_none()
        if contract is None:
            raise ContractNotFoundError(str(contract_id))
        return contract

    def _claim_fulfillment(self, contract: Contract, offer: Offer, now: datetime) -> None:
        """Check-and-set the contract into FULFILLED; losers see rowcount 0."""
        result = self.session.execute(
            update(Contract)
            .where(
                Contract.id == contract.id,
                Contract.state.in_(list(ACCEPTING_STATES)),
                Contract.end_time > now,
            )
            .values(
                state=ContractState.FULFILLED,
                winning_offer_id=offer.id,
                fulfilled_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.refresh(contract)
            current = effective_state(contract.state, contract.end_time, now)
            logger.info(
                "offer_accept_lost_race",
                extra={"contract_id": str(contract.id), "state": current.value},
            )
            if current == ContractState.FULFILLED:
                raise AlreadyFulfilledError(str(contract.id))
            raise ContractNotOpenError(str(contract.id), current.value)

        self.session.expire(contract, ["state", "winning_offer_id", "fulfilled_at", "updated_at"])

    def _discard_loaded_state(self, contract: Contract) -> None:
        offers = list(contract.offers)
        self.session.expire(contract)
        for offer in offers:
            self.session.expire(offer)
