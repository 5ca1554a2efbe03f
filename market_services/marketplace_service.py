"""
market_services.marketplace_service -- the marketplace's public operations.

Responsibility:
    The transport-agnostic surface an HTTP controller, job runner or test
    calls.  It wires the kernel services together (the single point of
    dependency injection), owns every transaction boundary, serializes
    mutations per contract, and sends notifications after commit.

Architecture position:
    Services -- orchestration over ``market_kernel``.  Kernel services are
    flush-only and are constructed here, once per transaction.

Invariants enforced:
    - One transaction per operation (``session_scope``): commit on success,
      rollback on any exception.  The only exception is a payout failure on
      an explicit settle or manual payout, whose FAILED payout record is
      committed before the error is re-raised.
    - The contract lock is held from the first read to after commit, so
      concurrent offers are never lost and concurrent accepts see each
      other's committed state.
    - Notifications and matching never hold a contract lock or a session
      while calling collaborators, and their failures never fail the
      operation that triggered them.

Usage:
    service = MarketplaceService(
        session_factory=get_session_factory(),
        party_directory=directory,
        notifier=notifier,
        payment_issuer=issuer,
        sms_gateway=sms,
        config=get_active_config(),
    )
    contract = service.create_contract(buyer_id, "tomatoes", "vegetables",
                                       100, Money.of("10.00", "USD"), end_time)
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from market_config import MarketplaceConfig, get_active_config
from market_kernel.db.engine import session_scope
from market_kernel.domain.clock import Clock, SystemClock
from market_kernel.domain.collaborators import (
    Notifier,
    PartyDirectory,
    PaymentIssuer,
    SmsGateway,
)
from market_kernel.domain.dtos import (
    ContractInfo,
    OfferInfo,
    PayoutInfo,
    SaleTransactionInfo,
)
from market_kernel.domain.lifecycle import PartyRole
from market_kernel.domain.values import Money
from market_kernel.exceptions import LookupFailedError, SettlementError
from market_kernel.logging_config import LogContext, get_logger
from market_kernel.selectors.contract_selector import ContractSelector
from market_kernel.selectors.payout_selector import PayoutSelector
from market_kernel.services.collaborator_gateway import CollaboratorGateway
from market_kernel.services.contract_ledger import ContractLedger
from market_kernel.services.contract_locks import ContractLockRegistry
from market_kernel.services.matcher import Matcher
from market_kernel.services.notification_dispatcher import (
    NotificationDispatcher,
    contract_cancelled,
    new_contract_available,
    offer_accepted,
    offer_received,
    payout_sent,
)
from market_kernel.services.settlement_engine import SettlementEngine

logger = get_logger("services.marketplace")

T = TypeVar("T")


@dataclass(frozen=True)
class _Kernel:
    """Kernel services bound to one session."""

    session: Session
    ledger: ContractLedger
    settlement: SettlementEngine
    contracts: ContractSelector
    payouts: PayoutSelector


class MarketplaceService:
    """
    Open-contract marketplace facade.

    Contract:
        Collaborators are injected at construction; nothing here is a
        process-wide singleton.  All return values are frozen DTOs.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        party_directory: PartyDirectory,
        notifier: Notifier,
        payment_issuer: PaymentIssuer,
        sms_gateway: SmsGateway | None = None,
        config: MarketplaceConfig | None = None,
        clock: Clock | None = None,
        locks: ContractLockRegistry | None = None,
    ):
        self._session_factory = session_factory
        self._directory = party_directory
        self._issuer = payment_issuer
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._locks = locks or ContractLockRegistry()

        self._gateway = CollaboratorGateway(
            timeout_seconds=self._config.collaborator_timeout_seconds,
            read_retries=self._config.read_retries,
            max_workers=self._config.collaborator_workers,
        )
        # Side channels get their own pool: a hung notifier must not occupy
        # the workers that settlement and matching wait on.
        self._notify_gateway = CollaboratorGateway(
            timeout_seconds=self._config.collaborator_timeout_seconds,
            read_retries=self._config.read_retries,
            max_workers=max(self._config.notification_workers, 1),
            thread_name_prefix="notify-call",
        )
        self._matcher = Matcher(party_directory, self._gateway)
        self._dispatcher = NotificationDispatcher(
            notifier,
            self._notify_gateway,
            directory=party_directory,
            sms_gateway=sms_gateway,
            sms_enabled=self._config.sms_enabled,
            max_workers=self._config.notification_workers,
        )

    @property
    def config(self) -> MarketplaceConfig:
        return self._config

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    def close(self, wait: bool = True) -> None:
        """Drain pending notifications and stop worker pools."""
        self._dispatcher.shutdown(wait=wait)
        self._notify_gateway.shutdown(wait=wait)
        self._gateway.shutdown(wait=wait)

    # -------------------------------------------------------------------------
    # Contracts
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
        with LogContext.bind(actor_id=buyer_id):
            with self._unit_of_work() as kernel:
                contract = kernel.ledger.create_contract(
                    buyer_id, product_type, product_category, quantity, max_price, end_time
                )

            with LogContext.bind(contract_id=contract.id):
                try:
                    self.run_matching_pass(contract.id)
                except Exception:
                    logger.warning(
                        "matching_pass_failed",
                        extra={"contract_id": str(contract.id)},
                        exc_info=True,
                    )
        return contract

    def submit_offer(
        self,
        contract_id: UUID,
        farmer_id: UUID,
        quantity: int,
        price: Money,
    ) -> OfferInfo:
        with LogContext.bind(actor_id=farmer_id, contract_id=contract_id):
            with self._locks.hold(contract_id):
                with self._unit_of_work() as kernel:
                    offer = kernel.ledger.submit_offer(contract_id, farmer_id, quantity, price)
                    contract = kernel.ledger.get_contract(contract_id)

            self._dispatcher.send(offer_received(contract, offer))
        return offer

    def accept_offer(self, contract_id: UUID, buyer_id: UUID, offer_id: UUID) -> ContractInfo:
        """
        Accept one offer, reject the rest and settle the winner.

        Raises:
            SettlementFailedError: settlement failed; nothing was changed.
        """
        with LogContext.bind(actor_id=buyer_id, contract_id=contract_id):
            with self._locks.hold(contract_id):
                with self._unit_of_work() as kernel:
                    result = kernel.ledger.accept_offer(contract_id, buyer_id, offer_id)

            winner = result.winning_offer
            if winner is not None:
                self._dispatcher.send(offer_accepted(result.contract, winner))
            self._dispatcher.send(payout_sent(result.payout))
        return result.contract

    def cancel_contract(self, contract_id: UUID, buyer_id: UUID) -> ContractInfo:
        with LogContext.bind(actor_id=buyer_id, contract_id=contract_id):
            with self._locks.hold(contract_id):
                with self._unit_of_work() as kernel:
                    contract = kernel.ledger.cancel_contract(contract_id, buyer_id)

            farmers = sorted({o.farmer_id for o in contract.offers}, key=str)
            self._dispatcher.send_all(contract_cancelled(contract, f) for f in farmers)
        return contract

    def run_matching_pass(self, contract_id: UUID) -> frozenset[UUID]:
        """
        Notify eligible farmers not yet told about the contract.

        Returns the farmers notified by this pass.  A directory outage
        notifies nobody and returns an empty set.
        """
        contract = self.get_contract(contract_id)
        if not contract.is_accepting_offers:
            return frozenset()

        try:
            eligible = self._matcher.find_eligible(contract.product_type)
        except LookupFailedError:
            logger.warning(
                "matching_lookup_failed",
                extra={"contract_id": str(contract_id), "product_type": contract.product_type},
                exc_info=True,
            )
            return frozenset()

        with self._locks.hold(contract_id):
            with self._unit_of_work() as kernel:
                fresh = kernel.ledger.record_notified(contract_id, eligible)
                contract = kernel.ledger.get_contract(contract_id)

        self._dispatcher.send_all(
            new_contract_available(contract, farmer_id) for farmer_id in sorted(fresh, key=str)
        )
        return fresh

    def get_contract(self, contract_id: UUID) -> ContractInfo:
        with self._unit_of_work() as kernel:
            return kernel.contracts.get(contract_id)

    def list_for_party(self, party_id: UUID, role: PartyRole | str) -> list[ContractInfo]:
        with self._unit_of_work() as kernel:
            return kernel.contracts.list_for_party(party_id, role)

    def list_open_contracts(self, product_type: str | None = None) -> list[ContractInfo]:
        with self._unit_of_work() as kernel:
            return kernel.contracts.list_open(product_type)

    # -------------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------------

    def settle(self, contract_id: UUID) -> PayoutInfo:
        """Settle a fulfilled contract; returns the existing payout if any."""
        with LogContext.bind(contract_id=contract_id):
            with self._locks.hold(contract_id):
                return self._settlement_call(lambda kernel: kernel.settlement.settle(contract_id))

    def request_manual_payout(self, recipient_id: UUID, transaction_id: UUID) -> PayoutInfo:
        with LogContext.bind(actor_id=recipient_id):
            with self._locks.hold(transaction_id):
                payout = self._settlement_call(
                    lambda kernel: kernel.settlement.request_manual_payout(
                        recipient_id, transaction_id
                    )
                )
            with LogContext.bind(payout_id=payout.id):
                self._dispatcher.send(payout_sent(payout))
        return payout

    def record_sale_transaction(
        self,
        buyer_id: UUID,
        seller_id: UUID,
        amount: Money,
        reference: str | None = None,
    ) -> SaleTransactionInfo:
        with LogContext.bind(actor_id=buyer_id):
            with self._unit_of_work() as kernel:
                return kernel.settlement.record_sale_transaction(
                    buyer_id, seller_id, amount, reference
                )

    def get_payout_for_contract(self, contract_id: UUID) -> PayoutInfo | None:
        with self._unit_of_work() as kernel:
            return kernel.settlement.get_payout_for_contract(contract_id)

    def list_payouts(self, recipient_id: UUID) -> list[PayoutInfo]:
        with self._unit_of_work() as kernel:
            return kernel.payouts.list_for_recipient(recipient_id)

    def payout_balance(self, recipient_id: UUID) -> Money:
        with self._unit_of_work() as kernel:
            return kernel.payouts.balance(recipient_id, self._config.currency)

    def list_sale_transactions(self, seller_id: UUID) -> list[SaleTransactionInfo]:
        with self._unit_of_work() as kernel:
            return kernel.payouts.list_sale_transactions(seller_id)

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------

    def _build(self, session: Session) -> _Kernel:
        settlement = SettlementEngine(
            session,
            self._clock,
            self._issuer,
            self._directory,
            self._gateway,
            fee_rate=self._config.fee_rate,
            currency=self._config.currency,
            rounding=self._config.rounding,
        )
        ledger = ContractLedger(
            session,
            self._clock,
            settlement=settlement,
            currency=self._config.currency,
        )
        return _Kernel(
            session=session,
            ledger=ledger,
            settlement=settlement,
            contracts=ContractSelector(session, self._clock),
            payouts=PayoutSelector(session),
        )

    @contextmanager
    def _unit_of_work(self) -> Iterator[_Kernel]:
        with session_scope(self._session_factory) as session:
            yield self._build(session)

    def _settlement_call(self, work: Callable[[_Kernel], T]) -> T:
        """
        Run a payout operation, committing a FAILED payout before re-raising.

        The failed attempt stays on record with its idempotency key so an
        explicit retry reuses the same payout row.
        """
        failure: SettlementError | None = None
        with self._unit_of_work() as kernel:
            try:
                return work(kernel)
            except SettlementError as exc:
                failure = exc
        raise failure
