"""
NotificationDispatcher -- fire-and-forget notification side channel.

Responsibility:
    Delivers in-app notifications (and, where enabled, a short SMS) about
    contract activity.  Delivery never affects the outcome of the state
    transition that triggered it: every failure is logged and swallowed.

Architecture position:
    Kernel > Services.  Called by MarketplaceService only after the
    triggering transaction has committed and the contract lock is released.

Invariants enforced:
    - No database session and no contract lock is ever held here.
    - SMS failure is isolated from the in-app notification and vice versa.

Failure modes:
    - None raised.  Failures are logged as ``notification_failed`` /
      ``sms_failed`` with exc_info.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from uuid import UUID

from market_kernel.domain.collaborators import Notifier, PartyDirectory, SmsGateway
from market_kernel.domain.dtos import ContractInfo, OfferInfo, PayoutInfo
from market_kernel.logging_config import get_logger
from market_kernel.services.collaborator_gateway import CollaboratorGateway

logger = get_logger("services.notification_dispatcher")

CATEGORY_CONTRACT = "contract"
CATEGORY_FULFILLMENT = "fulfillment"
CATEGORY_PAYOUT = "payout"


@dataclass(frozen=True)
class Notice:
    """One message for one recipient."""

    recipient_id: UUID
    category: str
    message: str
    sms_body: str | None = None


# -----------------------------------------------------------------------------
# Message builders
# -----------------------------------------------------------------------------


def new_contract_available(contract: ContractInfo, farmer_id: UUID) -> Notice:
    price = contract.max_price.round()
    return Notice(
        recipient_id=farmer_id,
        category=CATEGORY_CONTRACT,
        message=(
            f"New contract available for {contract.product_type}. "
            f"Quantity: {contract.quantity}, Max Price: {price}"
        ),
        sms_body=(
            f"New contract opportunity: {contract.quantity} units of "
            f"{contract.product_type} needed. Max price: {price}. "
            f"Log in to view details."
        ),
    )


def offer_received(contract: ContractInfo, offer: OfferInfo) -> Notice:
    return Notice(
        recipient_id=contract.buyer_id,
        category=CATEGORY_FULFILLMENT,
        message=(
            f"A farmer has offered to fulfill your contract for "
            f"{contract.product_type}: {offer.quantity} units at {offer.price.round()}."
        ),
        sms_body=(
            f"A farmer has offered to fulfill your contract for "
            f"{contract.product_type}. Log in to view details."
        ),
    )


def offer_accepted(contract: ContractInfo, offer: OfferInfo) -> Notice:
    return Notice(
        recipient_id=offer.farmer_id,
        category=CATEGORY_FULFILLMENT,
        message=f"Your fulfillment offer for {contract.product_type} has been accepted!",
        sms_body=(
            f"Your offer to fulfill the contract for {contract.product_type} "
            f"has been accepted! Log in to view details."
        ),
    )


def contract_cancelled(contract: ContractInfo, farmer_id: UUID) -> Notice:
    return Notice(
        recipient_id=farmer_id,
        category=CATEGORY_CONTRACT,
        message=(
            f"The contract for {contract.quantity} units of "
            f"{contract.product_type} was cancelled by the buyer."
        ),
    )


def payout_sent(payout: PayoutInfo) -> Notice:
    return Notice(
        recipient_id=payout.recipient_id,
        category=CATEGORY_PAYOUT,
        message=(
            f"A payout of {payout.net_amount} has been sent "
            f"({payout.gross_amount} less a platform fee of {payout.platform_fee})."
        ),
    )


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------


class NotificationDispatcher:
    """
    Best-effort delivery of notices.

    Contract:
        ``dispatch`` returns immediately when a worker pool is configured
        (``max_workers > 0``) and delivers inline otherwise.  It never
        raises.
    """

    def __init__(
        self,
        notifier: Notifier,
        gateway: CollaboratorGateway,
        directory: PartyDirectory | None = None,
        sms_gateway: SmsGateway | None = None,
        sms_enabled: bool = True,
        max_workers: int = 0,
    ):
        self._notifier = notifier
        self._gateway = gateway
        self._directory = directory
        self._sms = sms_gateway
        self._sms_enabled = sms_enabled
        self._executor: ThreadPoolExecutor | None = None
        if max_workers > 0:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers,
                thread_name_prefix="notify",
            )

    def dispatch(
        self,
        recipient_id: UUID,
        message: str,
        category: str,
        sms_body: str | None = None,
    ) -> Future | None:
        notice = Notice(recipient_id, category, message, sms_body)
        return self.send(notice)

    def send(self, notice: Notice) -> Future | None:
        if self._executor is None:
            self._deliver(notice)
            return None
        try:
            return self._executor.submit(self._deliver, notice)
        except RuntimeError:
            # Pool already shut down.
            logger.warning(
                "notification_failed",
                extra={"recipient_id": notice.recipient_id, "category": notice.category},
                exc_info=True,
            )
            return None

    def send_all(self, notices) -> None:
        for notice in notices:
            self.send(notice)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _deliver(self, notice: Notice) -> None:
        try:
            self._gateway.call_write(
                "notify",
                self._notifier.notify,
                notice.recipient_id,
                notice.message,
                notice.category,
            )
            logger.debug(
                "notification_sent",
                extra={"recipient_id": notice.recipient_id, "category": notice.category},
            )
        except Exception:
            logger.warning(
                "notification_failed",
                extra={"recipient_id": notice.recipient_id, "category": notice.category},
                exc_info=True,
            )

        if notice.sms_body and self._sms_enabled and self._sms is not None:
            self._deliver_sms(notice)

    def _deliver_sms(self, notice: Notice) -> None:
        if self._directory is None:
            return
        try:
            profile = self._gateway.call_read(
                "get_profile", self._directory.get_profile, notice.recipient_id
            )
            if profile is None or not profile.phone:
                return
            self._gateway.call_write("send_sms", self._sms.send_sms, profile.phone, notice.sms_body)
            logger.debug("sms_sent", extra={"recipient_id": notice.recipient_id})
        except Exception:
            logger.warning(
                "sms_failed",
                extra={"recipient_id": notice.recipient_id, "category": notice.category},
                exc_info=True,
            )
