"""
Collaborator ports -- narrow interfaces to systems outside the kernel.

Responsibility:
    Declares the Protocols through which the kernel reaches the party
    directory, the notification channels and the payment processor.
    Concrete adapters live outside the kernel and are injected at
    construction; tests substitute in-memory fakes.

Architecture position:
    Kernel > Domain -- interface definitions only, zero I/O.

Failure modes:
    - Adapters signal payment failures with RetryablePaymentError (transient,
      safe to retry with the same idempotency key) or FatalPaymentError
      (will not succeed on retry).  Any other exception from an adapter is
      treated as a collaborator outage by the calling service.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from market_kernel.domain.lifecycle import PartyRole


@dataclass(frozen=True)
class PartyProfile:
    """Read-only view of a party as resolved by the directory."""

    party_id: UUID
    role: PartyRole
    display_name: str
    product_catalog: frozenset[str] = field(default_factory=frozenset)
    payout_destination: str | None = None
    phone: str | None = None


class PartyDirectory(Protocol):
    """Resolves identities to profiles; read-only to the kernel."""

    def get_profile(self, party_id: UUID) -> PartyProfile | None:
        """Return the profile for ``party_id`` or None when unknown."""
        ...

    def find_farmers_by_product(self, product_type: str) -> Iterable[UUID]:
        """Return farmers whose declared product catalog includes ``product_type``."""
        ...


class Notifier(Protocol):
    """In-app notification channel. Delivery is best-effort."""

    def notify(self, recipient_id: UUID, message: str, category: str) -> None:
        ...


class SmsGateway(Protocol):
    """Optional SMS channel used alongside in-app notifications."""

    def send_sms(self, phone: str, body: str) -> None:
        ...


class PaymentIssuer(Protocol):
    """Payment processor payout endpoint."""

    def issue_payout(
        self,
        destination: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> str:
        """
        Issue a payout and return the processor's payout identifier.

        The processor deduplicates on ``idempotency_key``: issuing twice with
        the same key returns the original payout identifier.
        """
        ...


class RetryablePaymentError(Exception):
    """Transient processor failure; the same request may be retried."""


class FatalPaymentError(Exception):
    """Processor rejected the payout; retrying will not help."""
