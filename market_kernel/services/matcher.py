"""
Matcher -- selects farmers eligible to hear about a contract.

Responsibility:
    Asks the party directory which farmers carry a product type.  A pure
    read; recording who was notified is ContractLedger's job.

Failure modes:
    - LookupFailedError when the directory is unavailable (after the
      gateway's read retry).  Callers treat it as "notify nobody this round".
"""

from __future__ import annotations

from uuid import UUID

from market_kernel.domain.collaborators import PartyDirectory
from market_kernel.exceptions import LookupFailedError
from market_kernel.logging_config import get_logger
from market_kernel.services.collaborator_gateway import CollaboratorGateway

logger = get_logger("services.matcher")


class Matcher:
    def __init__(self, directory: PartyDirectory, gateway: CollaboratorGateway):
        self._directory = directory
        self._gateway = gateway

    def find_eligible(self, product_type: str) -> frozenset[UUID]:
        """Farmers whose catalog includes ``product_type``."""
        try:
            found = self._gateway.call_read(
                "find_farmers_by_product",
                self._directory.find_farmers_by_product,
                product_type,
            )
            eligible = frozenset(found)
        except Exception as exc:
            raise LookupFailedError(product_type, f"{type(exc).__name__}: {exc}") from exc

        logger.debug(
            "farmers_matched",
            extra={"product_type": product_type, "count": len(eligible)},
        )
        return eligible
