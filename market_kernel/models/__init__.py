"""ORM models for the market kernel."""

from market_kernel.models.contract import Contract, ContractNotification, Offer
from market_kernel.models.payout import Payout, SaleTransaction

__all__ = [
    "Contract",
    "ContractNotification",
    "Offer",
    "Payout",
    "SaleTransaction",
]
