"""Kernel write services (flush-only; callers own transactions)."""

from market_kernel.services.collaborator_gateway import CollaboratorGateway
from market_kernel.services.contract_ledger import ContractLedger
from market_kernel.services.contract_locks import ContractLockRegistry
from market_kernel.services.matcher import Matcher
from market_kernel.services.notification_dispatcher import Notice, NotificationDispatcher
from market_kernel.services.settlement_engine import SettlementEngine

__all__ = [
    "CollaboratorGateway",
    "ContractLedger",
    "ContractLockRegistry",
    "Matcher",
    "Notice",
    "NotificationDispatcher",
    "SettlementEngine",
]
