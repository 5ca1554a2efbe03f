"""Read-only selectors for the market kernel."""

from market_kernel.selectors.contract_selector import ContractSelector
from market_kernel.selectors.payout_selector import PayoutSelector

__all__ = ["ContractSelector", "PayoutSelector"]
