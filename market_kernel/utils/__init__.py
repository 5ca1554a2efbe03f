"""Kernel utilities."""

from market_kernel.utils.idempotency import generate_payout_key, parse_payout_key

__all__ = ["generate_payout_key", "parse_payout_key"]
