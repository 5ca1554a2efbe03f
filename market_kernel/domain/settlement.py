"""
Settlement arithmetic -- platform fee and net payout derivation.

Responsibility:
    Pure functions that turn a winning offer (or a sale amount) into the
    gross / platform fee / net split recorded on a Payout.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - net == gross - fee, exactly, for every split.
    - fee == round(gross * fee_rate) to the currency's minor unit under the
      configured rounding mode (ROUND_HALF_UP by default).
    - gross is itself rounded to the minor unit before the fee is taken.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from market_kernel.domain.values import Money


@dataclass(frozen=True)
class SettlementSplit:
    """Gross amount split into platform fee and net payout."""

    gross: Money
    platform_fee: Money
    net: Money
    fee_rate: Decimal

    def __post_init__(self) -> None:
        if self.gross - self.platform_fee != self.net:
            raise ValueError(
                f"Settlement split does not reconcile: {self.gross} - "
                f"{self.platform_fee} != {self.net}"
            )


def validate_fee_rate(fee_rate: Decimal) -> Decimal:
    """Reject fee rates outside [0, 1)."""
    if not isinstance(fee_rate, Decimal):
        raise TypeError(f"fee_rate must be Decimal, got {type(fee_rate).__name__}")
    if fee_rate < 0 or fee_rate >= 1:
        raise ValueError(f"fee_rate must be in [0, 1), got {fee_rate}")
    return fee_rate


def gross_amount(quantity: int, unit_price: Money, rounding: str = ROUND_HALF_UP) -> Money:
    """Quantity times unit price, rounded to the minor unit."""
    if quantity <= 0:
        raise ValueError(f"quantity must be positive, got {quantity}")
    return (unit_price * quantity).round(rounding)


def compute_settlement_split(
    gross: Money,
    fee_rate: Decimal,
    rounding: str = ROUND_HALF_UP,
) -> SettlementSplit:
    """
    Split ``gross`` into platform fee and net payout.

    Examples:
        100.00 @ 0.05 -> fee 5.00, net 95.00
        33.33  @ 0.05 -> fee 1.67 (1.6665 rounded half-up), net 31.66
    """
    validate_fee_rate(fee_rate)
    gross = gross.round(rounding)
    fee = (gross * fee_rate).round(rounding)
    return SettlementSplit(
        gross=gross,
        platform_fee=fee,
        net=gross - fee,
        fee_rate=fee_rate,
    )
