"""
Marketplace Configuration Schema (``market_config.schema``).

Responsibility
--------------
Declares the frozen configuration dataclass for the marketplace kernel:
platform fee rate, marketplace currency, rounding policy and the
collaborator call budget.  Defaults mirror ``defaults.yaml``.

Invariants enforced
-------------------
* ``fee_rate`` is a ``Decimal`` in [0, 1) (never ``float``).
* ``currency`` is a supported currency code.
* ``rounding`` names a ``decimal`` module rounding mode.
* Timeouts are positive; retry and worker counts are non-negative.

Failure modes
-------------
* ``ValueError`` / ``TypeError`` at construction if any constraint is
  violated.
"""

from __future__ import annotations

import decimal
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any

from market_kernel.domain.settlement import validate_fee_rate
from market_kernel.domain.values import is_supported_currency
from market_kernel.logging_config import get_logger

logger = get_logger("config.schema")

ROUNDING_MODES: frozenset[str] = frozenset(
    {
        decimal.ROUND_HALF_UP,
        decimal.ROUND_HALF_EVEN,
        decimal.ROUND_HALF_DOWN,
        decimal.ROUND_UP,
        decimal.ROUND_DOWN,
        decimal.ROUND_CEILING,
        decimal.ROUND_FLOOR,
        decimal.ROUND_05UP,
    }
)


@dataclass(frozen=True)
class MarketplaceConfig:
    """Runtime settings for the marketplace.

    Contract: immutable once constructed; every field validated in
    ``__post_init__``.
    Non-goals: does not read files or environment -- see
    ``market_config.get_active_config``.
    """

    fee_rate: Decimal = Decimal("0.05")
    currency: str = "USD"
    rounding: str = decimal.ROUND_HALF_UP
    collaborator_timeout_seconds: float = 5.0
    read_retries: int = 1
    collaborator_workers: int = 8
    notification_workers: int = 4
    sms_enabled: bool = True

    def __post_init__(self):
        validate_fee_rate(self.fee_rate)
        if not is_supported_currency(self.currency):
            raise ValueError(f"Unsupported currency: {self.currency!r}")
        object.__setattr__(self, "currency", self.currency.upper().strip())
        if self.rounding not in ROUNDING_MODES:
            raise ValueError(f"Unknown rounding mode: {self.rounding!r}")
        if self.collaborator_timeout_seconds <= 0:
            raise ValueError("collaborator_timeout_seconds must be positive")
        if self.read_retries < 0:
            raise ValueError("read_retries cannot be negative")
        if self.collaborator_workers < 1:
            raise ValueError("collaborator_workers must be at least 1")
        if self.notification_workers < 0:
            raise ValueError("notification_workers cannot be negative")
        logger.debug(
            "marketplace_config_initialized",
            extra={
                "fee_rate": str(self.fee_rate),
                "currency": self.currency,
                "rounding": self.rounding,
                "collaborator_timeout_seconds": self.collaborator_timeout_seconds,
                "read_retries": self.read_retries,
                "sms_enabled": self.sms_enabled,
            },
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["fee_rate"] = str(self.fee_rate)
        return data
