"""
Values -- Immutable, self-validating money value objects.

Responsibility:
    Provides Currency and Money, the fixed-point types used for every price,
    ceiling, fee and payout amount in the marketplace.  They replace raw
    Decimal/float wherever money appears in domain logic.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Amounts are Decimal, never float (float input is rejected outright).
    - Currency codes are validated against the supported minor-unit table.
    - Rounding precision is derived from the currency's minor unit, never
      hardcoded by callers.

Failure modes:
    - ValueError on invalid amounts or currency codes.
    - TypeError when constructed from float.
    - ValueError when arithmetic or comparison mixes currencies.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

# ISO 4217 minor units for the currencies the marketplace can be configured in.
_MINOR_UNITS: dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "CAD": 2,
    "AUD": 2,
    "NZD": 2,
    "MXN": 2,
    "INR": 2,
    "KES": 2,
    "NGN": 2,
    "BRL": 2,
    "JPY": 0,
    "KRW": 0,
    "KWD": 3,
}


@dataclass(frozen=True, slots=True)
class Currency:
    """
    Currency code value object.

    Guarantees:
        - Immutable and hashable
        - code is uppercase, stripped, and has a known minor unit
    """

    code: str

    def __post_init__(self) -> None:
        normalized = self.code.upper().strip() if self.code else ""
        if normalized not in _MINOR_UNITS:
            raise ValueError(f"Unsupported currency code: {self.code}")
        object.__setattr__(self, "code", normalized)

    @property
    def decimal_places(self) -> int:
        """Number of minor-unit digits (2 for USD, 0 for JPY)."""
        return _MINOR_UNITS[self.code]

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal("0.01")."""
        return Decimal(1).scaleb(-self.decimal_places)

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"Currency({self.code!r})"


def is_supported_currency(code: str) -> bool:
    """Check whether a currency code can be used for Money."""
    return bool(code) and code.upper().strip() in _MINOR_UNITS


@dataclass(frozen=True, slots=True)
class Money:
    """
    Monetary amount value object.

    Contract:
        Pairs a Decimal amount with its Currency -- they are NEVER separated.

    Guarantees:
        - amount is always a Decimal (never float)
        - Arithmetic and comparison enforce the same-currency constraint

    Non-goals:
        - Does NOT convert between currencies
        - Does NOT auto-round -- callers must explicitly call .round()
    """

    amount: Decimal
    currency: Currency

    def __post_init__(self) -> None:
        if isinstance(self.amount, float):
            raise TypeError("Money amount must not be a float; pass a str or Decimal")
        if not isinstance(self.amount, Decimal):
            try:
                object.__setattr__(self, "amount", Decimal(str(self.amount)))
            except (InvalidOperation, ValueError) as e:
                raise ValueError(f"Invalid amount: {self.amount}") from e
        if not self.amount.is_finite():
            raise ValueError(f"Invalid amount: {self.amount}")

        if isinstance(self.currency, str):
            object.__setattr__(self, "currency", Currency(self.currency))
        elif not isinstance(self.currency, Currency):
            raise TypeError(f"currency must be Currency or str, got {type(self.currency)}")

    @classmethod
    def of(cls, amount: Decimal | str | int, currency: str | Currency) -> Money:
        """
        Factory method for creating Money.

        Raises:
            TypeError: If amount is a float.
            ValueError: If amount cannot be converted or currency is unsupported.
        """
        if isinstance(amount, bool):
            raise TypeError("Money amount must not be a bool")
        if isinstance(amount, (str, int)):
            try:
                amount = Decimal(str(amount))
            except InvalidOperation as e:
                raise ValueError(f"Invalid amount: {amount}") from e
        return cls(amount=amount, currency=currency)

    @classmethod
    def zero(cls, currency: str | Currency) -> Money:
        """Create a zero amount in the given currency."""
        return cls(amount=Decimal("0"), currency=currency)

    @property
    def is_zero(self) -> bool:
        return self.amount == Decimal("0")

    @property
    def is_positive(self) -> bool:
        return self.amount > Decimal("0")

    @property
    def is_negative(self) -> bool:
        return self.amount < Decimal("0")

    def round(self, rounding: str = ROUND_HALF_UP) -> Money:
        """
        Round to the currency's minor unit.

        Postconditions:
            - Returns a new Money quantized to the currency's decimal places.
            - Original Money is unchanged (immutable).
        """
        rounded = self.amount.quantize(self.currency.quantum, rounding=rounding)
        return Money(amount=rounded, currency=self.currency)

    def _check_currency(self, other: Money, operation: str) -> None:
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot {operation} Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "add")
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "subtract")
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def __neg__(self) -> Money:
        return Money(amount=-self.amount, currency=self.currency)

    def __mul__(self, factor: Decimal | int | str) -> Money:
        """Multiply by a scalar."""
        if isinstance(factor, bool):
            return NotImplemented
        if isinstance(factor, (int, str)):
            factor = Decimal(str(factor))
        if not isinstance(factor, Decimal):
            return NotImplemented
        return Money(amount=self.amount * factor, currency=self.currency)

    def __rmul__(self, factor: Decimal | int | str) -> Money:
        return self.__mul__(factor)

    def __lt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def __str__(self) -> str:
        return f"{self.amount} {self.currency.code}"

    def __repr__(self) -> str:
        return f"Money({self.amount!r}, {self.currency!r})"
