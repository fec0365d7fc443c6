"""
Currency and Fixed-Point Amount Module

Every amount that reaches a balance or the ledger is a Decimal scaled to
two places with floor rounding. Foreign deposits are converted to the base
currency once, at deposit time. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_FLOOR, InvalidOperation, getcontext
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Union
from enum import Enum

getcontext().prec = 28

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class Currency(Enum):
    """ISO 4217 currency codes accepted at the ATM"""
    CAD = "CAD"
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    CHF = "CHF"
    JPY = "JPY"

    @property
    def code(self) -> str:
        return self.value

    @classmethod
    def from_code(cls, code: str) -> "Currency":
        """Look up a currency by its 3-letter code (case-insensitive)"""
        try:
            return cls(code.strip().upper())
        except (ValueError, AttributeError):
            raise ValueError(f"Unknown currency code: {code!r}")


def floor_amount(value: Union[Decimal, int, str]) -> Decimal:
    """
    Scale an amount to 2 decimal places, rounding toward negative infinity

    Raises:
        ValueError: If the amount is not finite or too large to hold in cents
    """
    if not isinstance(value, Decimal):
        value = decimal_from_string(str(value))
    if not value.is_finite():
        raise ValueError(f"Amount must be finite: {value}")
    try:
        return value.quantize(CENT, rounding=ROUND_FLOOR)
    except InvalidOperation:
        raise ValueError(f"Amount out of range: {value}")


def decimal_from_string(value: str) -> Decimal:
    """
    Parse decimal text into a Decimal

    Raises:
        ValueError: If the text is empty or not a finite number
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    try:
        result = Decimal(value.strip())
    except InvalidOperation:
        raise ValueError(f"Cannot convert {value!r} to Decimal")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return result


def format_amount(value: Decimal) -> str:
    """Render an amount as plain 2-place decimal text"""
    return f"{floor_amount(value):f}"


@dataclass
class ExchangeRate:
    """Rate for converting one unit of from_currency into to_currency"""
    from_currency: Currency
    to_currency: Currency
    rate: Decimal
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if not isinstance(self.rate, Decimal):
            self.rate = Decimal(str(self.rate))
        if self.rate <= 0:
            raise ValueError("Exchange rate must be positive")


# Indicative rates into CAD used when nothing else is configured
DEFAULT_CAD_RATES: Dict[Currency, Decimal] = {
    Currency.USD: Decimal("1.35"),
    Currency.EUR: Decimal("1.47"),
    Currency.GBP: Decimal("1.71"),
    Currency.CHF: Decimal("1.52"),
    Currency.JPY: Decimal("0.0091"),
}


class CurrencyConverter:
    """Converts foreign deposits into the base currency"""

    def __init__(self, base_currency: Currency = Currency.CAD):
        self.base_currency = base_currency
        self._rates: Dict[tuple, ExchangeRate] = {}

    @classmethod
    def with_default_rates(cls) -> "CurrencyConverter":
        converter = cls(Currency.CAD)
        for currency, rate in DEFAULT_CAD_RATES.items():
            converter.set_rate(ExchangeRate(currency, Currency.CAD, rate))
        return converter

    def set_rate(self, rate: ExchangeRate) -> None:
        """Set exchange rate for currency pair"""
        self._rates[(rate.from_currency, rate.to_currency)] = rate

    def get_rate(self, from_currency: Currency, to_currency: Currency) -> Optional[ExchangeRate]:
        """Get exchange rate for currency pair"""
        if from_currency == to_currency:
            return ExchangeRate(from_currency, to_currency, Decimal("1"))
        return self._rates.get((from_currency, to_currency))

    def to_base(self, amount: Decimal, currency: Currency) -> Decimal:
        """
        Convert a foreign amount into the base currency

        Raises:
            ValueError: If no exchange rate is available
        """
        rate = self.get_rate(currency, self.base_currency)
        if not rate:
            raise ValueError(
                f"No exchange rate available for {currency.code} -> {self.base_currency.code}"
            )
        return floor_amount(amount * rate.rate)
