"""
Money and currency utilities using py-moneyed and Babel.

Provides currency validation, minor-unit precision lookup, half-up rounding
to a currency's precision and locale-aware formatting. ``MoneyCurrencyService``
is the default implementation of the currency collaborator the engine
consumes through ``CurrencyService``.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol, runtime_checkable

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

# Default locale for formatting
DEFAULT_LOCALE = "en_US"

ZERO = Decimal("0")


@runtime_checkable
class CurrencyService(Protocol):
    """Currency lookups consumed by the catalog and coupon engine."""

    def currency_exists(self, currency_code: str) -> bool: ...

    def minor_unit_precision(self, currency_code: str) -> int: ...


class MoneyHandler:
    """Central handler for money operations with proper error handling."""

    def __init__(self, default_currency: str = "USD", default_locale: str = DEFAULT_LOCALE) -> None:
        self.default_currency = self._validate_currency(default_currency)
        self.default_locale = self._validate_locale(default_locale)

    def _validate_currency(self, currency_code: str) -> Currency:
        """Validate and return Currency object."""
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        """Validate locale code."""
        try:
            Locale.parse(locale_code)
            return locale_code
        except (UnknownLocaleError, ValueError):
            return DEFAULT_LOCALE

    def create_money(
        self, amount: int | float | Decimal | str, currency: str | None = None
    ) -> Money:
        """Create Money object with proper validation."""
        currency = currency or self.default_currency.code
        validated_currency = self._validate_currency(currency)

        if isinstance(amount, Decimal):
            decimal_amount = amount
        else:
            decimal_amount = Decimal(str(amount))

        return Money(amount=decimal_amount, currency=validated_currency)

    def format_money(self, money: Money, locale: str | None = None, **kwargs: Any) -> str:
        """Format Money object with locale-aware formatting."""
        locale = locale or self.default_locale
        validated_locale = self._validate_locale(locale)

        try:
            return format_currency(
                number=money.amount, currency=money.currency.code, locale=validated_locale, **kwargs
            )
        except (TypeError, ValueError):
            # Fallback to simple formatting if locale issues
            return f"{money.currency.code} {money.amount}"

    def format_amount(
        self, amount: Decimal, currency: str, locale: str | None = None
    ) -> str:
        """Format a bare amount in ``currency`` for display."""
        return self.format_money(self.create_money(amount, currency), locale)


def round_half_up(amount: Decimal, precision: int) -> Decimal:
    """Round to ``precision`` decimal places, ties away from zero."""
    return amount.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)


class MoneyCurrencyService:
    """Currency collaborator backed by py-moneyed's ISO 4217 table and Babel."""

    def __init__(self, supported_currencies: list[str] | None = None) -> None:
        self.supported_currencies = {code.upper() for code in supported_currencies or []}

    def currency_exists(self, currency_code: str) -> bool:
        code = currency_code.upper()
        if self.supported_currencies and code not in self.supported_currencies:
            return False
        try:
            get_currency(code)
        except CurrencyDoesNotExist:
            return False
        return True

    def minor_unit_precision(self, currency_code: str) -> int:
        return get_currency_precision(currency_code.upper())

