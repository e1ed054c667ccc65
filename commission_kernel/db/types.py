"""
Column aliases and boundary validation for ledger amounts and currencies.

Amounts are integers in the currency's minor unit (cents, or whole pesos for
CLP). Every entry point (debt creation, manual intake, card confirmation,
configuration) passes through ``validate_positive_amount`` and
``validate_currency`` before anything is written.
"""

from typing import Annotated, Any

from sqlalchemy import BigInteger, String

from commission_kernel.exceptions import InvalidAmountError, InvalidCurrencyError

MinorAmount = Annotated[int, BigInteger]

Currency = Annotated[str, String(3)]

# ISO 4217 codes the processor can settle in.
SETTLEMENT_CURRENCIES: frozenset[str] = frozenset(
    """
    AED ARS AUD BDT BGN BOB BRL CAD CHF CLP CNY COP CRC CZK DKK DOP EGP EUR
    GBP GTQ HKD HNL HUF IDR ILS INR ISK JPY KES KRW MAD MXN MYR NGN NOK NZD
    PAB PEN PHP PKR PLN PYG QAR RON SAR SEK SGD THB TRY TWD UAH USD UYU VND
    ZAR
    """.split()
)


def validate_currency(currency: Any) -> str:
    """
    Normalize a currency code to upper case.

    Raises:
        InvalidCurrencyError: If the code is empty or not a settlement currency.
    """
    if not isinstance(currency, str) or not currency.strip():
        raise InvalidCurrencyError(str(currency))

    normalized = currency.strip().upper()
    if normalized not in SETTLEMENT_CURRENCIES:
        raise InvalidCurrencyError(currency)
    return normalized


def validate_positive_amount(amount: Any, field: str = "amount") -> int:
    """
    Accept only a positive ``int`` of minor units.

    Booleans and floats are rejected even when they hold whole values.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount, field=field)
    return amount
