from decimal import Decimal, localcontext

from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

from rewardhub.config import settings
from rewardhub.errors import ContractViolation


def to_amount(value) -> int:
    """
    Coerce an integer or a decimal-digit string into a non-negative amount of base units.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ContractViolation(f"malformed amount: {value!r}")
    if isinstance(value, str):
        text = value.strip()
        if not (text.isascii() and text.isdigit()):
            raise ContractViolation(f"malformed amount: {value!r}")
        value = int(text)
    if not isinstance(value, int):
        raise ContractViolation(f"malformed amount: {value!r}")
    if value < 0:
        raise ContractViolation(f"negative amount: {value}")
    return value


def coins_to_units(coins, decimals: int | None = None) -> int:
    decimals = settings.coin_decimals if decimals is None else decimals
    with localcontext() as ctx:
        ctx.prec = 100
        units = Decimal(str(coins)) * (Decimal(10) ** decimals)
    if units != units.to_integral_value():
        raise ContractViolation(f"{coins} has more than {decimals} decimal places")
    return to_amount(int(units))


def units_to_coins(units: int, decimals: int | None = None) -> str:
    decimals = settings.coin_decimals if decimals is None else decimals
    whole, fraction = divmod(to_amount(units), 10 ** decimals)
    if not fraction:
        return str(whole)
    digits = str(fraction).rjust(decimals, "0").rstrip("0")
    return f"{whole}.{digits}"


class AmountType(TypeDecorator):
    """Stores arbitrary-precision amounts as decimal strings."""

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(to_amount(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)
