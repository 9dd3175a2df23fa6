"""
Withdrawal fee arithmetic.

All values are ``Decimal`` amounts of the smallest quote unit (planck).
"""

from decimal import Decimal, ROUND_FLOOR, localcontext
from typing import Union

from relayer.core.config import settings


Number = Union[Decimal, int, str]

DEFAULT_FEE_RATE = Decimal("0.02")
# 0.01 KSM
DEFAULT_MIN_FEE = Decimal("10000000000")

_BASE_UNIT = Decimal(1)
# u128 balances need 39 digits
_PRECISION = 60


class FeeCalculator:
    """Percentage fee with a fixed minimum."""

    def __init__(self, rate: Number = DEFAULT_FEE_RATE, min_fee: Number = DEFAULT_MIN_FEE):
        self.rate = Decimal(rate)
        self.min_fee = Decimal(min_fee)

    @classmethod
    def from_settings(cls) -> "FeeCalculator":
        return cls(settings.withdraw_fee_rate, settings.withdraw_min_fee)

    def fee_for(self, amount: Number) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            return max(Decimal(amount) * self.rate, self.min_fee)

    def apply_fee(self, amount: Number) -> Decimal:
        """
        Amount left for the user once the fee is taken.

        Rounded down to whole base units. The result is negative when the
        amount does not cover the minimum fee; callers skip the payout then.
        """
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            amount = Decimal(amount)
            payout = amount - self.fee_for(amount)
            return payout.quantize(_BASE_UNIT, rounding=ROUND_FLOOR)
