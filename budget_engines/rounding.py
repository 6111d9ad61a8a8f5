"""
Rounding policies for allocated amounts.

NEAREST rounds half away from zero, UP toward +infinity, DOWN toward
-infinity; NONE leaves the exact product untouched.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal

from budget_kernel.domain.types import RoundingMethod

_DECIMAL_MODES = {
    RoundingMethod.NEAREST: ROUND_HALF_UP,
    RoundingMethod.UP: ROUND_CEILING,
    RoundingMethod.DOWN: ROUND_FLOOR,
}


def apply_rounding(amount: Decimal, method: RoundingMethod, precision: int) -> Decimal:
    """Round ``amount`` to ``precision`` decimal places under ``method``."""
    if method == RoundingMethod.NONE:
        return amount
    quantum = Decimal(1).scaleb(-precision)
    return amount.quantize(quantum, rounding=_DECIMAL_MODES[method])
