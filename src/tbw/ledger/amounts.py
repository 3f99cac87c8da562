# src/tbw/ledger/amounts.py
from __future__ import annotations

"""Decimal amount helpers.

All value arithmetic goes through Decimal with a wide local context so that
ratio * amount products keep their precision before quantization.
"""

from decimal import ROUND_CEILING, ROUND_DOWN, ROUND_FLOOR, Context, Decimal, localcontext
from typing import Any, Iterable

from tbw.ledger.constants import ARKTOSHI, SHARE_QUANTUM, UNIT_QUANTUM, ZERO

# 40 significant digits covers total supply (1e17 units) times 8 fractional places
# with room to spare for intermediate ratios.
AMOUNT_CONTEXT = Context(prec=40, rounding=ROUND_DOWN)


def to_decimal(v: Any) -> Decimal:
    """Coerce ints, strings and Decimals; floats go through repr to avoid binary noise."""
    if isinstance(v, Decimal):
        return v
    if isinstance(v, bool):
        raise TypeError("bool is not a valid amount")
    if isinstance(v, float):
        return Decimal(repr(v))
    return Decimal(v)


def coins_to_units(v: Any) -> Decimal:
    with localcontext(AMOUNT_CONTEXT):
        return to_decimal(v) * ARKTOSHI


def units_to_coins(v: Decimal) -> Decimal:
    with localcontext(AMOUNT_CONTEXT):
        return to_decimal(v) / ARKTOSHI


def quantize_share(v: Decimal) -> Decimal:
    return v.quantize(SHARE_QUANTUM, rounding=ROUND_DOWN)


def floor_units(v: Decimal) -> Decimal:
    return v.quantize(UNIT_QUANTUM, rounding=ROUND_FLOOR)


def ceil_units(v: Decimal) -> Decimal:
    return v.quantize(UNIT_QUANTUM, rounding=ROUND_CEILING)


def pro_rata(amount: Decimal, part: Decimal, whole: Decimal) -> Decimal:
    """amount * part / whole, quantized to the share quantum (rounded down)."""
    if whole <= ZERO:
        return ZERO
    with localcontext(AMOUNT_CONTEXT):
        return quantize_share(amount * part / whole)


def mul(a: Decimal, b: Decimal) -> Decimal:
    with localcontext(AMOUNT_CONTEXT):
        return a * b


def clamp_non_negative(v: Decimal) -> Decimal:
    return v if v > ZERO else ZERO


def total(values: Iterable[Decimal]) -> Decimal:
    out = ZERO
    with localcontext(AMOUNT_CONTEXT):
        for v in values:
            out += v
    return out


def fmt_coins(v: Decimal) -> str:
    """Human-readable coin amount with 8 decimals (logging only)."""
    return f"{units_to_coins(v):.8f}"
