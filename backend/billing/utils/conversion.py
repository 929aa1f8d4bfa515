"""Conversion between reference-currency cost and display units ("tokens")"""
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from billing.core.config import settings

# Stored costs keep 10 decimal places (matches the Numeric(18, 10) columns)
COST_QUANTUM = Decimal("0.0000000001")
UNITS_PER_MILLION = Decimal(1_000_000)

Number = Union[int, float, str, Decimal]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() avoids binary float artefacts (0.1 -> 0.1000000000000000055...)
    return Decimal(str(value))


def quantize_cost(value: Number) -> Decimal:
    return to_decimal(value).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


def compute_cost(input_units: int, output_units: int, input_price_per_million: Number,
                 output_price_per_million: Number) -> Decimal:
    """cost = input_units * input_price + output_units * output_price (prices per million units)"""
    cost = (
        Decimal(input_units) * to_decimal(input_price_per_million)
        + Decimal(output_units) * to_decimal(output_price_per_million)
    ) / UNITS_PER_MILLION
    return quantize_cost(cost)


def dollars_to_tokens(dollars: Optional[Number], units_per_dollar: int = None) -> Optional[int]:
    """Convert a reference-currency amount to display units, rounding down.

    None (unlimited) passes through.
    """
    if dollars is None:
        return None
    rate = units_per_dollar or settings.DISPLAY_UNITS_PER_CURRENCY_UNIT
    return math.floor(to_decimal(dollars) * rate)


def tokens_to_dollars(tokens: Optional[int], units_per_dollar: int = None) -> Optional[Decimal]:
    """Convert display units back to the reference currency"""
    if tokens is None:
        return None
    rate = units_per_dollar or settings.DISPLAY_UNITS_PER_CURRENCY_UNIT
    return quantize_cost(Decimal(tokens) / Decimal(rate))
