"""Token amount conversion helpers using integer base units."""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR


USDC_DECIMALS = 6


def _quantum(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def amount_to_base_units(value: Decimal | float | int | str, decimals: int = USDC_DECIMALS) -> int:
    """Convert a payment amount to base units, rounding up (conservative)."""
    dec = Decimal(str(value)).quantize(_quantum(decimals), rounding=ROUND_CEILING)
    return int(dec.scaleb(decimals))


def limit_to_base_units(value: Decimal | float | int | str, decimals: int = USDC_DECIMALS) -> int:
    """Convert a budget limit to base units, rounding down (conservative)."""
    dec = Decimal(str(value)).quantize(_quantum(decimals), rounding=ROUND_FLOOR)
    return int(dec.scaleb(decimals))


def base_units_to_decimal(value: int, decimals: int = USDC_DECIMALS) -> Decimal:
    return Decimal(value).scaleb(-decimals).quantize(_quantum(decimals))


def format_base_units(value: int, decimals: int = USDC_DECIMALS, symbol: str = "USDC") -> str:
    """Format base units for display, e.g. ``1.50 USDC``."""
    return f"{base_units_to_decimal(value, decimals):.2f} {symbol}"
