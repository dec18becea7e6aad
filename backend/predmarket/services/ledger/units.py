"""Conversions between decimal XRP and integer drops."""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

DROPS_PER_XRP = 1_000_000
XRP_QUANTUM = Decimal("0.000001")
MIN_TRANSFER_XRP = XRP_QUANTUM


def quantize_xrp(value: Decimal, *, rounding: str = ROUND_HALF_UP) -> Decimal:
    """Round ``value`` to the ledger's 6-decimal granularity."""

    return value.quantize(XRP_QUANTUM, rounding=rounding)


def floor_xrp(value: Decimal) -> Decimal:
    return quantize_xrp(value, rounding=ROUND_DOWN)


def xrp_to_drops(amount: Decimal) -> int:
    """Convert an XRP amount to drops, rejecting sub-drop precision."""

    drops = amount * DROPS_PER_XRP
    if drops != drops.to_integral_value():
        raise ValueError(f"{amount} XRP is not a whole number of drops")
    return int(drops)


def drops_to_xrp(drops: int | str) -> Decimal:
    return (Decimal(int(drops)) / DROPS_PER_XRP).quantize(XRP_QUANTUM)


def parse_xrp_amount(value: Any) -> Decimal | None:
    """Parse a user supplied amount; ``None`` if it is not a finite positive number."""

    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


__all__ = [
    "DROPS_PER_XRP",
    "MIN_TRANSFER_XRP",
    "XRP_QUANTUM",
    "drops_to_xrp",
    "floor_xrp",
    "parse_xrp_amount",
    "quantize_xrp",
    "xrp_to_drops",
]
