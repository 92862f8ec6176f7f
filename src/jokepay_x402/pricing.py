"""Price helpers: minor units (cents) to display strings and asset atomic units."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

MINOR_UNIT_DECIMALS = 2
MAX_ASSET_DECIMALS = 18


def format_cents(cents: int) -> str:
    """Render a cent count as a two-decimal string, e.g. ``1 -> "0.01"``."""
    if cents < 0:
        raise ValueError("Amount must be non-negative")
    whole, frac = divmod(cents, 100)
    return f"{whole}.{frac:02d}"


def parse_amount_to_cents(amount: str | int | float) -> int:
    if isinstance(amount, int):
        return amount * 100
    if isinstance(amount, float):
        amount = repr(amount)
    if not isinstance(amount, str):
        raise ValueError(f"Invalid money type: {type(amount)}")
    clean = amount.replace("$", "").strip()
    try:
        value = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid money format: {amount}") from exc
    if value < 0:
        raise ValueError("Amount must be non-negative")
    return int((value * 100).to_integral_value())


def to_atomic_units(cents: int, decimals: int) -> int:
    """Convert cents to the asset's smallest unit using integer arithmetic only.

    Assets with fewer than two decimals cannot represent single cents, so the
    result is floored (150 cents at 0 decimals is 1 unit).
    """
    if cents < 0:
        raise ValueError("Amount must be non-negative")
    if not 0 <= decimals <= MAX_ASSET_DECIMALS:
        raise ValueError(f"Unsupported asset decimals: {decimals}")
    if decimals >= MINOR_UNIT_DECIMALS:
        return cents * 10 ** (decimals - MINOR_UNIT_DECIMALS)
    return cents // 10 ** (MINOR_UNIT_DECIMALS - decimals)
