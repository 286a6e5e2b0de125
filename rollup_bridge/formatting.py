"""
Display formatting for balances and relative times
"""

import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union


def format_balance(
    balance: Optional[int],
    fixed_decimals: int = 4,
    decimals: int = 18,
    symbol: str = "ETH",
) -> str:
    """
    Format a base-unit balance with its token symbol

    Args:
        balance: Balance in base units (wei)
        fixed_decimals: Digits after the decimal point
        decimals: Token decimals
        symbol: Token symbol

    Returns:
        e.g. "0.5000 ETH" ("0 ETH" for zero or None)
    """
    if not balance:
        return f"0 {symbol}"

    value = Decimal(int(balance)) / (Decimal(10) ** decimals)
    quantum = Decimal(1).scaleb(-fixed_decimals)
    return f"{value.quantize(quantum, rounding=ROUND_HALF_UP)} {symbol}"


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


def format_time_left(timestamp: Optional[Union[int, str]], now: Optional[float] = None) -> Optional[str]:
    """
    Human-readable distance between a unix timestamp and now

    Works in both directions (countdowns and ages).

    Returns:
        "just now", "5 minutes", "2 days", ... or None for missing input
    """
    if timestamp is None:
        return None
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return None

    now = time.time() if now is None else now
    seconds = int(abs(now - ts))

    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    weeks = days // 7
    months = days // 30
    years = days // 365

    if seconds < 60:
        return "just now"
    if minutes < 60:
        return _plural(minutes, "minute")
    if hours < 24:
        return _plural(hours, "hour")
    if days < 7:
        return _plural(days, "day")
    if weeks < 4:
        return _plural(weeks, "week")
    if months < 12:
        return _plural(months, "month")
    return _plural(years, "year")
