"""Pip and risk/reward arithmetic for trading signals.

Pip size depends on the instrument. The FX default of 0.0001 is the
x10000 convention; JPY-quoted pairs, metals and crypto use coarser units.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

DEFAULT_PIP_SIZE = Decimal("0.0001")

# Base-currency overrides, checked before the quote-currency rule
BASE_PIP_SIZES: dict[str, Decimal] = {
    "XAU": Decimal("0.1"),
    "XAG": Decimal("0.01"),
    "BTC": Decimal("1"),
    "ETH": Decimal("1"),
    "SOL": Decimal("0.01"),
}

QUOTE_PIP_SIZES: dict[str, Decimal] = {
    "JPY": Decimal("0.01"),
}

DIRECTIONS = frozenset({"BUY", "SELL"})


def _normalize_pair(pair: str) -> str:
    return "".join(ch for ch in pair.upper() if ch.isalnum())


def pip_size(pair: str) -> Decimal:
    """Return the price increment that counts as one pip for ``pair``."""
    symbol = _normalize_pair(pair)
    for base, size in BASE_PIP_SIZES.items():
        if symbol.startswith(base):
            return size
    for quote, size in QUOTE_PIP_SIZES.items():
        if symbol.endswith(quote):
            return size
    return DEFAULT_PIP_SIZE


def calculate_pips(
    direction: str,
    entry_price: float,
    close_price: float,
    pair: str | None = None,
) -> float:
    """Signed pip delta for a closed position.

    BUY gains when price rises, SELL gains when it falls. Without a pair
    the FX default (x10000) applies.
    """
    direction = direction.upper()
    if direction not in DIRECTIONS:
        raise ValueError(f"Invalid direction: {direction}. Must be BUY or SELL")
    if not (math.isfinite(entry_price) and math.isfinite(close_price)):
        raise ValueError("Prices must be finite numbers")

    size = pip_size(pair) if pair else DEFAULT_PIP_SIZE
    entry = Decimal(str(entry_price))
    close = Decimal(str(close_price))
    delta = close - entry if direction == "BUY" else entry - close

    pips = (delta / size).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return float(pips)


def calculate_risk_reward(
    direction: str,
    entry_price: float,
    stop_loss: float,
    take_profit: float,
) -> str:
    """Reward/risk ratio formatted to two decimals, e.g. ``"2.50"``."""
    entry = Decimal(str(entry_price))
    sl = Decimal(str(stop_loss))
    tp = Decimal(str(take_profit))

    if direction.upper() == "BUY":
        risk, reward = entry - sl, tp - entry
    else:
        risk, reward = sl - entry, entry - tp

    try:
        ratio = reward / risk
    except (InvalidOperation, ZeroDivisionError) as e:
        raise ValueError("Stop loss cannot equal entry price") from e
    return str(ratio.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
