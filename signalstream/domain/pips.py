"""
Pip arithmetic.

Thin lookup-table helpers. The one contract the engine relies on is the
pip sign invariant for closed trades: the sign of the pips result equals the
sign of the realized profit whenever profit is non-zero.
"""
import math
import re
from typing import Optional

from signalstream.domain.models import PositionType

_FX_PATTERN = re.compile(r"^[A-Z]{6}(?:[._-]\w*)?$")
_INDEX_PATTERN = re.compile(r"^(US|NAS|DOW|SPX|DAX|FTSE|CAC|NK|ASX|AUS|GER|FRA|UK|HK|JP|SG)")
_INDEX_MARKERS = ("30", "100", "500", "INDEX", "IND")
_CRYPTO_PREFIXES = ("BTC", "ETH", "XRP", "LTC", "SOL")
_METALS = ("XAU", "XAG", "GOLD", "SILVER")

# Profit-per-pip divisor for the profit-only estimate (standard lot, USD quote)
PROFIT_PER_PIP_ESTIMATE = 10.0

# Smallest reported magnitude; a non-zero profit never rounds to 0 pips
MIN_SIGNED_PIPS = 0.1


def get_pip_size(symbol: str) -> float:
    """Pip size for a broker symbol (suffixes like ``EURUSD.m`` are tolerated)."""
    s = (symbol or "").upper()
    if s.startswith(_CRYPTO_PREFIXES) or "CRYPTO" in s:
        return 1.0
    if any(metal in s for metal in _METALS):
        return 0.01
    if "JPY" in s:
        return 0.01
    if _FX_PATTERN.match(s):
        return 0.0001
    if _INDEX_PATTERN.match(s) or any(marker in s for marker in _INDEX_MARKERS):
        return 1.0
    return 0.0001


def price_distance_pips(symbol: str, a: float, b: float) -> float:
    """Unsigned distance between two prices in pips."""
    return abs(a - b) / get_pip_size(symbol)


def calculate_pips(
    symbol: str,
    position_type: PositionType,
    open_price: Optional[float],
    price: Optional[float],
) -> float:
    """Directional pips from open to ``price``; 0.0 when either price is missing."""
    if not open_price or not price:
        return 0.0
    raw = (price - open_price) / get_pip_size(symbol) * position_type.direction
    return round(raw, 1)


def estimate_pips_from_profit(profit: float) -> float:
    """
    Rough pips estimate when no close price is known.

    Best effort only: assumes ~10 account units per pip, which does not hold
    across instruments or lot sizes.
    """
    return round(profit / PROFIT_PER_PIP_ESTIMATE, 1)


def reconcile_pips_sign(pips: float, profit: Optional[float]) -> float:
    """
    Force the pips sign to match the realized profit sign when profit != 0.

    A zero result (flat close price, or a sub-pip move eaten by commission
    and swap) becomes ``MIN_SIGNED_PIPS`` carrying the profit sign.
    """
    if not profit:
        return pips
    return math.copysign(max(abs(pips), MIN_SIGNED_PIPS), profit)


def closed_trade_pips(
    symbol: str,
    position_type: PositionType,
    open_price: Optional[float],
    close_price: Optional[float],
    profit: Optional[float],
) -> float:
    """Pips result for a closed trade, honoring the pip sign invariant."""
    if open_price and close_price:
        pips = calculate_pips(symbol, position_type, open_price, close_price)
    else:
        pips = estimate_pips_from_profit(profit or 0.0)
    return reconcile_pips_sign(pips, profit)


def format_pips(pips: Optional[float]) -> str:
    if not pips:
        return "0"
    return f"{pips:+.1f}"
