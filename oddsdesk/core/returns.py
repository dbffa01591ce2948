"""Stake, total-return and profit arithmetic.

One formula, used everywhere::

    total_return = stake × decimal_odds
    profit       = total_return − stake

Selections on a slip are independent single bets; the aggregate return is
the plain sum of per-selection returns (no parlay combination).  Values are
kept at full float precision and only rounded by :func:`format_money` at
the presentation boundary, so summing many selections does not compound
rounding error.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple, Union

from oddsdesk.core.odds_math import is_usable_decimal, to_decimal


@dataclass(frozen=True)
class BettingReturn:
    stake: float
    decimal_odds: float
    total_return: float
    profit: float


def compute_return(stake: float, decimal_odds: float) -> BettingReturn:
    """Return and profit for a single bet.

    Examples::

        compute_return(10, 2.50) → total_return 25.00, profit 15.00
        compute_return(10, 1.50) → total_return 15.00, profit  5.00
    """
    total_return = stake * decimal_odds
    return BettingReturn(
        stake=stake,
        decimal_odds=decimal_odds,
        total_return=total_return,
        profit=total_return - stake,
    )


def compute_return_from_odds(stake: float, raw_odds: Union[str, float]) -> BettingReturn:
    """Same as :func:`compute_return` for odds in any notation.

    Unparseable odds contribute nothing: the result has ``decimal_odds`` 0
    and zero return, rather than guessing a price.
    """
    decimal_odds = to_decimal(raw_odds)
    if not is_usable_decimal(decimal_odds, min_decimal=1.0):
        return BettingReturn(stake=stake, decimal_odds=0.0, total_return=0.0, profit=-stake)
    return compute_return(stake, decimal_odds)


def parse_stake(text: Union[str, float, int, None]) -> float:
    """Parse a free-text stake.  Anything non-numeric counts as 0."""
    if text is None or isinstance(text, bool):
        return 0.0
    if isinstance(text, (int, float)):
        value = float(text)
    else:
        try:
            value = float(str(text).strip().lstrip("$"))
        except ValueError:
            return 0.0
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return value


def aggregate_returns(
    legs: Iterable[Tuple[Union[str, float, int, None], Union[str, float]]],
) -> BettingReturn:
    """Sum independent ``(stake, odds)`` legs into one slip-level total.

    ``decimal_odds`` on the result is the effective price
    (``total_return / total_stake``), or 0 for an empty or zero-stake slip.
    """
    total_stake = 0.0
    total_return = 0.0
    for stake_text, raw_odds in legs:
        leg = compute_return_from_odds(parse_stake(stake_text), raw_odds)
        total_stake += leg.stake
        total_return += leg.total_return
    effective = total_return / total_stake if total_stake > 0 else 0.0
    return BettingReturn(
        stake=total_stake,
        decimal_odds=effective,
        total_return=total_return,
        profit=total_return - total_stake,
    )


def format_money(amount: Optional[float], symbol: str = "$") -> str:
    """``25`` → ``"$25.00"``.  Rounding happens here and nowhere else."""
    if amount is None:
        return f"{symbol}0.00"
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):.2f}"
