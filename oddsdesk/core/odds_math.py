"""Odds notation conversion: the single source of truth.

Every function here is **pure**: no I/O, no logging, no side effects.
Import from this module; never reimplement locally in services.

Three notations are understood:

1. **Decimal**: ``2.50`` means a 10.00 stake returns 25.00 in total.
2. **American**: signed integers, ``+150`` (underdog) / ``-200`` (favourite).
3. **Fractional**: ``3/2`` means profit of 3 per 2 staked.

Design decisions
----------------
* Odds arrive from the odds service and from user selections as *strings*
  whose notation is not labelled.  :func:`to_decimal` sniffs the notation:
  a decimal point means decimal odds, a slash means fractional, an explicit
  sign means American, and an unsigned number is decimal when it lies in
  ``[1.0, 10.0]`` and American otherwise.
* :func:`to_decimal` never raises.  Malformed input is returned unchanged so
  that a rendering layer can show whatever the upstream sent; callers use
  :func:`is_usable_decimal` to decide whether a quote is bettable.
* American zero has no meaning; it is read as even money (2.0).

Run tests with::

    pytest tests/test_odds_math.py -v
"""

from __future__ import annotations

import math
from typing import Final, Literal, Union

OddsFormat = Literal["moneyline", "american", "decimal", "fractional"]

# ---------------------------------------------------------------------------
# Module-level constants
# ---------------------------------------------------------------------------

#: Decimal odds below this value are treated as an absent quote: a bettor
#: could only ever lose money at them.
MIN_DECIMAL_ODDS: Final[float] = 1.01

#: Even-money decimal value, the pivot between positive and negative
#: American notation.
EVEN_MONEY: Final[float] = 2.0

#: Unsigned numbers inside this band are read as decimal odds.
_DECIMAL_BAND: Final[tuple[float, float]] = (1.0, 10.0)

#: Relative tolerance for the continued-fraction expansion in
#: :func:`decimal_to_fractional`.
_FRACTION_TOL: Final[float] = 1e-6

#: Hard cap on continued-fraction terms; irrational-looking floats otherwise
#: expand until the denominators overflow.
_FRACTION_MAX_TERMS: Final[int] = 32


# ---------------------------------------------------------------------------
# Numeric conversions
# ---------------------------------------------------------------------------


def american_to_decimal(american: int | float) -> float:
    """Convert American odds to decimal format.

    Examples::

        american_to_decimal(+150) → 2.50   (risk 100 to win 150)
        american_to_decimal(-200) → 1.50   (risk 200 to win 100)
        american_to_decimal(0)    → 2.00   (even-money fallback)
    """
    if american > 0:
        return american / 100.0 + 1.0
    if american < 0:
        return 100.0 / abs(american) + 1.0
    return EVEN_MONEY


def decimal_to_american(decimal_odds: float) -> int:
    """Convert decimal odds to the nearest American integer.

    Inverse of :func:`american_to_decimal`.  Values ≥ 2.0 come back positive
    (underdog); values below 2.0 come back negative (favourite).

    Raises:
        ValueError: If ``decimal_odds <= 1.0``, which has no American form.
    """
    if decimal_odds <= 1.0:
        raise ValueError(
            f"Decimal odds {decimal_odds!r} must be > 1.0 to convert to American."
        )
    if decimal_odds >= EVEN_MONEY:
        return round((decimal_odds - 1.0) * 100)
    return round(-100.0 / (decimal_odds - 1.0))


def fractional_to_decimal(numerator: float, denominator: float) -> float:
    """``3/2`` → 2.5.

    Raises:
        ValueError: On a zero denominator.
    """
    if denominator == 0:
        raise ValueError("Fractional odds denominator cannot be 0")
    return 1.0 + numerator / denominator


def decimal_to_fractional(decimal_odds: float) -> tuple[int, int]:
    """Approximate decimal odds as a ``(numerator, denominator)`` pair.

    Uses a continued-fraction expansion of ``decimal_odds - 1`` and stops as
    soon as the convergent is within a relative tolerance of 1e-6::

        decimal_to_fractional(2.5)   → (3, 2)
        decimal_to_fractional(1.5)   → (1, 2)

    Raises:
        ValueError: If ``decimal_odds <= 1.0``.
    """
    if decimal_odds <= 1.0:
        raise ValueError(
            f"Decimal odds {decimal_odds!r} must be > 1.0 to express as a fraction."
        )
    target = decimal_odds - 1.0
    h_prev, h = 0, 1
    k_prev, k = 1, 0
    remainder = target
    for _ in range(_FRACTION_MAX_TERMS):
        term = math.floor(remainder)
        h_prev, h = h, term * h + h_prev
        k_prev, k = k, term * k + k_prev
        if abs(target - h / k) <= target * _FRACTION_TOL:
            break
        frac_part = remainder - term
        if frac_part == 0:
            break
        remainder = 1.0 / frac_part
    return h, k


# ---------------------------------------------------------------------------
# String parsing
# ---------------------------------------------------------------------------


def _parse_float(text: str) -> float | None:
    try:
        value = float(text)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def to_decimal(raw: Union[str, int, float, None]) -> Union[float, str, None]:
    """Parse an odds value of unknown notation into decimal odds.

    Detection order:

    * contains ``.``           → decimal, passed through as ``float(raw)``
    * contains ``/``           → fractional, ``1 + n/d``
    * leading ``+`` / ``-``    → American
    * unsigned in [1.0, 10.0]  → decimal, passed through
    * any other unsigned value → positive American

    Args:
        raw: The odds as received.  Numbers are accepted and parsed from
            their string form.

    Returns:
        The decimal value, or ``raw`` itself (unchanged) when it cannot be
        parsed.  This function never raises.

    Examples::

        to_decimal("+150")  → 2.5
        to_decimal("-200")  → 1.5
        to_decimal("2.50")  → 2.5
        to_decimal("3/2")   → 2.5
        to_decimal("abc")   → "abc"
    """
    if raw is None or isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        text = repr(raw)
    else:
        text = str(raw).strip()
    if not text:
        return raw

    if "." in text:
        value = _parse_float(text)
        return raw if value is None else value

    if "/" in text:
        parts = text.split("/")
        if len(parts) != 2:
            return raw
        numerator = _parse_float(parts[0])
        denominator = _parse_float(parts[1])
        if numerator is None or denominator is None or denominator == 0:
            return raw
        return fractional_to_decimal(numerator, denominator)

    sign = text[0] if text[0] in "+-" else ""
    magnitude = _parse_float(text.lstrip("+-"))
    if magnitude is None:
        return raw

    if sign == "-":
        return american_to_decimal(-magnitude)
    if sign == "+":
        return american_to_decimal(magnitude)

    low, high = _DECIMAL_BAND
    if low <= magnitude <= high:
        return magnitude
    return american_to_decimal(magnitude)


def is_usable_decimal(value: object, min_decimal: float = MIN_DECIMAL_ODDS) -> bool:
    """True when ``value`` is a parsed decimal at or above the bettable floor."""
    return (
        isinstance(value, float)
        and not isinstance(value, bool)
        and value >= min_decimal
    )


def decimal_or_none(raw: Union[str, int, float, None]) -> float | None:
    """:func:`to_decimal` collapsed to ``None`` for anything unusable."""
    value = to_decimal(raw)
    return value if is_usable_decimal(value) else None


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def from_decimal(decimal_odds: float, target_format: OddsFormat = "american") -> str:
    """Render decimal odds in ``target_format``.

    * ``american`` / ``moneyline`` → ``"+150"`` or ``"-200"``
    * ``decimal``                  → ``"2.50"``
    * ``fractional``               → ``"3/2"``

    Raises:
        ValueError: For an unknown format, or odds that have no
            representation in the requested format (``<= 1.0``).
    """
    if target_format in ("american", "moneyline"):
        american = decimal_to_american(decimal_odds)
        return f"+{american}" if american > 0 else str(american)
    if target_format == "decimal":
        return f"{decimal_odds:.2f}"
    if target_format == "fractional":
        numerator, denominator = decimal_to_fractional(decimal_odds)
        return f"{numerator}/{denominator}"
    raise ValueError(f"Unknown odds format {target_format!r}")


def format_odds(raw: Union[str, int, float, None], target_format: OddsFormat) -> str:
    """Display helper: parse ``raw`` and re-render it in ``target_format``.

    Unparseable or sub-floor odds are returned as their original text so a
    table cell never goes blank because of a conversion problem.
    """
    value = to_decimal(raw)
    if not is_usable_decimal(value):
        return "" if raw is None else str(raw)
    return from_decimal(value, target_format)
