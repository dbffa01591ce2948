"""
Pydantic schemas for the odds service, the betting-record service and the
host-facing API.

Wire shapes are validated at the boundary so that the coordinator, slip and
watcher only ever handle well-formed, immutable records.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from oddsdesk.core.odds_math import decimal_or_none


Outcome = Literal["home", "draw", "away"]
Market = Literal["next_matches", "results"]

SETTLED_STATUSES = frozenset({"won", "lost"})

#: Odds-service column → outcome.
QUOTE_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("odd_1", "home"),
    ("odd_X", "draw"),
    ("odd_2", "away"),
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Odds service
# ---------------------------------------------------------------------------

class OddsQuote(BaseModel):
    """One priced outcome.  ``decimal`` is always derived from ``raw``."""

    model_config = ConfigDict(frozen=True)

    outcome: Outcome
    raw: str

    @property
    def decimal(self) -> Optional[float]:
        return decimal_or_none(self.raw)


class MatchRecord(BaseModel):
    """A fixture with up to three quotes, as delivered on one odds page.

    The odds service reports prices in ``odd_1`` / ``odd_X`` / ``odd_2``
    columns; they are folded into ``quotes`` here.  A price that does not
    parse, or parses below the 1.01 floor, is dropped as absent.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    date: Optional[str] = None
    time: Optional[str] = None
    home_team: str
    away_team: str
    league: Optional[str] = None
    country: Optional[str] = None
    season: Optional[int] = None
    quotes: Tuple[OddsQuote, ...] = ()
    result: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def collect_quotes(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "quotes" in data:
            return data
        data = dict(data)
        quotes = []
        for column, outcome in QUOTE_COLUMNS:
            value = data.get(column)
            if value is None:
                continue
            raw = str(value).strip()
            if decimal_or_none(raw) is None:
                continue
            quotes.append({"outcome": outcome, "raw": raw})
        data["quotes"] = quotes
        return data

    @property
    def teams(self) -> str:
        return f"{self.home_team} vs {self.away_team}"

    def quote(self, outcome: str) -> Optional[OddsQuote]:
        for q in self.quotes:
            if q.outcome == outcome:
                return q
        return None


class OddsQuery(BaseModel):
    """Request parameters for ``GET /api/odds/``.  ``None`` means unfiltered."""

    model_config = ConfigDict(frozen=True)

    page: int = Field(1, ge=1)
    size: int = Field(20, ge=1)
    season: Optional[int] = None
    country: Optional[str] = None
    league: Optional[str] = None
    home_team: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    def to_params(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class OddsPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int
    size: int
    total: int
    pages: int
    odds: List[MatchRecord] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Betting records
# ---------------------------------------------------------------------------

class BetRecordCreate(BaseModel):
    """
    Payload for ``POST /api/betting/records``.

    One record per slip selection; ``potential_win`` is the total return
    (stake × decimal odds), not the profit.
    """

    bet_amount: float = Field(..., gt=0)
    potential_win: float = Field(..., ge=0)
    match_id: Optional[int] = None
    match_teams: str = Field(..., min_length=1)
    match_date: Optional[str] = None
    match_league: Optional[str] = None
    match_status: str = "upcoming"
    selected_outcome: Outcome
    selected_team: Optional[str] = None
    odds_value: str
    odds_decimal: float = Field(..., gt=1.0)

    model_config = {
        "json_schema_extra": {
            "example": {
                "bet_amount": 10.0,
                "potential_win": 25.0,
                "match_id": 4812,
                "match_teams": "Sevilla vs Real Betis",
                "match_date": "2025-03-02T21:00:00",
                "match_league": "LaLiga",
                "match_status": "upcoming",
                "selected_outcome": "home",
                "selected_team": "Sevilla",
                "odds_value": "+150",
                "odds_decimal": 2.5,
            }
        }
    }


class BetRecord(BaseModel):
    """Server-confirmed wager.  Status only ever moves pending → won|lost."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: int
    user_id: Optional[int] = None
    match_id: Optional[int] = None
    match_teams: Optional[str] = None
    outcome: Optional[str] = Field(
        None, validation_alias=AliasChoices("outcome", "selected_outcome")
    )
    stake: float = Field(0.0, validation_alias=AliasChoices("stake", "bet_amount"))
    decimal_odds: Optional[float] = Field(
        None, validation_alias=AliasChoices("decimal_odds", "odds_decimal")
    )
    potential_win: Optional[float] = None
    actual_profit: Optional[float] = None
    status: str = Field("pending", validation_alias=AliasChoices("status", "bet_status"))
    created_at: Optional[datetime] = None
    settled_at: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("settled_at", "settlement_date")
    )
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "settled_at", "updated_at")
    @classmethod
    def normalise_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @field_validator("status", mode="before")
    @classmethod
    def lower_status(cls, v: Any) -> str:
        return str(v or "pending").lower()

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES


class BetRecordPage(BaseModel):
    records: List[BetRecord] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    per_page: int = 10
    total_pages: int = 0


class BettingStats(BaseModel):
    model_config = ConfigDict(extra="allow")

    total_bets: int = 0
    total_amount_bet: float = 0.0
    total_potential_win: float = 0.0
    won_bets: int = 0
    lost_bets: int = 0
    pending_bets: int = 0
    total_profit: float = 0.0
    win_rate: float = 0.0


class FundsBalance(BaseModel):
    model_config = ConfigDict(extra="ignore")

    funds: float = Field(
        0.0, validation_alias=AliasChoices("funds", "funds_usd", "new_balance")
    )


# ---------------------------------------------------------------------------
# Host-facing API
# ---------------------------------------------------------------------------

class FilterUpdate(BaseModel):
    """
    Payload for POST /api/filters.

    Only the fields present in the request body are changed; send an
    explicit ``null`` to clear a filter.
    """

    page: Optional[int] = Field(None, ge=1)
    page_size: Optional[int] = Field(None, ge=1, le=200)
    season: Optional[int] = None
    country: Optional[str] = None
    league: Optional[str] = None
    search_term: Optional[str] = Field(None, max_length=120)
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class MarketSwitchRequest(BaseModel):
    market: Market


class LocationChange(BaseModel):
    location: str = Field(..., min_length=1, max_length=2000)


class SlipToggleRequest(BaseModel):
    match_id: int
    outcome: Outcome
    odds: str = Field(..., min_length=1, max_length=20)
    teams: Optional[str] = None
    league: Optional[str] = None
    match_date: Optional[str] = None
    match_time: Optional[str] = None


class StakeUpdate(BaseModel):
    """Payload for PUT /api/slip/stake.  Omit match_id to set every stake."""

    amount: str = Field(..., max_length=20)
    match_id: Optional[int] = None
    outcome: Optional[Outcome] = None

    @model_validator(mode="after")
    def both_or_neither(self) -> "StakeUpdate":
        if (self.match_id is None) != (self.outcome is None):
            raise ValueError("match_id and outcome must be given together")
        return self
