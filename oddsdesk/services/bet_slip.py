"""
Betting slip: selections, stakes, totals and the confirmation flow.

Each selection is an independent single bet keyed by ``(match_id, outcome)``.
Home and draw on the same match are two selections; toggling the same key
twice removes it again.

Confirmation is two-phase:

    1. Validate: no (match, outcome) already bet this session or in loaded
       history, every stake > 0, total > 0, funds >= total.
    2. Commit: deduct the slip total once, then create one bet record per
       selection in slip order.

A failure part-way through phase 2 is not rolled back.  Records already
created stand, their funds stay deducted, and ``PartialBatchError`` tells the
caller exactly which ones were written.
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from oddsdesk.core.engine_config import EngineConfig
from oddsdesk.core.odds_math import decimal_or_none
from oddsdesk.core.returns import (
    BettingReturn,
    aggregate_returns,
    compute_return,
    format_money,
    parse_stake,
)
from oddsdesk.exceptions import BetValidationError, PartialBatchError
from oddsdesk.schemas import BetRecord, BetRecordCreate
from oddsdesk.services.betting import AsyncBettingRecords, AsyncFunds

logger = logging.getLogger(__name__)

SelectionKey = Tuple[int, str]


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

@dataclass
class BetSelection:
    match_id: int
    outcome: str              # home | draw | away
    odds_raw: str
    teams: str = ""
    league: Optional[str] = None
    match_date: Optional[str] = None
    match_time: Optional[str] = None
    stake: str = "10"         # free text until computation time

    @property
    def key(self) -> SelectionKey:
        return (self.match_id, self.outcome)

    @property
    def decimal_odds(self) -> Optional[float]:
        return decimal_or_none(self.odds_raw)

    @property
    def stake_amount(self) -> float:
        return parse_stake(self.stake)

    @property
    def selected_team(self) -> str:
        if self.outcome == "draw":
            return "Draw"
        home, sep, away = self.teams.partition(" vs ")
        if not sep:
            return self.teams
        return home if self.outcome == "home" else away

    def returns(self) -> BettingReturn:
        return compute_return(self.stake_amount, self.decimal_odds or 0.0)

    def to_record(self) -> BetRecordCreate:
        match_date = self.match_date
        if match_date and self.match_time:
            match_date = f"{match_date}T{self.match_time}"
        return BetRecordCreate(
            bet_amount=self.stake_amount,
            potential_win=round(self.returns().total_return, 2),
            match_id=self.match_id,
            match_teams=self.teams or f"Match {self.match_id}",
            match_date=match_date,
            match_league=self.league,
            selected_outcome=self.outcome,
            selected_team=self.selected_team or None,
            odds_value=self.odds_raw,
            odds_decimal=self.decimal_odds,
        )

    def to_dict(self) -> dict:
        r = self.returns()
        return {
            "match_id": self.match_id,
            "outcome": self.outcome,
            "odds": self.odds_raw,
            "decimal_odds": self.decimal_odds,
            "teams": self.teams,
            "league": self.league,
            "match_date": self.match_date,
            "match_time": self.match_time,
            "stake": self.stake,
            "total_return": r.total_return,
            "profit": r.profit,
        }


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class BetSlipManager:
    """
    Owns the slip for one user session.

    Usage::

        slip = BetSlipManager(config)
        slip.on_new_bet(lambda record, selection: ...)
        slip.toggle(4812, "home", "+150", teams="Sevilla vs Real Betis")
        slip.set_stake_for_all("25")
        created = await slip.confirm(funds, records)
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self._selections: Dict[SelectionKey, BetSelection] = {}
        self._already_bet: Set[SelectionKey] = set()
        self._callbacks: List[Callable[[BetRecord, BetSelection], None]] = []

        # Confirmation UI state
        self.is_confirming = False
        self.error: Optional[str] = None
        self.duplicate_error: Optional[str] = None
        self.balance: Optional[float] = None

    # ------------------------------------------------------------------
    # Callback registration
    # ------------------------------------------------------------------

    def on_new_bet(self, callback: Callable[[BetRecord, BetSelection], None]) -> None:
        """Register a callback fired once per bet record a confirmation creates."""
        self._callbacks.append(callback)

    # ------------------------------------------------------------------
    # Selections
    # ------------------------------------------------------------------

    @property
    def selections(self) -> List[BetSelection]:
        return list(self._selections.values())

    def __len__(self) -> int:
        return len(self._selections)

    def get(self, match_id: int, outcome: str) -> Optional[BetSelection]:
        return self._selections.get((match_id, outcome))

    def toggle(
        self,
        match_id: int,
        outcome: str,
        odds_raw: str,
        teams: str = "",
        league: Optional[str] = None,
        match_date: Optional[str] = None,
        match_time: Optional[str] = None,
    ) -> bool:
        """
        Add the selection, or remove it if already present.

        Returns:
            True if the selection is now on the slip.
        """
        key = (match_id, outcome)
        if key in self._selections:
            del self._selections[key]
            logger.debug("Slip: removed %s/%s", match_id, outcome)
            return False
        self._selections[key] = BetSelection(
            match_id=match_id,
            outcome=outcome,
            odds_raw=str(odds_raw),
            teams=teams,
            league=league,
            match_date=match_date,
            match_time=match_time,
            stake=self.config.default_stake,
        )
        self.duplicate_error = None
        logger.debug("Slip: added %s/%s @ %s", match_id, outcome, odds_raw)
        return True

    def remove(self, match_id: int, outcome: str) -> bool:
        return self._selections.pop((match_id, outcome), None) is not None

    def clear(self) -> None:
        self._selections.clear()
        self.error = None
        self.duplicate_error = None

    def set_stake_for_all(self, amount: str) -> None:
        for sel in self._selections.values():
            sel.stake = str(amount)

    def set_stake_for_one(self, match_id: int, outcome: str, amount: str) -> bool:
        sel = self._selections.get((match_id, outcome))
        if sel is None:
            return False
        sel.stake = str(amount)
        return True

    # ------------------------------------------------------------------
    # Totals and validity
    # ------------------------------------------------------------------

    def totals(self) -> BettingReturn:
        return aggregate_returns((s.stake, s.odds_raw) for s in self._selections.values())

    def load_history(self, records: Iterable[BetRecord]) -> int:
        """Seed the already-bet index from existing bet records."""
        added = 0
        for rec in records:
            if rec.match_id is None or not rec.outcome:
                continue
            key = (rec.match_id, rec.outcome)
            if key not in self._already_bet:
                self._already_bet.add(key)
                added += 1
        if added:
            logger.info("Slip: %d (match, outcome) pairs loaded from bet history", added)
        return added

    def already_bet(self, match_id: int, outcome: str) -> bool:
        return (match_id, outcome) in self._already_bet

    def duplicates(self) -> List[BetSelection]:
        return [s for s in self._selections.values() if s.key in self._already_bet]

    def validate(self) -> BettingReturn:
        """
        Client-side checks that need no I/O.

        Raises:
            BetValidationError: ``duplicate_bet``, ``empty_slip``,
                ``unusable_odds`` or ``non_positive_stake``.
        """
        dupes = self.duplicates()
        if dupes:
            names = ", ".join(f"{d.teams or d.match_id} ({d.outcome})" for d in dupes)
            raise BetValidationError(
                "duplicate_bet",
                f"You have already placed this bet: {names}",
                details=[d.key for d in dupes],
            )
        if not self._selections:
            raise BetValidationError("empty_slip", "Bet slip is empty")
        for sel in self._selections.values():
            if sel.decimal_odds is None:
                raise BetValidationError(
                    "unusable_odds",
                    f"No usable odds for {sel.teams or sel.match_id} ({sel.outcome})",
                    details=sel.key,
                )
            if sel.stake_amount <= 0:
                raise BetValidationError(
                    "non_positive_stake",
                    f"Stake for {sel.teams or sel.match_id} ({sel.outcome}) must be greater than 0",
                    details=sel.key,
                )
        totals = self.totals()
        if totals.stake <= 0:
            raise BetValidationError("non_positive_stake", "Amount must be greater than 0")
        return totals

    @property
    def is_valid(self) -> bool:
        try:
            self.validate()
        except BetValidationError:
            return False
        return True

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def confirm(self, funds: AsyncFunds, records: AsyncBettingRecords) -> List[BetRecord]:
        """
        Validate, deduct the slip total once, and create one record per
        selection.

        Raises:
            BetValidationError: Client-side failure or HTTP 422 on the first
                record.  Nothing was deducted unless the 422 came from
                record creation.
            AuthenticationError: Credential missing or rejected.
            ServiceError: Transport failure or 5xx.
            PartialBatchError: At least one record was created before a
                later one failed.
        """
        if self.is_confirming:
            raise BetValidationError(
                "confirmation_in_progress", "A confirmation is already in progress"
            )
        self.is_confirming = True
        self.error = None
        self.duplicate_error = None
        try:
            return await self._confirm(funds, records)
        except BetValidationError as exc:
            if exc.code == "duplicate_bet":
                self.duplicate_error = exc.message
            else:
                self.error = exc.message
            raise
        except Exception as exc:
            self.error = str(exc)
            raise
        finally:
            self.is_confirming = False

    async def _confirm(self, funds: AsyncFunds, records: AsyncBettingRecords) -> List[BetRecord]:
        totals = self.validate()
        # Later slip edits while awaiting do not join this batch.
        batch = [replace(s) for s in self._selections.values()]

        balance = await funds.get_current()
        if balance.funds < totals.stake:
            raise BetValidationError(
                "insufficient_funds",
                "Balance is not enough",
                details={"balance": balance.funds, "required": totals.stake},
            )

        after = await funds.deduct(totals.stake)
        self.balance = after.funds

        created: List[BetRecord] = []
        for sel in batch:
            try:
                record = await records.create(sel.to_record())
            except Exception as exc:
                if not created:
                    logger.error(
                        "Bet confirmation failed on first record after deducting %s: %s",
                        format_money(totals.stake), exc,
                    )
                    raise
                logger.error(
                    "Partial bet batch: %d/%d records created before failure: %s",
                    len(created), len(batch), exc,
                )
                raise PartialBatchError(created, sel, exc) from exc
            created.append(record)
            self._record_created(record, sel)

        logger.info(
            "Slip confirmed: %d bet(s), stake %s, potential return %s",
            len(created), format_money(totals.stake), format_money(totals.total_return),
        )
        await self._refresh_balance(funds)
        return created

    def _record_created(self, record: BetRecord, selection: BetSelection) -> None:
        self._already_bet.add(selection.key)
        self._selections.pop(selection.key, None)
        for cb in self._callbacks:
            try:
                cb(record, selection)
            except Exception as exc:
                logger.error("New-bet callback error: %s", exc)

    async def _refresh_balance(self, funds: AsyncFunds) -> None:
        try:
            self.balance = (await funds.get_current()).funds
        except Exception as exc:
            # the deduct response already carried a balance
            logger.warning("Funds refresh after confirmation failed: %s", exc)

    def to_dict(self) -> dict:
        totals = self.totals()
        return {
            "selections": [s.to_dict() for s in self._selections.values()],
            "count": len(self._selections),
            "total_stake": totals.stake,
            "total_return": totals.total_return,
            "total_profit": totals.profit,
            "display": {
                "total_stake": format_money(totals.stake),
                "total_return": format_money(totals.total_return),
            },
            "is_valid": self.is_valid,
            "duplicates": [list(s.key) for s in self.duplicates()],
            "is_confirming": self.is_confirming,
            "error": self.error,
            "duplicate_error": self.duplicate_error,
            "balance": self.balance,
        }
