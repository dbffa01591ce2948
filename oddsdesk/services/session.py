"""
Per-user session container.

One ``BettingSession`` owns exactly one fetch coordinator, one slip, one
settlement watcher and one notification sink, and wires them together:

    slip.on_new_bet        → notifications (new-bet)
    watcher.on_settlement  → notifications (settled)
    watcher.on_listing     → slip duplicate index (bet history)

Consumers hold a reference to the session; nothing here is a module-level
global.
"""

import logging
from typing import Callable, Dict, Optional

from oddsdesk.core.engine_config import EngineConfig
from oddsdesk.schemas import BetRecord, BettingStats
from oddsdesk.services.bet_slip import BetSelection, BetSlipManager
from oddsdesk.services.betting import (
    AsyncBettingRecords,
    AsyncFunds,
    BettingRecordsClient,
    FundsClient,
)
from oddsdesk.services.market_fetch import MarketFetchCoordinator
from oddsdesk.services.notifications import NotificationCenter
from oddsdesk.services.odds import OddsExecutor, OddsServiceClient, make_odds_executor
from oddsdesk.services.settlement_watcher import SettlementWatcher

logger = logging.getLogger(__name__)


class BettingSession:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        odds_executor: Optional[OddsExecutor] = None,
        records: Optional[AsyncBettingRecords] = None,
        funds: Optional[AsyncFunds] = None,
        navigator: Optional[Callable[[str], None]] = None,
    ):
        self.config = config or EngineConfig.from_env()
        if odds_executor is None:
            odds_executor = make_odds_executor(OddsServiceClient(self.config))
        self.records = records or AsyncBettingRecords(BettingRecordsClient(self.config))
        self.funds = funds or AsyncFunds(FundsClient(self.config))

        self.notifications = NotificationCenter()
        self.market = MarketFetchCoordinator(odds_executor, self.config, navigator=navigator)
        self.slip = BetSlipManager(self.config)
        self.watcher = SettlementWatcher(self.records, self.config)

        self.slip.on_new_bet(self._on_new_bet)
        self.watcher.on_settlement(self._on_settlement)
        self.watcher.on_listing(self.slip.load_history)

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _on_new_bet(self, record: BetRecord, selection: BetSelection) -> None:
        self.notifications.notify_new_bet(record.id, {
            "match_id": selection.match_id,
            "teams": selection.teams,
            "outcome": selection.outcome,
            "odds": selection.odds_raw,
            "stake": record.stake,
            "potential_win": record.potential_win,
        })

    def _on_settlement(self, record: BetRecord) -> None:
        self.notifications.notify_settled(record.id, {
            "match_id": record.match_id,
            "teams": record.match_teams,
            "outcome": record.outcome,
            "status": record.status,
            "stake": record.stake,
            "actual_profit": record.actual_profit,
        })

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> Dict:
        """
        Seed the settlement snapshot, and through it the slip's duplicate
        index, then load the first odds page.

        A failed seed is not fatal: the next scheduled poll retries it and
        seeds the duplicate index at the same time.
        """
        watcher = await self.watcher.initialize()
        self.market.refresh()
        return {"watcher": watcher}

    async def close(self) -> None:
        await self.market.aclose()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def confirm_slip(self):
        return await self.slip.confirm(self.funds, self.records)

    async def stats(self) -> BettingStats:
        return await self.records.stats()
