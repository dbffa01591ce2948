"""
Background reconciliation of bet records: detect pending → won/lost once.

Design:
    - Runs as an APScheduler interval job on the event loop (default: every
      30 seconds), plus an on-demand ``trigger_check()`` for "match result
      updated" signals.
    - Keeps an in-memory snapshot ``id → (status, settled_at, updated_at)``
      and diffs each poll against it through the pure
      :func:`classify_transition`.
    - Nothing is reported before the first snapshot is seeded, so bets that
      were already settled when the session began never fire.
    - A record is terminal once it has been seen settled at seeding time or
      reported once; terminal records are re-snapshotted but never
      re-classified.  That is what makes a settlement fire exactly once even
      though the "recently updated" clause would keep matching for two
      minutes.
    - Poll failures are logged and swallowed; the next interval retries.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set

from oddsdesk.core.engine_config import EngineConfig
from oddsdesk.schemas import SETTLED_STATUSES, BetRecord
from oddsdesk.services.betting import AsyncBettingRecords

logger = logging.getLogger(__name__)


class Transition:
    NONE = "none"
    SETTLED = "settled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SnapshotEntry:
    """What the watcher remembers about one bet record between polls."""

    status: str
    settled_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: BetRecord) -> "SnapshotEntry":
        return cls(
            status=record.status,
            settled_at=record.settled_at,
            updated_at=record.updated_at,
        )

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES


# ---------------------------------------------------------------------------
# Transition heuristic
# ---------------------------------------------------------------------------

def classify_transition(
    prev: Optional[SnapshotEntry],
    curr: BetRecord,
    now: datetime,
    recent_window: timedelta = timedelta(minutes=2),
) -> str:
    """
    Decide whether ``curr`` is a newly settled bet relative to ``prev``.

    A record not in the snapshot yet is only being tracked: ``NONE``.
    Otherwise it is ``SETTLED`` if any of these holds:

      1. the previous status was not won/lost and the current one is;
      2. a settlement timestamp appears for the first time;
      3. the current status is won/lost and ``updated_at`` falls within
         ``recent_window`` of ``now``.

    Clause 3 also matches a bet that was already settled and merely had
    another field touched; callers must treat reported records as terminal.
    """
    if prev is None:
        return Transition.NONE

    settled_now = curr.status in SETTLED_STATUSES
    if not prev.is_settled and settled_now:
        return Transition.SETTLED
    if prev.settled_at is None and curr.settled_at is not None:
        return Transition.SETTLED
    if settled_now and curr.updated_at is not None:
        if timedelta(0) <= now - curr.updated_at <= recent_window:
            return Transition.SETTLED
    return Transition.NONE


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------

class SettlementWatcher:
    """
    Polls the bet-record listing and reports settlements exactly once.

    Usage::

        watcher = SettlementWatcher(AsyncBettingRecords(client), config)
        watcher.on_settlement(my_callback)
        await watcher.initialize()
        await watcher.poll()          # call from APScheduler
    """

    def __init__(
        self,
        records: AsyncBettingRecords,
        config: Optional[EngineConfig] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config or EngineConfig()
        self._records = records
        self._clock = clock
        self._snapshot: Dict[int, SnapshotEntry] = {}
        self._terminal: Set[int] = set()
        self._callbacks: List[Callable[[BetRecord], None]] = []
        self._listing_callbacks: List[Callable[[List[BetRecord]], None]] = []
        self._initialized = False
        self._last_poll: Optional[datetime] = None
        self._settlements_reported = 0
        # Serialises the scheduled poll and manual triggers.
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Callback registration
    # ------------------------------------------------------------------

    def on_settlement(self, callback: Callable[[BetRecord], None]) -> None:
        """Register a callback fired once per newly settled bet record."""
        self._callbacks.append(callback)

    def on_listing(self, callback: Callable[[List[BetRecord]], None]) -> None:
        """Register a callback fired with every bet-record listing fetched."""
        self._listing_callbacks.append(callback)

    def _publish_listing(self, records: List[BetRecord]) -> None:
        for cb in self._listing_callbacks:
            try:
                cb(records)
            except Exception as exc:
                logger.error("Listing callback error: %s", exc)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def recent_window(self) -> timedelta:
        return timedelta(seconds=self.config.settlement_recent_window_s)

    async def initialize(self) -> Dict:
        """Seed the snapshot.  Idempotent; fires no events."""
        async with self._lock:
            if self._initialized:
                return {"status": "ok", "tracked": len(self._snapshot), "seeded": 0}
            return await self._seed()

    async def _seed(self) -> Dict:
        try:
            page = await self._records.list(1, self.config.settlement_history_size)
        except Exception as exc:
            logger.error("Settlement watcher initialisation failed: %s", exc)
            return {"status": "error", "error": str(exc)}

        self._publish_listing(page.records)
        for rec in page.records:
            self._snapshot[rec.id] = SnapshotEntry.from_record(rec)
            if rec.is_settled:
                self._terminal.add(rec.id)
        self._initialized = True
        self._last_poll = self._clock()
        logger.info(
            "Settlement watcher initialised: %d records tracked (%d already settled)",
            len(self._snapshot), len(self._terminal),
        )
        return {
            "status": "initialized",
            "tracked": len(self._snapshot),
            "seeded": len(page.records),
            "timestamp": self._last_poll.isoformat(),
        }

    async def poll(self) -> Dict:
        """
        Fetch recent records, report new settlements, refresh the snapshot.

        Before initialisation this seeds instead.  Returns a summary dict
        for logging / the status endpoint.
        """
        async with self._lock:
            if not self._initialized:
                return await self._seed()

            try:
                page = await self._records.list(1, self.config.settlement_history_size)
            except Exception as exc:
                logger.error("Settlement poll failed: %s", exc)
                return {"status": "error", "error": str(exc)}

            self._publish_listing(page.records)
            now = self._clock()
            window = self.recent_window
            settled: List[BetRecord] = []
            newly_tracked = 0

            for rec in page.records:
                prev = self._snapshot.get(rec.id)
                if prev is None:
                    newly_tracked += 1
                    if rec.is_settled:
                        self._terminal.add(rec.id)
                elif rec.id not in self._terminal:
                    if classify_transition(prev, rec, now, window) == Transition.SETTLED:
                        self._terminal.add(rec.id)
                        settled.append(rec)
                self._snapshot[rec.id] = SnapshotEntry.from_record(rec)

            for rec in settled:
                logger.info(
                    "Bet %d settled: %s (%s)",
                    rec.id, rec.status, rec.match_teams or rec.match_id,
                )
                for cb in self._callbacks:
                    try:
                        cb(rec)
                    except Exception as exc:
                        logger.error("Settlement callback error: %s", exc)

            self._settlements_reported += len(settled)
            self._last_poll = now

            result = {
                "status": "ok",
                "records_checked": len(page.records),
                "tracked": len(self._snapshot),
                "newly_tracked": newly_tracked,
                "settlements_detected": len(settled),
                "settled_ids": [r.id for r in settled],
                "timestamp": now.isoformat(),
            }
            logger.info(
                "Settlement poll: %d records, %d new, %d settled",
                len(page.records), newly_tracked, len(settled),
            )
            return result

    async def trigger_check(self) -> Dict:
        """Out-of-cycle poll for a "match result updated" signal."""
        logger.info("Manual settlement check requested")
        return await self.poll()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[int, SnapshotEntry]:
        return dict(self._snapshot)

    def get_status(self) -> Dict:
        return {
            "initialized": self._initialized,
            "tracked": len(self._snapshot),
            "settled": len(self._terminal),
            "settlements_reported": self._settlements_reported,
            "last_poll": self._last_poll.isoformat() if self._last_poll else None,
        }
