"""
Tests for classify_transition and SettlementWatcher.

The bet-record listing is an AsyncMock whose return value is swapped between
polls; the watcher clock is injected.

Run with: pytest tests/test_settlement_watcher.py -v
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from oddsdesk.core.engine_config import EngineConfig
from oddsdesk.exceptions import ServiceError
from oddsdesk.schemas import BetRecord, BetRecordPage
from oddsdesk.services.settlement_watcher import (
    SettlementWatcher,
    SnapshotEntry,
    Transition,
    classify_transition,
)

NOW = datetime(2025, 3, 2, 23, 0, tzinfo=timezone.utc)
LONG_AGO = NOW - timedelta(days=3)


def _rec(id, status="pending", settled_at=None, updated_at=None):
    return BetRecord(
        id=id, match_id=id * 10, outcome="home", stake=10,
        status=status, settled_at=settled_at, updated_at=updated_at,
    )


def _page(*records):
    return BetRecordPage(records=list(records), total=len(records), per_page=100, total_pages=1)


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


def _watcher(*initial):
    records = MagicMock()
    records.list = AsyncMock(return_value=_page(*initial))
    clock = Clock()
    watcher = SettlementWatcher(records, EngineConfig(), clock=clock)
    events = []
    watcher.on_settlement(lambda rec: events.append(rec.id))
    return watcher, records, clock, events


# ---------------------------------------------------------------------------
# classify_transition
# ---------------------------------------------------------------------------

class TestClassifyTransition:
    def test_unknown_record_is_only_tracked(self):
        assert classify_transition(None, _rec(1, "won", NOW, NOW), NOW) == Transition.NONE

    def test_pending_to_won(self):
        prev = SnapshotEntry("pending")
        assert classify_transition(prev, _rec(1, "won"), NOW) == Transition.SETTLED

    def test_pending_to_lost(self):
        prev = SnapshotEntry("pending")
        assert classify_transition(prev, _rec(1, "lost"), NOW) == Transition.SETTLED

    def test_settlement_timestamp_appears(self):
        prev = SnapshotEntry("pending")
        assert classify_transition(prev, _rec(1, "pending", settled_at=NOW), NOW) == Transition.SETTLED

    def test_recently_updated_settled_record(self):
        prev = SnapshotEntry("won", settled_at=LONG_AGO)
        curr = _rec(1, "won", settled_at=LONG_AGO, updated_at=NOW - timedelta(seconds=90))
        assert classify_transition(prev, curr, NOW) == Transition.SETTLED

    def test_stale_settled_record(self):
        prev = SnapshotEntry("won", settled_at=LONG_AGO)
        curr = _rec(1, "won", settled_at=LONG_AGO, updated_at=NOW - timedelta(minutes=5))
        assert classify_transition(prev, curr, NOW) == Transition.NONE

    def test_still_pending(self):
        prev = SnapshotEntry("pending")
        assert classify_transition(prev, _rec(1, "pending", updated_at=NOW), NOW) == Transition.NONE


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------

class TestSettlementWatcher:
    @pytest.mark.asyncio
    async def test_no_events_before_initialization(self):
        watcher, records, _, events = _watcher(
            _rec(1, "won", settled_at=NOW, updated_at=NOW),
            _rec(2, "pending"),
        )
        result = await watcher.poll()       # first poll seeds
        assert result["status"] == "initialized"
        assert watcher.is_initialized
        assert events == []

    @pytest.mark.asyncio
    async def test_pending_to_won_reported_exactly_once(self):
        watcher, records, clock, events = _watcher(_rec(1, "pending"), _rec(2, "pending"))
        await watcher.initialize()

        records.list.return_value = _page(
            _rec(1, "won", settled_at=NOW, updated_at=NOW), _rec(2, "pending"),
        )
        result = await watcher.poll()
        assert events == [1]
        assert result["settlements_detected"] == 1
        assert result["settled_ids"] == [1]

        for _ in range(5):
            clock.now += timedelta(seconds=30)
            await watcher.poll()
        assert events == [1]

    @pytest.mark.asyncio
    async def test_manual_trigger_polls_immediately(self):
        watcher, records, _, events = _watcher(_rec(1, "pending"))
        await watcher.initialize()
        records.list.return_value = _page(_rec(1, "lost", settled_at=NOW, updated_at=NOW))

        result = await watcher.trigger_check()
        assert result["status"] == "ok"
        assert events == [1]
        assert records.list.await_count == 2

    @pytest.mark.asyncio
    async def test_historically_settled_bet_touched_later_is_not_reported(self):
        watcher, records, _, events = _watcher(
            _rec(1, "won", settled_at=LONG_AGO, updated_at=LONG_AGO),
        )
        await watcher.initialize()

        # backend bulk-updates an unrelated field
        records.list.return_value = _page(
            _rec(1, "won", settled_at=LONG_AGO, updated_at=NOW),
        )
        await watcher.poll()
        assert events == []

    @pytest.mark.asyncio
    async def test_new_record_is_tracked_then_reported_on_settlement(self):
        watcher, records, clock, events = _watcher()
        await watcher.initialize()

        records.list.return_value = _page(_rec(5, "pending"))
        result = await watcher.poll()
        assert result["newly_tracked"] == 1
        assert events == []

        clock.now += timedelta(seconds=30)
        records.list.return_value = _page(_rec(5, "won", settled_at=clock.now, updated_at=clock.now))
        await watcher.poll()
        assert events == [5]

    @pytest.mark.asyncio
    async def test_record_first_seen_already_settled_is_not_reported(self):
        watcher, records, clock, events = _watcher()
        await watcher.initialize()

        records.list.return_value = _page(_rec(6, "won", settled_at=NOW, updated_at=NOW))
        await watcher.poll()
        clock.now += timedelta(seconds=30)
        await watcher.poll()
        assert events == []

    @pytest.mark.asyncio
    async def test_snapshot_refreshed_every_poll(self):
        watcher, records, _, _ = _watcher(_rec(1, "pending"))
        await watcher.initialize()
        records.list.return_value = _page(_rec(1, "pending", updated_at=NOW))
        await watcher.poll()
        assert watcher.snapshot()[1].updated_at == NOW

    @pytest.mark.asyncio
    async def test_poll_failure_is_swallowed(self):
        watcher, records, _, events = _watcher(_rec(1, "pending"))
        await watcher.initialize()
        records.list.side_effect = ServiceError("Network error - check your connection")

        result = await watcher.poll()
        assert result["status"] == "error"
        assert "Network error" in result["error"]

        records.list.side_effect = None
        records.list.return_value = _page(_rec(1, "won", settled_at=NOW))
        await watcher.poll()
        assert events == [1]

    @pytest.mark.asyncio
    async def test_failed_initialization_retried_on_next_poll(self):
        watcher, records, _, events = _watcher()
        records.list.side_effect = ServiceError("down")
        assert (await watcher.initialize())["status"] == "error"
        assert not watcher.is_initialized

        records.list.side_effect = None
        records.list.return_value = _page(_rec(1, "won", settled_at=NOW, updated_at=NOW))
        assert (await watcher.poll())["status"] == "initialized"
        assert events == []

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_others(self):
        watcher, records, _, events = _watcher(_rec(1, "pending"))

        def boom(rec):
            raise RuntimeError("sink down")

        watcher._callbacks.insert(0, boom)
        await watcher.initialize()
        records.list.return_value = _page(_rec(1, "won"))
        await watcher.poll()
        assert events == [1]

    @pytest.mark.asyncio
    async def test_listing_shared_with_subscribers(self):
        watcher, records, _, _ = _watcher(_rec(1, "pending"))
        listings = []
        watcher.on_listing(lambda recs: listings.append([r.id for r in recs]))

        records.list.side_effect = ServiceError("down")
        await watcher.initialize()
        assert listings == []

        records.list.side_effect = None
        await watcher.poll()                # seeds
        records.list.return_value = _page(_rec(1, "pending"), _rec(2, "pending"))
        await watcher.poll()
        assert listings == [[1], [1, 2]]
        assert records.list.await_count == 3

    @pytest.mark.asyncio
    async def test_status(self):
        watcher, records, _, _ = _watcher(_rec(1, "won"), _rec(2, "pending"))
        await watcher.initialize()
        status = watcher.get_status()
        assert status["initialized"]
        assert status["tracked"] == 2
        assert status["settled"] == 1
