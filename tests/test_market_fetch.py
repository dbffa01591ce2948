"""
Tests for MarketFetchCoordinator: debounce, supersession, market-switch
guard and location sync.

Executors are fakes gated by asyncio.Event; the switch guard uses an
injected clock.

Run with: pytest tests/test_market_fetch.py -v
"""

import asyncio
from datetime import date

import pytest

from oddsdesk.core.engine_config import EngineConfig
from oddsdesk.exceptions import RequestCancelled, ServiceError
from oddsdesk.schemas import MatchRecord, OddsPage
from oddsdesk.services.market_fetch import (
    NEXT_MATCHES,
    RESULTS,
    FilterState,
    MarketFetchCoordinator,
    filters_from_location,
    location_for,
)

CFG = EngineConfig()
TODAY = date(2025, 3, 1)


def _page(query, match_id=None, total=57, pages=3):
    mid = match_id if match_id is not None else query.page * 100
    match = MatchRecord.model_validate({
        "id": mid,
        "home_team": f"Home {mid}",
        "away_team": f"Away {mid}",
        "league": query.league,
        "odd_1": "+150", "odd_X": "3.10", "odd_2": "-200",
    })
    return OddsPage(page=query.page, size=query.size, total=total, pages=pages, odds=[match])


class FakeExecutor:
    """Records calls; optionally holds each one until released."""

    def __init__(self, hold=False, fail_with=None):
        self.calls = []
        self.hold = hold
        self.fail_with = fail_with
        self.gates = []

    async def __call__(self, query, token):
        self.calls.append((query, token))
        if self.hold:
            gate = asyncio.Event()
            self.gates.append(gate)
            await gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return _page(query)


class StubbornExecutor(FakeExecutor):
    """Ignores cancellation entirely and resolves only when released."""

    async def __call__(self, query, token):
        self.calls.append((query, token))
        gate = asyncio.Event()
        self.gates.append(gate)
        while not gate.is_set():
            try:
                await gate.wait()
            except asyncio.CancelledError:
                continue
        if self.fail_with is not None:
            raise self.fail_with
        return _page(query, match_id=len(self.calls))


class FakeClock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def _coordinator(executor, **kwargs):
    kwargs.setdefault("today", lambda: TODAY)
    return MarketFetchCoordinator(executor, CFG, **kwargs)


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Debounce
# ---------------------------------------------------------------------------

class TestDebounce:
    @pytest.mark.asyncio
    async def test_burst_within_window_makes_one_call_with_latest_filters(self):
        ex = FakeExecutor()
        coord = _coordinator(ex)

        coord.update_filters(league="LaLiga")
        await asyncio.sleep(0.05)
        coord.update_filters(league="Premier League")
        await coord.wait_until_idle()

        assert len(ex.calls) == 1
        assert ex.calls[0][0].league == "Premier League"
        assert coord.view().matches[0].league == "Premier League"

    @pytest.mark.asyncio
    async def test_changes_outside_window_make_two_calls(self):
        ex = FakeExecutor()
        coord = _coordinator(ex)

        coord.update_filters(league="LaLiga")
        await coord.wait_until_idle()
        coord.update_filters(league="Serie A")
        await coord.wait_until_idle()

        assert [c[0].league for c in ex.calls] == ["LaLiga", "Serie A"]

    @pytest.mark.asyncio
    async def test_unchanged_filters_do_not_fetch(self):
        ex = FakeExecutor()
        coord = _coordinator(ex)
        coord.update_filters(league="LaLiga")
        await coord.wait_until_idle()

        assert coord.update_filters(league="LaLiga") is False
        await coord.wait_until_idle()
        assert len(ex.calls) == 1

    @pytest.mark.asyncio
    async def test_market_is_not_a_plain_filter(self):
        coord = _coordinator(FakeExecutor())
        with pytest.raises(TypeError):
            coord.update_filters(market=RESULTS)


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

class TestPagination:
    @pytest.mark.asyncio
    async def test_page_change_keeps_filters(self):
        coord = _coordinator(FakeExecutor())
        coord.update_filters(league="LaLiga")
        coord.set_page(3)
        assert coord.filters.page == 3
        assert coord.filters.league == "LaLiga"
        await coord.wait_until_idle()

    @pytest.mark.asyncio
    async def test_other_filter_resets_page(self):
        coord = _coordinator(FakeExecutor())
        coord.set_page(3)
        coord.update_filters(country="Spain")
        assert coord.filters.page == 1

        coord.set_page(4)
        coord.update_filters(search_term="Sev", page=4)
        assert coord.filters.page == 1
        await coord.wait_until_idle()

    @pytest.mark.asyncio
    async def test_invalid_page(self):
        coord = _coordinator(FakeExecutor())
        with pytest.raises(ValueError):
            coord.set_page(0)

    @pytest.mark.asyncio
    async def test_server_totals_are_authoritative(self):
        coord = _coordinator(FakeExecutor())
        coord.refresh()
        await coord.wait_until_idle()
        view = coord.view()
        assert view.total_pages == 3
        assert view.total_matches == 57
        assert len(view.matches) == 1


# ---------------------------------------------------------------------------
# Supersession
# ---------------------------------------------------------------------------

class TestSupersession:
    @pytest.mark.asyncio
    async def test_new_request_cancels_previous_token(self):
        ex = FakeExecutor(hold=True)
        coord = _coordinator(ex)
        first = coord.request(FilterState(league="A"))
        await _settle()
        second = coord.request(FilterState(league="B"))
        await _settle()

        assert first.cancelled
        assert ex.calls[0][1].cancelled
        assert not second.cancelled
        assert await first.wait() is False

        ex.gates[1].set()
        assert await second.wait() is True
        assert coord.matches[0].league == "B"

    @pytest.mark.asyncio
    async def test_stale_result_resolving_late_is_ignored(self):
        ex = StubbornExecutor()
        coord = _coordinator(ex)
        first = coord.request(FilterState(league="old"))
        await _settle()
        second = coord.request(FilterState(league="new"))
        await _settle()

        ex.gates[1].set()
        assert await second.wait() is True
        assert coord.matches[0].id == 2

        # the superseded executor ignored cancellation and now resolves
        ex.gates[0].set()
        await _settle()
        assert await first.wait() is False
        assert coord.matches[0].id == 2
        assert coord.matches[0].league == "new"

    @pytest.mark.asyncio
    async def test_stale_result_resolving_early_is_ignored(self):
        ex = StubbornExecutor()
        coord = _coordinator(ex)
        first = coord.request(FilterState(league="old"))
        await _settle()
        second = coord.request(FilterState(league="new"))
        await _settle()

        ex.gates[0].set()
        assert await first.wait() is False
        assert coord.matches == ()
        assert coord.view().is_loading

        ex.gates[1].set()
        await second.wait()
        assert coord.matches[0].league == "new"

    @pytest.mark.asyncio
    async def test_cancellation_error_is_suppressed(self):
        coord = _coordinator(FakeExecutor(fail_with=RequestCancelled("gone")))
        handle = coord.request()
        assert await handle.wait() is False
        assert coord.view().last_error is None

    @pytest.mark.asyncio
    async def test_failure_keeps_prior_data(self):
        ex = FakeExecutor()
        coord = _coordinator(ex)
        await coord.request().wait()
        before = coord.matches

        ex.fail_with = ServiceError("Server error - please try again later", 503)
        await coord.request(FilterState(page=2)).wait()

        view = coord.view()
        assert view.matches == before
        assert view.last_error == "Server error - please try again later"
        assert not view.is_loading

    @pytest.mark.asyncio
    async def test_error_from_superseded_request_is_not_surfaced(self):
        ex = StubbornExecutor()
        coord = _coordinator(ex)
        coord.request(FilterState(league="old"))
        await _settle()
        coord.request(FilterState(league="new"))
        await _settle()

        ex.fail_with = ServiceError("late failure")
        ex.gates[0].set()
        await _settle()
        assert coord.view().last_error is None

        ex.fail_with = None
        ex.gates[1].set()
        await coord.wait_until_idle()
        assert coord.view().last_error is None


# ---------------------------------------------------------------------------
# Market switch
# ---------------------------------------------------------------------------

class TestMarketSwitch:
    @pytest.mark.asyncio
    async def test_guard_rules(self):
        clock = FakeClock()
        coord = _coordinator(FakeExecutor(), clock=clock)

        assert coord.switch_market(NEXT_MATCHES) is False      # same market
        assert coord.switch_market(RESULTS) is True
        assert coord.view().is_switching
        assert coord.view().switching_to == RESULTS

        clock.t += 1
        assert coord.switch_market(NEXT_MATCHES) is False      # switch in flight
        await coord.wait_until_idle()
        assert not coord.view().is_switching

        clock.t += 0.1
        assert coord.switch_market(NEXT_MATCHES) is True       # 1.1 s since last accepted
        await coord.wait_until_idle()

        clock.t += 0.2
        assert coord.switch_market(RESULTS) is False           # 200 ms: guarded
        clock.t += 0.15
        assert coord.switch_market(RESULTS) is True            # 350 ms
        await coord.wait_until_idle()

    @pytest.mark.asyncio
    async def test_rejected_switch_does_not_restart_guard(self):
        clock = FakeClock()
        coord = _coordinator(FakeExecutor(), clock=clock)
        assert coord.switch_market(RESULTS)
        await coord.wait_until_idle()

        clock.t += 0.2
        assert not coord.switch_market(NEXT_MATCHES)
        clock.t += 0.15
        assert coord.switch_market(NEXT_MATCHES)
        await coord.wait_until_idle()

    @pytest.mark.asyncio
    async def test_switch_clears_table_immediately(self):
        ex = FakeExecutor()
        coord = _coordinator(ex)
        coord.refresh()
        await coord.wait_until_idle()
        assert coord.matches

        coord.switch_market(RESULTS)
        assert coord.matches == ()
        assert coord.view().total_pages == 0
        await coord.wait_until_idle()
        assert coord.matches

    @pytest.mark.asyncio
    async def test_switch_resets_page_and_date_windows(self):
        ex = FakeExecutor()
        coord = _coordinator(ex)
        coord.update_filters(season=2023)
        await coord.wait_until_idle()
        assert ex.calls[-1][0].date_from == TODAY
        assert ex.calls[-1][0].date_to is None

        coord.set_page(2)
        await coord.wait_until_idle()
        coord.switch_market(RESULTS)
        await coord.wait_until_idle()
        q = ex.calls[-1][0]
        assert q.page == 1
        assert q.date_to == TODAY
        assert q.date_from is None
        assert q.season == 2023

    @pytest.mark.asyncio
    async def test_switch_to_next_matches_clears_season(self):
        clock = FakeClock()
        coord = _coordinator(FakeExecutor(), clock=clock)
        coord.switch_market(RESULTS)
        await coord.wait_until_idle()
        coord.update_filters(season=2022)
        await coord.wait_until_idle()

        clock.t += 1
        coord.switch_market(NEXT_MATCHES)
        assert coord.filters.season is None
        await coord.wait_until_idle()

    @pytest.mark.asyncio
    async def test_failed_switch_closes_switching_state(self):
        ex = FakeExecutor(fail_with=ServiceError("down"))
        coord = _coordinator(ex)
        coord.switch_market(RESULTS)
        await coord.wait_until_idle()
        view = coord.view()
        assert not view.is_switching
        assert view.switching_to is None
        assert view.last_error == "down"

    @pytest.mark.asyncio
    async def test_switch_cancels_in_flight_request(self):
        ex = FakeExecutor(hold=True)
        coord = _coordinator(ex)
        old = coord.request()
        await _settle()
        coord.switch_market(RESULTS)
        assert old.cancelled
        while len(ex.gates) < 2:
            await asyncio.sleep(0.01)
        ex.gates[-1].set()
        await coord.wait_until_idle()
        assert coord.filters.market == RESULTS

    @pytest.mark.asyncio
    async def test_unknown_market(self):
        coord = _coordinator(FakeExecutor())
        with pytest.raises(ValueError):
            coord.switch_market("live")


# ---------------------------------------------------------------------------
# Location sync
# ---------------------------------------------------------------------------

class TestLocationSync:
    def test_location_round_trip(self):
        f = FilterState(market=RESULTS, page=2, season=2023, league="LaLiga", search_term="Sev")
        loc = location_for(f)
        assert loc == "/matches/results?page=2&season=2023&league=LaLiga&search=Sev"
        assert filters_from_location(loc, FilterState()) == f

    def test_first_page_omitted(self):
        assert location_for(FilterState()) == "/matches/next"

    def test_foreign_location(self):
        assert filters_from_location("/account/settings", FilterState()) is None
        assert filters_from_location("/matches/live", FilterState()) is None

    def test_malformed_params_ignored(self):
        f = filters_from_location("/matches/next?page=abc&season=x&from=2025-13-45", FilterState())
        assert f == FilterState()

    @pytest.mark.asyncio
    async def test_self_caused_location_change_is_ignored_once(self):
        navs = []
        ex = FakeExecutor()
        coord = _coordinator(ex, navigator=navs.append)

        coord.update_filters(league="LaLiga", search_term="Sev")
        assert navs == ["/matches/next?league=LaLiga&search=Sev"]

        # host echoes the navigation back, parameters reordered
        assert coord.on_location_changed("/matches/next?search=Sev&league=LaLiga") is False
        await coord.wait_until_idle()
        assert len(ex.calls) == 1
        assert len(navs) == 1

    @pytest.mark.asyncio
    async def test_chained_changes_echoed_immediately(self):
        echoes = []
        ex = FakeExecutor()
        loop = asyncio.get_running_loop()

        def navigator(path):
            loop.call_soon(lambda: echoes.append((path, coord.on_location_changed(path))))

        coord = _coordinator(ex, navigator=navigator)
        coord.update_filters(country="Spain")
        coord.update_filters(league="LaLiga")
        await _settle()

        assert echoes == [
            ("/matches/next?country=Spain", False),
            ("/matches/next?country=Spain&league=LaLiga", False),
        ]
        assert coord.filters.league == "LaLiga"
        await coord.wait_until_idle()
        assert len(ex.calls) == 1

    @pytest.mark.asyncio
    async def test_chained_changes_echoed_after_debounce(self):
        echoes = []
        ex = FakeExecutor()
        loop = asyncio.get_running_loop()

        def navigator(path):
            loop.call_later(0.1, lambda: echoes.append(coord.on_location_changed(path)))

        coord = _coordinator(ex, navigator=navigator)
        coord.update_filters(country="Spain")
        coord.update_filters(league="LaLiga")
        await asyncio.sleep(0.15)
        await coord.wait_until_idle()

        assert echoes == [False, False]
        assert [(c[0].country, c[0].league) for c in ex.calls] == [("Spain", "LaLiga")]

    @pytest.mark.asyncio
    async def test_coalesced_echo_drops_older_pending_paths(self):
        navs = []
        ex = FakeExecutor()
        coord = _coordinator(ex, navigator=navs.append)
        coord.update_filters(country="Spain")
        coord.update_filters(league="LaLiga")

        # host only reports the latest navigation
        assert coord.on_location_changed(navs[-1]) is False
        # the skipped path is no longer treated as self-caused
        assert coord.on_location_changed(navs[0]) is True
        assert coord.filters.league is None
        await coord.wait_until_idle()

    @pytest.mark.asyncio
    async def test_external_location_is_authoritative(self):
        navs = []
        ex = FakeExecutor()
        coord = _coordinator(ex, navigator=navs.append)

        assert coord.on_location_changed("/matches/results?page=2&season=2023") is True
        assert coord.filters.market == RESULTS
        assert coord.filters.page == 2
        assert coord.filters.season == 2023
        assert coord.view().is_switching
        await coord.wait_until_idle()

        assert navs == []                  # no navigation back to the host
        assert ex.calls[-1][0].page == 2
        assert coord.on_location_changed("/matches/results?season=2023&page=2") is False
        await coord.wait_until_idle()
        assert len(ex.calls) == 1

    @pytest.mark.asyncio
    async def test_no_feedback_loop(self):
        """filter → navigate → location → filter must settle after one fetch."""
        coord = None
        ex = FakeExecutor()

        def navigator(path):
            loop.call_soon(coord.on_location_changed, path)

        loop = asyncio.get_running_loop()
        coord = _coordinator(ex, navigator=navigator)
        coord.update_filters(country="Spain")
        await _settle()
        coord.set_page(2)
        await _settle()
        await coord.wait_until_idle()

        assert len(ex.calls) == 1
        assert ex.calls[0][0].page == 2
        assert ex.calls[0][0].country == "Spain"


@pytest.mark.asyncio
async def test_listeners_receive_view():
    views = []
    coord = _coordinator(FakeExecutor())
    coord.subscribe(views.append)
    coord.refresh()
    await coord.wait_until_idle()
    assert views[-1].total_matches == 57
    await coord.aclose()
