"""
Market fetch coordination: one authoritative odds page per filter tuple.

The host UI changes filters in bursts (a league click resets the page, which
re-derives the URL, which ...).  The coordinator turns that stream into a
well-ordered sequence of odds requests:

    1. Debounce: filter changes inside an 80 ms window collapse into one
       request carrying the latest filters.
    2. Supersession: issuing a request cancels the previous one.  Every
       request carries a ``CancellationToken``; a cancelled request's result
       or error is dropped without touching state.  The coordinator also
       re-checks "is this still the current request" before applying
       anything, so an executor that ignores cancellation still cannot
       overwrite newer data.
    3. Market-switch guard: Next Matches ↔ Results switches are refused
       while a switch is in flight, for the market already shown, or within
       300 ms of the last accepted switch.
    4. Location sync: filter state is mirrored into a navigable location.
       The coordinator queues every location it produced itself and
       ignores the echo of each navigation exactly once, breaking the
       filter → navigate → location → filter cycle even when several
       changes are chained before the host reports any of them.

Existing matches are only replaced when a new page arrives.  The single
exception is an accepted market switch, which empties the table on purpose
so the old market's rows never appear under the new heading.

Everything runs on one event loop; no locks are needed, only the ordering
rules above.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, fields, replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit

from oddsdesk.core.engine_config import EngineConfig
from oddsdesk.exceptions import RequestCancelled
from oddsdesk.schemas import MatchRecord, OddsPage, OddsQuery
from oddsdesk.services.odds import OddsExecutor

logger = logging.getLogger(__name__)

NEXT_MATCHES = "next_matches"
RESULTS = "results"
MARKETS = (NEXT_MATCHES, RESULTS)

#: Market ↔ location path segment.
_MARKET_PATHS: Dict[str, str] = {NEXT_MATCHES: "next", RESULTS: "results"}
_PATH_MARKETS: Dict[str, str] = {v: k for k, v in _MARKET_PATHS.items()}
LOCATION_ROOT = "/matches"

#: Navigations a host may leave unechoed before the oldest is forgotten.
PENDING_ECHO_LIMIT = 32

#: FilterState field → location query parameter.
_LOCATION_PARAMS: Tuple[Tuple[str, str], ...] = (
    ("page", "page"),
    ("season", "season"),
    ("country", "country"),
    ("league", "league"),
    ("search_term", "search"),
    ("date_from", "from"),
    ("date_to", "to"),
)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FilterState:
    """Everything that determines which odds page is shown."""

    market: str = NEXT_MATCHES
    page: int = 1
    page_size: int = 20
    season: Optional[int] = None
    country: Optional[str] = None
    league: Optional[str] = None
    search_term: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    def to_query(self, today: date) -> OddsQuery:
        """
        Build the wire query.

        Without explicit dates, Next Matches is bounded below by today and
        Results is bounded above by today.
        """
        date_from = self.date_from
        date_to = self.date_to
        if date_from is None and date_to is None:
            if self.market == NEXT_MATCHES:
                date_from = today
            else:
                date_to = today
        search = (self.search_term or "").strip() or None
        return OddsQuery(
            page=self.page,
            size=self.page_size,
            season=self.season,
            country=self.country,
            league=self.league,
            home_team=search,
            date_from=date_from,
            date_to=date_to,
        )


FILTER_FIELDS = frozenset(f.name for f in fields(FilterState))


class CancellationToken:
    """Per-request cancellation flag.  Once cancelled, stays cancelled."""

    __slots__ = ("request_id", "_cancelled")

    def __init__(self, request_id: int):
        self.request_id = request_id
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "live"
        return f"<CancellationToken #{self.request_id} {state}>"


@dataclass
class FetchHandle:
    """A cancellable, awaitable odds request."""

    request_id: int
    filters: FilterState
    query: OddsQuery
    token: CancellationToken
    task: Optional["asyncio.Task[bool]"] = None

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def cancel(self) -> None:
        self.token.cancel()
        if self.task is not None and not self.task.done():
            self.task.cancel()

    async def wait(self) -> bool:
        """True if this request's page was applied to state."""
        if self.task is None:
            return False
        try:
            return await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if self.task.cancelled():
                return False
            raise


@dataclass(frozen=True)
class MarketView:
    """Read-only snapshot of coordinator state for the host UI."""

    filters: FilterState
    matches: Tuple[MatchRecord, ...]
    total_pages: int
    total_matches: int
    is_loading: bool
    is_switching: bool
    switching_to: Optional[str]
    last_error: Optional[str]
    location: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market": self.filters.market,
            "page": self.filters.page,
            "page_size": self.filters.page_size,
            "filters": {
                "season": self.filters.season,
                "country": self.filters.country,
                "league": self.filters.league,
                "search_term": self.filters.search_term,
                "date_from": self.filters.date_from.isoformat() if self.filters.date_from else None,
                "date_to": self.filters.date_to.isoformat() if self.filters.date_to else None,
            },
            "matches": [m.model_dump(mode="json") for m in self.matches],
            "total_pages": self.total_pages,
            "total_matches": self.total_matches,
            "is_loading": self.is_loading,
            "is_switching": self.is_switching,
            "switching_to": self.switching_to,
            "last_error": self.last_error,
            "location": self.location,
        }


# ---------------------------------------------------------------------------
# Location mapping (pure)
# ---------------------------------------------------------------------------

def location_for(filters: FilterState) -> str:
    """``FilterState`` → ``/matches/<market>?<params>`` with a stable order."""
    path = f"{LOCATION_ROOT}/{_MARKET_PATHS[filters.market]}"
    params: List[Tuple[str, str]] = []
    for attr, key in _LOCATION_PARAMS:
        value = getattr(filters, attr)
        if value is None or value == "":
            continue
        if attr == "page" and value == 1:
            continue
        if isinstance(value, date):
            value = value.isoformat()
        params.append((key, str(value)))
    return f"{path}?{urlencode(params)}" if params else path


def filters_from_location(location: str, base: FilterState) -> Optional[FilterState]:
    """
    Derive filters from a location.  ``page_size`` is kept from ``base``.

    Returns None for a location outside ``/matches/...`` or with an unknown
    market segment.  Malformed numeric or date parameters are ignored.
    """
    parts = urlsplit(location)
    segments = [s for s in parts.path.split("/") if s]
    if len(segments) != 2 or f"/{segments[0]}" != LOCATION_ROOT:
        return None
    market = _PATH_MARKETS.get(segments[1])
    if market is None:
        return None

    query = dict(parse_qsl(parts.query))
    values: Dict[str, Any] = {"market": market, "page_size": base.page_size}
    for attr, key in _LOCATION_PARAMS:
        raw = query.get(key)
        if raw is None or raw == "":
            continue
        try:
            if attr in ("page", "season"):
                values[attr] = int(raw)
            elif attr in ("date_from", "date_to"):
                values[attr] = date.fromisoformat(raw)
            else:
                values[attr] = raw
        except ValueError:
            logger.debug("Ignoring malformed location param %s=%r", key, raw)
    if values.get("page", 1) < 1:
        values["page"] = 1
    return FilterState(**values)


def normalise_location(location: str) -> str:
    """Canonical form of a location, so parameter order never matters."""
    derived = filters_from_location(location, FilterState())
    return location if derived is None else location_for(derived)


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class MarketFetchCoordinator:
    """
    Owns the current odds page and the requests that produce it.

    Usage::

        coordinator = MarketFetchCoordinator(make_odds_executor(client))
        coordinator.update_filters(league="LaLiga")   # debounced
        coordinator.switch_market(RESULTS)            # guarded
        await coordinator.wait_until_idle()
        view = coordinator.view()
    """

    def __init__(
        self,
        executor: OddsExecutor,
        config: Optional[EngineConfig] = None,
        *,
        navigator: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = _utc_today,
    ):
        self.config = config or EngineConfig()
        self._executor = executor
        self._navigator = navigator
        self._clock = clock
        self._today = today

        self._filters = FilterState(page_size=self.config.page_size)
        self._matches: Tuple[MatchRecord, ...] = ()
        self._total_pages = 0
        self._total_matches = 0
        self._loading = False
        self._switching = False
        self._switching_to: Optional[str] = None
        self._last_error: Optional[str] = None

        self._request_seq = 0
        self._current: Optional[FetchHandle] = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._last_switch_at: Optional[float] = None

        self._location: Optional[str] = None
        # self-produced paths whose echo has not arrived yet, oldest first
        self._pending_echoes: Deque[str] = deque(maxlen=PENDING_ECHO_LIMIT)

        self._listeners: List[Callable[[MarketView], None]] = []

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def filters(self) -> FilterState:
        return self._filters

    @property
    def matches(self) -> Tuple[MatchRecord, ...]:
        return self._matches

    @property
    def current_request(self) -> Optional[FetchHandle]:
        return self._current

    def view(self) -> MarketView:
        return MarketView(
            filters=self._filters,
            matches=self._matches,
            total_pages=self._total_pages,
            total_matches=self._total_matches,
            is_loading=self._loading,
            is_switching=self._switching,
            switching_to=self._switching_to,
            last_error=self._last_error,
            location=self._location,
        )

    def match(self, match_id: int) -> Optional[MatchRecord]:
        for m in self._matches:
            if m.id == match_id:
                return m
        return None

    def subscribe(self, callback: Callable[[MarketView], None]) -> None:
        """Register a callback fired after every state change."""
        self._listeners.append(callback)

    def _notify(self) -> None:
        view = self.view()
        for cb in self._listeners:
            try:
                cb(view)
            except Exception as exc:
                logger.error("Market view listener error: %s", exc)

    # ------------------------------------------------------------------
    # Filter changes
    # ------------------------------------------------------------------

    def update_filters(self, **changes: Any) -> bool:
        """
        Apply filter changes and schedule a debounced fetch.

        Any change other than ``page`` resets the page to 1.  The market is
        changed through :meth:`switch_market`, never here.

        Returns:
            False when the changes leave the filters as they were.
        """
        unknown = set(changes) - (FILTER_FIELDS - {"market"})
        if unknown:
            raise TypeError(f"Unknown filter(s): {sorted(unknown)}")
        if "page" in changes and (changes["page"] is None or changes["page"] < 1):
            raise ValueError("page must be >= 1")

        updated = replace(self._filters, **changes)
        non_page_changed = any(
            getattr(updated, name) != getattr(self._filters, name)
            for name in changes
            if name != "page"
        )
        if non_page_changed:
            updated = replace(updated, page=1)
        if updated == self._filters:
            return False

        self._filters = updated
        self._sync_location()
        self.schedule_fetch()
        return True

    def set_page(self, page: int) -> bool:
        return self.update_filters(page=page)

    def refresh(self) -> None:
        """User-triggered retry of the current filters."""
        self.schedule_fetch()

    # ------------------------------------------------------------------
    # Market switching
    # ------------------------------------------------------------------

    def switch_market(self, market: str) -> bool:
        """
        Switch between Next Matches and Results.

        Returns:
            True if the switch was accepted.
        """
        if market not in MARKETS:
            raise ValueError(f"Unknown market {market!r}")

        now = self._clock()
        if self._switching:
            logger.warning("Market switch to %s ignored: switch already in progress", market)
            return False
        if market == self._filters.market:
            logger.debug("Market switch to %s ignored: already current", market)
            return False
        if (
            self._last_switch_at is not None
            and now - self._last_switch_at < self.config.market_switch_guard_s
        ):
            logger.warning(
                "Market switch to %s ignored: %.0f ms since last switch",
                market, (now - self._last_switch_at) * 1000,
            )
            return False

        self._last_switch_at = now
        self._enter_market(market)
        self._sync_location()
        self.schedule_fetch()
        logger.info("Market switched to %s", market)
        return True

    def _enter_market(self, market: str, filters: Optional[FilterState] = None) -> None:
        """Cancel outstanding work and show an intentionally empty table."""
        self._cancel_pending()
        if filters is None:
            filters = replace(
                self._filters,
                market=market,
                page=1,
                search_term=None,
                date_from=None,
                date_to=None,
                season=None if market == NEXT_MATCHES else self._filters.season,
            )
        self._filters = filters
        self._switching = True
        self._switching_to = market
        self._matches = ()
        self._total_pages = 0
        self._total_matches = 0
        self._notify()

    # ------------------------------------------------------------------
    # Location synchronisation
    # ------------------------------------------------------------------

    @property
    def location(self) -> Optional[str]:
        return self._location

    def _sync_location(self) -> None:
        path = location_for(self._filters)
        if path == self._location:
            return
        self._location = path
        if self._navigator is None:
            return
        self._pending_echoes.append(path)
        try:
            self._navigator(path)
        except Exception as exc:
            logger.error("Navigator failed for %s: %s", path, exc)

    def on_location_changed(self, location: str) -> bool:
        """
        React to a location change reported by the host.

        The echo of a navigation this coordinator just performed is consumed
        once and ignored.  Any other location is treated as authoritative
        and its filters are applied.

        Returns:
            True if filters changed and a fetch was scheduled.
        """
        canonical = normalise_location(location)
        if canonical in self._pending_echoes:
            # hosts may coalesce navigations; earlier unechoed paths are dropped too
            while self._pending_echoes.popleft() != canonical:
                pass
            logger.debug("Ignoring self-caused location change %s", canonical)
            return False

        derived = filters_from_location(canonical, self._filters)
        if derived is None:
            logger.debug("Location %s is not a matches view; ignoring", location)
            return False
        self._location = canonical
        if derived == self._filters:
            return False

        if derived.market != self._filters.market:
            self._enter_market(derived.market, filters=derived)
        else:
            self._filters = derived
        self.schedule_fetch()
        return True

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def schedule_fetch(self) -> "asyncio.Task[None]":
        """Debounced fetch: restart the window, fire with the latest filters."""
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
            logger.debug("Debounced odds request superseded")
        self._debounce_task = asyncio.get_running_loop().create_task(self._debounced())
        return self._debounce_task

    async def _debounced(self) -> None:
        await asyncio.sleep(self.config.fetch_debounce_s)
        self.request()

    def request(self, filters: Optional[FilterState] = None) -> FetchHandle:
        """
        Issue an odds request immediately, cancelling any previous one.

        ``filters`` defaults to the current filter state.
        """
        filters = filters or self._filters
        if self._current is not None and not self._current.cancelled:
            task = self._current.task
            if task is not None and not task.done():
                logger.debug("Cancelling superseded odds request #%d", self._current.request_id)
            self._current.cancel()

        self._request_seq += 1
        handle = FetchHandle(
            request_id=self._request_seq,
            filters=filters,
            query=filters.to_query(self._today()),
            token=CancellationToken(self._request_seq),
        )
        self._current = handle
        self._loading = True
        handle.task = asyncio.get_running_loop().create_task(self._run(handle))
        return handle

    def _is_current(self, handle: FetchHandle) -> bool:
        return not handle.token.cancelled and self._current is handle

    async def _run(self, handle: FetchHandle) -> bool:
        try:
            page: OddsPage = await self._executor(handle.query, handle.token)
        except asyncio.CancelledError:
            if handle.token.cancelled:
                logger.debug("Odds request #%d cancelled", handle.request_id)
                return False
            raise
        except RequestCancelled:
            logger.debug("Odds request #%d reported cancellation", handle.request_id)
            return False
        except Exception as exc:
            if not self._is_current(handle):
                logger.debug(
                    "Suppressing error from superseded odds request #%d: %s",
                    handle.request_id, exc,
                )
                return False
            self._loading = False
            self._switching = False
            self._switching_to = None
            self._last_error = str(exc) or exc.__class__.__name__
            logger.error("Odds request #%d failed: %s", handle.request_id, exc)
            self._notify()
            return False

        if not self._is_current(handle):
            logger.debug("Discarding stale odds page from request #%d", handle.request_id)
            return False

        self._matches = tuple(page.odds)
        self._total_pages = page.pages
        self._total_matches = page.total
        self._loading = False
        self._switching = False
        self._switching_to = None
        self._last_error = None
        logger.info(
            "Applied odds page %d/%d (%d matches, request #%d, %s)",
            page.page, page.pages, len(page.odds), handle.request_id, handle.filters.market,
        )
        self._notify()
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _cancel_pending(self) -> None:
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = None
        if self._current is not None:
            self._current.cancel()

    async def wait_until_idle(self) -> None:
        """Wait for the pending debounce window and the request it issues."""
        while True:
            debounce = self._debounce_task
            if debounce is not None and not debounce.done():
                try:
                    await asyncio.shield(debounce)
                except asyncio.CancelledError:
                    if not debounce.cancelled():
                        raise
                continue
            current = self._current
            if current is not None and current.task is not None and not current.task.done():
                await current.wait()
                continue
            return

    async def aclose(self) -> None:
        self._cancel_pending()
        self._loading = False
        self._listeners.clear()
