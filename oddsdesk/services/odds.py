"""
Odds service integration.

The backend exposes paginated, filtered fixtures with 1X2 prices at
``GET /api/odds/``::

    ?page=1&size=20&season=2024&country=Spain&league=LaLiga
    &home_team=Sev&date_from=2025-03-01&date_to=2025-03-31

and answers ``{page, size, total, pages, odds: [...]}``.

``OddsServiceClient`` is a plain blocking ``requests`` client.  The fetch
coordinator runs on an event loop, so :func:`make_odds_executor` wraps the
client in a coroutine that runs the HTTP call in a worker thread and honours
the coordinator's cancellation token on either side of it.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import requests

from oddsdesk.core.engine_config import EngineConfig
from oddsdesk.exceptions import RequestCancelled, ServiceError
from oddsdesk.schemas import OddsPage, OddsQuery

logger = logging.getLogger(__name__)

ODDS_PATH = "/api/odds/"


class OddsServiceClient:
    """Client for the odds query endpoint"""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or EngineConfig.from_env()
        self._session = session or requests.Session()
        self._session.headers.update({"Cache-Control": "no-store, no-cache"})

    def fetch_page(self, query: OddsQuery) -> OddsPage:
        """
        Fetch one page of fixtures for ``query``.

        Raises:
            ServiceError: On any transport failure, non-2xx status, or a body
                that does not match the page contract.
        """
        url = f"{self.config.api_base_url}{ODDS_PATH}"
        params = query.to_params()

        try:
            response = self._session.get(
                url, params=params, timeout=self.config.request_timeout_s
            )
            response.raise_for_status()
            page = OddsPage.model_validate(response.json())
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            logger.error("Odds API error (%s): %s", status, e)
            raise ServiceError(f"Odds request failed: {e}", status_code=status) from e
        except requests.exceptions.RequestException as e:
            logger.error("Odds API unreachable: %s", e)
            raise ServiceError(f"Odds request failed: {e}") from e
        except ValueError as e:
            # JSON decode errors and pydantic ValidationError both land here
            logger.error("Odds API returned a malformed page: %s", e)
            raise ServiceError(f"Malformed odds page: {e}") from e

        logger.info(
            "Odds API: page %d/%d, %d matches (total %d) for %s",
            page.page, page.pages, len(page.odds), page.total, params,
        )
        return page


# Second argument is the coordinator's CancellationToken.
OddsExecutor = Callable[[OddsQuery, Any], Awaitable[OddsPage]]


def make_odds_executor(client: OddsServiceClient) -> OddsExecutor:
    """Adapt a blocking client to the coordinator's async executor contract."""

    async def execute(query: OddsQuery, token) -> OddsPage:
        if token.cancelled:
            raise RequestCancelled("cancelled before dispatch")
        page = await asyncio.to_thread(client.fetch_page, query)
        if token.cancelled:
            raise RequestCancelled("cancelled while in flight")
        return page

    return execute
