"""
Betting-record and funds service integration.

Endpoints (all authenticated with a bearer token):

  POST /api/betting/records          create one bet record
  GET  /api/betting/records          page through the user's records
  GET  /api/betting/records/stats    aggregate win rate / profit
  GET  /api/auth/me                  current user, including funds
  POST /api/auth/funds/deduct        debit the user's balance

The clients are blocking ``requests`` clients.  ``AsyncBettingRecords`` and
``AsyncFunds`` run them in worker threads so the slip manager and the
settlement watcher can await them from the event loop.

HTTP failures are translated into the engine's error taxonomy:

  401        → AuthenticationError   (re-authenticate, never retried)
  422        → BetValidationError    (code "server_rejected")
  other 4xx,
  5xx, I/O   → ServiceError
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from oddsdesk.core.engine_config import EngineConfig
from oddsdesk.exceptions import AuthenticationError, BetValidationError, ServiceError
from oddsdesk.schemas import (
    BetRecord,
    BetRecordCreate,
    BetRecordPage,
    BettingStats,
    FundsBalance,
)

logger = logging.getLogger(__name__)

RECORDS_PATH = "/api/betting/records"
STATS_PATH = "/api/betting/records/stats"
ME_PATH = "/api/auth/me"
DEDUCT_PATH = "/api/auth/funds/deduct"


def _error_detail(response: Optional[requests.Response]) -> str:
    if response is None:
        return ""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or body)
    return str(body)


class _AuthenticatedClient:
    """Shared request plumbing: auth header, timeout, error translation."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or EngineConfig.from_env()
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        token = self.config.access_token
        if not token:
            raise AuthenticationError("No access token available - please sign in")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, what: str, **kwargs) -> Any:
        url = f"{self.config.api_base_url}{path}"
        headers = self._headers()
        try:
            response = self._session.request(
                method, url, headers=headers,
                timeout=self.config.request_timeout_s, **kwargs,
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            detail = _error_detail(e.response)
            if status == 401:
                logger.warning("%s rejected: credential missing or expired", what)
                raise AuthenticationError(
                    "Authentication failed - please sign in again"
                ) from e
            if status == 422:
                logger.warning("%s failed validation: %s", what, detail)
                raise BetValidationError(
                    "server_rejected", f"Validation error: {detail}", details=detail
                ) from e
            logger.error("%s failed (%s): %s", what, status, detail)
            if status is not None and status >= 500:
                raise ServiceError(
                    "Server error - please try again later", status_code=status
                ) from e
            raise ServiceError(f"{what} failed: {detail}", status_code=status) from e
        except requests.exceptions.RequestException as e:
            logger.error("%s network error: %s", what, e)
            raise ServiceError("Network error - check your connection") from e


class BettingRecordsClient(_AuthenticatedClient):
    """Client for the bet-record capability"""

    def create_record(self, record: BetRecordCreate) -> BetRecord:
        data = self._request(
            "POST", RECORDS_PATH, "Create bet record",
            json=record.model_dump(mode="json"),
        )
        created = BetRecord.model_validate(data)
        logger.info(
            "Bet record %d created: %s %s @ %s for %.2f",
            created.id, record.match_teams, record.selected_outcome,
            record.odds_value, record.bet_amount,
        )
        return created

    def list_records(
        self, page: int = 1, per_page: int = 10, status: Optional[str] = None
    ) -> BetRecordPage:
        params: Dict[str, Any] = {"page": page, "per_page": per_page}
        if status:
            params["status"] = status
        data = self._request("GET", RECORDS_PATH, "List bet records", params=params)
        return BetRecordPage.model_validate(data)

    def get_stats(self) -> BettingStats:
        data = self._request("GET", STATS_PATH, "Betting stats")
        return BettingStats.model_validate(data)


class FundsClient(_AuthenticatedClient):
    """Client for the funds capability"""

    def get_current(self) -> FundsBalance:
        return FundsBalance.model_validate(
            self._request("GET", ME_PATH, "Current user")
        )

    def deduct(self, amount: float) -> FundsBalance:
        data = self._request(
            "POST", DEDUCT_PATH, "Deduct funds", json={"amount": round(amount, 2)}
        )
        balance = FundsBalance.model_validate(data)
        logger.info("Funds deducted: %.2f (balance now %.2f)", amount, balance.funds)
        return balance


# ---------------------------------------------------------------------------
# Event-loop adapters
# ---------------------------------------------------------------------------

class AsyncBettingRecords:
    def __init__(self, client: BettingRecordsClient):
        self._client = client

    async def create(self, record: BetRecordCreate) -> BetRecord:
        return await asyncio.to_thread(self._client.create_record, record)

    async def list(
        self, page: int = 1, per_page: int = 10, status: Optional[str] = None
    ) -> BetRecordPage:
        return await asyncio.to_thread(self._client.list_records, page, per_page, status)

    async def stats(self) -> BettingStats:
        return await asyncio.to_thread(self._client.get_stats)


class AsyncFunds:
    def __init__(self, client: FundsClient):
        self._client = client

    async def get_current(self) -> FundsBalance:
        return await asyncio.to_thread(self._client.get_current)

    async def deduct(self, amount: float) -> FundsBalance:
        return await asyncio.to_thread(self._client.deduct, amount)
