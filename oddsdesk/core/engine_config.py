"""Engine configuration: every timing window and threshold in one place.

Nowhere else in the codebase should debounce windows, poll intervals or
service URLs be hard-coded.

:class:`EngineConfig` is a frozen dataclass.  The defaults describe the
production behaviour; :meth:`EngineConfig.from_env` overlays environment
variables (a ``.env`` file is honoured).  Override single values with
:func:`dataclasses.replace`::

    from dataclasses import replace
    from oddsdesk.core.engine_config import EngineConfig

    cfg = EngineConfig.from_env()
    fast_cfg = replace(cfg, fetch_debounce_ms=10)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Final, Optional

from dotenv import load_dotenv

#: Environment variable prefix for every setting below.
ENV_PREFIX: Final[str] = "ODDSDESK_"


@dataclass(frozen=True)
class EngineConfig:
    """Immutable configuration bundle for one betting session.

    Attributes:
        api_base_url: Root URL of the odds / betting / funds service.
        access_token: Bearer credential attached to authenticated calls.
            Obtaining it is the host's job; ``None`` means "signed out".
        request_timeout_s: Socket timeout handed to the HTTP library.  This
            is transport hygiene only; the fetch coordinator never expires
            a request on its own.
        page_size: Matches per odds page.
        fetch_debounce_ms: Filter changes closer together than this collapse
            into a single odds request carrying the latest filters.
        market_switch_guard_ms: Minimum spacing between two accepted
            market switches.
        settlement_poll_s: Interval between settlement polls.
        settlement_recent_window_s: A settled record whose ``updated_at``
            falls inside this window counts as freshly settled.
        settlement_history_size: Bet records fetched per poll.
        default_stake: Stake text a new slip selection starts with.
    """

    api_base_url: str = "http://localhost:5001"
    access_token: Optional[str] = None
    request_timeout_s: float = 30.0

    page_size: int = 20
    fetch_debounce_ms: int = 80
    market_switch_guard_ms: int = 300

    settlement_poll_s: int = 30
    settlement_recent_window_s: int = 120
    settlement_history_size: int = 100

    default_stake: str = "10"

    @property
    def fetch_debounce_s(self) -> float:
        return self.fetch_debounce_ms / 1000.0

    @property
    def market_switch_guard_s(self) -> float:
        return self.market_switch_guard_ms / 1000.0

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "EngineConfig":
        """Build a config from ``ODDSDESK_*`` environment variables."""
        if dotenv:
            load_dotenv()
        defaults = cls()

        def _get(name: str, fallback):
            raw = os.getenv(ENV_PREFIX + name)
            if raw is None or raw == "":
                return fallback
            return type(fallback)(raw) if fallback is not None else raw

        return cls(
            api_base_url=_get("API_BASE_URL", defaults.api_base_url).rstrip("/"),
            access_token=os.getenv(ENV_PREFIX + "ACCESS_TOKEN") or None,
            request_timeout_s=_get("REQUEST_TIMEOUT_S", defaults.request_timeout_s),
            page_size=_get("PAGE_SIZE", defaults.page_size),
            fetch_debounce_ms=_get("FETCH_DEBOUNCE_MS", defaults.fetch_debounce_ms),
            market_switch_guard_ms=_get(
                "MARKET_SWITCH_GUARD_MS", defaults.market_switch_guard_ms
            ),
            settlement_poll_s=_get("SETTLEMENT_POLL_S", defaults.settlement_poll_s),
            settlement_recent_window_s=_get(
                "SETTLEMENT_RECENT_WINDOW_S", defaults.settlement_recent_window_s
            ),
            settlement_history_size=_get(
                "SETTLEMENT_HISTORY_SIZE", defaults.settlement_history_size
            ),
            default_stake=_get("DEFAULT_STAKE", defaults.default_stake),
        )
