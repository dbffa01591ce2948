"""Error taxonomy for the odds and betting engine.

Cancelled     : superseded request; always swallowed by the coordinator.
Service       : network / transport failure or HTTP 5xx.  Never retried
                automatically; the next user action or poll retries.
Authentication: missing or rejected credential (HTTP 401).
Validation    : client-side slip checks or HTTP 422.
Partial batch : a multi-selection confirmation failed part-way through.
"""

from typing import Any, List, Optional


class OddsDeskError(Exception):
    pass


class RequestCancelled(OddsDeskError):
    """Raised inside an executor that noticed its token was cancelled."""


class ServiceError(OddsDeskError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(OddsDeskError):
    pass


class BetValidationError(OddsDeskError):
    """A slip that cannot be confirmed as it stands.

    ``code`` is one of ``empty_slip``, ``non_positive_stake``, ``unusable_odds``,
    ``insufficient_funds``, ``duplicate_bet``, ``confirmation_in_progress``
    or ``server_rejected``.
    """

    def __init__(self, code: str, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class PartialBatchError(OddsDeskError):
    """Some bet records were created before one failed.

    Funds were deducted once, up front, for the whole batch; the records in
    ``created`` stand and are not voided.
    """

    def __init__(self, created: List[Any], failed: Any, cause: BaseException):
        super().__init__(
            f"{len(created)} bet(s) recorded before failure: {cause}"
        )
        self.created = created
        self.failed = failed
        self.cause = cause
