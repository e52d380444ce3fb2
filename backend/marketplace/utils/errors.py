"""Domain error taxonomy and the HTTP error envelope.

Every ledger and state-machine failure is a ``MarketplaceError`` carrying a
stable ``code``, a human-readable ``message`` and per-field ``field_errors``
so the command layer can render a specific message. ``RaceOutcome`` marks the
failures that legitimate concurrency produces (another accept won, the bid
ran out of time); callers refresh silently instead of alerting.
"""

from typing import Any, Dict, Optional
from fastapi import HTTPException, status
import logging

logger = logging.getLogger(__name__)


def error_response(
    message: str,
    field_errors: Dict[str, str],
    code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
    extra: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """Return an HTTPException with a consistent structure and log details."""
    logger.error("%s %s", message, field_errors)
    detail: Dict[str, Any] = {"message": message, "field_errors": field_errors}
    if extra:
        detail.update(extra)
    return HTTPException(status_code=code, detail=detail)


class MarketplaceError(Exception):
    code = "marketplace_error"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, field_errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.field_errors = dict(field_errors or {})

    @property
    def is_race_outcome(self) -> bool:
        return isinstance(self, RaceOutcome)

    def to_http(self) -> HTTPException:
        return error_response(
            self.message,
            self.field_errors,
            self.http_status,
            extra={
                "code": self.code,
                "retryable": False,
                "refresh": self.is_race_outcome,
            },
        )


class RaceOutcome(MarketplaceError):
    """Expected result of a lost race; not a programming error."""


class NotFound(MarketplaceError):
    code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND


class DuplicateBid(MarketplaceError):
    code = "duplicate_bid"
    http_status = status.HTTP_409_CONFLICT


class BookingClosed(MarketplaceError):
    code = "booking_closed"
    http_status = status.HTTP_409_CONFLICT


class InvalidAmount(MarketplaceError):
    code = "invalid_amount"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidEta(MarketplaceError):
    code = "invalid_eta"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidMaterials(MarketplaceError):
    code = "invalid_materials"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class AlreadyResolved(RaceOutcome):
    code = "already_resolved"
    http_status = status.HTTP_409_CONFLICT


class BidExpired(RaceOutcome):
    code = "bid_expired"
    http_status = status.HTTP_410_GONE


class NotAuthorized(MarketplaceError):
    code = "not_authorized"
    http_status = status.HTTP_403_FORBIDDEN


class IllegalTransition(MarketplaceError):
    code = "illegal_transition"
    http_status = status.HTTP_409_CONFLICT


class Terminal(MarketplaceError):
    code = "terminal"
    http_status = status.HTTP_409_CONFLICT


class PaymentFailed(MarketplaceError):
    code = "payment_failed"
    http_status = status.HTTP_502_BAD_GATEWAY


class Disconnected(MarketplaceError):
    code = "disconnected"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class InvalidRequest(MarketplaceError):
    """Malformed extra-parts or reschedule request."""

    code = "invalid_request"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class RequestPending(MarketplaceError):
    code = "request_pending"
    http_status = status.HTTP_409_CONFLICT


class PaymentBlocked(MarketplaceError):
    code = "payment_blocked"
    http_status = status.HTTP_409_CONFLICT
