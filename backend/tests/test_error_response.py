import logging
import pytest
from fastapi import HTTPException

from marketplace.utils.errors import AlreadyResolved, InvalidEta, error_response


def test_error_response_logs(caplog):
    caplog.set_level(logging.ERROR, logger="marketplace.utils.errors")
    with pytest.raises(HTTPException):
        raise error_response("Invalid", {"field": "bad"})
    assert any(
        "Invalid" in r.getMessage() and "'field': 'bad'" in r.getMessage()
        for r in caplog.records
    )


def test_domain_errors_carry_code_and_refresh_hint():
    exc = AlreadyResolved("Booking 1 already has an accepted bid", {"booking_id": "already_resolved"})
    http = exc.to_http()
    assert http.status_code == 409
    assert http.detail == {
        "message": "Booking 1 already has an accepted bid",
        "field_errors": {"booking_id": "already_resolved"},
        "code": "already_resolved",
        "retryable": False,
        "refresh": True,
    }

    http = InvalidEta("ETA out of range", {"eta_minutes": "out_of_range"}).to_http()
    assert http.status_code == 422
    assert http.detail["refresh"] is False
