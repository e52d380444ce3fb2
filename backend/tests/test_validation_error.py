from fastapi.testclient import TestClient

from marketplace.main import app
from marketplace.api.dependencies import get_current_customer
from marketplace.schemas.actor import Actor, Role


def override_customer():
    return Actor(id=1, role=Role.CUSTOMER)


def test_booking_missing_service_type():
    app.dependency_overrides[get_current_customer] = override_customer
    client = TestClient(app)
    response = client.post("/api/v1/bookings", json={"asap": True})
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["message"] == "Validation error"
    assert "service_type" in detail["field_errors"]
    app.dependency_overrides.clear()


def test_schedule_required_unless_asap():
    app.dependency_overrides[get_current_customer] = override_customer
    client = TestClient(app)
    response = client.post("/api/v1/bookings", json={"service_type": "plumbing"})
    assert response.status_code == 422
    assert response.json()["detail"]["field_errors"]
    app.dependency_overrides.clear()
