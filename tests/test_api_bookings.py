# Import testing tools
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from rental_engine import models

# Import JWT library and settings to create test tokens
from jose import jwt
from rental_engine.config import settings


# --- Helper function to create test JWT ---
def create_test_token(user_id: int = 1) -> str:
    """Creates a simple JWT for testing."""
    payload = {"sub": str(user_id)}
    token = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return f"Bearer {token}"


# --- Fixture to provide auth headers ---
@pytest.fixture
def auth_headers():
    """Provides authorization headers with a default test token (user_id=1)."""
    return {"Authorization": create_test_token()}


@pytest.fixture
def rates(seed_rate):
    seed_rate(1, "Day", fixed_price=50.0)
    seed_rate(2, "Day", fixed_price=40.0, discount_price=30.0)
    seed_rate(1, "Month", fixed_price=10.0)


def booking_payload(**overrides):
    data = {
        "package_id": 10,
        "room_ids": [1],
        "from_date": "2025-01-01",
        "to_date": "2025-01-11",
        "price_type": "Day",
    }
    data.update(overrides)
    return data


@pytest.fixture
def created_booking(client: TestClient, auth_headers, rates):
    response = client.post("/bookings/", json=booking_payload(), headers=auth_headers)
    assert response.status_code == 201
    return response.json()


# --- Test Cases ---

def test_quote(client: TestClient, rates):
    response = client.post("/bookings/quote", json=booking_payload(room_ids=[1, 2, 3]))

    assert response.status_code == 200
    data = response.json()
    assert data["number_of_days"] == 10
    assert data["rent_amount"] == 800.0
    assert data["booking_fee"] == 80.0
    assert [item["priced"] for item in data["line_items"]] == [True, True, False]


def test_create_booking_success(client: TestClient, auth_headers, rates, db_session: Session):
    response = client.post("/bookings/", json=booking_payload(), headers=auth_headers)

    # --- Assertions for the API Response ---
    assert response.status_code == 201
    data = response.json()
    assert data["user_id"] == 1  # User ID from the test token
    assert data["room_ids"] == [1]
    assert data["rent_amount"] == 500.0
    assert data["booking_fee"] == 50.0
    assert data["total_amount"] == 550.0
    assert data["status"] == "pending"
    assert data["payment_status"] == "pending"

    # The booking fee taken at checkout
    payment = db_session.query(models.Payment).filter(models.Payment.booking_id == data["id"]).one()
    assert payment.amount == 50.0
    assert payment.status == models.PaymentStatus.COMPLETED


def test_create_booking_invalid_dates(client: TestClient, auth_headers, rates):
    response = client.post(
        "/bookings/", json=booking_payload(to_date="2025-01-01"), headers=auth_headers
    )
    assert response.status_code == 400
    assert "end date must be after start date" in response.json()["detail"]


def test_create_booking_conflict(client: TestClient, auth_headers, created_booking):
    response = client.post(
        "/bookings/",
        json=booking_payload(room_ids=[2, 1], from_date="2025-01-10", to_date="2025-01-15"),
        headers={"Authorization": create_test_token(2)},
    )

    assert response.status_code == 409
    assert "already booked for these dates" in response.json()["detail"]


def test_create_booking_without_rates(client: TestClient, auth_headers, rates):
    response = client.post("/bookings/", json=booking_payload(price_type="Week"), headers=auth_headers)
    assert response.status_code == 422


def test_create_booking_no_auth(client: TestClient, rates):
    response = client.post("/bookings/", json=booking_payload())
    assert response.status_code in (401, 403)
    assert response.json() == {"detail": "Not authenticated"}


def test_create_booking_bad_token(client: TestClient, rates):
    response = client.post("/bookings/", json=booking_payload(), headers={"Authorization": "Bearer nonsense"})
    assert response.status_code == 401


def test_read_user_bookings(client: TestClient, auth_headers, rates):
    client.post("/bookings/", json=booking_payload(), headers=auth_headers)
    client.post("/bookings/", json=booking_payload(from_date="2025-02-01", to_date="2025-02-05"), headers=auth_headers)
    client.post(
        "/bookings/",
        json=booking_payload(from_date="2025-03-01", to_date="2025-03-05"),
        headers={"Authorization": create_test_token(2)},
    )

    response = client.get("/bookings/", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert isinstance(data, list)
    assert len(data) == 2
    assert [b["from_date"] for b in data] == ["2025-01-01", "2025-02-01"]


def test_other_users_booking_is_not_found(client: TestClient, created_booking):
    response = client.get(f"/bookings/{created_booking['id']}", headers={"Authorization": create_test_token(2)})
    assert response.status_code == 404


def test_extend_booking(client: TestClient, auth_headers, created_booking):
    response = client.post(
        f"/bookings/{created_booking['id']}/extend", json={"new_to_date": "2025-01-13"}, headers=auth_headers
    )

    assert response.status_code == 200
    data = response.json()
    assert data["to_date"] == "2025-01-13"
    assert data["rent_amount"] == 600.0
    assert data["total_amount"] == 650.0

    payments = client.get(f"/bookings/{created_booking['id']}/invoice", headers=auth_headers).json()["payments"]
    assert [(p["payment_type"], p["status"]) for p in payments] == [("booking", "completed"), ("extension", "pending")]


def test_extend_backwards_is_rejected(client: TestClient, auth_headers, created_booking):
    response = client.post(
        f"/bookings/{created_booking['id']}/extend", json={"new_to_date": "2025-01-05"}, headers=auth_headers
    )
    assert response.status_code == 400


def test_cancel_booking_with_refund(client: TestClient, auth_headers, created_booking):
    response = client.post(
        f"/bookings/{created_booking['id']}/cancel",
        json={"cancellation_reason": "Travel plans changed", "refund_amount": 50.0},
        headers=auth_headers,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    summary = client.get(f"/bookings/{created_booking['id']}/invoice", headers=auth_headers).json()["summary"]
    assert summary["total_paid"] == 0.0


def test_cancel_requires_reason(client: TestClient, auth_headers, created_booking):
    response = client.post(
        f"/bookings/{created_booking['id']}/cancel", json={"cancellation_reason": ""}, headers=auth_headers
    )
    assert response.status_code == 422


def test_status_transitions(client: TestClient, auth_headers, created_booking):
    url = f"/bookings/{created_booking['id']}/status"

    assert client.patch(url, json={"status": "completed"}, headers=auth_headers).status_code == 409
    assert client.patch(url, json={"status": "confirmed"}, headers=auth_headers).json()["status"] == "confirmed"
    assert client.patch(url, json={"status": "cancelled"}, headers=auth_headers).status_code == 409


def test_delete_requires_force_when_payments_exist(client: TestClient, auth_headers, created_booking):
    url = f"/bookings/{created_booking['id']}"

    assert client.delete(url, headers=auth_headers).status_code == 422
    assert client.delete(f"{url}?force=true", headers=auth_headers).status_code == 204
    assert client.get(url, headers=auth_headers).status_code == 404


def test_milestones_are_generated_on_first_read(client: TestClient, auth_headers, rates):
    booking = client.post(
        "/bookings/",
        json=booking_payload(price_type="Month", from_date="2025-01-01", to_date="2025-04-01"),
        headers=auth_headers,
    ).json()

    first = client.get(f"/bookings/{booking['id']}/milestones", headers=auth_headers)
    second = client.get(f"/bookings/{booking['id']}/milestones", headers=auth_headers)

    assert first.status_code == 200
    data = first.json()
    assert len(data) == 4
    assert data[0]["description"] == "Booking Fee"
    # Settled by the fee taken at checkout
    assert data[0]["payment_status"] == "paid"
    assert {m["payment_status"] for m in data[1:]} == {"pending"}
    assert [m["amount"] for m in data[1:]] == [300.0, 300.0, 300.0]
    assert [m["id"] for m in second.json()] == [m["id"] for m in data]


def test_payment_link_round_trip(client: TestClient, auth_headers, created_booking):
    milestones = client.get(f"/bookings/{created_booking['id']}/milestones", headers=auth_headers).json()
    installment = milestones[1]

    issued = client.post(f"/milestones/{installment['id']}/payment-link", json={}, headers=auth_headers)
    assert issued.status_code == 201
    link = issued.json()
    assert link["status"] == "active"
    assert link["url"].endswith(link["unique_id"])

    # Link lookup and redemption need no login
    assert client.get(f"/payment-links/{link['unique_id']}").json()["amount"] == installment["amount"]
    redeemed = client.post(
        f"/payment-links/{link['unique_id']}/redeem",
        json={"payment_method": "bank_transfer", "reference": "BANK-7"},
    )

    assert redeemed.status_code == 200
    result = redeemed.json()
    assert result["link"]["status"] == "completed"
    assert result["milestone"]["payment_status"] == "paid"
    assert result["payment"]["transaction_id"] == "BANK-7"

    again = client.post(f"/payment-links/{link['unique_id']}/redeem", json={"payment_method": "card"})
    assert again.status_code == 409


def test_unknown_payment_link(client: TestClient):
    assert client.get("/payment-links/PL-NOPE").status_code == 404


def test_revoke_payment_link_requires_owner(client: TestClient, auth_headers, created_booking):
    milestones = client.get(f"/bookings/{created_booking['id']}/milestones", headers=auth_headers).json()
    link = client.post(f"/milestones/{milestones[1]['id']}/payment-link", json={}, headers=auth_headers).json()
    url = f"/payment-links/{link['unique_id']}/revoke"

    assert client.post(url, headers={"Authorization": create_test_token(2)}).status_code == 404
    response = client.post(url, headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "revoked"


def test_payment_status_update(client: TestClient, auth_headers, created_booking):
    booking_id = created_booking["id"]
    milestones = client.get(f"/bookings/{booking_id}/milestones", headers=auth_headers).json()
    payment = client.post(
        f"/bookings/{booking_id}/payments",
        json={"amount": milestones[1]["amount"], "milestone_id": milestones[1]["id"]},
        headers=auth_headers,
    ).json()
    assert payment["status"] == "pending"

    response = client.patch(f"/payments/{payment['id']}/status", json={"status": "Paid"}, headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["payment"]["status"] == "completed"
    assert data["milestone"]["payment_status"] == "paid"
    assert data["booking"]["payment_status"] == "partially_paid"

    other_user = client.patch(
        f"/payments/{payment['id']}/status", json={"status": "Pending"}, headers={"Authorization": create_test_token(2)}
    )
    assert other_user.status_code == 404


def test_payment_failure(client: TestClient, auth_headers, created_booking):
    payment = client.post(
        f"/bookings/{created_booking['id']}/payments", json={"amount": 100.0}, headers=auth_headers
    ).json()

    response = client.post(f"/payments/{payment['id']}/failure", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["payment_status"] == "failed"


def test_payment_overview(client: TestClient, auth_headers, created_booking):
    response = client.get(f"/bookings/{created_booking['id']}/overview", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["total_price"] == 550.0
    assert data["total_paid"] == 50.0
    assert data["remaining_balance"] == 500.0
    # Nothing scheduled yet
    assert data["current_milestone"] is None
