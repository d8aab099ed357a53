import pytest
from conftest import DAY, add_booking, make_token
from fastapi.testclient import TestClient

from app.main import app, get_booking_engine
from app.security import CRON_SECRET


def _auth(sub: str = "user-1", role: str = "guest") -> dict:
    return {"Authorization": f"Bearer {make_token(sub, role)}"}


@pytest.fixture
def client(booking_engine):
    app.dependency_overrides[get_booking_engine] = lambda: booking_engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _slot(**overrides) -> dict:
    body = {
        "vehicle_type": "bike",
        "vehicle_id": "v-1",
        "start_date": DAY.isoformat(),
        "start_time": "14:00",
        "duration_hours": 3,
        "payment_ref": "pay_abc",
    }
    body.update(overrides)
    return body


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requires_a_token(client):
    assert client.post("/bookings", json=_slot()).status_code == 401


def test_create_booking_returns_confirmed(client):
    r = client.post("/bookings", json=_slot(start_time="9:30"), headers=_auth())
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["booking_id"] == "RH300110-001"
    assert body["status"] == "confirmed"
    assert body["start_time"] == "09:30"
    assert body["user_id"] == "user-1"
    assert (body["total_amount"], body["advance_payment"], body["remaining_amount"]) == (300, 90, 210)
    assert body["refund"]["status"] == "not_applicable"
    assert body["confirmation_timestamp"].endswith("+05:30")


def test_check_availability_reports_conflict(client, engine):
    add_booking(engine, start_time="10:00", duration_hours=2)

    ok = client.post("/bookings/check-availability", json=_slot(start_time="13:00", duration_hours=1), headers=_auth())
    assert ok.status_code == 200
    assert ok.json()["available"] is True

    r = client.post("/bookings/check-availability", json=_slot(start_time="12:30", duration_hours=1), headers=_auth())
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "slot_conflict"
    assert body["conflict"] is True
    assert body["existing_booking"]["start_time"] == "10:00"
    assert "1-hour gap" in body["detail"]


def test_past_slot_is_bad_request(client):
    r = client.post("/bookings", json=_slot(start_time="07:00"), headers=_auth())
    assert r.status_code == 400
    assert r.json()["error"] == "past_booking"


def test_bad_time_format_is_bad_request(client):
    r = client.post("/bookings", json=_slot(start_time="2pm"), headers=_auth())
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


def test_customer_cancel_returns_refund(client):
    created = client.post("/bookings", json=_slot(), headers=_auth()).json()

    r = client.post(f"/bookings/{created['id']}/cancel", headers=_auth())
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["refund_amount"] == 90
    assert body["deduction"] == 0
    assert body["refund_status"] == "processing"
    assert body["booking"]["status"] == "cancelled"
    assert body["booking"]["refund"]["external_ref"] == "rfnd_1"

    again = client.post(f"/bookings/{created['id']}/cancel", headers=_auth())
    assert again.status_code == 409
    assert again.json()["current_status"] == "cancelled"


def test_other_customers_bookings_are_hidden(client):
    created = client.post("/bookings", json=_slot(), headers=_auth("user-1")).json()

    assert client.get(f"/bookings/{created['id']}", headers=_auth("user-2")).status_code == 404
    assert client.post(f"/bookings/{created['id']}/cancel", headers=_auth("user-2")).status_code == 404
    assert client.get("/bookings/user", headers=_auth("user-2")).json() == []
    assert [b["id"] for b in client.get("/bookings/user", headers=_auth("user-1")).json()] == [created["id"]]


def test_guest_cannot_use_admin_routes(client, engine):
    row = add_booking(engine, status="pending", confirmation_timestamp=None)

    assert client.get("/admin/bookings", headers=_auth()).status_code == 403
    assert client.post(f"/admin/bookings/{row.id}/confirm", headers=_auth()).status_code == 403


def test_admin_manual_flow(client, gateway):
    admin = _auth("admin-1", "admin")
    r = client.post("/admin/bookings", json=_slot(user_id="user-9"), headers=admin)
    assert r.status_code == 201, r.text
    created = r.json()
    assert created["status"] == "pending"

    pending = client.get("/admin/bookings", params={"status": "pending"}, headers=admin).json()
    assert [b["id"] for b in pending] == [created["id"]]

    rejected = client.post(f"/admin/bookings/{created['id']}/reject", json={"reason": "Maintenance"}, headers=admin)
    assert rejected.status_code == 200, rejected.text
    assert rejected.json()["refund"]["amount"] == 90
    assert gateway.calls == [("pay_abc", 90)]

    done = client.post(f"/admin/bookings/{created['id']}/refund-complete", headers=admin)
    assert done.status_code == 200
    assert done.json()["refund"]["status"] == "completed"


def test_admin_confirm_then_cancel(client, engine):
    admin = _auth("admin-1", "staff")
    row = add_booking(engine, status="pending", confirmation_timestamp=None, start_time="15:00")

    assert client.post(f"/admin/bookings/{row.id}/confirm", headers=admin).json()["status"] == "confirmed"
    r = client.post(f"/admin/bookings/{row.id}/cancel", json={"refund_details": {"upi": "x@bank"}}, headers=admin)
    assert r.status_code == 200
    assert r.json()["booking"]["refund"]["details"]["upi"] == "x@bank"


def test_completed_is_a_filterable_read_status(client, engine):
    admin = _auth("admin-1", "admin")
    ended = add_booking(engine, start_time="05:00", duration_hours=2)
    add_booking(engine, vehicle_id="v-2", start_time="10:00")

    completed = client.get("/admin/bookings", params={"status": "completed"}, headers=admin).json()
    assert [b["id"] for b in completed] == [ended.id]
    assert client.get(f"/admin/bookings/{ended.id}", headers=admin).json()["status"] == "completed"


def test_refund_details_for_rejected_booking(client, engine):
    row = add_booking(engine, status="rejected", refund_amount=300, refund_status="processing")

    r = client.post(f"/bookings/{row.id}/refund-details", json={"refund_details": {"upi": "me@bank"}}, headers=_auth())
    assert r.status_code == 200
    assert r.json()["refund"]["details"] == {"upi": "me@bank"}


def test_cron_trigger_requires_secret(client, engine, notifier):
    add_booking(engine, start_time="08:30")

    assert client.get("/admin/cron/reminders").status_code == 401
    assert client.get("/admin/cron/reminders", params={"secret": "nope"}).status_code == 401

    r = client.get("/admin/cron/reminders", params={"secret": CRON_SECRET})
    assert r.status_code == 200
    assert r.json() == {"success": True, "checked": 1, "reminders_sent": 1, "errors": None}
    assert len(notifier.reminders) == 1


def test_manual_sweep_is_admin_only(client):
    assert client.post("/admin/cron/reminders/manual", headers=_auth()).status_code == 403
    r = client.post("/admin/cron/reminders/manual", headers=_auth("admin-1", "admin"))
    assert r.status_code == 200
    assert r.json()["checked"] == 0
