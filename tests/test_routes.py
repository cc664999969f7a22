from datetime import timedelta

from models import AuditLog, db
from tests.conftest import BUILDER, EVENT_REF, slot
from utils.clock import utcnow

BUILDER_HEADERS = {"X-User-Id": BUILDER, "X-User-Roles": "BUILDER"}
ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-User-Roles": "ADMIN"}


def client_headers(user_id="client-2"):
    return {"X-User-Id": user_id, "X-User-Roles": "CLIENT"}


def iso(dt):
    return dt.isoformat() + "Z"


def create_session_type(client, **overrides):
    body = {
        "title": "Code review",
        "duration_minutes": 60,
        "price": 5000,
        "currency": "USD",
        "external_event_type_ref": "https://api.calendly.com/event_types/ET1",
        "scheduling_url": "https://calendly.com/builder-1/review",
    }
    body.update(overrides)
    return client.post("/session-types", json=body, headers=BUILDER_HEADERS)


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.get_json() == {"status": "ok"}
    assert res.headers["X-Content-Type-Options"] == "nosniff"


# ---------- session types ----------
def test_builder_manages_session_types(client):
    res = create_session_type(client)
    assert res.status_code == 201
    st = res.get_json()
    assert st["currency"] == "usd"
    assert st["version"] == 1

    res = client.patch(f"/session-types/{st['id']}", json={"version": 1, "price": 6000}, headers=BUILDER_HEADERS)
    assert res.status_code == 200
    assert res.get_json()["price"] == 6000
    assert res.get_json()["version"] == 2

    # second editor still holds version 1
    res = client.patch(f"/session-types/{st['id']}", json={"version": 1, "price": 7000}, headers=BUILDER_HEADERS)
    assert res.status_code == 409
    assert res.get_json()["code"] == "STALE_STATE"

    res = client.get(f"/builders/{BUILDER}/session-types")
    assert [row["id"] for row in res.get_json()] == [st["id"]]

    client.post(f"/session-types/{st['id']}/deactivate", headers=BUILDER_HEADERS)
    assert client.get(f"/builders/{BUILDER}/session-types").get_json() == []


def test_session_type_permissions(client):
    assert create_session_type(client, title="x").status_code == 201
    res = client.post("/session-types", json={"title": "x", "duration_minutes": 30}, headers=client_headers())
    assert res.status_code == 403
    res = client.post("/session-types", json={"title": "x", "duration_minutes": 30})
    assert res.status_code == 401

    other = {"X-User-Id": "builder-2", "X-User-Roles": "BUILDER"}
    res = client.patch("/session-types/1", json={"version": 1, "price": 1}, headers=other)
    assert res.status_code == 404


def test_session_type_validation(client):
    assert create_session_type(client, price=-5).status_code == 400
    assert create_session_type(client, currency="dollars").status_code == 400
    assert create_session_type(client, duration_minutes="long").status_code == 400


def test_availability_window_is_limited(client, scheduling):
    st = create_session_type(client).get_json()
    start = utcnow() + timedelta(days=1)

    res = client.get(f"/session-types/{st['id']}/availability",
                     query_string={"start": iso(start), "end": iso(start + timedelta(days=8))})
    assert res.status_code == 400

    res = client.get(f"/session-types/{st['id']}/availability",
                     query_string={"start": iso(start), "end": iso(start + timedelta(hours=2))})
    assert res.status_code == 200
    assert len(res.get_json()) == 1


# ---------- bookings ----------
def test_anonymous_booking_flow(client, coordinator, payments):
    st = create_session_type(client).get_json()

    res = client.post("/bookings/draft", json={"builder_id": BUILDER, "session_type_id": st["id"]})
    assert res.status_code == 201
    draft = res.get_json()
    assert draft["state"] == "SCHEDULING_IN_PROGRESS"

    start, end = slot()
    res = client.post("/bookings", json={
        "draft_token": draft["draft_token"],
        "start_time": iso(start),
        "end_time": iso(end),
        "external_event_ref": EVENT_REF,
        "email": "Ada@Example.com",
    })
    assert res.status_code == 201
    body = res.get_json()
    assert body["next_action"] == "await_confirmation"
    assert body["checkout_url"] is None
    booking_id = body["booking"]["id"]
    token_header = {"X-Booking-Token": body["booking_token"]}

    assert client.get(f"/bookings/{booking_id}").status_code == 404
    res = client.get(f"/bookings/{booking_id}", headers=token_header)
    assert res.status_code == 200
    assert res.get_json()["state"] == "SCHEDULED_PENDING_CONFIRMATION"

    coordinator.confirm_external_scheduling(booking_id, EVENT_REF)
    res = client.post(f"/bookings/{booking_id}/pay", headers=token_header)
    assert res.status_code == 200
    assert res.get_json()["checkout_url"] == f"https://checkout.stripe.test/{payments.checkouts[0]['session_id']}"

    res = client.post(f"/bookings/{booking_id}/claim", json={"booking_token": body["booking_token"]},
                      headers=client_headers())
    assert res.status_code == 200
    assert res.get_json()["client_id"] == "client-2"

    res = client.get("/bookings/me", headers=client_headers())
    assert [b["id"] for b in res.get_json()] == [booking_id]


def test_booking_created_after_scheduling_webhook_goes_to_checkout(client, coordinator, make_session_type):
    st = make_session_type()
    draft = coordinator.begin_session_selection(BUILDER, st.id)
    coordinator.scheduling_confirmed(draft.correlation_token, EVENT_REF, event_id="invitee.created:early")

    start, end = slot()
    res = client.post("/bookings", json={
        "draft_token": draft.draft_token, "start_time": iso(start), "end_time": iso(end),
    }, headers=client_headers())

    body = res.get_json()
    assert res.status_code == 201
    assert body["next_action"] == "checkout"
    assert body["checkout_url"]
    assert body["booking"]["client_id"] == "client-2"


def test_errors_render_with_code_and_status(client, coordinator, make_session_type, scheduled):
    booking = scheduled(make_session_type(), client_id="client-2")

    res = client.post(f"/bookings/{booking.id}/cancel", json={"reason": "oops"}, headers=client_headers())
    assert res.status_code == 409
    body = res.get_json()
    assert body["code"] == "STALE_STATE"
    assert body["recoverable"] is True
    assert body["booking_id"] == booking.id

    res = client.post("/bookings", json={"draft_token": "forged", "start_time": iso(slot()[0]),
                                         "end_time": iso(slot()[1])})
    assert res.status_code == 400
    assert res.get_json()["code"] == "INVALID_DRAFT"

    assert client.get("/bookings/does-not-exist", headers=ADMIN_HEADERS).status_code == 404


def test_client_cancel_and_admin_views(client, coordinator, make_session_type, paid_booking, payments):
    booking = paid_booking(make_session_type())
    booking_id = booking.id
    headers = client_headers("client-1")

    res = client.post(f"/bookings/{booking_id}/cancel", json={"reason": "Plans changed"}, headers=headers)
    assert res.status_code == 200
    assert res.get_json()["state"] == "REFUND_PENDING"
    assert res.get_json()["cancelled_by"] == "client"

    assert client.get("/bookings", headers=headers).status_code == 403
    res = client.get("/bookings", query_string={"state": "refund_pending"}, headers=ADMIN_HEADERS)
    assert [b["id"] for b in res.get_json()] == [booking_id]

    db.session.expire_all()
    audit = AuditLog.query.filter_by(action="BOOKING_TRANSITION", entity_id=booking_id, user_id="client-1").all()
    assert len(audit) == 2  # BOOKING_CANCELLED and REFUND_PENDING


def test_reschedule_route(client, coordinator, make_session_type, paid_booking):
    booking = paid_booking(make_session_type())
    start, end = slot(days=5)

    res = client.post(f"/bookings/{booking.id}/reschedule", json={
        "start_time": iso(start), "end_time": iso(end),
        "external_event_ref": "https://api.calendly.com/scheduled_events/EV2",
    }, headers=client_headers("client-1"))

    assert res.status_code == 200
    assert res.get_json()["adjustment"] is None
    assert res.get_json()["booking"]["start_time"] == start.isoformat()


def test_pay_cancel_page_records_abandoned_checkout(client):
    res = client.get("/pay/cancel", query_string={"booking_id": "abc"})
    assert res.status_code == 200
    assert AuditLog.query.filter_by(action="CHECKOUT_ABANDONED", entity_id="abc").count() == 1


def test_sweep_command(app, make_session_type, scheduled):
    scheduled(make_session_type())
    result = app.test_cli_runner().invoke(args=["sweep-bookings"])

    assert result.exit_code == 0
    assert "released=0" in result.output
