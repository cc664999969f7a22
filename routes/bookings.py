import hmac

from flask import Blueprint, request, jsonify, current_app, g

from models.booking import Booking
from security.rbac import require_roles, has_role, is_staff
from services.states import BookingState
from utils.auth_context import login_required
from utils.clock import parse_iso

bookings_bp = Blueprint("bookings", __name__, url_prefix="/bookings")

BOOKING_TOKEN_HEADER = "X-Booking-Token"


def _coordinator():
    return current_app.extensions["booking_coordinator"]


def _parse_window(data: dict):
    start_time = data.get("start_time")
    end_time = data.get("end_time")
    if not start_time or not end_time:
        return None, None, "start_time and end_time are required"
    try:
        return parse_iso(start_time), parse_iso(end_time), None
    except (TypeError, ValueError):
        return None, None, "Invalid datetime format. Use ISO e.g. 2026-01-20T18:00:00Z"


def _can_access(booking) -> bool:
    user = getattr(g, "user", None)
    if user is not None and (is_staff() or user.id in (booking.client_id, booking.builder_id)):
        return True
    # anonymous clients hold the token returned when the booking was created
    token = request.headers.get(BOOKING_TOKEN_HEADER)
    return bool(token) and hmac.compare_digest(token, booking.correlation_token)


def _initiator(booking) -> str:
    user = g.user
    if user.id == booking.client_id:
        return "client"
    if user.id == booking.builder_id:
        return "builder"
    return "admin"


def _next_action(booking) -> str:
    if booking.current_state == BookingState.BOOKING_CONFIRMED:
        return "confirmed"
    if booking.current_state == BookingState.PAYMENT_PROCESSING:
        return "checkout"
    return "await_confirmation"


# ---------- draft + booking confirmation request ----------
@bookings_bp.post("/draft")
def create_draft():
    data = request.get_json(silent=True) or {}
    builder_id = (data.get("builder_id") or "").strip()
    session_type_id = data.get("session_type_id")
    if not builder_id or not session_type_id:
        return jsonify(error="builder_id and session_type_id are required"), 400

    draft = _coordinator().begin_session_selection(
        builder_id, session_type_id,
        client_name=(data.get("name") or "").strip() or None,
        client_email=(data.get("email") or "").strip().lower() or None,
    )
    return jsonify(draft.to_dict()), 201


@bookings_bp.post("")
def create_booking():
    data = request.get_json(silent=True) or {}
    draft_token = data.get("draft_token")
    if not draft_token:
        return jsonify(error="draft_token is required"), 400
    start, end, error = _parse_window(data)
    if error:
        return jsonify(error=error), 400

    coordinator = _coordinator()
    user = getattr(g, "user", None)
    draft = coordinator.load_draft(draft_token)
    booking = coordinator.record_external_scheduling(
        draft, start, end,
        external_event_ref=(data.get("external_event_ref") or "").strip() or None,
        client_id=user.id if user else None,
        client_email=(data.get("email") or "").strip().lower() or None,
        client_timezone=(data.get("timezone") or "").strip() or None,
    )

    checkout_url = None
    if booking.current_state == BookingState.SCHEDULE_CONFIRMED:
        # the scheduling webhook was already waiting for this booking
        initiation = coordinator.initiate_payment(booking.id, actor=user.id if user else None)
        booking = initiation.booking
        checkout_url = initiation.checkout_url

    return jsonify(
        booking=booking.to_dict(),
        next_action=_next_action(booking),
        checkout_url=checkout_url,
        booking_token=booking.correlation_token,
    ), 201


# ---------- reads ----------
@bookings_bp.get("/<booking_id>")
def get_booking(booking_id):
    booking = _coordinator().get_booking(booking_id)
    if not _can_access(booking):
        return jsonify(error="Booking not found"), 404
    return jsonify(booking.to_dict()), 200


@bookings_bp.get("/me")
@login_required
def my_bookings():
    q = Booking.query
    if has_role("BUILDER") and request.args.get("as") == "builder":
        q = q.filter_by(builder_id=g.user.id)
    else:
        q = q.filter_by(client_id=g.user.id)
    rows = q.order_by(Booking.start_time.desc()).all()
    return jsonify([b.to_dict() for b in rows]), 200


@bookings_bp.get("")
@require_roles("ADMIN")
def list_bookings():
    q = Booking.query
    state = request.args.get("state")
    if state:
        q = q.filter_by(current_state=state.upper())
    builder_id = request.args.get("builder_id")
    if builder_id:
        q = q.filter_by(builder_id=builder_id)
    limit = min(request.args.get("limit", 100, type=int), 500)
    rows = q.order_by(Booking.updated_at.desc()).limit(limit).all()
    return jsonify([b.to_dict() for b in rows]), 200


# ---------- lifecycle actions ----------
@bookings_bp.post("/<booking_id>/pay")
def pay_booking(booking_id):
    coordinator = _coordinator()
    booking = coordinator.get_booking(booking_id)
    if not _can_access(booking):
        return jsonify(error="Booking not found"), 404

    user = getattr(g, "user", None)
    initiation = coordinator.initiate_payment(booking.id, actor=user.id if user else None)
    return jsonify(
        booking=initiation.booking.to_dict(),
        checkout_url=initiation.checkout_url,
        payment_reference=initiation.payment_reference,
        confirmed=initiation.confirmed,
    ), 200


@bookings_bp.post("/<booking_id>/cancel")
@login_required
def cancel_booking(booking_id):
    coordinator = _coordinator()
    booking = coordinator.get_booking(booking_id)
    if not _can_access(booking):
        return jsonify(error="Booking not found"), 404

    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip() or "Cancelled by request"
    booking = coordinator.cancel_booking(booking.id, reason[:255], _initiator(booking), actor=g.user.id)
    return jsonify(booking.to_dict()), 200


@bookings_bp.post("/<booking_id>/refund")
@require_roles("ADMIN")
def refund_booking(booking_id):
    data = request.get_json(silent=True) or {}
    amount = data.get("amount")
    if amount is not None:
        try:
            amount = int(amount)
        except (TypeError, ValueError):
            return jsonify(error="amount must be an integer in the smallest currency unit"), 400

    booking = _coordinator().initiate_refund(booking_id, amount, actor=g.user.id)
    return jsonify(booking.to_dict()), 200


@bookings_bp.post("/<booking_id>/reschedule")
@login_required
def reschedule_booking(booking_id):
    coordinator = _coordinator()
    booking = coordinator.get_booking(booking_id)
    if not _can_access(booking):
        return jsonify(error="Booking not found"), 404

    data = request.get_json(silent=True) or {}
    start, end, error = _parse_window(data)
    if error:
        return jsonify(error=error), 400
    event_ref = (data.get("external_event_ref") or "").strip()
    if not event_ref:
        return jsonify(error="external_event_ref is required"), 400

    result = coordinator.reschedule_booking(
        booking.id, start, end, event_ref,
        new_session_type_id=data.get("session_type_id"),
        actor=g.user.id,
    )
    return jsonify(
        booking=result.booking.to_dict(),
        adjustment=result.adjustment,
        checkout_url=result.checkout_url,
    ), 200


@bookings_bp.post("/<booking_id>/recover")
@require_roles("ADMIN")
def recover_booking(booking_id):
    booking = _coordinator().recover_booking(booking_id, actor=g.user.id)
    return jsonify(booking.to_dict()), 200


@bookings_bp.post("/<booking_id>/claim")
@login_required
def claim_booking(booking_id):
    data = request.get_json(silent=True) or {}
    token = data.get("booking_token") or request.headers.get(BOOKING_TOKEN_HEADER)
    if not token:
        return jsonify(error="booking_token is required"), 400

    booking = _coordinator().claim_booking(booking_id, g.user.id, token)
    return jsonify(booking.to_dict()), 200
