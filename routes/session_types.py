from datetime import timedelta

from flask import Blueprint, request, jsonify, current_app, g

from models import db
from models.session_type import SessionType
from security.rbac import require_roles, is_staff
from utils.audit import log_event
from utils.clock import parse_iso, utcnow

session_types_bp = Blueprint("session_types", __name__)

EDITABLE_FIELDS = ("title", "description", "duration_minutes", "price", "currency",
                   "external_event_type_ref", "scheduling_url")


def _validate_fields(data: dict):
    """Returns (clean_fields, error_message)."""
    clean = {}
    for key in EDITABLE_FIELDS:
        if key not in data:
            continue
        value = data[key]
        if key in ("duration_minutes", "price"):
            try:
                value = int(value)
            except (TypeError, ValueError):
                return None, f"{key} must be an integer"
            if key == "duration_minutes" and value <= 0:
                return None, "duration_minutes must be positive"
            if key == "price" and value < 0:
                return None, "price cannot be negative"
        elif key == "currency":
            value = (value or "").strip().lower()
            if len(value) != 3:
                return None, "currency must be a 3 letter code"
        elif isinstance(value, str):
            value = value.strip() or None
        clean[key] = value
    return clean, None


def _owned_or_404(session_type_id: int):
    st = db.session.get(SessionType, session_type_id)
    if not st:
        return None
    if st.builder_id != g.user.id and not is_staff():
        return None
    return st


@session_types_bp.get("/session-types/<int:session_type_id>")
def get_session_type(session_type_id):
    st = db.session.get(SessionType, session_type_id)
    if not st:
        return jsonify(error="Session type not found"), 404
    return jsonify(st.to_dict()), 200


@session_types_bp.get("/builders/<builder_id>/session-types")
def list_builder_session_types(builder_id):
    rows = (
        SessionType.query
        .filter_by(builder_id=builder_id, is_active=True)
        .order_by(SessionType.price.asc(), SessionType.id.asc())
        .all()
    )
    return jsonify([st.to_dict() for st in rows]), 200


@session_types_bp.get("/session-types/<int:session_type_id>/availability")
def session_type_availability(session_type_id):
    st = db.session.get(SessionType, session_type_id)
    if not st or not st.is_active:
        return jsonify(error="Session type not found"), 404
    if not st.external_event_type_ref:
        return jsonify(error="Session type is not linked to a scheduling event type"), 409

    try:
        start = parse_iso(request.args["start"]) if request.args.get("start") else utcnow()
        end = parse_iso(request.args["end"]) if request.args.get("end") else start + timedelta(days=7)
    except ValueError:
        return jsonify(error="Invalid datetime format. Use ISO e.g. 2026-01-20T18:00:00Z"), 400
    if end <= start or end - start > timedelta(days=7):
        return jsonify(error="Window must be positive and at most 7 days"), 400

    scheduling = current_app.extensions["booking_coordinator"].scheduling
    slots = scheduling.list_available_slots(st.external_event_type_ref, start, end, st.duration_minutes)
    return jsonify([
        {"start_time": s.start.isoformat(), "end_time": s.end.isoformat(), "scheduling_url": s.scheduling_url}
        for s in slots
    ]), 200


@session_types_bp.post("/session-types")
@require_roles("BUILDER")
def create_session_type():
    data = request.get_json(silent=True) or {}
    fields, error = _validate_fields(data)
    if error:
        return jsonify(error=error), 400
    if not fields.get("title") or not fields.get("duration_minutes"):
        return jsonify(error="title and duration_minutes are required"), 400

    st = SessionType(builder_id=g.user.id, **fields)
    db.session.add(st)
    db.session.commit()

    log_event("SESSION_TYPE_CREATE", user_id=g.user.id, entity="session_type", entity_id=st.id)
    return jsonify(st.to_dict()), 201


@session_types_bp.patch("/session-types/<int:session_type_id>")
@require_roles("BUILDER")
def update_session_type(session_type_id):
    st = _owned_or_404(session_type_id)
    if not st:
        return jsonify(error="Session type not found"), 404

    data = request.get_json(silent=True) or {}
    if data.get("version") != st.version:
        return jsonify(error="Session type was changed by someone else, reload and retry",
                       code="STALE_STATE", version=st.version), 409

    fields, error = _validate_fields(data)
    if error:
        return jsonify(error=error), 400
    for key, value in fields.items():
        setattr(st, key, value)
    # version_id_col turns a concurrent edit into StaleDataError (409)
    db.session.commit()

    log_event("SESSION_TYPE_UPDATE", user_id=g.user.id, entity="session_type", entity_id=st.id,
              metadata={"fields": sorted(fields)})
    return jsonify(st.to_dict()), 200


@session_types_bp.post("/session-types/<int:session_type_id>/deactivate")
@require_roles("BUILDER")
def deactivate_session_type(session_type_id):
    st = _owned_or_404(session_type_id)
    if not st:
        return jsonify(error="Session type not found"), 404

    if st.is_active:
        st.is_active = False
        db.session.commit()
        log_event("SESSION_TYPE_DEACTIVATE", user_id=g.user.id, entity="session_type", entity_id=st.id)
    return jsonify(st.to_dict()), 200
