from datetime import date, datetime

from flask import Blueprint, current_app, g, jsonify, request

from security.rbac import require_roles
from services import slot_store
from utils.clock import schedule_now

slot_bp = Blueprint("slots", __name__)


def _parse_date(value: str) -> date:
    # Expect "2026-01-20"
    return date.fromisoformat(value)


def _parse_time(value: str):
    # Expect "18:00" or "18:00:00"
    return datetime.strptime(value, "%H:%M:%S" if value.count(":") == 2 else "%H:%M").time()


# ---------- PUBLIC: a seller's open slots ----------
@slot_bp.get("/sellers/<int:seller_id>/slots")
def list_seller_slots(seller_id: int):
    from_str = request.args.get("from")
    try:
        from_date = _parse_date(from_str) if from_str else schedule_now().date()
    except ValueError:
        return jsonify(error="Invalid date. Use YYYY-MM-DD"), 400

    slots = slot_store.list_available(seller_id, from_date)
    return jsonify([s.to_dict() for s in slots]), 200


# ---------- SELLER: publish one slot ----------
@slot_bp.post("/slots")
@require_roles("SELLER")
def create_slot():
    data = request.get_json(silent=True) or {}
    if not data.get("date") or not data.get("start_time") or not data.get("end_time"):
        return jsonify(error="date, start_time, end_time are required"), 400

    try:
        slot_date = _parse_date(data["date"])
        st = _parse_time(data["start_time"])
        et = _parse_time(data["end_time"])
    except ValueError:
        return jsonify(error="Invalid date/time. Use YYYY-MM-DD and HH:MM"), 400

    slot = slot_store.publish_slot(g.user.id, slot_date, st, et)
    return jsonify(slot.to_dict()), 201


# ---------- SELLER: publish a block split into fixed-length slots ----------
@slot_bp.post("/slots/block")
@require_roles("SELLER")
def create_slot_block():
    data = request.get_json(silent=True) or {}
    if not data.get("date") or not data.get("start_time") or not data.get("end_time"):
        return jsonify(error="date, start_time, end_time are required"), 400

    try:
        slot_date = _parse_date(data["date"])
        st = _parse_time(data["start_time"])
        et = _parse_time(data["end_time"])
        duration = int(data.get("duration_minutes") or current_app.config.get("DEFAULT_SLOT_DURATION_MINUTES", 60))
    except ValueError:
        return jsonify(error="Invalid date/time/duration"), 400

    slots = slot_store.publish_block(g.user.id, slot_date, st, et, duration)
    return jsonify([s.to_dict() for s in slots]), 201


# ---------- SELLER: withdraw an unbooked slot ----------
@slot_bp.delete("/slots/<int:slot_id>")
@require_roles("SELLER")
def withdraw_slot(slot_id: int):
    slot_store.withdraw_slot(slot_id, g.user.id)
    return jsonify(message="Slot withdrawn"), 200
