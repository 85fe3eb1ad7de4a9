from flask import Blueprint, g, jsonify, request

from models.booking import ALL_STATUSES, Booking
from security.rbac import require_roles
from services import coordinator, meetings
from services.status import display_for, format_time_until
from utils.auth_context import login_required
from utils.clock import schedule_now

booking_bp = Blueprint("booking", __name__, url_prefix="/bookings")


def _serialize(booking: Booking, now):
    display = display_for(booking, now)
    out = booking.to_dict()
    out["display"] = display.to_dict()
    out["time_until"] = format_time_until(display)
    out["meeting_link_status"] = "ready" if booking.meeting_link else "pending"
    return out


def _listing(query):
    statuses = [s for s in request.args.getlist("status") if s in ALL_STATUSES]
    if statuses:
        query = query.filter(Booking.status.in_(statuses))

    rows = query.order_by(Booking.booking_date.asc(), Booking.start_time.asc()).limit(200).all()
    now = schedule_now()
    return jsonify([_serialize(b, now) for b in rows]), 200


# ---------- BUYERS: my bookings ----------
@booking_bp.get("/me")
@login_required
def my_bookings():
    return _listing(Booking.query.filter_by(buyer_id=g.user.id))


# ---------- SELLERS: bookings on my slots ----------
@booking_bp.get("/seller")
@require_roles("SELLER")
def seller_bookings():
    return _listing(Booking.query.filter_by(seller_id=g.user.id))


# ---------- SELLERS: status change ----------
@booking_bp.post("/<int:booking_id>/status")
@require_roles("SELLER")
def change_status(booking_id: int):
    data = request.get_json(silent=True) or {}
    new_status = (data.get("status") or "").strip().lower()
    if not new_status:
        return jsonify(error="status required"), 400

    booking = coordinator.get_booking(booking_id)
    if booking.seller_id != g.user.id and not g.user.has_role("ADMIN"):
        return jsonify(error="Booking not found"), 404

    booking = coordinator.update_status(
        booking_id, new_status, actor_id=g.user.id, reason=(data.get("reason") or "").strip() or None
    )
    return jsonify(_serialize(booking, schedule_now())), 200


# ---------- BUYERS: cancel (policy window) ----------
@booking_bp.post("/<int:booking_id>/cancel")
@login_required
def cancel_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip() or None
    coordinator.cancel_by_buyer(booking_id, g.user.id, reason=reason)
    return jsonify(message="Cancelled"), 200


# ---------- ADMIN: cancel any booking ----------
@booking_bp.post("/<int:booking_id>/admin_cancel")
@require_roles("ADMIN")
def admin_cancel_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip() or "Admin cancellation"
    coordinator.cancel_booking(booking_id, actor_id=g.user.id, reason=reason)
    return jsonify(message="Cancelled by admin"), 200


# ---------- SELLERS: attach or replace the meeting link ----------
@booking_bp.put("/<int:booking_id>/meeting-link")
@require_roles("SELLER")
def set_meeting_link(booking_id: int):
    data = request.get_json(silent=True) or {}
    booking = meetings.set_meeting_link(booking_id, g.user.id, data.get("meeting_link"))
    return jsonify(id=booking.id, meeting_link=booking.meeting_link), 200
