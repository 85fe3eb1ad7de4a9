from flask import Blueprint, g, jsonify, request

from models import db
from models.payment import Payment
from services import payments
from utils.audit import log_event
from utils.auth_context import login_required

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


@payments_bp.post("/checkout")
@login_required
def start_checkout():
    data = request.get_json(silent=True) or {}
    if not data.get("slot_id"):
        return jsonify(error="slot_id required"), 400
    try:
        slot_id = int(data["slot_id"])
    except (TypeError, ValueError):
        return jsonify(error="slot_id must be an integer"), 400

    checkout_url = payments.start_checkout(slot_id, g.user.id, notes=data.get("notes"))
    return jsonify(checkout_url=checkout_url), 200


@payments_bp.get("/cancel")
@login_required
def cancel_payment():
    payment_id = request.args.get("payment_id", type=int)
    payment = db.session.get(Payment, payment_id) if payment_id else None
    if not payment or payment.buyer_id != g.user.id:
        return jsonify(error="Payment not found"), 404
    if payment.status != "INIT":
        return jsonify(error="Payment already processed"), 400

    payment.status = "FAILED"
    payment.failure_reason = "user_cancelled"
    log_event("PAYMENT_CANCELLED", user_id=g.user.id, entity="payment", entity_id=payment.id, commit=False)
    db.session.commit()
    return jsonify(message="Payment cancelled"), 200
