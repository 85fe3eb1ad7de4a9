import stripe
from flask import Blueprint, current_app, jsonify, request

from services import payments

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


@webhook_bp.post("/stripe")
def stripe_webhook():
    endpoint_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    sig_header = request.headers.get("Stripe-Signature")
    payload = request.data

    if not endpoint_secret:
        return jsonify(error="Webhook secret not configured"), 500

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
    except (ValueError, stripe.SignatureVerificationError):
        return jsonify(error="Invalid webhook signature"), 400

    event_type = event["type"]
    session = event["data"]["object"]
    if event_type == "checkout.session.completed":
        booking = payments.handle_checkout_completed(session)
        if booking is not None:
            current_app.logger.info("Stripe session %s booked as %s", session.get("id"), booking.id)
    elif event_type == "checkout.session.expired":
        payments.handle_checkout_expired(session)

    return jsonify(received=True), 200
