"""
Payment processor integration (Stripe).

Two ways in:
  - ``StripePaymentProcessor.charge`` for a direct, synchronous charge
  - Stripe Checkout: ``start_checkout`` hands the buyer a hosted page and the
    ``checkout.session.completed`` webhook calls ``handle_checkout_completed``

Either way, the booking is only attempted after Stripe reports the money as
captured, and the Stripe identifier is stored verbatim as the reference.
"""
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import stripe
from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.booking import Booking
from models.payment import Payment
from services import coordinator
from services.errors import PaymentNotConfirmed, SelfBookingNotAllowed, SlotNoLongerAvailable
from utils.audit import log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    reference: Optional[str] = None
    reason: Optional[str] = None


class StripePaymentProcessor:
    def __init__(self, api_key: str, currency: str = "usd", payment_method: Optional[str] = None):
        self.api_key = api_key
        self.currency = currency
        self.payment_method = payment_method

    def charge(self, amount: int, metadata: dict) -> PaymentResult:
        if not self.api_key:
            return PaymentResult(success=False, reason="Stripe secret key not configured")
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=amount,
                currency=self.currency,
                payment_method=self.payment_method,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata={k: str(v) for k, v in (metadata or {}).items()},
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe charge failed: %s", exc)
            return PaymentResult(success=False, reason=getattr(exc, "user_message", None) or str(exc))

        if intent["status"] != "succeeded":
            return PaymentResult(success=False, reason=f"Payment {intent['status']}")
        return PaymentResult(success=True, reference=intent["id"])


def _append_query(url: str, params: dict) -> str:
    if not url:
        return url
    parts = urlparse(url)
    query = dict(parse_qsl(parts.query))
    query.update({k: v for k, v in params.items() if v is not None})
    return urlunparse(parts._replace(query=urlencode(query)))


def start_checkout(slot_id: int, buyer_id: int, notes: Optional[str] = None) -> str:
    """Open a Stripe Checkout Session for a slot and return its URL.

    Nothing is reserved here; the slot stays claimable by anyone until a
    payment completes.
    """
    cfg = current_app.config
    api_key = cfg.get("STRIPE_SECRET_KEY")
    success_url = cfg.get("STRIPE_SUCCESS_URL")
    cancel_url = cfg.get("STRIPE_CANCEL_URL")
    if not api_key:
        raise PaymentNotConfirmed("Stripe secret key not configured")
    if not success_url or not cancel_url:
        raise PaymentNotConfirmed("Stripe success/cancel URLs not configured")

    slot = coordinator.ensure_bookable(slot_id, buyer_id)
    amount = int(cfg.get("CONSULTATION_PRICE", 0))
    currency = cfg.get("PAYMENT_CURRENCY", "usd")

    payment = Payment(
        buyer_id=buyer_id,
        slot_id=slot.id,
        provider="STRIPE",
        amount=amount,
        currency=currency,
        status="INIT",
    )
    db.session.add(payment)
    db.session.commit()

    session = stripe.checkout.Session.create(
        api_key=api_key,
        mode="payment",
        line_items=[{
            "price_data": {
                "currency": currency,
                "product_data": {"name": f"Consultation {slot.slot_date.isoformat()} {slot.start_time.strftime('%H:%M')}"},
                "unit_amount": amount,
            },
            "quantity": 1,
        }],
        success_url=success_url,
        cancel_url=_append_query(cancel_url, {"payment_id": str(payment.id)}),
        metadata={
            "payment_id": str(payment.id),
            "buyer_id": str(buyer_id),
            "slot_id": str(slot.id),
            "notes": (notes or "")[:500],
        },
    )

    payment.stripe_session_id = session["id"]
    log_event(
        "PAYMENT_SESSION_CREATED",
        user_id=buyer_id,
        entity="payment",
        entity_id=payment.id,
        metadata={"stripe_session_id": session["id"]},
        commit=False,
    )
    db.session.commit()
    return session["url"]


def _payment_for_session(session: dict) -> Optional[Payment]:
    meta = session.get("metadata") or {}
    payment = None
    if meta.get("payment_id"):
        payment = db.session.get(Payment, int(meta["payment_id"]))
    if payment is None and session.get("id"):
        payment = Payment.query.filter_by(stripe_session_id=session["id"]).first()
    return payment


def _move_payment(payment_id: int, expected: str, new_status: str, **values) -> bool:
    result = db.session.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == expected)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _return_for_redelivery(payment_id: int, session_id: Optional[str]) -> None:
    try:
        reset = _move_payment(payment_id, "PROCESSING", "INIT")
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        reset = False

    if reset:
        logger.warning("Checkout session %s: booking failed, payment %s left for redelivery", session_id, payment_id)
    else:
        logger.error(
            "Manual intervention: payment %s (session %s) captured but neither booked nor reset",
            payment_id, session_id,
        )


def handle_checkout_completed(session: dict) -> Optional[Booking]:
    """Turn a completed Checkout Session into a booking.

    The payment moves INIT -> PROCESSING with a compare-and-set, so replays
    and concurrent deliveries of the same event are no-ops. PAID is written
    together with the booking. If booking fails unexpectedly the payment goes
    back to INIT and the error propagates, letting Stripe redeliver.
    """
    payment = _payment_for_session(session)
    if payment is None:
        logger.warning("Checkout session %s has no matching payment", session.get("id"))
        return None
    if session.get("payment_status") != "paid":
        logger.info("Checkout session %s completed without capture (%s)", session.get("id"), session.get("payment_status"))
        return None

    payment_id = payment.id
    reference = session.get("payment_intent") or session.get("id")
    if not _move_payment(payment_id, "INIT", "PROCESSING", provider_reference=reference):
        db.session.rollback()
        logger.info("Checkout session %s already handled (payment %s)", session.get("id"), payment_id)
        return None
    log_event(
        "PAYMENT_CAPTURED",
        user_id=payment.buyer_id,
        entity="payment",
        entity_id=payment_id,
        metadata={"stripe_session_id": session.get("id"), "payment_reference": reference},
        commit=False,
    )
    db.session.commit()

    notes = (session.get("metadata") or {}).get("notes") or None
    try:
        return coordinator.create_booking_after_payment(
            payment.slot_id,
            payment.buyer_id,
            reference,
            payment.amount,
            notes=notes,
            payment_id=payment_id,
        )
    except (SlotNoLongerAvailable, SelfBookingNotAllowed) as exc:
        # already flagged NEEDS_REFUND by the coordinator
        logger.warning("Checkout session %s paid but not booked: %s", session.get("id"), exc)
        return None
    except Exception:
        db.session.rollback()
        _return_for_redelivery(payment_id, session.get("id"))
        raise


def handle_checkout_expired(session: dict) -> None:
    payment = _payment_for_session(session)
    if payment is None:
        return
    if not _move_payment(payment.id, "INIT", "FAILED", failure_reason="checkout expired"):
        db.session.rollback()
        return
    log_event(
        "PAYMENT_EXPIRED",
        user_id=payment.buyer_id,
        entity="payment",
        entity_id=payment.id,
        metadata={"stripe_session_id": session.get("id")},
        commit=False,
    )
    db.session.commit()
