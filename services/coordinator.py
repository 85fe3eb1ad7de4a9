"""
Reservation coordinator: the booking state machine.

    pending -> confirmed -> completed | cancelled | missed
               confirmed -> in_progress -> completed | missed

Payment always comes first. A booking row is only written after a successful
charge, in the same transaction as the slot claim. ``missed -> completed`` is
the single manual correction allowed out of a terminal state.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from celery_app import safe_delay
from models import db
from models.booking import (
    CANCELLED,
    COMPLETED,
    CONFIRMED,
    IN_PROGRESS,
    MISSED,
    PAYMENT_PAID,
    PENDING,
    Booking,
)
from models.payment import Payment
from services import slot_store
from services.errors import (
    BookingNotFound,
    CancellationWindowClosed,
    InvalidStatusTransition,
    PaymentNotConfirmed,
    SelfBookingNotAllowed,
    SlotNoLongerAvailable,
)
from tasks.meetings import provision_meeting_link
from utils.audit import log_event
from utils.clock import schedule_now

logger = logging.getLogger(__name__)

# Transitions a seller (or admin) may request explicitly
MANUAL_TRANSITIONS = {
    PENDING: {CONFIRMED, CANCELLED},
    CONFIRMED: {CANCELLED, COMPLETED},
    IN_PROGRESS: {COMPLETED},
    MISSED: {COMPLETED},  # meeting happened but nobody marked it
}

# Transitions only the promotion sweep performs
AUTOMATIC_TRANSITIONS = {
    CONFIRMED: {IN_PROGRESS, MISSED},
    IN_PROGRESS: {MISSED},
}

ALLOWED_TRANSITIONS = {
    status: MANUAL_TRANSITIONS.get(status, set()) | AUTOMATIC_TRANSITIONS.get(status, set())
    for status in (PENDING, CONFIRMED, IN_PROGRESS, COMPLETED, CANCELLED, MISSED)
}

BUYER_CANCELLABLE = (PENDING, CONFIRMED)


def is_valid_transition(current: str, new_status: str, manual: bool = True) -> bool:
    table = MANUAL_TRANSITIONS if manual else ALLOWED_TRANSITIONS
    return new_status in table.get(current, set())


def get_booking(booking_id: int) -> Booking:
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        raise BookingNotFound()
    return booking


def ensure_bookable(slot_id: int, buyer_id: int):
    """Pre-payment checks. Advisory only: the claim itself is the real guard."""
    slot = slot_store.get_slot(slot_id)
    if slot.seller_id == buyer_id:
        raise SelfBookingNotAllowed()
    if not slot.is_available or slot.is_booked:
        raise SlotNoLongerAvailable()
    if datetime.combine(slot.slot_date, slot.start_time) <= schedule_now():
        raise SlotNoLongerAvailable("Cannot book past or started slots")
    return slot


def _flag_for_refund(slot_id: int, buyer_id: int, reference: str, amount: int,
                     payment_id: Optional[int], reason: str) -> None:
    """Record a captured payment that did not produce a booking.

    No refund is attempted here; NEEDS_REFUND rows are the support queue.
    """
    payment = db.session.get(Payment, payment_id) if payment_id else None
    if payment is None:
        payment = Payment(
            buyer_id=buyer_id,
            slot_id=slot_id,
            amount=amount,
            currency=current_app.config.get("PAYMENT_CURRENCY", "usd"),
        )
        db.session.add(payment)
    payment.status = "NEEDS_REFUND"
    payment.provider_reference = reference
    payment.failure_reason = reason

    log_event(
        "PAYMENT_UNBOOKED",
        user_id=buyer_id,
        entity="slot",
        entity_id=slot_id,
        metadata={"payment_reference": reference, "amount": amount, "reason": reason},
        commit=False,
    )
    db.session.commit()
    logger.warning(
        "Manual intervention: payment %s by buyer %s captured but slot %s was not booked (%s)",
        reference, buyer_id, slot_id, reason,
    )


def create_booking_after_payment(slot_id: int, buyer_id: int, payment_reference: str, amount: int,
                                 notes: Optional[str] = None, payment_id: Optional[int] = None) -> Booking:
    reference = (payment_reference or "").strip()
    if not reference:
        raise PaymentNotConfirmed("A confirmed payment reference is required before booking")
    if amount is None or amount < 0:
        raise PaymentNotConfirmed("Payment amount missing")

    claim = slot_store.try_claim(slot_id, buyer_id)
    if not claim.claimed:
        db.session.rollback()
        log_event("BOOKING_FAIL_SLOT_TAKEN", user_id=buyer_id, entity="slot", entity_id=slot_id, commit=False)
        _flag_for_refund(slot_id, buyer_id, reference, amount, payment_id, "slot no longer available")
        raise SlotNoLongerAvailable(payment_captured=True, slot_id=slot_id, payment_reference=reference)

    slot = claim.slot
    if slot.seller_id == buyer_id:
        db.session.rollback()
        _flag_for_refund(slot_id, buyer_id, reference, amount, payment_id, "seller booked own slot")
        raise SelfBookingNotAllowed()

    # a checkout can complete long after it was opened
    if datetime.combine(slot.slot_date, slot.start_time) <= schedule_now():
        db.session.rollback()
        _flag_for_refund(slot_id, buyer_id, reference, amount, payment_id, "slot already started")
        raise SlotNoLongerAvailable(
            payment_captured=True, slot_id=slot_id, payment_reference=reference
        )

    booking = Booking(
        slot_id=slot.id,
        buyer_id=buyer_id,
        seller_id=slot.seller_id,
        booking_date=slot.slot_date,
        start_time=slot.start_time,
        end_time=slot.end_time,
        status=CONFIRMED,
        payment_status=PAYMENT_PAID,
        payment_amount=amount,
        payment_reference=reference,
        notes=(notes or "").strip() or None,
    )
    db.session.add(booking)
    try:
        db.session.flush()
    except IntegrityError:
        # uq_bookings_active_slot: another live booking already references this slot
        db.session.rollback()
        _flag_for_refund(slot_id, buyer_id, reference, amount, payment_id, "active booking exists")
        raise SlotNoLongerAvailable(payment_captured=True, slot_id=slot_id, payment_reference=reference)

    if payment_id:
        payment = db.session.get(Payment, payment_id)
        if payment is not None:
            payment.booking_id = booking.id
            payment.status = "PAID"
            payment.provider_reference = reference
            payment.paid_at = payment.paid_at or datetime.utcnow()
            log_event(
                "PAYMENT_PAID",
                user_id=buyer_id,
                entity="payment",
                entity_id=payment.id,
                metadata={"payment_reference": reference},
                commit=False,
            )

    log_event(
        "BOOKING_CREATE",
        user_id=buyer_id,
        entity="booking",
        entity_id=booking.id,
        metadata={"slot_id": slot.id, "payment_reference": reference},
        commit=False,
    )
    db.session.commit()
    logger.info("Booking %s confirmed for slot %s (buyer %s)", booking.id, slot.id, buyer_id)

    # fire-and-continue; the booking stands whether or not a link appears
    safe_delay(provision_meeting_link, booking.id)
    return booking


def checkout(slot_id: int, buyer_id: int, processor, amount: int, notes: Optional[str] = None) -> Booking:
    """Charge, then reserve. Abandoning before the charge leaves nothing to clean up."""
    ensure_bookable(slot_id, buyer_id)

    result = processor.charge(amount, {"slot_id": slot_id, "buyer_id": buyer_id})
    if not result.success or not result.reference:
        log_event(
            "PAYMENT_FAILED",
            user_id=buyer_id,
            entity="slot",
            entity_id=slot_id,
            metadata={"reason": result.reason},
        )
        raise PaymentNotConfirmed(result.reason or PaymentNotConfirmed.user_message)

    return create_booking_after_payment(slot_id, buyer_id, result.reference, amount, notes=notes)


def _compare_and_set_status(booking_id: int, expected: str, **values) -> bool:
    result = db.session.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def update_status(booking_id: int, new_status: str, actor_id: Optional[int] = None,
                  reason: Optional[str] = None) -> Booking:
    booking = get_booking(booking_id)
    current = booking.status

    if new_status == current:
        return booking

    if not is_valid_transition(current, new_status):
        logger.warning(
            "Rejected status change for booking %s: %s -> %s (actor %s)",
            booking_id, current, new_status, actor_id,
        )
        raise InvalidStatusTransition(current, new_status)

    values = {"status": new_status}
    now = datetime.utcnow()
    if new_status == CANCELLED:
        values.update(cancelled_at=now, cancel_reason=(reason or None))
    elif new_status == COMPLETED:
        values["completed_at"] = now

    if not _compare_and_set_status(booking.id, current, **values):
        db.session.rollback()
        db.session.refresh(booking)
        logger.warning("Booking %s changed concurrently (now %s)", booking_id, booking.status)
        raise InvalidStatusTransition(booking.status, new_status)

    released = False
    if new_status == CANCELLED:
        released = slot_store.release_claim(booking.slot_id, booking.buyer_id)

    log_event(
        "BOOKING_CANCEL" if new_status == CANCELLED else "BOOKING_STATUS_CHANGE",
        user_id=actor_id,
        entity="booking",
        entity_id=booking.id,
        metadata={"from": current, "to": new_status, "reason": reason, "slot_released": released},
        commit=False,
    )
    db.session.commit()
    db.session.refresh(booking)
    return booking


def cancel_booking(booking_id: int, actor_id: Optional[int] = None, reason: Optional[str] = None) -> Booking:
    return update_status(booking_id, CANCELLED, actor_id=actor_id, reason=reason)


def cancel_by_buyer(booking_id: int, buyer_id: int, reason: Optional[str] = None,
                    now: Optional[datetime] = None) -> Booking:
    booking = get_booking(booking_id)
    if booking.buyer_id != buyer_id:
        raise BookingNotFound()
    if booking.status == CANCELLED:
        return booking
    if booking.status not in BUYER_CANCELLABLE:
        raise InvalidStatusTransition(booking.status, CANCELLED)

    now = now or schedule_now()
    cutoff_hours = current_app.config.get("CANCEL_CUTOFF_HOURS", 12)
    if booking.start_datetime() - now < timedelta(hours=cutoff_hours):
        raise CancellationWindowClosed(f"Cancellation not allowed within {cutoff_hours} hours of start")

    return update_status(booking_id, CANCELLED, actor_id=buyer_id, reason=reason)
