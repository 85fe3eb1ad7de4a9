"""Tests for the reservation coordinator."""

from datetime import datetime, time, timedelta

import pytest

from models import AuditLog, Booking, Payment, Slot, db
from services import coordinator
from services.coordinator import ALLOWED_TRANSITIONS, is_valid_transition
from services.errors import (
    BookingNotFound,
    CancellationWindowClosed,
    InvalidStatusTransition,
    PaymentNotConfirmed,
    SelfBookingNotAllowed,
    SlotNoLongerAvailable,
)
from tests.conftest import FakeProcessor, book, make_slot, today

ALL = ("pending", "confirmed", "in_progress", "completed", "cancelled", "missed")


def _set_status(booking, status):
    booking.status = status
    db.session.commit()


class BrokenDispatch:
    name = "tasks.meetings.provision_meeting_link"

    def delay(self, *args, **kwargs):
        raise RuntimeError("broker unreachable")


class RecordingDispatch:
    name = "tasks.meetings.provision_meeting_link"

    def __init__(self):
        self.calls = []

    def delay(self, *args, **kwargs):
        self.calls.append(args)


class TestCreateBookingAfterPayment:
    def test_booking_copies_slot_and_is_paid(self, seller, buyer):
        meeting_day = today() + timedelta(days=10)
        slot = make_slot(seller, slot_date=meeting_day, start=time(14, 0), end=time(15, 0))

        booking = coordinator.create_booking_after_payment(
            slot.id, buyer.id, "pi_123", 5000, notes="  pricing strategy  "
        )

        assert booking.status == "confirmed"
        assert booking.payment_status == "paid"
        assert booking.payment_reference == "pi_123"
        assert booking.payment_amount == 5000
        assert booking.notes == "pricing strategy"
        assert booking.seller_id == seller.id
        assert booking.buyer_id == buyer.id
        assert (booking.booking_date, booking.start_time, booking.end_time) == (
            meeting_day, time(14, 0), time(15, 0)
        )
        db.session.refresh(slot)
        assert slot.is_booked and not slot.is_available
        assert slot.booked_by == buyer.id
        assert AuditLog.query.filter_by(action="BOOKING_CREATE", entity_id=str(booking.id)).count() == 1

    @pytest.mark.parametrize("reference", ["", "   ", None])
    def test_requires_payment_reference(self, seller, buyer, reference):
        slot = make_slot(seller)

        with pytest.raises(PaymentNotConfirmed):
            coordinator.create_booking_after_payment(slot.id, buyer.id, reference, 5000)

        db.session.refresh(slot)
        assert slot.is_available and not slot.is_booked
        assert Booking.query.count() == 0

    def test_taken_slot_flags_payment_for_refund(self, seller, buyer, other_buyer):
        slot = make_slot(seller)
        book(slot, buyer, reference="pi_first")

        with pytest.raises(SlotNoLongerAvailable) as excinfo:
            coordinator.create_booking_after_payment(slot.id, other_buyer.id, "pi_second", 5000)

        assert excinfo.value.payment_captured
        assert "refund" in excinfo.value.message.lower()
        assert excinfo.value.user_message == "This time is no longer available"
        assert Booking.query.filter_by(slot_id=slot.id).count() == 1
        payment = Payment.query.filter_by(provider_reference="pi_second").one()
        assert payment.status == "NEEDS_REFUND"
        assert payment.buyer_id == other_buyer.id
        assert AuditLog.query.filter_by(action="BOOKING_FAIL_SLOT_TAKEN").count() == 1

    def test_seller_cannot_book_own_slot(self, seller):
        slot = make_slot(seller)

        with pytest.raises(SelfBookingNotAllowed):
            coordinator.create_booking_after_payment(slot.id, seller.id, "pi_self", 5000)

        db.session.refresh(slot)
        assert slot.is_available
        assert Payment.query.filter_by(provider_reference="pi_self").one().status == "NEEDS_REFUND"

    def test_started_slot_is_refunded_not_booked(self, seller, buyer):
        slot = make_slot(seller, slot_date=today() - timedelta(days=1))

        with pytest.raises(SlotNoLongerAvailable) as excinfo:
            coordinator.create_booking_after_payment(slot.id, buyer.id, "pi_late", 5000)

        assert excinfo.value.payment_captured
        assert Booking.query.count() == 0
        db.session.refresh(slot)
        assert slot.is_available and not slot.is_booked
        payment = Payment.query.filter_by(provider_reference="pi_late").one()
        assert payment.status == "NEEDS_REFUND"
        assert payment.failure_reason == "slot already started"

    def test_links_existing_payment_row(self, seller, buyer):
        slot = make_slot(seller)
        payment = Payment(buyer_id=buyer.id, slot_id=slot.id, amount=5000, currency="usd", status="INIT")
        db.session.add(payment)
        db.session.commit()

        booking = coordinator.create_booking_after_payment(slot.id, buyer.id, "pi_linked", 5000, payment_id=payment.id)

        db.session.refresh(payment)
        assert payment.booking_id == booking.id
        assert payment.status == "PAID"
        assert payment.paid_at is not None
        assert AuditLog.query.filter_by(action="PAYMENT_PAID", entity_id=str(payment.id)).count() == 1

    def test_dispatches_meeting_provisioning(self, seller, buyer, monkeypatch):
        recorder = RecordingDispatch()
        monkeypatch.setattr(coordinator, "provision_meeting_link", recorder)
        slot = make_slot(seller)

        booking = book(slot, buyer)

        assert recorder.calls == [(booking.id,)]

    def test_dispatch_failure_keeps_booking(self, seller, buyer, monkeypatch):
        monkeypatch.setattr(coordinator, "provision_meeting_link", BrokenDispatch())
        slot = make_slot(seller)

        booking = book(slot, buyer)

        assert db.session.get(Booking, booking.id).status == "confirmed"
        assert booking.meeting_link is None

    def test_no_unpaid_booking_is_ever_written(self, seller, buyer, other_buyer):
        slot = make_slot(seller)
        book(slot, buyer)
        with pytest.raises(SlotNoLongerAvailable):
            book(slot, other_buyer)
        with pytest.raises(PaymentNotConfirmed):
            coordinator.create_booking_after_payment(make_slot(seller, start=time(16, 0), end=time(17, 0)).id,
                                                     buyer.id, "", 5000)

        assert Booking.query.filter(Booking.payment_status != "paid").count() == 0
        assert Booking.query.filter(Booking.payment_reference == "").count() == 0


class TestCheckout:
    def test_charges_then_books(self, app, seller, buyer):
        slot = make_slot(seller)
        processor = FakeProcessor()

        booking = coordinator.checkout(slot.id, buyer.id, processor, 7500)

        assert processor.calls == [(7500, {"slot_id": slot.id, "buyer_id": buyer.id})]
        assert booking.payment_reference == "pi_fake_1"
        assert booking.payment_amount == 7500

    def test_declined_payment_makes_no_claim(self, seller, buyer):
        slot = make_slot(seller)

        with pytest.raises(PaymentNotConfirmed, match="card_declined"):
            coordinator.checkout(slot.id, buyer.id, FakeProcessor(success=False), 5000)

        db.session.refresh(slot)
        assert slot.is_available and not slot.is_booked
        assert Booking.query.count() == 0
        assert AuditLog.query.filter_by(action="PAYMENT_FAILED").count() == 1

    def test_unavailable_slot_is_not_charged(self, seller, buyer, other_buyer):
        slot = make_slot(seller)
        book(slot, buyer)
        processor = FakeProcessor()

        with pytest.raises(SlotNoLongerAvailable):
            coordinator.checkout(slot.id, other_buyer.id, processor, 5000)
        assert processor.calls == []

    def test_past_slot_is_not_charged(self, seller, buyer):
        slot = make_slot(seller, slot_date=today() - timedelta(days=1))
        processor = FakeProcessor()

        with pytest.raises(SlotNoLongerAvailable, match="past"):
            coordinator.checkout(slot.id, buyer.id, processor, 5000)
        assert processor.calls == []

    def test_own_slot_is_not_charged(self, seller):
        slot = make_slot(seller)
        processor = FakeProcessor()

        with pytest.raises(SelfBookingNotAllowed):
            coordinator.checkout(slot.id, seller.id, processor, 5000)
        assert processor.calls == []


class TestTransitionGraph:
    @pytest.mark.parametrize("terminal", ["completed", "cancelled"])
    def test_no_exits_from_closed_states(self, terminal):
        assert ALLOWED_TRANSITIONS[terminal] == set()

    def test_missed_only_corrects_to_completed(self):
        assert ALLOWED_TRANSITIONS["missed"] == {"completed"}

    def test_in_progress_is_automatic_only(self):
        assert not is_valid_transition("confirmed", "in_progress")
        assert is_valid_transition("confirmed", "in_progress", manual=False)
        assert not is_valid_transition("confirmed", "missed")
        assert is_valid_transition("in_progress", "missed", manual=False)

    def test_nothing_returns_to_pending(self):
        assert all("pending" not in targets for targets in ALLOWED_TRANSITIONS.values())


class TestUpdateStatus:
    def test_seller_confirms_pending(self, seller, buyer):
        booking = book(make_slot(seller), buyer)
        _set_status(booking, "pending")

        updated = coordinator.update_status(booking.id, "confirmed", actor_id=seller.id)

        assert updated.status == "confirmed"

    def test_complete_sets_timestamp(self, seller, buyer):
        booking = book(make_slot(seller), buyer)

        updated = coordinator.update_status(booking.id, "completed", actor_id=seller.id)

        assert updated.status == "completed"
        assert isinstance(updated.completed_at, datetime)
        assert AuditLog.query.filter_by(action="BOOKING_STATUS_CHANGE", entity_id=str(booking.id)).count() == 1

    @pytest.mark.parametrize("start,target", [
        ("confirmed", "pending"),
        ("confirmed", "in_progress"),
        ("in_progress", "cancelled"),
        ("missed", "cancelled"),
        ("missed", "confirmed"),
    ])
    def test_invalid_transition_leaves_state(self, seller, buyer, start, target):
        booking = book(make_slot(seller), buyer)
        _set_status(booking, start)

        with pytest.raises(InvalidStatusTransition) as excinfo:
            coordinator.update_status(booking.id, target)

        assert excinfo.value.status_code == 409
        assert f"from {start} to {target}" in excinfo.value.message
        db.session.expire_all()
        assert db.session.get(Booking, booking.id).status == start

    @pytest.mark.parametrize("terminal", ["completed", "cancelled"])
    def test_closed_states_reject_everything(self, seller, buyer, terminal):
        booking = book(make_slot(seller), buyer)
        _set_status(booking, terminal)

        for target in ALL:
            if target == terminal:
                continue
            with pytest.raises(InvalidStatusTransition):
                coordinator.update_status(booking.id, target)
        assert db.session.get(Booking, booking.id).status == terminal

    def test_same_status_is_noop(self, seller, buyer):
        booking = book(make_slot(seller), buyer)

        assert coordinator.update_status(booking.id, "confirmed").status == "confirmed"
        assert AuditLog.query.filter_by(action="BOOKING_STATUS_CHANGE").count() == 0

    def test_missing_booking(self, app):
        with pytest.raises(BookingNotFound):
            coordinator.update_status(12345, "completed")


class TestCancellation:
    def test_cancel_releases_slot_for_rebooking(self, seller, buyer, other_buyer):
        slot = make_slot(seller)
        booking = book(slot, buyer)

        cancelled = coordinator.cancel_booking(booking.id, actor_id=seller.id, reason="seller unavailable")

        assert cancelled.status == "cancelled"
        assert cancelled.cancel_reason == "seller unavailable"
        assert cancelled.cancelled_at is not None
        db.session.refresh(slot)
        assert slot.is_available and not slot.is_booked and slot.booked_by is None

        rebooked = book(slot, other_buyer)
        assert rebooked.status == "confirmed"

    def test_slot_released_exactly_once(self, seller, buyer, other_buyer):
        slot = make_slot(seller)
        booking = book(slot, buyer)
        coordinator.cancel_booking(booking.id)
        book(slot, other_buyer)

        again = coordinator.cancel_booking(booking.id)

        assert again.status == "cancelled"
        db.session.refresh(slot)
        assert slot.is_booked
        assert slot.booked_by == other_buyer.id

    def test_buyer_cancels_ahead_of_cutoff(self, seller, buyer):
        booking = book(make_slot(seller), buyer)
        now = booking.start_datetime() - timedelta(days=2)

        cancelled = coordinator.cancel_by_buyer(booking.id, buyer.id, now=now)

        assert cancelled.status == "cancelled"

    def test_buyer_cancel_inside_cutoff(self, seller, buyer):
        booking = book(make_slot(seller), buyer)
        now = booking.start_datetime() - timedelta(hours=2)

        with pytest.raises(CancellationWindowClosed):
            coordinator.cancel_by_buyer(booking.id, buyer.id, now=now)
        assert db.session.get(Booking, booking.id).status == "confirmed"

    def test_buyer_cannot_cancel_someone_elses(self, seller, buyer, other_buyer):
        booking = book(make_slot(seller), buyer)

        with pytest.raises(BookingNotFound):
            coordinator.cancel_by_buyer(booking.id, other_buyer.id)

    def test_buyer_cancel_is_idempotent(self, seller, buyer):
        booking = book(make_slot(seller), buyer)
        now = booking.start_datetime() - timedelta(days=2)
        coordinator.cancel_by_buyer(booking.id, buyer.id, now=now)

        again = coordinator.cancel_by_buyer(booking.id, buyer.id, now=now)

        assert again.status == "cancelled"
        assert AuditLog.query.filter_by(action="BOOKING_CANCEL").count() == 1

    def test_buyer_cannot_cancel_started_meeting(self, seller, buyer):
        booking = book(make_slot(seller), buyer)
        _set_status(booking, "in_progress")

        with pytest.raises(InvalidStatusTransition):
            coordinator.cancel_by_buyer(booking.id, buyer.id)

        assert db.session.get(Slot, booking.slot_id).is_booked
