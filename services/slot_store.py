"""
Slot store: publishing, listing and the atomic claim.

Availability flags are only ever changed by the conditional UPDATE/DELETE
statements in this module. Every statement re-checks its precondition in the
WHERE clause and the outcome is read from ``rowcount``; nothing here reads a
flag in Python and then writes it back.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from models import db
from models.slot import Slot
from services.errors import InvalidSlotWindow, SlotConflict, SlotNotFound
from utils.audit import log_event
from utils.clock import schedule_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotSnapshot:
    id: int
    seller_id: int
    slot_date: date
    start_time: time
    end_time: time


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    slot: Optional[SlotSnapshot] = None


def get_slot(slot_id: int) -> Slot:
    slot = db.session.get(Slot, slot_id)
    if slot is None:
        raise SlotNotFound()
    return slot


def list_available(seller_id: int, from_date: date) -> List[Slot]:
    return (
        Slot.query
        .filter(
            Slot.seller_id == seller_id,
            Slot.is_available.is_(True),
            Slot.is_booked.is_(False),
            Slot.slot_date >= from_date,
        )
        .order_by(Slot.slot_date.asc(), Slot.start_time.asc())
        .all()
    )


def try_claim(slot_id: int, buyer_id: int) -> ClaimResult:
    """Claim a slot with a single compare-and-set write.

    Does not commit: the caller commits the claim together with whatever
    else belongs to the same transaction (the booking insert).
    """
    result = db.session.execute(
        update(Slot)
        .where(
            Slot.id == slot_id,
            Slot.is_available.is_(True),
            Slot.is_booked.is_(False),
        )
        .values(is_available=False, is_booked=True, booked_by=buyer_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return ClaimResult(claimed=False)

    row = db.session.execute(
        select(Slot.id, Slot.seller_id, Slot.slot_date, Slot.start_time, Slot.end_time)
        .where(Slot.id == slot_id)
    ).one()
    return ClaimResult(claimed=True, slot=SlotSnapshot(*row))


def release_claim(slot_id: int, buyer_id: int) -> bool:
    """Make a claimed slot claimable again. No-op unless still held by ``buyer_id``."""
    result = db.session.execute(
        update(Slot)
        .where(
            Slot.id == slot_id,
            Slot.is_booked.is_(True),
            Slot.booked_by == buyer_id,
        )
        .values(is_available=True, is_booked=False, booked_by=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _window(slot_date: date, start: time, end: time):
    st = datetime.combine(slot_date, start)
    et = datetime.combine(slot_date, end)
    if et <= st:
        raise InvalidSlotWindow("end_time must be after start_time")
    if st <= schedule_now():
        raise InvalidSlotWindow("Cannot publish slots in the past")
    return st, et


def _overlaps_existing(seller_id: int, slot_date: date, start: time, end: time) -> bool:
    clash = (
        Slot.query
        .filter(
            Slot.seller_id == seller_id,
            Slot.slot_date == slot_date,
            Slot.start_time < end,
            Slot.end_time > start,
        )
        .first()
    )
    return clash is not None


def _commit_new_slots(seller_id: int, slots: List[Slot]) -> List[Slot]:
    db.session.add_all(slots)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise SlotConflict()

    for slot in slots:
        log_event("SLOT_PUBLISH", user_id=seller_id, entity="slot", entity_id=slot.id, commit=False)
    db.session.commit()
    return slots


def publish_slot(seller_id: int, slot_date: date, start_time: time, end_time: time) -> Slot:
    _window(slot_date, start_time, end_time)
    if _overlaps_existing(seller_id, slot_date, start_time, end_time):
        raise SlotConflict()

    slot = Slot(seller_id=seller_id, slot_date=slot_date, start_time=start_time, end_time=end_time)
    return _commit_new_slots(seller_id, [slot])[0]


def publish_block(seller_id: int, slot_date: date, block_start: time, block_end: time,
                  duration_minutes: int) -> List[Slot]:
    """Split a time block into back-to-back slots of ``duration_minutes``.

    A trailing remainder shorter than one slot is dropped.
    """
    if duration_minutes <= 0:
        raise InvalidSlotWindow("duration_minutes must be positive")
    st, et = _window(slot_date, block_start, block_end)

    step = timedelta(minutes=duration_minutes)
    slots = []
    cursor = st
    while cursor + step <= et:
        slots.append(Slot(
            seller_id=seller_id,
            slot_date=slot_date,
            start_time=cursor.time(),
            end_time=(cursor + step).time(),
        ))
        cursor += step

    if not slots:
        raise InvalidSlotWindow(f"Time block must be at least {duration_minutes} minutes long")
    if _overlaps_existing(seller_id, slot_date, slots[0].start_time, slots[-1].end_time):
        raise SlotConflict()

    logger.info("Seller %s publishing %d slot(s) on %s", seller_id, len(slots), slot_date)
    return _commit_new_slots(seller_id, slots)


def withdraw_slot(slot_id: int, seller_id: int) -> None:
    """Delete one of the seller's slots, provided nobody has claimed it."""
    result = db.session.execute(
        delete(Slot)
        .where(
            Slot.id == slot_id,
            Slot.seller_id == seller_id,
            Slot.is_booked.is_(False),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        slot = db.session.get(Slot, slot_id)
        if slot is None or slot.seller_id != seller_id:
            raise SlotNotFound()
        raise SlotConflict("Slot is booked and cannot be withdrawn")

    log_event("SLOT_WITHDRAW", user_id=seller_id, entity="slot", entity_id=slot_id, commit=False)
    db.session.commit()
