"""
Retention sweep for consultation data.

Policy:
  - unbooked slots dated in the past are deleted
  - booked slots older than BOOKED_SLOT_RETENTION_DAYS are deleted
    (the booking row already carries the date, times and parties)
  - finished bookings older than BOOKING_RETENTION_DAYS are deleted

Each row is deleted in its own transaction with the policy re-checked in
the WHERE clause, so a failing row is skipped and picked up next run.
"""
import logging
from datetime import date, timedelta
from typing import Callable, Iterable

from flask import current_app
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.booking import ACTIVE_STATUSES, TERMINAL_STATUSES, Booking
from models.slot import Slot
from services.errors import RetentionSweepPartialFailure
from utils.clock import schedule_now

logger = logging.getLogger(__name__)


def _delete_rows(entity: str, ids: Iterable[int], build_statement: Callable[[int], object],
                 summary: dict) -> int:
    deleted = 0
    for row_id in ids:
        try:
            result = db.session.execute(build_statement(row_id).execution_options(synchronize_session=False))
            db.session.commit()
            deleted += result.rowcount
        except SQLAlchemyError as exc:
            db.session.rollback()
            failure = RetentionSweepPartialFailure(f"Could not delete {entity} {row_id}: {exc}")
            summary["failures"] += 1
            summary["failed"].append(f"{entity}:{row_id}")
            logger.error("Retention sweep: %s", failure)
    return deleted


def run_retention_sweep(today: date = None) -> dict:
    """Apply the retention policy once. Running it again immediately deletes nothing.

    Returns:
        dict: per-category deletion counts plus failures left for the next run
    """
    today = today or schedule_now().date()
    cfg = current_app.config
    unbooked_cutoff = today - timedelta(days=cfg.get("UNBOOKED_SLOT_RETENTION_DAYS", 0))
    booked_cutoff = today - timedelta(days=cfg.get("BOOKED_SLOT_RETENTION_DAYS", 20))
    booking_cutoff = today - timedelta(days=cfg.get("BOOKING_RETENTION_DAYS", 90))

    summary = {
        "past_slots_deleted": 0,
        "old_booked_slots_deleted": 0,
        "old_bookings_deleted": 0,
        "failures": 0,
        "failed": [],
    }

    # 1. Past slots nobody booked
    ids = db.session.scalars(
        select(Slot.id).where(Slot.slot_date < unbooked_cutoff, Slot.is_booked.is_(False)).order_by(Slot.id)
    ).all()
    summary["past_slots_deleted"] = _delete_rows(
        "slot", ids,
        lambda row_id: delete(Slot).where(
            Slot.id == row_id, Slot.slot_date < unbooked_cutoff, Slot.is_booked.is_(False)
        ),
        summary,
    )

    # 2. Booked slots past the short retention window
    ids = db.session.scalars(
        select(Slot.id).where(Slot.slot_date < booked_cutoff, Slot.is_booked.is_(True)).order_by(Slot.id)
    ).all()
    summary["old_booked_slots_deleted"] = _delete_rows(
        "slot", ids,
        lambda row_id: delete(Slot).where(
            Slot.id == row_id, Slot.slot_date < booked_cutoff, Slot.is_booked.is_(True)
        ),
        summary,
    )

    # 3. Booking history past the long-tail window
    ids = db.session.scalars(
        select(Booking.id).where(
            Booking.booking_date < booking_cutoff, Booking.status.in_(TERMINAL_STATUSES)
        )
    ).all()
    summary["old_bookings_deleted"] = _delete_rows(
        "booking", ids,
        lambda row_id: delete(Booking).where(
            Booking.id == row_id,
            Booking.booking_date < booking_cutoff,
            Booking.status.in_(TERMINAL_STATUSES),
        ),
        summary,
    )

    stale = db.session.scalar(
        select(func.count(Booking.id)).where(
            Booking.booking_date < booking_cutoff, Booking.status.in_(ACTIVE_STATUSES)
        )
    )
    if stale:
        logger.warning("Retention sweep: %d unfinished booking(s) past the history cutoff kept", stale)

    logger.info("Consultation cleanup completed: %s", {k: v for k, v in summary.items() if k != "failed"})
    return summary
