"""
Time-driven booking status.

``derive_display`` reinterprets a booking against the wall clock for reads
and never writes anything. ``promote_overdue_bookings`` is the one job
allowed to move a booking forward without a seller or buyer acting:
confirmed -> in_progress once the meeting has started, and
confirmed/in_progress -> missed once the grace period after the end passes.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update

from models import db
from models.booking import (
    ACTIVE_STATUSES,
    CANCELLED,
    COMPLETED,
    CONFIRMED,
    IN_PROGRESS,
    MISSED,
    Booking,
)
from utils.audit import log_event
from utils.clock import schedule_now

logger = logging.getLogger(__name__)

DEFAULT_GRACE_MINUTES = 15
DEFAULT_STARTING_SOON_MINUTES = 60


@dataclass(frozen=True)
class DisplayStatus:
    label: str
    is_upcoming: bool
    is_in_progress: bool
    is_overdue: bool
    minutes_until_start: int
    minutes_until_end: int

    def to_dict(self):
        return asdict(self)


def _minutes_between(later: datetime, earlier: datetime) -> int:
    return int((later - earlier).total_seconds() // 60)


def derive_display(booking, now: datetime, grace_minutes: int = DEFAULT_GRACE_MINUTES,
                   starting_soon_minutes: int = DEFAULT_STARTING_SOON_MINUTES) -> DisplayStatus:
    start = booking.start_datetime()
    end = booking.end_datetime()
    grace_end = end + timedelta(minutes=grace_minutes)

    is_upcoming = now < start
    is_in_progress = start <= now <= end
    is_overdue = now > grace_end
    until_start = _minutes_between(start, now)

    if booking.status == CANCELLED:
        label = "Cancelled"
    elif booking.status == COMPLETED:
        label = "Completed"
    elif booking.status == MISSED or (booking.status in ACTIVE_STATUSES and is_overdue):
        label = "Missed"
    elif is_in_progress:
        label = "In Progress"
    elif is_upcoming:
        label = "Starting Soon" if until_start < starting_soon_minutes else "Upcoming"
    else:
        # ended, still inside the grace window
        label = "Awaiting Completion"

    return DisplayStatus(
        label=label,
        is_upcoming=is_upcoming,
        is_in_progress=is_in_progress,
        is_overdue=is_overdue,
        minutes_until_start=until_start,
        minutes_until_end=_minutes_between(end, now),
    )


def display_for(booking, now: datetime = None) -> DisplayStatus:
    """``derive_display`` with the app's configured thresholds."""
    cfg = current_app.config
    return derive_display(
        booking,
        now or schedule_now(),
        grace_minutes=cfg.get("MEETING_GRACE_MINUTES", DEFAULT_GRACE_MINUTES),
        starting_soon_minutes=cfg.get("STARTING_SOON_MINUTES", DEFAULT_STARTING_SOON_MINUTES),
    )


def format_time_until(display: DisplayStatus) -> str:
    if display.is_in_progress:
        return "Happening now"
    if display.is_overdue:
        return "Overdue"
    if display.minutes_until_start < 0:
        return "Started"
    if display.minutes_until_start < 60:
        return f"{display.minutes_until_start} minutes"

    hours, minutes = divmod(display.minutes_until_start, 60)
    if hours < 24:
        return f"{hours}h {minutes}m"
    days, hours = divmod(hours, 24)
    return f"{days}d {hours}h"


def _advance(booking_id: int, expected: str, new_status: str) -> bool:
    result = db.session.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status == expected)
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def promote_overdue_bookings(now: datetime = None, grace_minutes: int = None) -> dict:
    """Move started/overdue bookings forward. Safe to run repeatedly.

    Returns:
        dict: counts of bookings moved to in_progress and to missed
    """
    now = now or schedule_now()
    if grace_minutes is None:
        grace_minutes = current_app.config.get("MEETING_GRACE_MINUTES", DEFAULT_GRACE_MINUTES)
    grace = timedelta(minutes=grace_minutes)

    summary = {"started": 0, "missed": 0}

    candidates = (
        Booking.query
        .filter(
            Booking.status.in_((CONFIRMED, IN_PROGRESS)),
            Booking.booking_date <= now.date(),
        )
        .all()
    )

    try:
        for booking in candidates:
            if now > booking.end_datetime() + grace:
                new_status = MISSED
            elif booking.status == CONFIRMED and now >= booking.start_datetime():
                new_status = IN_PROGRESS
            else:
                continue

            # status guard in the WHERE clause: a concurrent seller update wins
            if not _advance(booking.id, booking.status, new_status):
                continue

            summary["missed" if new_status == MISSED else "started"] += 1
            log_event(
                "BOOKING_STATUS_CHANGE",
                entity="booking",
                entity_id=booking.id,
                metadata={"from": booking.status, "to": new_status, "by": "promotion_sweep"},
                commit=False,
            )
            logger.info("Booking %s transitioned: %s -> %s", booking.id, booking.status, new_status)

        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Promotion sweep failed")
        raise

    if summary["started"] or summary["missed"]:
        logger.info("Promotion sweep summary: %s", summary)
    else:
        logger.debug("Promotion sweep: nothing to update")
    return summary
