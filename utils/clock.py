from datetime import datetime
from zoneinfo import ZoneInfo

from flask import current_app


def schedule_now() -> datetime:
    """Current wall-clock time in the schedule timezone, as a naive datetime.

    Slots store seller-local date/time pairs, so comparisons are made against
    naive local time rather than an aware UTC timestamp.
    """
    tz = ZoneInfo(current_app.config.get("SCHEDULE_TIMEZONE", "UTC"))
    return datetime.now(tz).replace(tzinfo=None)
