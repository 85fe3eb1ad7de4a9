import logging

from celery import shared_task

from services.meetings import provision_for_booking

logger = logging.getLogger(__name__)


@shared_task(ignore_result=True)
def provision_meeting_link(booking_id: int) -> None:
    """Create the calendar meeting for a freshly confirmed booking.

    Failures are logged by the provisioner; the booking stays confirmed with
    no link and the seller can attach one by hand.
    """
    link = provision_for_booking(booking_id)
    if link is None:
        logger.info("Booking %s: meeting link pending", booking_id)
