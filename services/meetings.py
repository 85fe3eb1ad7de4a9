"""
Meeting Link Provisioner
Creates a Google Calendar event with a Meet conference for a confirmed booking.
Nothing here can fail a booking: every failure path logs and returns None.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from urllib.parse import quote, urlparse

import httpx
from flask import current_app
from sqlalchemy import update

from models import db
from models.booking import ACTIVE_STATUSES, Booking
from models.calendar_credential import CalendarCredential
from models.user import User
from services.errors import BookingNotFound, InvalidMeetingLink, MeetingProvisioningFailed
from utils.audit import log_event

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"


@dataclass(frozen=True)
class MeetingLink:
    meeting_link: str
    external_event_id: Optional[str] = None


@dataclass(frozen=True)
class Attendee:
    email: str
    role: str  # "buyer" or "seller"


class GoogleCalendarClient:
    def __init__(self, base_url: str = GOOGLE_CALENDAR_API, timeout: float = 10.0,
                 time_zone: str = "UTC", transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.time_zone = time_zone
        self.transport = transport

    @classmethod
    def from_config(cls, transport: Optional[httpx.BaseTransport] = None) -> "GoogleCalendarClient":
        cfg = current_app.config
        return cls(
            base_url=cfg.get("GOOGLE_CALENDAR_API", GOOGLE_CALENDAR_API),
            timeout=cfg.get("CALENDAR_HTTP_TIMEOUT_SECONDS", 10.0),
            time_zone=cfg.get("SCHEDULE_TIMEZONE", "UTC"),
            transport=transport,
        )

    def create_meeting(self, access_token: str, attendees: Sequence[str], start: datetime, end: datetime,
                       summary: str, description: str = "", calendar_id: str = "primary") -> MeetingLink:
        event = {
            "summary": summary,
            "description": description,
            "start": {"dateTime": start.isoformat(), "timeZone": self.time_zone},
            "end": {"dateTime": end.isoformat(), "timeZone": self.time_zone},
            "attendees": [{"email": email} for email in attendees],
            "conferenceData": {
                "createRequest": {
                    "requestId": f"meet_{uuid.uuid4().hex}",
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
            "reminders": {"useDefault": True},
        }

        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    f"/calendars/{quote(calendar_id, safe='')}/events",
                    params={"conferenceDataVersion": 1, "sendUpdates": "all"},
                    headers={"Authorization": f"Bearer {access_token}"},
                    json=event,
                )
        except httpx.HTTPError as exc:
            raise MeetingProvisioningFailed(f"Calendar request failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            error = body.get("error") if isinstance(body, dict) else None
            message = error.get("message") if isinstance(error, dict) else None
            raise MeetingProvisioningFailed(
                f"Calendar API error {response.status_code}: {message or response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise MeetingProvisioningFailed(
                f"Calendar API returned an unexpected body: {response.text[:200]}"
            )

        entry_points = (data.get("conferenceData") or {}).get("entryPoints") or []
        meet_link = next(
            (ep.get("uri") for ep in entry_points if ep.get("entryPointType") == "video"),
            None,
        ) or data.get("hangoutLink")
        if not meet_link:
            raise MeetingProvisioningFailed("Calendar event created without a conference link")

        return MeetingLink(meeting_link=meet_link, external_event_id=data.get("id"))


def get_valid_credential(seller_id: int, now: Optional[datetime] = None) -> Optional[CalendarCredential]:
    """The seller's calendar grant if usable right now, else None.

    Expired tokens are not refreshed here; that belongs to the accounts service.
    """
    cred = CalendarCredential.query.filter_by(seller_id=seller_id).first()
    if cred is None or not cred.auto_sync_enabled or not cred.access_token:
        return None
    if cred.token_expires_at <= (now or datetime.utcnow()):
        return None
    return cred


def provision(booking_id: int, seller_id: int, attendees: List[Attendee],
              time_range: Tuple[datetime, datetime], client: Optional[GoogleCalendarClient] = None,
              summary: str = "Consultation") -> Optional[MeetingLink]:
    cred = get_valid_credential(seller_id)
    if cred is None:
        logger.info("Booking %s: seller %s has no usable calendar credentials", booking_id, seller_id)
        return None

    client = client or GoogleCalendarClient.from_config()
    start, end = time_range
    try:
        link = client.create_meeting(
            cred.access_token,
            [a.email for a in attendees],
            start,
            end,
            summary=summary,
            description=f"Consultation booking #{booking_id}",
            calendar_id=cred.calendar_id or "primary",
        )
    except MeetingProvisioningFailed as exc:
        logger.warning("Booking %s: meeting provisioning failed: %s", booking_id, exc)
        return None

    # a link the seller attached by hand is never overwritten
    result = db.session.execute(
        update(Booking)
        .where(
            Booking.id == booking_id,
            Booking.meeting_link.is_(None),
            Booking.status.in_(ACTIVE_STATUSES),
        )
        .values(
            meeting_link=link.meeting_link,
            calendar_event_id=link.external_event_id,
            buyer_invite_sent=any(a.role == "buyer" for a in attendees),
            seller_invite_sent=any(a.role == "seller" for a in attendees),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        logger.info("Booking %s already has a link or is closed; event %s left unlinked",
                    booking_id, link.external_event_id)
        return link

    log_event(
        "MEETING_LINK_PROVISIONED",
        entity="booking",
        entity_id=booking_id,
        metadata={"calendar_event_id": link.external_event_id},
        commit=False,
    )
    db.session.commit()
    logger.info("Booking %s: meeting link created (event %s)", booking_id, link.external_event_id)
    return link


def provision_for_booking(booking_id: int, client: Optional[GoogleCalendarClient] = None) -> Optional[MeetingLink]:
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        logger.warning("Booking %s vanished before meeting provisioning", booking_id)
        return None
    if booking.meeting_link or booking.status not in ACTIVE_STATUSES:
        return None

    attendees = []
    buyer = db.session.get(User, booking.buyer_id)
    seller = db.session.get(User, booking.seller_id)
    if buyer is not None:
        attendees.append(Attendee(email=buyer.email, role="buyer"))
    if seller is not None:
        attendees.append(Attendee(email=seller.email, role="seller"))

    summary = "Consultation"
    if buyer is not None and seller is not None:
        summary = f"Consultation: {seller.display_name} with {buyer.display_name}"

    return provision(
        booking.id,
        booking.seller_id,
        attendees,
        (booking.start_datetime(), booking.end_datetime()),
        client=client,
        summary=summary,
    )


def validate_meeting_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        raise InvalidMeetingLink("Meeting link is required")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc or " " in url:
        raise InvalidMeetingLink()
    return url


def set_meeting_link(booking_id: int, seller_id: int, url: str) -> Booking:
    url = validate_meeting_url(url)

    booking = db.session.get(Booking, booking_id)
    if booking is None or booking.seller_id != seller_id:
        raise BookingNotFound()

    previous = booking.meeting_link
    booking.meeting_link = url
    log_event(
        "MEETING_LINK_SET",
        user_id=seller_id,
        entity="booking",
        entity_id=booking.id,
        metadata={"replaced": bool(previous)},
        commit=False,
    )
    db.session.commit()
    return booking
