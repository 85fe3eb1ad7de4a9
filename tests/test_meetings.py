"""Tests for meeting link provisioning."""

import json
from datetime import datetime, timedelta

import httpx
import pytest

from models import AuditLog, Booking, db
from services import meetings
from services.errors import BookingNotFound, InvalidMeetingLink, MeetingProvisioningFailed
from services.meetings import Attendee, GoogleCalendarClient
from tests.conftest import book, give_calendar, make_slot, make_user

MEET_URL = "https://meet.google.com/abc-defg-hij"

EVENT_WITH_MEET = {
    "id": "evt_123",
    "htmlLink": "https://calendar.google.com/event?eid=evt_123",
    "conferenceData": {
        "entryPoints": [
            {"entryPointType": "phone", "uri": "tel:+1-555-0100"},
            {"entryPointType": "video", "uri": MEET_URL},
        ]
    },
}


def calendar_client(status=200, payload=None, calls=None, error=None, text=None):
    def handler(request):
        if calls is not None:
            calls.append(request)
        if error is not None:
            raise error
        if text is not None:
            return httpx.Response(status, text=text)
        return httpx.Response(status, json=EVENT_WITH_MEET if payload is None else payload)

    return GoogleCalendarClient(transport=httpx.MockTransport(handler))


def _use_client(monkeypatch, client):
    monkeypatch.setattr(
        GoogleCalendarClient, "from_config", classmethod(lambda cls, transport=None: client)
    )


class TestGoogleCalendarClient:
    def test_creates_event_with_conference(self):
        calls = []
        client = calendar_client(calls=calls)
        start = datetime(2025, 6, 1, 14, 0)

        link = client.create_meeting(
            "tok", ["buyer@example.com", "seller@example.com"], start, start + timedelta(hours=1),
            summary="Consultation",
        )

        assert link.meeting_link == MEET_URL
        assert link.external_event_id == "evt_123"
        request = calls[0]
        assert request.method == "POST"
        assert request.url.path == "/calendar/v3/calendars/primary/events"
        assert request.url.params["conferenceDataVersion"] == "1"
        assert request.headers["Authorization"] == "Bearer tok"
        body = json.loads(request.content)
        assert [a["email"] for a in body["attendees"]] == ["buyer@example.com", "seller@example.com"]
        assert body["conferenceData"]["createRequest"]["conferenceSolutionKey"] == {"type": "hangoutsMeet"}
        assert body["start"]["dateTime"] == "2025-06-01T14:00:00"

    def test_falls_back_to_hangout_link(self):
        client = calendar_client(payload={"id": "evt_9", "hangoutLink": "https://meet.google.com/xyz"})
        link = client.create_meeting("tok", [], datetime(2025, 6, 1, 14), datetime(2025, 6, 1, 15), "s")
        assert link.meeting_link == "https://meet.google.com/xyz"

    def test_api_error(self):
        client = calendar_client(status=403, payload={"error": {"message": "insufficient permissions"}})
        with pytest.raises(MeetingProvisioningFailed, match="insufficient permissions"):
            client.create_meeting("tok", [], datetime(2025, 6, 1, 14), datetime(2025, 6, 1, 15), "s")

    def test_timeout(self):
        client = calendar_client(error=httpx.ConnectTimeout("timed out"))
        with pytest.raises(MeetingProvisioningFailed):
            client.create_meeting("tok", [], datetime(2025, 6, 1, 14), datetime(2025, 6, 1, 15), "s")

    def test_event_without_conference(self):
        client = calendar_client(payload={"id": "evt_1"})
        with pytest.raises(MeetingProvisioningFailed):
            client.create_meeting("tok", [], datetime(2025, 6, 1, 14), datetime(2025, 6, 1, 15), "s")

    @pytest.mark.parametrize("client", [
        calendar_client(text="<html>proxy login</html>"),
        calendar_client(payload=[]),
        calendar_client(status=502, text="<html>Bad Gateway</html>"),
        calendar_client(status=400, payload={"error": "invalid_grant"}),
    ])
    def test_unexpected_body(self, client):
        with pytest.raises(MeetingProvisioningFailed):
            client.create_meeting("tok", [], datetime(2025, 6, 1, 14), datetime(2025, 6, 1, 15), "s")


class TestProvisioning:
    def test_confirmed_booking_gets_link(self, seller, buyer, monkeypatch):
        calls = []
        _use_client(monkeypatch, calendar_client(calls=calls))
        give_calendar(seller)

        booking = book(make_slot(seller), buyer)

        db.session.expire_all()
        stored = db.session.get(Booking, booking.id)
        assert stored.meeting_link == MEET_URL
        assert stored.calendar_event_id == "evt_123"
        assert stored.buyer_invite_sent and stored.seller_invite_sent
        attendees = [a["email"] for a in json.loads(calls[0].content)["attendees"]]
        assert attendees == ["buyer@example.com", "seller@example.com"]
        assert AuditLog.query.filter_by(action="MEETING_LINK_PROVISIONED").count() == 1

    @pytest.mark.parametrize("client", [
        calendar_client(status=500, payload={"error": {"message": "backend"}}),
        calendar_client(error=httpx.ReadTimeout("slow")),
        calendar_client(text="<html>proxy login</html>"),
    ])
    def test_failure_leaves_booking_confirmed(self, seller, buyer, monkeypatch, client):
        _use_client(monkeypatch, client)
        give_calendar(seller)

        booking = book(make_slot(seller), buyer)

        db.session.expire_all()
        stored = db.session.get(Booking, booking.id)
        assert stored.status == "confirmed"
        assert stored.meeting_link is None

    def test_no_credentials(self, seller, buyer):
        booking = book(make_slot(seller), buyer)
        calls = []

        assert meetings.provision_for_booking(booking.id, client=calendar_client(calls=calls)) is None
        assert calls == []

    @pytest.mark.parametrize("cred_kwargs", [
        {"expires_in": timedelta(minutes=-5)},
        {"auto_sync_enabled": False},
    ])
    def test_unusable_credentials(self, seller, buyer, cred_kwargs):
        booking = book(make_slot(seller), buyer)
        give_calendar(seller, **cred_kwargs)

        assert meetings.provision_for_booking(booking.id, client=calendar_client()) is None
        assert db.session.get(Booking, booking.id).meeting_link is None

    def test_manual_link_is_not_overwritten(self, seller, buyer):
        booking = book(make_slot(seller), buyer)
        meetings.set_meeting_link(booking.id, seller.id, "https://zoom.us/j/123")
        give_calendar(seller)

        link = meetings.provision(
            booking.id,
            seller.id,
            [Attendee(email=buyer.email, role="buyer")],
            (booking.start_datetime(), booking.end_datetime()),
            client=calendar_client(),
        )

        assert link.meeting_link == MEET_URL
        db.session.expire_all()
        assert db.session.get(Booking, booking.id).meeting_link == "https://zoom.us/j/123"

    def test_cancelled_booking_is_skipped(self, seller, buyer):
        booking = book(make_slot(seller), buyer)
        booking.status = "cancelled"
        db.session.commit()
        give_calendar(seller)

        assert meetings.provision_for_booking(booking.id, client=calendar_client()) is None


class TestManualLink:
    @pytest.mark.parametrize("url", [
        "", "   ", None, "not a url", "ftp://files.example.com/x", "https://", "javascript:alert(1)",
        "https://meet.example.com/a b",
    ])
    def test_rejects_invalid(self, url):
        with pytest.raises(InvalidMeetingLink):
            meetings.validate_meeting_url(url)

    def test_accepts_and_trims(self):
        assert meetings.validate_meeting_url("  https://zoom.us/j/123  ") == "https://zoom.us/j/123"

    def test_seller_sets_link(self, seller, buyer):
        booking = book(make_slot(seller), buyer)

        updated = meetings.set_meeting_link(booking.id, seller.id, "https://zoom.us/j/123")

        assert updated.meeting_link == "https://zoom.us/j/123"
        assert AuditLog.query.filter_by(action="MEETING_LINK_SET").count() == 1

    def test_other_seller_cannot_set_link(self, seller, buyer):
        booking = book(make_slot(seller), buyer)
        intruder = make_user("intruder@example.com", roles=("SELLER",))

        with pytest.raises(BookingNotFound):
            meetings.set_meeting_link(booking.id, intruder.id, "https://zoom.us/j/123")
