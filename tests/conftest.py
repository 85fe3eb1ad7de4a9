"""Shared test fixtures and helpers."""

import secrets
from datetime import date, datetime, time, timedelta
from typing import Optional

import pytest

from app import create_app
from config import TestingConfig
from models import Booking, CalendarCredential, Role, Session, Slot, User, db
from security.session import hash_token
from services import coordinator
from services.payments import PaymentResult
from utils.seed import seed_roles


@pytest.fixture
def app(tmp_path):
    class Cfg(TestingConfig):
        # file database so concurrent threads get their own connections
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'test.db'}"

    app = create_app(Cfg)
    with app.app_context():
        db.create_all()
        seed_roles()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def today() -> date:
    return datetime.utcnow().date()


def make_user(email: str, roles=("BUYER",), full_name: Optional[str] = None) -> User:
    user = User(email=email, full_name=full_name)
    user.roles = Role.query.filter(Role.name.in_(roles)).all()
    db.session.add(user)
    db.session.commit()
    return user


def make_slot(seller: User, slot_date: Optional[date] = None, start: time = time(14, 0),
              end: time = time(15, 0), **flags) -> Slot:
    slot = Slot(
        seller_id=seller.id,
        slot_date=slot_date or today() + timedelta(days=3),
        start_time=start,
        end_time=end,
        **flags,
    )
    db.session.add(slot)
    db.session.commit()
    return slot


def book(slot: Slot, buyer: User, reference: str = None, amount: int = 5000) -> Booking:
    return coordinator.create_booking_after_payment(
        slot.id, buyer.id, reference or f"pi_{secrets.token_hex(6)}", amount
    )


def make_past_booking(seller: User, buyer: User, days_ago: int, status: str,
                      slot_id: int = 0) -> Booking:
    booking = Booking(
        slot_id=slot_id,
        buyer_id=buyer.id,
        seller_id=seller.id,
        booking_date=today() - timedelta(days=days_ago),
        start_time=time(10, 0),
        end_time=time(11, 0),
        status=status,
        payment_amount=5000,
        payment_reference=f"pi_{secrets.token_hex(6)}",
    )
    db.session.add(booking)
    db.session.commit()
    return booking


def give_calendar(seller: User, expires_in: timedelta = timedelta(hours=1), **kwargs) -> CalendarCredential:
    cred = CalendarCredential(
        seller_id=seller.id,
        access_token="ya29.test-token",
        token_expires_at=datetime.utcnow() + expires_in,
        **kwargs,
    )
    db.session.add(cred)
    db.session.commit()
    return cred


def login(client, user: User, app) -> None:
    raw = secrets.token_urlsafe(32)
    db.session.add(Session(
        user_id=user.id,
        token_hash=hash_token(raw),
        expires_at=datetime.utcnow() + timedelta(hours=8),
    ))
    db.session.commit()
    client.set_cookie(app.config["AUTH_COOKIE_NAME"], raw)


class FakeProcessor:
    """Payment processor double that records calls."""

    def __init__(self, success: bool = True, reason: str = None):
        self.success = success
        self.reason = reason
        self.calls = []

    def charge(self, amount, metadata):
        self.calls.append((amount, dict(metadata)))
        if not self.success:
            return PaymentResult(success=False, reason=self.reason or "card_declined")
        return PaymentResult(success=True, reference=f"pi_fake_{len(self.calls)}")


@pytest.fixture
def seller(app):
    return make_user("seller@example.com", roles=("SELLER",), full_name="Sam Seller")


@pytest.fixture
def buyer(app):
    return make_user("buyer@example.com", roles=("BUYER",), full_name="Bea Buyer")


@pytest.fixture
def other_buyer(app):
    return make_user("other@example.com", roles=("BUYER",), full_name="Otto Other")
