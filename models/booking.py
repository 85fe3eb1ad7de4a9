from datetime import datetime
from models.db import db

# status values
PENDING = "pending"
CONFIRMED = "confirmed"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"
MISSED = "missed"

ACTIVE_STATUSES = (PENDING, CONFIRMED, IN_PROGRESS)
TERMINAL_STATUSES = (COMPLETED, CANCELLED, MISSED)
ALL_STATUSES = ACTIVE_STATUSES + TERMINAL_STATUSES

# payment_status values
PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    # Plain column, not a foreign key: the booking outlives its slot row
    slot_id = db.Column(db.Integer, nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # copied verbatim from the claimed slot
    booking_date = db.Column(db.Date, nullable=False, index=True)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)

    status = db.Column(db.String(20), nullable=False, default=CONFIRMED, index=True)

    payment_status = db.Column(db.String(20), nullable=False, default=PAYMENT_PAID)
    payment_amount = db.Column(db.Integer, nullable=False)  # smallest currency unit
    payment_reference = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    meeting_link = db.Column(db.String(500), nullable=True)
    calendar_event_id = db.Column(db.String(255), nullable=True)
    buyer_invite_sent = db.Column(db.Boolean, default=False, nullable=False)
    seller_invite_sent = db.Column(db.Boolean, default=False, nullable=False)

    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(120), nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.CheckConstraint("payment_reference <> ''", name="ck_booking_payment_reference"),
        # At most one live booking per slot; cancelled/finished ones don't count
        db.Index(
            "uq_bookings_active_slot",
            "slot_id",
            unique=True,
            sqlite_where=db.text("status IN ('pending', 'confirmed', 'in_progress')"),
            postgresql_where=db.text("status IN ('pending', 'confirmed', 'in_progress')"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def start_datetime(self) -> datetime:
        return datetime.combine(self.booking_date, self.start_time)

    def end_datetime(self) -> datetime:
        return datetime.combine(self.booking_date, self.end_time)

    def to_dict(self):
        return {
            "id": self.id,
            "slot_id": self.slot_id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "date": self.booking_date.isoformat(),
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_amount": self.payment_amount,
            "notes": self.notes,
            "meeting_link": self.meeting_link,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
