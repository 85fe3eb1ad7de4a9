from datetime import datetime
from models.db import db

class Slot(db.Model):
    """A seller-published consultation window.

    Date and times are kept apart (seller-local wall clock), not as a single
    timestamp. ``is_available``/``is_booked``/``booked_by`` are only ever
    written through the conditional statements in ``services.slot_store``.
    """
    __tablename__ = "slots"

    id = db.Column(db.Integer, primary_key=True)

    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    slot_date = db.Column(db.Date, nullable=False, index=True)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)

    is_available = db.Column(db.Boolean, default=True, nullable=False)
    is_booked = db.Column(db.Boolean, default=False, nullable=False)
    booked_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        # Prevent duplicate windows for the same seller
        db.UniqueConstraint("seller_id", "slot_date", "start_time", "end_time", name="uq_seller_slot_window"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "date": self.slot_date.isoformat(),
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "is_available": self.is_available,
            "is_booked": self.is_booked,
        }
