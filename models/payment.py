from datetime import datetime
from models.db import db

class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    slot_id = db.Column(db.Integer, nullable=True, index=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True, index=True)

    provider = db.Column(db.String(20), nullable=False, default="STRIPE")
    amount = db.Column(db.Integer, nullable=False)   # smallest unit
    currency = db.Column(db.String(10), nullable=False, default="usd")

    # INIT, PROCESSING (webhook booking in flight), PAID, FAILED,
    # NEEDS_REFUND (paid but slot lost), REFUNDED
    status = db.Column(db.String(20), nullable=False, default="INIT", index=True)
    provider_reference = db.Column(db.String(255), nullable=True, index=True)
    stripe_session_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
