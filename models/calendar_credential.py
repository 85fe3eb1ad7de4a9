from datetime import datetime
from models.db import db

class CalendarCredential(db.Model):
    """Seller's Google Calendar grant. Token refresh is handled by the accounts service."""
    __tablename__ = "calendar_credentials"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True)

    access_token = db.Column(db.Text, nullable=False)
    token_expires_at = db.Column(db.DateTime, nullable=False)

    google_user_email = db.Column(db.String(255), nullable=True)
    calendar_id = db.Column(db.String(500), nullable=False, default="primary")

    auto_sync_enabled = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
