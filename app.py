import logging

import click
from flask import Flask, jsonify
from flask_migrate import Migrate

from celery_app import celery_init_app
from config import Config
from models import db
from routes import booking_bp, health_bp, payments_bp, slot_bp, webhook_bp
from services.errors import BookingError
from utils.auth_context import load_current_user
from utils.seed import seed_roles


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(slot_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhook_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Background jobs
    celery_init_app(app)

    # Seed default roles at startup (safe & idempotent)
    if not app.config.get("TESTING"):
        with app.app_context():
            seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    @app.errorhandler(BookingError)
    def _booking_error(exc):
        return jsonify(error=exc.message), exc.status_code

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app

#-------------------------
from models.user import User, Role
from services import retention, status

def register_cli(app):
    @app.cli.command("make-seller")
    @click.argument("email")
    def make_seller(email):
        """Grant the SELLER role to a user by email."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            click.echo("User not found")
            return

        seller_role = Role.query.filter_by(name="SELLER").first()
        if not seller_role:
            seller_role = Role(name="SELLER")
            db.session.add(seller_role)
            db.session.commit()

        if seller_role not in user.roles:
            user.roles.append(seller_role)
            db.session.commit()

        click.echo(f"{user.email} can now publish consultation slots")

    @app.cli.command("promote-missed")
    def promote_missed():
        """Move started bookings to in_progress and overdue ones to missed."""
        summary = status.promote_overdue_bookings()
        click.echo(f"started={summary['started']} missed={summary['missed']}")

    @app.cli.command("retention-sweep")
    def retention_sweep():
        """Delete expired slots and bookings per the retention policy."""
        summary = retention.run_retention_sweep()
        click.echo(
            f"past_slots={summary['past_slots_deleted']} "
            f"old_booked_slots={summary['old_booked_slots_deleted']} "
            f"old_bookings={summary['old_bookings_deleted']} "
            f"failures={summary['failures']}"
        )

#-------------------------




if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
