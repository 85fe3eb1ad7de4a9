from .db import db
from .user import User, Role, user_roles
from .session import Session
from .audit_log import AuditLog
from .slot import Slot
from .booking import Booking
from .payment import Payment
from .calendar_credential import CalendarCredential
