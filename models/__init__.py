from .db import db
from .audit_log import AuditLog
from .session_type import SessionType
from .booking import Booking
from .payment import Payment
from .webhook_event import ProcessedWebhookEvent, BufferedWebhook
