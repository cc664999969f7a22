from .health import health_bp
from .session_types import session_types_bp
from .bookings import bookings_bp
from .webhooks import webhook_bp
from .pay_pages import pay_pages_bp
