# Import models so that SQLAlchemy metadata includes them on app startup
from .user import User  # noqa: F401
from .invoice import Invoice  # noqa: F401
from .payment import Payment  # noqa: F401
