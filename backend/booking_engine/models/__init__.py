from booking_engine.models.booking import Booking, PaymentStatus
from booking_engine.models.event import Event
from booking_engine.models.payment_transaction import PaymentTransaction, RefundStatus
from booking_engine.models.user import User

__all__ = ["Booking", "Event", "PaymentStatus", "PaymentTransaction", "RefundStatus", "User"]
