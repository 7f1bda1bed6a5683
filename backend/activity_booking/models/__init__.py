from activity_booking.models.booking import Booking, BookingStatus, PaymentStatus
from activity_booking.models.slot import SlotInventory
from activity_booking.models.payment_event import PaymentEvent, PaymentEventStatus
from activity_booking.models.outbox_event import OutboxEvent, OutboxStatus
from activity_booking.models.rating import CommunityRating, ParticipantRating, Rating, RatingStatus

__all__ = [
    "Booking", "BookingStatus", "PaymentStatus",
    "SlotInventory",
    "PaymentEvent", "PaymentEventStatus",
    "OutboxEvent", "OutboxStatus",
    "Rating", "ParticipantRating", "CommunityRating", "RatingStatus",
]
