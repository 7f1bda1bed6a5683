from activity_booking.schemas.catalog import ActivitySnapshot, VendorSnapshot
from activity_booking.schemas.booking import BookingCreate, BookingResponse, BookingListResponse
from activity_booking.schemas.payment import PaymentInitiate, PaymentResponse
from activity_booking.schemas.rating import RatingCreate, RatingResponse, CommunityRatingResponse

__all__ = [
    "ActivitySnapshot", "VendorSnapshot",
    "BookingCreate", "BookingResponse", "BookingListResponse",
    "PaymentInitiate", "PaymentResponse",
    "RatingCreate", "RatingResponse", "CommunityRatingResponse",
]
