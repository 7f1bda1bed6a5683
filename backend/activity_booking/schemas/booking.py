"""
Pydantic schemas for booking-related request/response validation.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from activity_booking.schemas.catalog import TIME_PATTERN


class ParticipantDetail(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    age: Optional[int] = Field(None, ge=0, le=120)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=32)
    special_requirements: Optional[str] = Field(None, max_length=500)


class EmergencyContact(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    phone: str = Field(..., max_length=32)
    relationship: Optional[str] = Field(None, max_length=100)


class ContactInfo(BaseModel):
    email: EmailStr
    phone: str = Field(..., min_length=5, max_length=32)
    emergency_contact: Optional[EmergencyContact] = None


class BookingCreate(BaseModel):
    activity_id: str = Field(..., min_length=1, max_length=64)
    booking_date: date
    start_time: str = Field(..., pattern=TIME_PATTERN)
    end_time: str = Field(..., pattern=TIME_PATTERN)
    participants: list[ParticipantDetail] = Field(..., min_length=1)
    contact_info: ContactInfo
    special_requests: Optional[str] = Field(None, max_length=1000)


class BookingResponse(BaseModel):
    id: int
    reference: str
    user_id: str
    activity_id: str
    vendor_id: str
    booking_date: date
    start_time: str
    end_time: str
    starts_at: datetime
    participant_count: int
    participant_details: list[dict]
    contact_info: dict
    special_requests: Optional[str]

    currency: str
    base_price: int
    gross_amount: int
    discount_amount: int
    discount_reason: Optional[str]
    subtotal: int
    tax_rate: Decimal
    tax_amount: int
    platform_fee: int
    processing_fee: int
    total_price: int

    status: str
    payment_status: str
    payment_method: Optional[str]
    gateway_payment_id: Optional[str]
    payment_brand: Optional[str]
    payment_last4: Optional[str]
    paid_at: Optional[datetime]
    refunded_at: Optional[datetime]
    refund_amount: Optional[int]

    cancelled_at: Optional[datetime]
    cancelled_by: Optional[str]
    cancellation_reason: Optional[str]
    cancellation_refund_amount: Optional[int]
    refund_processed: bool

    review_rating: Optional[int]
    review_comment: Optional[str]
    review_submitted_at: Optional[datetime]

    created_at: datetime

    model_config = {"from_attributes": True}


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    total: int
    page: int
    page_size: int


class BookingCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class BookingCancelResponse(BaseModel):
    message: str
    reference: str
    status: str
    refund_amount: int


class BookingStatusUpdate(BaseModel):
    status: str
    notes: Optional[str] = Field(None, max_length=1000)


class BookingReviewCreate(BaseModel):
    # Range is enforced by the service so the error carries the OutOfRange code
    rating: int
    comment: Optional[str] = Field(None, max_length=1000)
