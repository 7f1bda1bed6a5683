"""
Read-only catalog snapshots consumed by the booking engine.

Activities and vendors are owned by the catalog service; these models only
describe the fields the engine reads when validating and pricing a booking.
"""

from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class Capacity(BaseModel):
    min: int = Field(1, ge=1)
    max: int = Field(..., ge=1)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min > self.max:
            raise ValueError("capacity.min must not exceed capacity.max")
        return self


class FixedSlot(BaseModel):
    date: date
    start_time: str = Field(..., pattern=TIME_PATTERN)
    end_time: str = Field(..., pattern=TIME_PATTERN)
    available_spots: Optional[int] = Field(None, gt=0)


class SlotWindow(BaseModel):
    start_time: str = Field(..., pattern=TIME_PATTERN)
    end_time: str = Field(..., pattern=TIME_PATTERN)
    max_bookings: Optional[int] = Field(None, gt=0)


class DayAvailability(BaseModel):
    day: Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
    slots: list[SlotWindow] = []


class Schedule(BaseModel):
    type: Literal["fixed", "recurring", "flexible"] = "fixed"
    fixed_slots: list[FixedSlot] = []
    availability: list[DayAvailability] = []
    blackout_dates: list[date] = []


class GroupDiscount(BaseModel):
    min_participants: int = Field(..., ge=1)
    discount_percent: Decimal = Field(..., ge=0, le=100)


class Pricing(BaseModel):
    base_price: int = Field(..., ge=0)  # minor units
    currency: str = Field("SAR", min_length=3, max_length=3)
    group_discounts: list[GroupDiscount] = []


class Policies(BaseModel):
    # Display-only; refund tiers are fixed by the booking ledger
    cancellation: Optional[str] = None
    refund: Optional[str] = None


class ActivitySnapshot(BaseModel):
    id: str
    vendor_id: str
    title: str = ""
    is_active: bool = True
    timezone: str = "UTC"
    capacity: Capacity
    schedule: Schedule = Schedule()
    pricing: Pricing
    policies: Policies = Policies()


class VendorSnapshot(BaseModel):
    id: str
    is_active: bool = True
    owner_id: Optional[str] = None
