"""
Slot inventory: capacity consumed per (activity, date, start, end).

Key design decisions:
- One row per bookable slot instance, created lazily on first booking
- `reserved` counts participants held by pending/confirmed bookings
- `version` enables the optimistic conditional update used to reserve seats
- CHECK constraints are the final safety net against overbooking
"""

from sqlalchemy import CheckConstraint, Column, Date, Integer, String, UniqueConstraint

from activity_booking.db.base import Base, TimestampMixin


class SlotInventory(Base, TimestampMixin):
    __tablename__ = "slot_inventory"

    id = Column(Integer, primary_key=True, index=True)
    activity_id = Column(String(64), nullable=False, index=True)
    slot_date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    capacity = Column(Integer, nullable=False)
    reserved = Column(Integer, nullable=False, default=0)

    # Optimistic locking version counter
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("activity_id", "slot_date", "start_time", "end_time", name="uq_slot_inventory_slot"),
        CheckConstraint("reserved >= 0", name="check_slot_reserved_non_negative"),
        CheckConstraint("capacity > 0", name="check_slot_capacity_positive"),
        CheckConstraint("reserved <= capacity", name="check_slot_reserved_lte_capacity"),
    )

    @property
    def remaining(self) -> int:
        return self.capacity - self.reserved

    def __repr__(self) -> str:
        return (
            f"<SlotInventory(activity={self.activity_id}, date={self.slot_date}, "
            f"start={self.start_time}, reserved={self.reserved}/{self.capacity})>"
        )
