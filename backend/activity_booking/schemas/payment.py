"""
Pydantic schemas for payment requests.

The payment source is a tagged union keyed by `type`; each variant converts
to the adapter's source dataclass.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from activity_booking.infrastructure.payment_gateway import (
    BankTransferSource,
    CardSource,
    MobileWalletSource,
    TokenSource,
    WalletSource,
)


class CardSourceIn(BaseModel):
    type: Literal["card"]
    name: str = Field(..., min_length=1, max_length=100)
    number: str = Field(..., pattern=r"^\d{12,19}$", repr=False)
    cvc: str = Field(..., pattern=r"^\d{3,4}$", repr=False)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)

    def to_source(self) -> CardSource:
        return CardSource(name=self.name, number=self.number, cvc=self.cvc, month=self.month, year=self.year)


class TokenSourceIn(BaseModel):
    type: Literal["token"]
    token: str = Field(..., min_length=1, repr=False)

    def to_source(self) -> TokenSource:
        return TokenSource(token=self.token)


class WalletSourceIn(BaseModel):
    type: Literal["wallet"]
    token: str = Field(..., min_length=1, repr=False)

    def to_source(self) -> WalletSource:
        return WalletSource(token=self.token)


class MobileWalletSourceIn(BaseModel):
    type: Literal["mobile_wallet"]
    mobile: str = Field(..., pattern=r"^\+?\d{8,15}$")

    def to_source(self) -> MobileWalletSource:
        return MobileWalletSource(mobile=self.mobile)


class BankTransferSourceIn(BaseModel):
    type: Literal["bank_transfer"]
    username: str = Field(..., min_length=1, max_length=100)

    def to_source(self) -> BankTransferSource:
        return BankTransferSource(username=self.username)


PaymentSourceIn = Annotated[
    Union[CardSourceIn, TokenSourceIn, WalletSourceIn, MobileWalletSourceIn, BankTransferSourceIn],
    Field(discriminator="type"),
]


class PaymentInitiate(BaseModel):
    method: Literal["credit_card", "mada", "apple_pay", "stc_pay", "sadad"]
    source: PaymentSourceIn


class PaymentResponse(BaseModel):
    reference: str
    gateway_payment_id: Optional[str]
    payment_status: str
    booking_status: str
    transaction_url: Optional[str] = None


class WebhookAck(BaseModel):
    received: bool
    event_id: str
    status: str
    duplicate: bool = False
