"""
Payment processor adapter (Moyasar-style REST API).

- POST /payments              create a payment (Idempotency-Key header)
- GET  /payments/{id}         retrieve current state
- POST /payments/{id}/refund  refund part or all of a paid payment

Amounts are integer minor units (halalas). Auth is HTTP Basic with the
secret key as username. Inbound notifications are signed with
HMAC-SHA256(webhook_secret, raw_body), hex encoded, in `x-moyasar-signature`.

The adapter never retries a payment creation on its own, and never decides
refund amounts. Processor error bodies are logged, never surfaced.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx

from activity_booking.core.config import Settings
from activity_booking.core.exceptions import (
    GatewayTimeoutError,
    GatewayUnavailableError,
    InvalidSourceError,
    NotFoundError,
)
from activity_booking.core.logging import get_logger
from activity_booking.core.metrics import payment_latency, record_payment_call
from activity_booking.models.booking import PaymentStatus

logger = get_logger(__name__)

SIGNATURE_HEADER = "x-moyasar-signature"


# --- payment sources --------------------------------------------------------

@dataclass(frozen=True)
class CardSource:
    name: str
    number: str = field(repr=False)
    cvc: str = field(repr=False)
    month: int
    year: int

    @property
    def last4(self) -> str:
        return self.number[-4:]


@dataclass(frozen=True)
class TokenSource:
    token: str = field(repr=False)


@dataclass(frozen=True)
class WalletSource:
    """Apple Pay payment token."""

    token: str = field(repr=False)


@dataclass(frozen=True)
class MobileWalletSource:
    """STC Pay, identified by the customer's mobile number."""

    mobile: str


@dataclass(frozen=True)
class BankTransferSource:
    """SADAD online banking account."""

    username: str


PaymentSource = Union[CardSource, TokenSource, WalletSource, MobileWalletSource, BankTransferSource]

METHOD_SOURCES: dict[str, tuple[type, ...]] = {
    "credit_card": (CardSource, TokenSource),
    "mada": (CardSource, TokenSource),
    "apple_pay": (WalletSource,),
    "stc_pay": (MobileWalletSource,),
    "sadad": (BankTransferSource,),
}


def check_method_source(method: str, source: PaymentSource) -> None:
    allowed = METHOD_SOURCES.get(method)
    if allowed is None:
        raise InvalidSourceError(f"Unsupported payment method '{method}'")
    if not isinstance(source, allowed):
        raise InvalidSourceError(f"Payment method '{method}' does not accept this payment source")


def build_source(source: PaymentSource) -> dict[str, Any]:
    """Wire-format source descriptor for the processor."""
    match source:
        case CardSource():
            return {
                "type": "creditcard",
                "name": source.name,
                "number": source.number,
                "cvc": source.cvc,
                "month": source.month,
                "year": source.year,
            }
        case TokenSource(token=token):
            return {"type": "token", "token": token}
        case WalletSource(token=token):
            return {"type": "applepay", "token": token}
        case MobileWalletSource(mobile=mobile):
            return {"type": "stcpay", "mobile": mobile}
        case BankTransferSource(username=username):
            return {"type": "sadad", "username": username}
    raise InvalidSourceError("Unsupported payment source")


# --- status normalization ----------------------------------------------------

STATUS_MAP = {
    "paid": PaymentStatus.PAID,
    "captured": PaymentStatus.PAID,
    "failed": PaymentStatus.FAILED,
    "voided": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
    "partially_refunded": PaymentStatus.REFUNDED,
    "initiated": PaymentStatus.PENDING,
    "authorized": PaymentStatus.PENDING,
    "pending": PaymentStatus.PENDING,
}


def normalize_status(raw_status: Optional[str]) -> str:
    return STATUS_MAP.get((raw_status or "").lower(), PaymentStatus.PENDING)


@dataclass(frozen=True)
class GatewayPayment:
    payment_id: str
    status: str
    raw_status: str
    amount: int
    currency: Optional[str] = None
    brand: Optional[str] = None
    last4: Optional[str] = None
    transaction_url: Optional[str] = None
    message: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GatewayPayment":
        source = data.get("source") or {}
        raw_status = str(data.get("status") or "")
        return cls(
            payment_id=str(data["id"]),
            status=normalize_status(raw_status),
            raw_status=raw_status,
            amount=int(data.get("amount") or 0),
            currency=data.get("currency"),
            brand=source.get("company") or source.get("brand"),
            last4=_last4(source),
            transaction_url=source.get("transaction_url"),
            message=source.get("message"),
            metadata=data.get("metadata") or {},
        )


def _last4(source: dict[str, Any]) -> Optional[str]:
    if source.get("last_four"):
        return str(source["last_four"])[-4:]
    number = source.get("number")
    if number:
        return str(number)[-4:]
    return None


@dataclass(frozen=True)
class GatewayRefund:
    refund_id: str
    payment_id: str
    amount: int
    status: str


# --- client -------------------------------------------------------------------

class PaymentGateway:
    """
    Injected processor client. Constructed once at startup (see main.py)
    and passed to the payment and reconciliation services.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        webhook_secret: str,
        timeout: float = 20.0,
        currency: str = "SAR",
        callback_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.currency = currency
        self.callback_url = callback_url
        self._webhook_secret = webhook_secret
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=httpx.BasicAuth(api_key, ""),
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> "PaymentGateway":
        return cls(
            base_url=settings.PAYMENT_GATEWAY_BASE_URL,
            api_key=settings.PAYMENT_GATEWAY_API_KEY,
            webhook_secret=settings.PAYMENT_WEBHOOK_SECRET,
            timeout=settings.PAYMENT_GATEWAY_TIMEOUT,
            currency=settings.PAYMENT_CURRENCY,
            callback_url=settings.PAYMENT_CALLBACK_URL,
            client=client,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> dict[str, Any]:
        start = time.perf_counter()
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            record_payment_call(operation, "timeout")
            logger.warning("payment_gateway_timeout", operation=operation, path=path)
            raise GatewayTimeoutError() from e
        except httpx.HTTPError as e:
            record_payment_call(operation, "unavailable")
            logger.error("payment_gateway_unreachable", operation=operation, path=path, error=str(e))
            raise GatewayUnavailableError() from e
        finally:
            payment_latency.labels(operation=operation).observe(time.perf_counter() - start)

        if response.status_code >= 500:
            record_payment_call(operation, "unavailable")
            logger.error(
                "payment_gateway_error",
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayUnavailableError()

        if response.status_code == 404:
            record_payment_call(operation, "not_found")
            raise NotFoundError("Payment not found at the processor", code="UnknownPayment")

        if response.status_code in (400, 422):
            record_payment_call(operation, "invalid")
            logger.warning(
                "payment_gateway_rejected",
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise InvalidSourceError("The payment details were rejected. Please check them and try again.")

        if response.status_code >= 400:
            record_payment_call(operation, "unavailable")
            logger.error("payment_gateway_misconfigured", operation=operation, status_code=response.status_code)
            raise GatewayUnavailableError()

        record_payment_call(operation, "ok")
        return response.json()

    async def create_payment(
        self,
        *,
        amount: int,
        description: str,
        source: PaymentSource,
        idempotency_key: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> GatewayPayment:
        body = {
            "amount": amount,
            "currency": self.currency,
            "description": description,
            "source": build_source(source),
            "metadata": {**(metadata or {}), "idempotency_key": idempotency_key},
        }
        if self.callback_url:
            body["callback_url"] = self.callback_url

        data = await self._request(
            "create",
            "POST",
            "/payments",
            json=body,
            headers={"Idempotency-Key": idempotency_key},
        )
        payment = GatewayPayment.from_payload(data)
        logger.info(
            "payment_created",
            payment_id=payment.payment_id,
            status=payment.status,
            raw_status=payment.raw_status,
            amount=payment.amount,
        )
        return payment

    async def retrieve_payment(self, payment_id: str) -> GatewayPayment:
        data = await self._request("retrieve", "GET", f"/payments/{payment_id}")
        return GatewayPayment.from_payload(data)

    async def refund(
        self,
        payment_id: str,
        amount: int,
        *,
        reason: str = "Booking cancellation refund",
        idempotency_key: Optional[str] = None,
    ) -> GatewayRefund:
        """Refund ``amount`` minor units. The amount is decided by the caller."""
        if amount <= 0:
            raise ValueError("refund amount must be positive")
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        data = await self._request(
            "refund",
            "POST",
            f"/payments/{payment_id}/refund",
            json={"amount": amount, "description": reason},
            headers=headers,
        )
        refund = GatewayRefund(
            refund_id=str(data.get("refund_id") or data.get("id") or payment_id),
            payment_id=payment_id,
            amount=int(data.get("refunded") or amount),
            status=normalize_status(data.get("status")),
        )
        logger.info("payment_refunded", payment_id=payment_id, refund_id=refund.refund_id, amount=refund.amount)
        return refund

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not self._webhook_secret:
            logger.warning("webhook_secret_not_configured")
            return False
        if not signature:
            return False
        expected = hmac.new(self._webhook_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    def sign(self, raw_body: bytes) -> str:
        """Signature the processor would send for ``raw_body``."""
        return hmac.new(self._webhook_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
