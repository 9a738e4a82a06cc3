"""
Payment processor boundary.

The orchestrator talks to exactly one canonical request/response shape;
everything processor-specific (SDK objects, endpoint fallback, field-name
variants) stays inside the adapters that implement ``PaymentGateway``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from ..core.enums import PaymentRecordStatus


@dataclass(frozen=True)
class BillingDetails:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    postal_code: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
        }
        if self.postal_code:
            payload["address"] = {"postal_code": self.postal_code}
        return {k: v for k, v in payload.items() if v is not None}


@dataclass(frozen=True)
class PaymentIntentRequest:
    amount_cents: int
    currency: str
    booking_id: str
    leg: str
    idempotency_key: str
    payment_method_ref: Optional[str] = None
    billing_details: Optional[BillingDetails] = None
    capture: bool = True

    @property
    def metadata(self) -> Dict[str, str]:
        return {"booking_id": self.booking_id, "leg": self.leg}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "metadata": self.metadata,
            "idempotency_key": self.idempotency_key,
        }
        if self.payment_method_ref:
            payload["payment_method_ref"] = self.payment_method_ref
        if self.billing_details:
            payload["billing_details"] = self.billing_details.to_payload()
        return payload


@dataclass(frozen=True)
class PaymentIntentResult:
    intent_id: str
    status: PaymentRecordStatus
    client_secret: Optional[str] = None
    amount_cents: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    amount_cents: int
    status: str = "succeeded"


class PaymentGateway(Protocol):
    """
    Capability the orchestrator needs from a payment processor.

    Implementations raise AuthorizationDeclinedException for declines,
    ProcessorUnavailableException for transient failures (the caller retries
    with the same idempotency key) and RefundFailedException from ``refund``.
    ``capture_intent`` and ``cancel_intent`` settle authorizations made with
    ``capture=False`` or left in requires_capture by the processor.
    """

    name: str

    def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntentResult:  # pragma: no cover - interface
        ...

    def refund(self, intent_id: str, amount_cents: int, idempotency_key: str) -> RefundResult:  # pragma: no cover - interface
        ...

    def retrieve_intent(self, intent_id: str) -> PaymentIntentResult:  # pragma: no cover - interface
        ...

    def capture_intent(
        self, intent_id: str, amount_cents: int, idempotency_key: str
    ) -> PaymentIntentResult:  # pragma: no cover - interface
        """Capture ``amount_cents`` of an authorized intent; the processor releases the rest."""
        ...

    def cancel_intent(self, intent_id: str, idempotency_key: str) -> PaymentIntentResult:  # pragma: no cover - interface
        """Void an uncaptured authorization."""
        ...


_STATUS_MAP = {
    "succeeded": PaymentRecordStatus.CAPTURED,
    "captured": PaymentRecordStatus.CAPTURED,
    "requires_capture": PaymentRecordStatus.AUTHORIZED,
    "authorized": PaymentRecordStatus.AUTHORIZED,
    "processing": PaymentRecordStatus.INITIATED,
    "requires_action": PaymentRecordStatus.INITIATED,
    "requires_confirmation": PaymentRecordStatus.INITIATED,
    "requires_payment_method": PaymentRecordStatus.INITIATED,
    "initiated": PaymentRecordStatus.INITIATED,
    "canceled": PaymentRecordStatus.FAILED,
    "failed": PaymentRecordStatus.FAILED,
}


def normalize_intent_status(raw_status: Optional[str]) -> PaymentRecordStatus:
    """Map a processor intent status onto PaymentRecordStatus."""
    return _STATUS_MAP.get((raw_status or "").strip().lower(), PaymentRecordStatus.INITIATED)
