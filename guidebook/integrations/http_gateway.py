"""
PaymentGateway over plain HTTP backing endpoints.

Two generations of the intent-creation endpoint exist and may be deployed
side by side, and their response bodies differ in naming (``client_secret``
vs ``clientSecret``; ``intent_id`` vs ``payment_intent_id`` vs ``id``). This
adapter tries the configured endpoints in order and normalizes whichever
answers first.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..core.exceptions import (
    AuthorizationDeclinedException,
    ProcessorUnavailableException,
    RefundFailedException,
)
from .payment_gateway import (
    PaymentIntentRequest,
    PaymentIntentResult,
    RefundResult,
    normalize_intent_status,
)

logger = logging.getLogger(__name__)


def _first(body: Dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        value = body.get(key)
        if value:
            return value
    return None


class HttpIntentGateway:
    """Thin client for the payment-intent backing endpoints."""

    name = "http"

    def __init__(
        self,
        *,
        intent_endpoints: Sequence[str],
        refund_endpoint: Optional[str] = None,
        intent_lookup_endpoint: Optional[str] = None,
        intent_action_endpoint: Optional[str] = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not intent_endpoints:
            raise ValueError("At least one payment intent endpoint must be configured")
        self._intent_endpoints: List[str] = list(intent_endpoints)
        self._refund_endpoint = refund_endpoint
        self._intent_lookup_endpoint = intent_lookup_endpoint
        self._intent_action_endpoint = intent_action_endpoint
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self._timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    @staticmethod
    def _parse_intent(body: Dict[str, Any]) -> Optional[PaymentIntentResult]:
        client_secret = _first(body, "client_secret", "clientSecret")
        intent_id = _first(body, "intent_id", "payment_intent_id", "paymentIntentId", "id")
        if not client_secret and not intent_id:
            return None
        if not intent_id and isinstance(client_secret, str):
            # Stripe-style secrets are "<intent id>_secret_<random>"
            intent_id = client_secret.split("_secret_")[0]
        return PaymentIntentResult(
            intent_id=str(intent_id),
            status=normalize_intent_status(body.get("status")),
            client_secret=client_secret,
            amount_cents=body.get("amount_cents") or body.get("amount"),
            raw=body,
        )

    def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntentResult:
        payload = request.to_payload()
        headers = {"Idempotency-Key": request.idempotency_key}
        with self._client() as client:
            for endpoint in self._intent_endpoints:
                try:
                    response = client.post(endpoint, json=payload, headers=headers)
                except httpx.HTTPError as exc:
                    logger.warning(
                        "payment_intent_endpoint_unreachable",
                        extra={"endpoint": endpoint, "error": str(exc)},
                    )
                    continue

                if response.status_code == 402:
                    body = self._safe_json(response)
                    raise AuthorizationDeclinedException(
                        body.get("message") if isinstance(body.get("message"), str) else None,
                        decline_code=body.get("decline_code"),
                    )
                if not response.is_success:
                    logger.warning(
                        "payment_intent_endpoint_failed",
                        extra={"endpoint": endpoint, "status_code": response.status_code},
                    )
                    continue

                result = self._parse_intent(self._safe_json(response))
                if result is not None:
                    return result
                logger.warning(
                    "payment_intent_endpoint_missing_secret", extra={"endpoint": endpoint}
                )

        raise ProcessorUnavailableException("Unable to initialize payment")

    def refund(self, intent_id: str, amount_cents: int, idempotency_key: str) -> RefundResult:
        if not self._refund_endpoint:
            raise RefundFailedException("No refund endpoint configured")
        try:
            with self._client() as client:
                response = client.post(
                    self._refund_endpoint,
                    json={"intent_id": intent_id, "amount_cents": amount_cents},
                    headers={"Idempotency-Key": idempotency_key},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RefundFailedException(f"Refund request failed: {str(exc)}")
        body = self._safe_json(response)
        return RefundResult(
            refund_id=str(_first(body, "refund_id", "id") or idempotency_key),
            amount_cents=int(body.get("amount_cents") or amount_cents),
            status=str(body.get("status") or "succeeded"),
        )

    def retrieve_intent(self, intent_id: str) -> PaymentIntentResult:
        if not self._intent_lookup_endpoint:
            raise ProcessorUnavailableException("No intent lookup endpoint configured")
        url = self._intent_lookup_endpoint.format(intent_id=intent_id)
        try:
            with self._client() as client:
                response = client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProcessorUnavailableException(f"Intent lookup failed: {str(exc)}")
        result = self._parse_intent({"intent_id": intent_id, **self._safe_json(response)})
        assert result is not None
        return result

    def capture_intent(self, intent_id: str, amount_cents: int, idempotency_key: str) -> PaymentIntentResult:
        return self._intent_action(intent_id, "capture", idempotency_key, {"amount_cents": amount_cents})

    def cancel_intent(self, intent_id: str, idempotency_key: str) -> PaymentIntentResult:
        return self._intent_action(intent_id, "cancel", idempotency_key, {})

    def _intent_action(
        self, intent_id: str, action: str, idempotency_key: str, payload: Dict[str, Any]
    ) -> PaymentIntentResult:
        if not self._intent_action_endpoint:
            raise ProcessorUnavailableException(f"No endpoint configured to {action} intents")
        url = self._intent_action_endpoint.format(intent_id=intent_id, action=action)
        try:
            with self._client() as client:
                response = client.post(url, json=payload, headers={"Idempotency-Key": idempotency_key})
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "payment_intent_action_failed",
                extra={"action": action, "intent_id": intent_id, "error": str(exc)},
            )
            raise ProcessorUnavailableException(f"Intent {action} failed: {str(exc)}")
        result = self._parse_intent({"intent_id": intent_id, **self._safe_json(response)})
        assert result is not None
        return result

    @staticmethod
    def _safe_json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
