from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from pbx_billing.core.config import settings
from pbx_billing.core.exceptions import ConfigurationError, GatewayError
from pbx_billing.core.logging_setup import get_logger

logger = get_logger("gateway")

SUCCEEDED = "succeeded"
PENDING = "pending"
FAILED = "failed"

_REASON_ALIASES = {
    "do_not_honor": "card_declined",
    "generic_decline": "card_declined",
    "declined": "card_declined",
    "expired_card": "invalid_payment_method",
    "incorrect_number": "invalid_payment_method",
    "invalid_card": "invalid_payment_method",
    "lost_card": "invalid_payment_method",
    "stolen_card": "invalid_payment_method",
    "card_closed": "invalid_payment_method",
    "account_closed": "invalid_payment_method",
    "timeout": "network_error",
    "connection_error": "network_error",
    "rate_limit": "rate_limit_exceeded",
    "too_many_requests": "rate_limit_exceeded",
    "api_error": "processing_error",
    "internal_error": "processing_error",
}


def classify_failure_reason(raw: str | None) -> str:
    """Normalize a provider's decline code onto the engine's reason vocabulary."""
    if not raw:
        return "processing_error"
    reason = raw.strip().lower().replace("-", "_").replace(" ", "_")
    return _REASON_ALIASES.get(reason, reason)


def is_retryable(reason: str | None) -> bool:
    return classify_failure_reason(reason) in settings.billing_retry_reasons


@dataclass
class GatewayOutcome:
    status: str
    gateway_ref: str | None = None
    failure_reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED


class PaymentGateway(Protocol):
    """Charges a saved payment method.

    Implementations bound their own network calls and raise GatewayError with
    reason "network_error" when the provider cannot be reached in time.
    """

    name: str

    def authorize(
        self,
        *,
        amount_cents: int,
        currency: str,
        payment_method_ref: str,
        idempotency_key: str,
    ) -> GatewayOutcome:
        ...


class ManualGateway:
    """Offline payments (check, wire confirmed by finance): always settle."""

    name = "manual"

    def authorize(self, *, amount_cents: int, currency: str, payment_method_ref: str, idempotency_key: str) -> GatewayOutcome:
        return GatewayOutcome(status=SUCCEEDED, gateway_ref=f"manual-{idempotency_key}")


class BankTransferGateway:
    """Transfers clear asynchronously; the outcome arrives through reconciliation."""

    name = "bank_transfer"

    def authorize(self, *, amount_cents: int, currency: str, payment_method_ref: str, idempotency_key: str) -> GatewayOutcome:
        return GatewayOutcome(status=PENDING, gateway_ref=f"bt-{idempotency_key}")


class CardProcessorGateway:
    """HTTP client for the card processor's charge endpoint."""

    name = "card"

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        *,
        timeout_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = (api_url or settings.billing_card_gateway_url or "").rstrip("/")
        if not self._base_url:
            raise ConfigurationError("Card gateway URL is not configured")
        self._api_key = api_key or settings.billing_card_gateway_api_key
        self._timeout = timeout_seconds or settings.billing_gateway_timeout_seconds or 30.0
        self._transport = transport

    def _request(self, path: str, *, payload: dict[str, Any], idempotency_key: str) -> httpx.Response:
        headers = {"Idempotency-Key": idempotency_key}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                return client.post(f"{self._base_url}{path}", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise GatewayError(f"Card gateway timed out: {exc}", reason="network_error") from exc
        except httpx.RequestError as exc:
            raise GatewayError(f"Failed to reach card gateway: {exc}", reason="network_error") from exc

    @staticmethod
    def _body(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {"error": response.text}
        return data if isinstance(data, dict) else {"data": data}

    def authorize(self, *, amount_cents: int, currency: str, payment_method_ref: str, idempotency_key: str) -> GatewayOutcome:
        response = self._request(
            "/charges",
            payload={"amount": amount_cents, "currency": currency, "payment_method": payment_method_ref},
            idempotency_key=idempotency_key,
        )
        body = self._body(response)

        if response.status_code == 429:
            raise GatewayError("Card gateway rate limit exceeded", reason="rate_limit_exceeded", details=body, status_code=429)
        if response.status_code >= 500:
            raise GatewayError(
                f"Card gateway error (HTTP {response.status_code})",
                reason="processing_error",
                details=body,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            # Declines come back as 402 with a provider decline code.
            code: Optional[str] = body.get("decline_code") or body.get("code") or body.get("error")
            reason = classify_failure_reason(code) if code else "card_declined"
            return GatewayOutcome(status=FAILED, gateway_ref=body.get("id"), failure_reason=reason)

        status = str(body.get("status") or "").lower()
        if status in ("succeeded", "paid", "approved"):
            return GatewayOutcome(status=SUCCEEDED, gateway_ref=body.get("id"))
        if status in ("pending", "processing"):
            return GatewayOutcome(status=PENDING, gateway_ref=body.get("id"))
        return GatewayOutcome(
            status=FAILED,
            gateway_ref=body.get("id"),
            failure_reason=classify_failure_reason(body.get("failure_code") or body.get("decline_code")),
        )


def gateways_from_settings() -> dict[str, PaymentGateway]:
    """Gateway per payment-method type, built from configuration."""
    gateways: dict[str, PaymentGateway] = {
        "manual": ManualGateway(),
        "bank_transfer": BankTransferGateway(),
    }
    if settings.billing_card_gateway_url:
        gateways["card"] = CardProcessorGateway()
    else:
        fallback = (settings.billing_default_gateway or "manual").lower()
        if fallback not in gateways:
            raise ConfigurationError(f"Unknown default gateway '{fallback}'")
        logger.warning("Card gateway URL not configured; card payments use the %s gateway", fallback)
        gateways["card"] = gateways[fallback]
    return gateways
