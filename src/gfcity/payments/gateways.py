"""
Payment gateway port and the two mobile-money providers.

Each gateway owns its provider's dialect:
- starting a charge (`initiate`),
- turning an inbound callback into a `GatewayNotification` (`parse_callback`),
- translating the provider's status vocabulary (`translate_status`).

The reconciliation engine never sees provider payload shapes; it receives the
provider-tagged reference, the raw status string and the opaque payload.

Flutterwave is charge-based: the callback carries the final status and is
authenticated by a shared `verif-hash` header. Pesapal is OAuth-token based:
the IPN only carries ids, so the status is fetched from the API.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

import httpx

from gfcity.config.settings import FlutterwaveSettings, PesapalSettings, Settings
from gfcity.core.http import get_json, post_json
from gfcity.core.time import parse_datetime
from gfcity.domain.errors import DependencyUnavailable, Unauthorized, ValidationError
from gfcity.domain.models import (
    ExternalReference,
    Payment,
    PaymentProviderName,
    PaymentStatus,
    ProviderHandle,
    User,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayNotification:
    reference: ExternalReference
    raw_status: str
    transaction_id: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    name: PaymentProviderName

    def initiate(self, payment: Payment, payer: User) -> ProviderHandle: ...
    def translate_status(self, raw_status: str) -> PaymentStatus: ...
    def parse_callback(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> GatewayNotification: ...


def new_reference(provider: PaymentProviderName, *, prefix: str = "GFC") -> ExternalReference:
    """`<prefix>-<epoch millis>-<8 hex>`, unique per attempt."""
    value = f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
    return ExternalReference(provider=provider, value=value)


def _wrap_http_error(provider: str, action: str, exc: Exception) -> DependencyUnavailable:
    status = None
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    logger.warning("%s %s failed (status=%s): %s", provider, action, status, exc)
    return DependencyUnavailable(f"{provider} {action} failed", status=status)


FLUTTERWAVE_STATUS_MAP: dict[str, PaymentStatus] = {
    "successful": PaymentStatus.SUCCESSFUL,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
}


class FlutterwaveGateway:
    name = PaymentProviderName.FLUTTERWAVE

    def __init__(self, settings: FlutterwaveSettings, *, timeout_seconds: float = 15):
        self._settings = settings
        self._timeout_seconds = float(timeout_seconds)

    def _require_secret_key(self) -> str:
        if not self._settings.secret_key:
            raise DependencyUnavailable("Flutterwave is not configured. Set FLUTTERWAVE_SECRET_KEY.")
        return self._settings.secret_key

    def translate_status(self, raw_status: str) -> PaymentStatus:
        return FLUTTERWAVE_STATUS_MAP.get(str(raw_status or "").strip().lower(), PaymentStatus.PROCESSING)

    def initiate(self, payment: Payment, payer: User) -> ProviderHandle:
        secret_key = self._require_secret_key()
        phone = payment.phone_number or payer.phone_number
        body = {
            "tx_ref": payment.reference.value,
            "amount": payment.amount,
            "currency": payment.currency,
            "network": self._settings.network,
            "phone_number": phone,
            "email": payer.email or f"{phone.lstrip('+')}@{self._settings.email_domain}",
            "fullname": payer.full_name,
            "meta": {"report_id": str(payment.report_id), "user_id": str(payer.id)},
        }
        if self._settings.redirect_url:
            body["redirect_url"] = self._settings.redirect_url
        try:
            resp = post_json(
                f"{self._settings.base_url.rstrip('/')}/charges?type=mobile_money_uganda",
                payload=body,
                headers={"Authorization": f"Bearer {secret_key}"},
                timeout_seconds=self._timeout_seconds,
            )
        except (httpx.HTTPError, ValueError) as exc:
            raise _wrap_http_error("Flutterwave", "charge", exc) from exc

        resp = resp if isinstance(resp, dict) else {}
        authorization = (resp.get("meta") or {}).get("authorization") or {}
        data = resp.get("data") or {}
        return ProviderHandle(
            reference=payment.reference,
            redirect_url=authorization.get("redirect"),
            provider_tracking_id=str(data["id"]) if data.get("id") is not None else None,
            raw=resp,
        )

    def parse_callback(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> GatewayNotification:
        expected = self._settings.secret_hash
        if not expected:
            logger.error("FLUTTERWAVE_SECRET_HASH not configured; rejecting webhook.")
            raise Unauthorized("Invalid signature")
        signature = headers.get("verif-hash")
        if signature != expected:
            raise Unauthorized("Invalid signature")

        data = payload.get("data")
        if not isinstance(data, Mapping):
            raise ValidationError("Flutterwave webhook without a data object")
        tx_ref = data.get("tx_ref")
        if not tx_ref:
            raise ValidationError("Flutterwave webhook without tx_ref")
        return GatewayNotification(
            reference=ExternalReference(provider=self.name, value=str(tx_ref)),
            raw_status=str(data.get("status") or ""),
            transaction_id=str(data["id"]) if data.get("id") is not None else None,
            raw_payload=dict(payload),
        )


PESAPAL_STATUS_MAP: dict[str, PaymentStatus] = {
    "completed": PaymentStatus.SUCCESSFUL,
    "failed": PaymentStatus.FAILED,
    "invalid": PaymentStatus.CANCELLED,
    "reversed": PaymentStatus.CANCELLED,
}


class PesapalGateway:
    name = PaymentProviderName.PESAPAL

    def __init__(self, settings: PesapalSettings, *, timeout_seconds: float = 15):
        self._settings = settings
        self._timeout_seconds = float(timeout_seconds)
        self._token: str | None = None
        self._token_expires_at_unix: float = 0
        self._token_lock = threading.Lock()

    def translate_status(self, raw_status: str) -> PaymentStatus:
        return PESAPAL_STATUS_MAP.get(str(raw_status or "").strip().lower(), PaymentStatus.PROCESSING)

    def _require_credentials(self) -> tuple[str, str]:
        key = self._settings.consumer_key
        secret = self._settings.consumer_secret
        if not key or not secret:
            raise DependencyUnavailable(
                "Pesapal is not configured. Set PESAPAL_CONSUMER_KEY and PESAPAL_CONSUMER_SECRET."
            )
        return key, secret

    def _get_token(self) -> str:
        """Get a valid bearer token, refreshing it when needed."""
        with self._token_lock:
            now = time.time()
            if self._token and now < self._token_expires_at_unix - 30:
                return self._token

            key, secret = self._require_credentials()
            try:
                payload = post_json(
                    f"{self._settings.base_url}/Auth/RequestToken",
                    payload={"consumer_key": key, "consumer_secret": secret},
                    timeout_seconds=self._timeout_seconds,
                )
            except (httpx.HTTPError, ValueError) as exc:
                raise _wrap_http_error("Pesapal", "token request", exc) from exc

            token = (payload or {}).get("token")
            if not token:
                raise DependencyUnavailable("Pesapal token response is missing token.")
            # Tokens are documented to live 5 minutes; trust expiryDate when it parses.
            expires_at = now + 300
            expiry = payload.get("expiryDate")
            if expiry:
                try:
                    expires_at = parse_datetime(str(expiry), "UTC").timestamp()
                except ValueError:
                    logger.info("Unparseable Pesapal expiryDate %r; assuming 5 minutes.", expiry)
            self._token = str(token)
            self._token_expires_at_unix = expires_at
            return self._token

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._get_token()}"}

    def initiate(self, payment: Payment, payer: User) -> ProviderHandle:
        first, _, last = payer.full_name.partition(" ")
        body = {
            "id": payment.reference.value,
            "currency": payment.currency,
            "amount": payment.amount,
            "description": f"Garbage collection for report {payment.report_id}",
            "callback_url": self._settings.callback_url,
            "notification_id": self._settings.notification_id,
            "billing_address": {
                "phone_number": payment.phone_number or payer.phone_number,
                "email_address": payer.email,
                "first_name": first,
                "last_name": last,
            },
        }
        try:
            resp = post_json(
                f"{self._settings.base_url}/Transactions/SubmitOrderRequest",
                payload=body,
                headers=self._auth_headers(),
                timeout_seconds=self._timeout_seconds,
            )
        except (httpx.HTTPError, ValueError) as exc:
            raise _wrap_http_error("Pesapal", "order submission", exc) from exc

        resp = resp if isinstance(resp, dict) else {}
        if resp.get("error"):
            logger.warning("Pesapal rejected order %s: %s", payment.reference.value, resp["error"])
            raise DependencyUnavailable("Pesapal rejected the order", error=resp["error"])
        return ProviderHandle(
            reference=payment.reference,
            redirect_url=resp.get("redirect_url"),
            provider_tracking_id=resp.get("order_tracking_id"),
            raw=resp,
        )

    def transaction_status(self, order_tracking_id: str) -> dict[str, Any]:
        try:
            resp = get_json(
                f"{self._settings.base_url}/Transactions/GetTransactionStatus",
                params={"orderTrackingId": order_tracking_id},
                headers=self._auth_headers(),
                timeout_seconds=self._timeout_seconds,
            )
        except (httpx.HTTPError, ValueError) as exc:
            raise _wrap_http_error("Pesapal", "status query", exc) from exc
        return resp if isinstance(resp, dict) else {}

    def parse_callback(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> GatewayNotification:
        tracking_id = payload.get("OrderTrackingId")
        merchant_ref = payload.get("OrderMerchantReference")
        if not tracking_id or not merchant_ref:
            raise ValidationError("Invalid IPN parameters")
        transaction = self.transaction_status(str(tracking_id))
        return GatewayNotification(
            reference=ExternalReference(provider=self.name, value=str(merchant_ref)),
            raw_status=str(transaction.get("payment_status_description") or ""),
            transaction_id=str(tracking_id),
            raw_payload=transaction,
        )


class GatewayRegistry:
    """Provider name -> gateway; also the default status mapper for reconciliation."""

    def __init__(self, gateways: list[PaymentGateway]):
        self._gateways = {g.name: g for g in gateways}

    def get(self, provider: PaymentProviderName | str) -> PaymentGateway:
        try:
            return self._gateways[PaymentProviderName(provider)]
        except (KeyError, ValueError):
            raise ValidationError(f"unknown payment provider '{provider}'") from None

    def translate_status(self, provider: PaymentProviderName, raw_status: str) -> PaymentStatus:
        return self.get(provider).translate_status(raw_status)


def build_gateways(settings: Settings) -> GatewayRegistry:
    timeout = settings.app.http_timeout_seconds
    return GatewayRegistry(
        [
            FlutterwaveGateway(settings.payments.flutterwave, timeout_seconds=timeout),
            PesapalGateway(settings.payments.pesapal, timeout_seconds=timeout),
        ]
    )
