from __future__ import annotations

import abc
import hashlib
import hmac
import threading
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

import httpx

from config import (
    MERCADOPAGO_ACCESS_TOKEN,
    MERCADOPAGO_API_BASE_URL,
    MERCADOPAGO_TIMEOUT_SECONDS,
    PAYMENT_PROVIDER,
)
from errors import PaymentGatewayError

GatewayName = Literal["mock", "mercadopago"]


@dataclass(frozen=True)
class PixIntent:
    """
    Presentation data for a PIX charge, returned to the client verbatim.

    `qr_code` is the copy-paste ("copia e cola") string; `qr_code_base64` is
    the rendered PNG.
    """

    gateway_payment_id: str
    qr_code_base64: str
    qr_code: str
    ticket_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentDetails:
    gateway_payment_id: str
    status: str
    external_reference: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class BasePaymentGateway(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> GatewayName:
        raise NotImplementedError

    @abc.abstractmethod
    def create_pix_intent(
        self,
        *,
        amount: Decimal,
        description: str,
        payer_email: str,
        correlation_token: str,
        notify_url: Optional[str] = None,
    ) -> PixIntent:
        """
        Create a PIX charge. `correlation_token` comes back as the payment's
        external reference and is the only link between gateway and order.
        """

    @abc.abstractmethod
    def fetch_payment_details(self, gateway_payment_id: str) -> PaymentDetails:
        """Authoritative payment state; notification payloads are never trusted."""


class MockGateway(BasePaymentGateway):
    """In-memory gateway for local development and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._payments: Dict[str, PaymentDetails] = {}

    @property
    def name(self) -> GatewayName:
        return "mock"

    def create_pix_intent(
        self,
        *,
        amount: Decimal,
        description: str,
        payer_email: str,
        correlation_token: str,
        notify_url: Optional[str] = None,
    ) -> PixIntent:
        _ = (payer_email, notify_url)
        payment_id = f"mock-{uuid.uuid4().hex[:16]}"
        with self._lock:
            self._payments[payment_id] = PaymentDetails(
                gateway_payment_id=payment_id,
                status="pending",
                external_reference=correlation_token,
                raw={"transaction_amount": str(amount), "description": description},
            )
        # Non-functional PIX payload; never a real charge.
        qr_code = f"00020126mock{correlation_token}5204000053039865802BR"
        return PixIntent(
            gateway_payment_id=payment_id,
            qr_code_base64="",
            qr_code=qr_code,
            ticket_url=None,
        )

    def set_status(self, gateway_payment_id: str, status: str) -> PaymentDetails:
        with self._lock:
            current = self._payments.get(gateway_payment_id)
            if current is None:
                raise KeyError(gateway_payment_id)
            updated = PaymentDetails(
                gateway_payment_id=gateway_payment_id,
                status=str(status),
                external_reference=current.external_reference,
                raw=current.raw,
            )
            self._payments[gateway_payment_id] = updated
            return updated

    def fetch_payment_details(self, gateway_payment_id: str) -> PaymentDetails:
        with self._lock:
            details = self._payments.get(str(gateway_payment_id))
        if details is None:
            raise PaymentGatewayError(f"payment not found: {gateway_payment_id}", upstream_status=404)
        return details


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        message = str(data.get("message") or data.get("error") or "").strip()
        if message:
            return message
    return (resp.text or "").strip()[:200] or f"HTTP {resp.status_code}"


class MercadoPagoGateway(BasePaymentGateway):
    def __init__(
        self,
        *,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.access_token = str(access_token if access_token is not None else MERCADOPAGO_ACCESS_TOKEN or "").strip()
        self.base_url = str(base_url or MERCADOPAGO_API_BASE_URL).rstrip("/")
        self.timeout = float(timeout if timeout is not None else MERCADOPAGO_TIMEOUT_SECONDS)
        self._client = client

    @property
    def name(self) -> GatewayName:
        return "mercadopago"

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.access_token:
            raise PaymentGatewayError("MERCADOPAGO_ACCESS_TOKEN is missing")
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                resp = self._client.request(method, url, json=json_body, headers=headers, timeout=self.timeout)
            else:
                resp = httpx.request(method, url, json=json_body, headers=headers, timeout=self.timeout, trust_env=False)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise PaymentGatewayError(
                f"mercadopago {method} {path} failed: {_error_message(exc.response)}",
                upstream_status=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(f"mercadopago {method} {path} unreachable: {exc}") from exc
        try:
            data = resp.json() if resp.content else {}
        except ValueError as exc:
            raise PaymentGatewayError(f"mercadopago {method} {path} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise PaymentGatewayError(f"mercadopago {method} {path} returned unexpected payload")
        return data

    def create_pix_intent(
        self,
        *,
        amount: Decimal,
        description: str,
        payer_email: str,
        correlation_token: str,
        notify_url: Optional[str] = None,
    ) -> PixIntent:
        payload: Dict[str, Any] = {
            # The API takes a JSON number; render it from the exact two-place amount.
            "transaction_amount": float(Decimal(amount).quantize(Decimal("0.01"))),
            "description": description,
            "payment_method_id": "pix",
            "payer": {"email": payer_email},
            "external_reference": correlation_token,
        }
        if notify_url:
            payload["notification_url"] = notify_url

        data = self._request("POST", "/v1/payments", json_body=payload, idempotency_key=correlation_token)
        payment_id = str(data.get("id") or "").strip()
        transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        qr_code = str(transaction.get("qr_code") or "").strip()
        if not payment_id or not qr_code:
            raise PaymentGatewayError("mercadopago response is missing the PIX transaction data")
        return PixIntent(
            gateway_payment_id=payment_id,
            qr_code_base64=str(transaction.get("qr_code_base64") or ""),
            qr_code=qr_code,
            ticket_url=str(transaction.get("ticket_url") or "").strip() or None,
            raw={"status": data.get("status")},
        )

    def fetch_payment_details(self, gateway_payment_id: str) -> PaymentDetails:
        payment_id = str(gateway_payment_id or "").strip()
        if not payment_id:
            raise ValueError("gateway_payment_id is required")
        data = self._request("GET", f"/v1/payments/{payment_id}")
        return PaymentDetails(
            gateway_payment_id=str(data.get("id") or payment_id),
            status=str(data.get("status") or "").strip().lower(),
            external_reference=str(data.get("external_reference") or "").strip() or None,
            raw={"status_detail": data.get("status_detail")},
        )


def parse_signature_header(header: str | None) -> Dict[str, str]:
    parts: Dict[str, str] = {}
    for chunk in str(header or "").split(","):
        key, sep, value = chunk.partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def verify_mercadopago_signature(
    *,
    secret: str,
    signature_header: str | None,
    request_id: str | None,
    data_id: str | None,
) -> bool:
    """
    Verify the `x-signature` header of a Mercado Pago notification.

    - Header format: `ts=<unix ts>,v1=<hex digest>`.
    - Manifest: `id:<data.id>;request-id:<x-request-id>;ts:<ts>;`, omitting
      parts whose value is absent.
    - Algorithm: HMAC-SHA256 keyed with the webhook secret, constant-time compare.
    """

    secret_key = str(secret or "").encode("utf-8")
    if not secret_key:
        return False
    parts = parse_signature_header(signature_header)
    ts = parts.get("ts", "")
    provided = parts.get("v1", "")
    if not ts or not provided:
        return False

    manifest = ""
    if data_id:
        # Alphanumeric ids are signed lowercased.
        manifest += f"id:{str(data_id).lower()};"
    if request_id:
        manifest += f"request-id:{request_id};"
    manifest += f"ts:{ts};"
    expected = hmac.new(secret_key, manifest.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided.lower())


_MOCK_GATEWAY = MockGateway()


def get_payment_gateway(name: Optional[str] = None) -> BasePaymentGateway:
    """
    Gateway factory.

    If `name` is not provided, reads from config.PAYMENT_PROVIDER. The mock
    gateway is process-wide so intents created by one request can be fetched
    by a later notification.
    """

    selected = (name or PAYMENT_PROVIDER or "mock").strip().lower()
    if selected == "mercadopago":
        return MercadoPagoGateway()
    return _MOCK_GATEWAY
