"""Payment gateway adapters.

Each adapter verifies webhook authenticity, normalizes the gateway's
payload, creates hosted payment links and queries transaction status.
Gateway references embed the invoice id as ``INV-{invoice_hex}-{unix_ts}``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import cached_property, lru_cache
from typing import Any

import httpx

from app.config import settings
from app.models.billing import Invoice
from app.schemas.billing import NormalizedPayload

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "INV-"


class PaymentGatewayError(Exception):
    pass


@dataclass
class WebhookRequest:
    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)
    client_ip: str | None = None

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    @cached_property
    def payload(self) -> dict[str, Any]:
        try:
            data = json.loads(self.body or b"{}")
        except (ValueError, UnicodeDecodeError) as exc:
            raise PaymentGatewayError("Webhook body is not valid JSON") from exc
        if not isinstance(data, dict):
            raise PaymentGatewayError("Webhook body must be a JSON object")
        return data


def build_reference(invoice: Invoice, now: float | None = None) -> str:
    return f"{REFERENCE_PREFIX}{invoice.id.hex}-{int(now if now is not None else time.time())}"


def invoice_id_from_reference(reference: Any) -> str | None:
    if not reference or not isinstance(reference, str):
        return None
    if reference.startswith(REFERENCE_PREFIX):
        parts = reference.split("-")
        if len(parts) >= 2 and parts[1]:
            return parts[1]
    return reference


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def _item_name(invoice: Invoice) -> str:
    package = invoice.service.package
    return f"{package.name} - {package.speed}"


class PaymentGatewayAdapter(ABC):
    name: str = ""

    def __init__(self, http_client: httpx.Client | None = None):
        self._http = http_client or httpx.Client(timeout=settings.gateway_timeout)

    @abstractmethod
    def verify_signature(self, request: WebhookRequest) -> bool: ...

    @abstractmethod
    def parse_webhook(self, request: WebhookRequest) -> NormalizedPayload: ...

    @abstractmethod
    def create_payment_link(self, invoice: Invoice) -> str: ...

    @abstractmethod
    def get_status(self, transaction_id: str) -> str: ...

    def _request(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        try:
            response = self._http.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "%s API error %s on %s: %s",
                self.name,
                exc.response.status_code,
                url,
                exc.response.text[:500],
            )
            raise PaymentGatewayError(
                f"{self.name} API returned {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("%s API request to %s failed: %s", self.name, url, exc)
            raise PaymentGatewayError(f"{self.name} API request failed: {exc}") from exc


class MidtransAdapter(PaymentGatewayAdapter):
    name = "midtrans"

    def __init__(
        self,
        server_key: str | None = None,
        is_production: bool | None = None,
        http_client: httpx.Client | None = None,
    ):
        super().__init__(http_client)
        self.server_key = server_key if server_key is not None else settings.midtrans_server_key
        production = (
            settings.midtrans_is_production if is_production is None else is_production
        )
        self.snap_url = (
            "https://app.midtrans.com/snap/v1/transactions"
            if production
            else "https://app.sandbox.midtrans.com/snap/v1/transactions"
        )
        self.api_base = (
            "https://api.midtrans.com/v2" if production else "https://api.sandbox.midtrans.com/v2"
        )

    @staticmethod
    def map_status(transaction_status: str | None, fraud_status: str | None = None) -> str:
        if fraud_status == "deny":
            return "failed"
        return {
            "capture": "success",
            "settlement": "success",
            "pending": "pending",
            "deny": "failed",
            "cancel": "failed",
            "failure": "failed",
            "expire": "expired",
        }.get(transaction_status or "", "pending")

    def verify_signature(self, request: WebhookRequest) -> bool:
        if not self.server_key:
            logger.error("Midtrans server key not configured, rejecting webhook")
            return False
        data = request.payload
        order_id = data.get("order_id")
        status_code = data.get("status_code")
        gross_amount = data.get("gross_amount")
        signature_key = data.get("signature_key")
        if not (order_id and status_code and gross_amount and signature_key):
            logger.warning(
                "Missing signature fields in Midtrans webhook order_id=%s ip=%s",
                order_id,
                request.client_ip,
            )
            return False
        expected = hashlib.sha512(
            f"{order_id}{status_code}{gross_amount}{self.server_key}".encode("utf-8")
        ).hexdigest()
        return hmac.compare_digest(expected, str(signature_key))

    def parse_webhook(self, request: WebhookRequest) -> NormalizedPayload:
        data = request.payload
        status = self.map_status(data.get("transaction_status"), data.get("fraud_status"))
        order_id = data.get("order_id")
        return NormalizedPayload(
            transaction_id=data.get("transaction_id"),
            status=status,
            amount=_to_decimal(data.get("gross_amount")),
            order_id=invoice_id_from_reference(order_id),
            paid_at=datetime.now(timezone.utc) if status == "success" else None,
            metadata={
                "order_id": order_id,
                "payment_type": data.get("payment_type"),
                "transaction_time": data.get("transaction_time"),
                "fraud_status": data.get("fraud_status"),
                "payload": data,
            },
        )

    def create_payment_link(self, invoice: Invoice) -> str:
        customer = invoice.service.customer
        amount = int(invoice.amount)
        order_id = build_reference(invoice)
        params = {
            "transaction_details": {"order_id": order_id, "gross_amount": amount},
            "customer_details": {
                "first_name": customer.name,
                "email": customer.email or "noreply@example.com",
                "phone": customer.phone,
            },
            "item_details": [
                {
                    "id": f"PKG-{invoice.service.package_id}",
                    "price": amount,
                    "quantity": 1,
                    "name": _item_name(invoice),
                }
            ],
            "callbacks": {"finish": settings.payment_finish_url},
        }
        result = self._request("POST", self.snap_url, json=params, auth=(self.server_key, ""))
        url = result.get("redirect_url")
        if not url:
            raise PaymentGatewayError("Midtrans response missing redirect_url")
        logger.info("Midtrans payment link created for invoice %s order_id=%s", invoice.id, order_id)
        return url

    def get_status(self, transaction_id: str) -> str:
        result = self._request(
            "GET", f"{self.api_base}/{transaction_id}/status", auth=(self.server_key, "")
        )
        return self.map_status(result.get("transaction_status"), result.get("fraud_status"))


class XenditAdapter(PaymentGatewayAdapter):
    name = "xendit"
    api_base = "https://api.xendit.co/v2/invoices"

    def __init__(
        self,
        secret_key: str | None = None,
        webhook_token: str | None = None,
        http_client: httpx.Client | None = None,
    ):
        super().__init__(http_client)
        self.secret_key = secret_key if secret_key is not None else settings.xendit_secret_key
        self.webhook_token = (
            webhook_token if webhook_token is not None else settings.xendit_webhook_token
        )

    @staticmethod
    def map_status(status: str | None) -> str:
        return {
            "PAID": "success",
            "SETTLED": "success",
            "PENDING": "pending",
            "EXPIRED": "expired",
        }.get((status or "").upper(), "failed")

    def verify_signature(self, request: WebhookRequest) -> bool:
        if not self.webhook_token:
            logger.error("Xendit webhook token not configured, rejecting webhook")
            return False
        token = request.header("X-Callback-Token") or ""
        return hmac.compare_digest(self.webhook_token, token)

    def parse_webhook(self, request: WebhookRequest) -> NormalizedPayload:
        data = request.payload
        status = self.map_status(data.get("status", "PENDING"))
        external_id = data.get("external_id") or ""
        paid_at = None
        if status == "success" and data.get("paid_at"):
            try:
                paid_at = datetime.fromisoformat(str(data["paid_at"]).replace("Z", "+00:00"))
            except ValueError:
                paid_at = None
        return NormalizedPayload(
            transaction_id=data.get("id"),
            status=status,
            amount=_to_decimal(data.get("amount")),
            external_id=invoice_id_from_reference(external_id),
            paid_at=paid_at,
            metadata={
                "external_id": external_id,
                "payment_method": data.get("payment_method"),
                "payment_channel": data.get("payment_channel"),
                "paid_amount": data.get("paid_amount"),
                "payload": data,
            },
        )

    def create_payment_link(self, invoice: Invoice) -> str:
        customer = invoice.service.customer
        external_id = build_reference(invoice)
        body = {
            "external_id": external_id,
            "amount": float(invoice.amount),
            "payer_email": customer.email or "noreply@example.com",
            "description": f"Pembayaran {_item_name(invoice)}",
            "invoice_duration": 86400,
            "currency": "IDR",
            "success_redirect_url": settings.payment_finish_url,
            "failure_redirect_url": settings.payment_finish_url,
            "customer": {"given_names": customer.name, "mobile_number": customer.phone},
            "items": [
                {"name": _item_name(invoice), "quantity": 1, "price": float(invoice.amount)}
            ],
        }
        result = self._request("POST", self.api_base, json=body, auth=(self.secret_key, ""))
        url = result.get("invoice_url")
        if not url:
            raise PaymentGatewayError("Xendit response missing invoice_url")
        logger.info(
            "Xendit payment link created for invoice %s external_id=%s", invoice.id, external_id
        )
        return url

    def get_status(self, transaction_id: str) -> str:
        result = self._request(
            "GET", f"{self.api_base}/{transaction_id}", auth=(self.secret_key, "")
        )
        return self.map_status(result.get("status"))


class TripayAdapter(PaymentGatewayAdapter):
    name = "tripay"

    def __init__(
        self,
        api_key: str | None = None,
        private_key: str | None = None,
        merchant_code: str | None = None,
        is_production: bool | None = None,
        http_client: httpx.Client | None = None,
    ):
        super().__init__(http_client)
        self.api_key = api_key if api_key is not None else settings.tripay_api_key
        self.private_key = private_key if private_key is not None else settings.tripay_private_key
        self.merchant_code = (
            merchant_code if merchant_code is not None else settings.tripay_merchant_code
        )
        production = settings.tripay_is_production if is_production is None else is_production
        self.base_url = (
            "https://tripay.co.id/api" if production else "https://tripay.co.id/api-sandbox"
        )

    @staticmethod
    def map_status(status: str | None) -> str:
        return {
            "PAID": "success",
            "UNPAID": "pending",
            "EXPIRED": "expired",
            "FAILED": "failed",
            "REFUND": "failed",
        }.get((status or "").upper(), "pending")

    def _sign(self, message: bytes) -> str:
        return hmac.new(self.private_key.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def verify_signature(self, request: WebhookRequest) -> bool:
        if not self.private_key:
            logger.error("Tripay private key not configured, rejecting webhook")
            return False
        signature = request.header("X-Callback-Signature")
        if not signature:
            return False
        return hmac.compare_digest(self._sign(request.body), signature)

    def parse_webhook(self, request: WebhookRequest) -> NormalizedPayload:
        data = request.payload
        status = self.map_status(data.get("status", "UNPAID"))
        merchant_ref = data.get("merchant_ref") or ""
        paid_at = None
        if status == "success" and data.get("paid_at"):
            try:
                paid_at = datetime.fromtimestamp(int(data["paid_at"]), tz=timezone.utc)
            except (TypeError, ValueError):
                paid_at = None
        return NormalizedPayload(
            transaction_id=data.get("reference"),
            status=status,
            amount=_to_decimal(data.get("amount", data.get("total_amount"))),
            order_id=invoice_id_from_reference(merchant_ref),
            paid_at=paid_at,
            metadata={
                "merchant_ref": merchant_ref,
                "payment_method": data.get("payment_method"),
                "payment_name": data.get("payment_name"),
                "fee_merchant": data.get("fee_merchant"),
                "fee_customer": data.get("fee_customer"),
                "payload": data,
            },
        )

    def create_payment_link(self, invoice: Invoice) -> str:
        customer = invoice.service.customer
        merchant_ref = build_reference(invoice)
        amount = int(invoice.amount)
        signature = self._sign(f"{self.merchant_code}{merchant_ref}{amount}".encode("utf-8"))
        body = {
            "method": settings.tripay_default_method,
            "merchant_ref": merchant_ref,
            "amount": amount,
            "customer_name": customer.name,
            "customer_email": customer.email or "noreply@example.com",
            "customer_phone": customer.phone,
            "order_items": [{"name": _item_name(invoice), "price": amount, "quantity": 1}],
            "return_url": settings.payment_finish_url,
            "expired_time": int(time.time()) + 24 * 60 * 60,
            "signature": signature,
        }
        result = self._request(
            "POST",
            f"{self.base_url}/transaction/create",
            json=body,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        if not result.get("success"):
            raise PaymentGatewayError(
                f"Tripay transaction creation failed: {result.get('message', 'Unknown error')}"
            )
        data = result.get("data") or {}
        url = data.get("checkout_url") or data.get("pay_url")
        if not url:
            raise PaymentGatewayError("Tripay response missing checkout_url")
        logger.info(
            "Tripay payment link created for invoice %s merchant_ref=%s reference=%s",
            invoice.id,
            merchant_ref,
            data.get("reference"),
        )
        return url

    def get_status(self, transaction_id: str) -> str:
        result = self._request(
            "GET",
            f"{self.base_url}/transaction/detail",
            params={"reference": transaction_id},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        if not result.get("success"):
            raise PaymentGatewayError(
                f"Tripay transaction detail failed: {result.get('message', 'Unknown error')}"
            )
        return self.map_status((result.get("data") or {}).get("status"))


def build_gateway_registry(
    http_client: httpx.Client | None = None,
) -> dict[str, PaymentGatewayAdapter]:
    adapters: list[PaymentGatewayAdapter] = [
        MidtransAdapter(http_client=http_client),
        XenditAdapter(http_client=http_client),
        TripayAdapter(http_client=http_client),
    ]
    return {adapter.name: adapter for adapter in adapters}


@lru_cache(maxsize=1)
def get_gateway_registry() -> dict[str, PaymentGatewayAdapter]:
    return build_gateway_registry()
