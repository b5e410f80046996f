"""Inbound payment notifications.

Flow per request: log, verify signature, parse, deduplicate on
(gateway, transaction_id), locate the invoice, then apply the payment in
one transaction (Payment row, invoice settlement, expiry extension).
Restoration and the confirmation notice are enqueued only after commit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import Invoice, InvoiceStatus, Payment, PaymentStatus
from app.models.catalog import Service, ServiceStatus
from app.schemas.billing import NormalizedPayload
from app.services.common import parse_uuid, utc_now
from app.services.common import today as current_date
from app.services.job_dispatch import JobDispatcher
from app.services.payment_gateways import (
    PaymentGatewayAdapter,
    PaymentGatewayError,
    WebhookRequest,
)

logger = logging.getLogger(__name__)

_LOGGED_BODY_LIMIT = 4000


@dataclass
class WebhookOutcome:
    status_code: int
    success: bool
    message: str
    payment_id: str | None = None

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            {"success": self.success, "message": self.message},
            status_code=self.status_code,
        )


@dataclass
class AppliedPayment:
    payment: Payment
    invoice: Invoice
    service: Service
    restore_needed: bool


def extend_expiry(current: date | None, today: date, cycle_days: int) -> date:
    """Extend from the current expiry, or from today if it already lapsed."""
    anchor = current if current is not None and current > today else today
    return anchor + timedelta(days=cycle_days)


class PaymentWebhookProcessor:
    def __init__(
        self,
        gateways: Mapping[str, PaymentGatewayAdapter],
        dispatcher: JobDispatcher,
        cycle_days: int | None = None,
        today: Callable[[], date] = current_date,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.gateways = dict(gateways)
        self.dispatcher = dispatcher
        self.cycle_days = cycle_days or settings.billing_cycle_days
        self._today = today
        self._clock = clock

    def has_gateway(self, name: str) -> bool:
        return name in self.gateways

    def process(self, db: Session, gateway_name: str, request: WebhookRequest) -> WebhookOutcome:
        logger.info(
            "Payment webhook received gateway=%s ip=%s body=%s",
            gateway_name,
            request.client_ip,
            request.body[:_LOGGED_BODY_LIMIT].decode("utf-8", errors="replace"),
        )
        adapter = self.gateways.get(gateway_name)
        if adapter is None:
            logger.warning("Webhook for unknown gateway %r from %s", gateway_name, request.client_ip)
            return WebhookOutcome(404, False, "Unknown payment gateway")
        try:
            return self._process(db, adapter, request)
        except Exception:
            db.rollback()
            logger.exception(
                "Unexpected error processing %s webhook from %s", adapter.name, request.client_ip
            )
            return WebhookOutcome(500, False, "Internal server error")

    def _process(
        self, db: Session, adapter: PaymentGatewayAdapter, request: WebhookRequest
    ) -> WebhookOutcome:
        try:
            verified = adapter.verify_signature(request)
        except PaymentGatewayError as exc:
            logger.warning("Malformed %s webhook from %s: %s", adapter.name, request.client_ip, exc)
            return WebhookOutcome(400, False, "Invalid webhook data")
        if not verified:
            logger.warning(
                "SECURITY: invalid %s webhook signature from %s", adapter.name, request.client_ip
            )
            return WebhookOutcome(403, False, "Invalid signature")

        try:
            payload = adapter.parse_webhook(request)
        except (PaymentGatewayError, ValidationError) as exc:
            logger.warning("Unparseable %s webhook: %s", adapter.name, exc)
            return WebhookOutcome(400, False, "Invalid webhook data")
        if not payload.transaction_id or not payload.status:
            logger.warning(
                "%s webhook missing transaction_id or status: %s", adapter.name, payload.metadata
            )
            return WebhookOutcome(400, False, "Invalid webhook data")

        existing = self.find_payment(db, adapter.name, payload.transaction_id)
        if existing is not None:
            logger.info(
                "Duplicate %s webhook for transaction %s ignored", adapter.name, payload.transaction_id
            )
            return WebhookOutcome(200, True, "Payment already processed", str(existing.id))

        if payload.status != PaymentStatus.success.value:
            logger.info(
                "%s transaction %s is %s, nothing to apply",
                adapter.name,
                payload.transaction_id,
                payload.status,
            )
            return WebhookOutcome(200, True, "Webhook received")

        invoice = self.resolve_invoice(db, payload)
        if invoice is None:
            logger.warning(
                "No invoice for %s transaction %s (refs=%s)",
                adapter.name,
                payload.transaction_id,
                payload.invoice_references(),
            )
            return WebhookOutcome(404, False, "Invoice not found")

        applied = self.apply_payment(db, adapter.name, invoice, payload)
        if applied is None:
            return WebhookOutcome(200, True, "Payment already processed")

        self._after_commit(applied)
        return WebhookOutcome(
            200, True, "Payment processed successfully", str(applied.payment.id)
        )

    def find_payment(self, db: Session, gateway: str, transaction_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.gateway == gateway)
            .where(Payment.transaction_id == transaction_id)
        )
        return db.scalars(stmt).first()

    def resolve_invoice(self, db: Session, payload: NormalizedPayload) -> Invoice | None:
        for reference in payload.invoice_references():
            invoice_id = parse_uuid(reference)
            if invoice_id is None:
                continue
            invoice = db.get(Invoice, invoice_id)
            if invoice is not None:
                return invoice
        return None

    def apply_payment(
        self,
        db: Session,
        gateway: str,
        invoice: Invoice,
        payload: NormalizedPayload,
    ) -> AppliedPayment | None:
        """Settle the invoice and extend the service, all or nothing.

        Returns None when the invoice was already settled or a concurrent
        request recorded the same transaction first.
        """
        try:
            db.refresh(invoice, with_for_update=True)
            if invoice.status == InvoiceStatus.paid:
                db.rollback()
                logger.warning(
                    "Invoice %s already paid; %s transaction %s needs manual review",
                    invoice.id,
                    gateway,
                    payload.transaction_id,
                )
                return None
            service = db.get(Service, invoice.service_id, with_for_update=True)
            if service is None:
                raise LookupError(f"Invoice {invoice.id} has no service")

            amount = payload.amount if payload.amount is not None else invoice.amount
            if amount < invoice.amount:
                logger.warning(
                    "%s transaction %s paid %s for invoice %s of %s",
                    gateway,
                    payload.transaction_id,
                    amount,
                    invoice.id,
                    invoice.amount,
                )
            payment = Payment(
                invoice_id=invoice.id,
                gateway=gateway,
                transaction_id=payload.transaction_id,
                amount=amount,
                status=PaymentStatus.success,
                metadata_=payload.metadata,
            )
            db.add(payment)

            invoice.status = InvoiceStatus.paid
            invoice.paid_at = self._clock()

            previous_expiry = service.expiry_date
            service.expiry_date = extend_expiry(previous_expiry, self._today(), self.cycle_days)
            restore_needed = service.status == ServiceStatus.isolated

            db.flush()
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(
                "%s transaction %s recorded concurrently", gateway, payload.transaction_id
            )
            return None
        except Exception:
            db.rollback()
            raise

        db.refresh(payment)
        logger.info(
            "Payment %s applied: invoice %s paid, service %s expiry %s -> %s",
            payment.id,
            invoice.id,
            service.id,
            previous_expiry,
            service.expiry_date,
        )
        return AppliedPayment(payment, invoice, service, restore_needed)

    def _after_commit(self, applied: AppliedPayment) -> None:
        if applied.restore_needed:
            try:
                self.dispatcher.enqueue_restoration(applied.service.id)
                logger.info("Restoration queued for service %s", applied.service.id)
            except Exception:
                logger.critical(
                    "Could not queue restoration for paid service %s; needs manual intervention",
                    applied.service.id,
                    exc_info=True,
                )
        try:
            self.dispatcher.enqueue_payment_confirmation(applied.invoice.id, applied.payment.id)
        except Exception:
            logger.error(
                "Could not queue payment confirmation for invoice %s",
                applied.invoice.id,
                exc_info=True,
            )
