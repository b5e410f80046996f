"""Invoice generation and payment links.

The billing run picks every active service whose expiry date has been
reached and issues one invoice per service at the package's current
price. A service that fails to bill is logged and skipped; it never
blocks the rest of the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import Invoice, InvoiceStatus
from app.models.catalog import Service, ServiceStatus
from app.services.common import round_money
from app.services.common import today as current_date
from app.services.payment_gateways import PaymentGatewayAdapter, PaymentGatewayError

logger = logging.getLogger(__name__)


class BillingError(Exception):
    pass


@dataclass
class BillingRunResult:
    invoices: list[Invoice] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "invoices_created": len(self.invoices),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }


class BillingEngine:
    def __init__(
        self,
        cycle_days: int | None = None,
        skip_open_invoices: bool | None = None,
    ):
        self.cycle_days = cycle_days or settings.billing_cycle_days
        self.skip_open_invoices = (
            settings.skip_open_invoices if skip_open_invoices is None else skip_open_invoices
        )

    def due_services(self, db: Session, today: date) -> list[Service]:
        stmt = (
            select(Service)
            .where(Service.status == ServiceStatus.active)
            .where(Service.expiry_date <= today)
            .order_by(Service.expiry_date.asc())
        )
        return list(db.scalars(stmt))

    def has_open_invoice_for_cycle(self, db: Session, service: Service) -> bool:
        """An unpaid invoice already covers the cycle starting at expiry_date."""
        stmt = (
            select(Invoice.id)
            .where(Invoice.service_id == service.id)
            .where(Invoice.status == InvoiceStatus.unpaid)
            .where(Invoice.invoice_date >= service.expiry_date)
            .limit(1)
        )
        return db.scalar(stmt) is not None

    def build_invoice(self, service: Service, today: date) -> Invoice:
        package = service.package
        if package is None:
            raise BillingError(f"Service {service.id} has no package")
        return Invoice(
            service_id=service.id,
            amount=round_money(package.price),
            status=InvoiceStatus.unpaid,
            invoice_date=today,
            due_date=today + timedelta(days=self.cycle_days),
        )

    def generate_invoices_for_due_services(
        self, db: Session, today: date | None = None
    ) -> BillingRunResult:
        today = today or current_date()
        result = BillingRunResult()
        services = self.due_services(db, today)
        logger.info("Billing run for %s: %s due services", today, len(services))

        for service in services:
            service_id = str(service.id)
            try:
                if self.skip_open_invoices and self.has_open_invoice_for_cycle(db, service):
                    logger.info("Service %s already has an open invoice, skipping", service_id)
                    result.skipped.append(service_id)
                    continue
                invoice = self.build_invoice(service, today)
                db.add(invoice)
                db.commit()
                db.refresh(invoice)
                result.invoices.append(invoice)
                logger.info(
                    "Invoice %s generated for service %s amount=%s due=%s",
                    invoice.id,
                    service_id,
                    invoice.amount,
                    invoice.due_date,
                )
            except Exception:
                db.rollback()
                logger.exception("Failed to generate invoice for service %s", service_id)
                result.failed.append(service_id)

        logger.info("Billing run for %s completed: %s", today, result.summary())
        return result

    def create_payment_link(
        self, db: Session, invoice: Invoice, gateway: PaymentGatewayAdapter
    ) -> str:
        """Create a hosted payment page for an unpaid invoice and store its URL.

        Raises:
            BillingError: if the invoice is already paid
            PaymentGatewayError: if the gateway rejects the request
        """
        if invoice.status != InvoiceStatus.unpaid:
            raise BillingError(f"Invoice {invoice.id} is not payable")
        try:
            url = gateway.create_payment_link(invoice)
        except PaymentGatewayError:
            logger.error(
                "Payment link creation via %s failed for invoice %s", gateway.name, invoice.id
            )
            raise
        invoice.payment_link = url
        db.commit()
        db.refresh(invoice)
        return url
