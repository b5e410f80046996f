"""Customer notifications over WhatsApp and email.

``NotificationSender`` is the single delivery surface used by the
notification tasks. Message builders render the Indonesian templates
customers receive for isolation, restoration and payment confirmation.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import Invoice, InvoiceStatus, Payment
from app.models.catalog import Service
from app.models.customer import Customer
from app.services.common import coerce_uuid, format_date, format_rupiah
from app.services.email import send_email
from app.services.whatsapp import WhatsAppClient

logger = logging.getLogger(__name__)

MIN_BULK_SUCCESS_RATE = 0.5
_SIGNATURE = "---\nISP Billing System"


class NotificationChannel(enum.Enum):
    whatsapp = "whatsapp"
    email = "email"


class NotificationError(Exception):
    """Every channel available for a notification failed."""


@dataclass
class BulkRecipient:
    recipient: str
    message: str
    subject: str | None = None


@dataclass
class DeliveryResult:
    recipient: str
    success: bool
    error: str | None = None


def bulk_success_rate(results: list[DeliveryResult]) -> float:
    if not results:
        return 0.0
    return sum(1 for result in results if result.success) / len(results)


class NotificationSender:
    def __init__(
        self,
        whatsapp: WhatsAppClient | None = None,
        email_sender: Callable[..., bool] = send_email,
        batch_size: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._whatsapp = whatsapp
        self._email_sender = email_sender
        self.batch_size = batch_size or settings.notification_batch_size
        self._sleep = sleep

    @property
    def whatsapp(self) -> WhatsAppClient:
        if self._whatsapp is None:
            self._whatsapp = WhatsAppClient()
        return self._whatsapp

    def send(
        self,
        channel: NotificationChannel | str,
        recipient: str,
        message: str,
        subject: str | None = None,
    ) -> bool:
        channel = NotificationChannel(channel)
        if channel == NotificationChannel.whatsapp:
            return self.whatsapp.send_message(recipient, message)
        return self._email_sender(
            recipient, subject or "Notifikasi - ISP Billing System", message
        )

    def batch_delay(self, channel: NotificationChannel) -> int:
        if channel == NotificationChannel.whatsapp:
            return settings.notification_whatsapp_batch_delay
        return settings.notification_email_batch_delay

    def send_bulk(
        self,
        channel: NotificationChannel | str,
        recipients: list[BulkRecipient],
    ) -> list[DeliveryResult]:
        """Send in batches, pausing between batches for the provider's rate limit."""
        channel = NotificationChannel(channel)
        results: list[DeliveryResult] = []
        delay = self.batch_delay(channel)
        batches = [
            recipients[index : index + self.batch_size]
            for index in range(0, len(recipients), self.batch_size)
        ]
        for number, batch in enumerate(batches, start=1):
            if number > 1 and delay:
                logger.info(
                    "Waiting %ss before %s batch %s/%s", delay, channel.value, number, len(batches)
                )
                self._sleep(delay)
            batch_results = []
            for item in batch:
                try:
                    ok = self.send(channel, item.recipient, item.message, item.subject)
                    batch_results.append(
                        DeliveryResult(item.recipient, ok, None if ok else "delivery failed")
                    )
                except Exception as exc:
                    logger.error("Bulk %s send to %s failed: %s", channel.value, item.recipient, exc)
                    batch_results.append(DeliveryResult(item.recipient, False, str(exc)))
            rate = bulk_success_rate(batch_results)
            log = logger.error if rate < MIN_BULK_SUCCESS_RATE else logger.info
            log(
                "Bulk %s batch %s/%s: %s/%s delivered",
                channel.value,
                number,
                len(batches),
                sum(1 for r in batch_results if r.success),
                len(batch_results),
            )
            results.extend(batch_results)
        return results

    def notify_customer(
        self, customer: Customer, message: str, subject: str
    ) -> dict[str, bool]:
        """Deliver on every channel the customer has.

        Raises:
            NotificationError: when no channel succeeds
        """
        outcome: dict[str, bool] = {}
        if customer.phone:
            outcome[NotificationChannel.whatsapp.value] = self.send(
                NotificationChannel.whatsapp, customer.phone, message
            )
        if customer.email:
            outcome[NotificationChannel.email.value] = self.send(
                NotificationChannel.email, customer.email, message, subject
            )
        if not any(outcome.values()):
            raise NotificationError(
                f"All notification channels failed for customer {customer.id}: {outcome}"
            )
        return outcome


@lru_cache(maxsize=1)
def get_notification_sender() -> NotificationSender:
    return NotificationSender()


ISOLATION_SUBJECT = "Pemberitahuan Isolasi Layanan - ISP Billing System"
RESTORATION_SUBJECT = "Layanan Telah Diaktifkan Kembali - ISP Billing System"
PAYMENT_CONFIRMATION_SUBJECT = "Konfirmasi Pembayaran - ISP Billing System"


def build_isolation_message(service: Service, invoice: Invoice) -> str:
    payment_link = invoice.payment_link or "Hubungi admin untuk link pembayaran"
    return "\n".join(
        [
            "*PEMBERITAHUAN ISOLASI LAYANAN*",
            "",
            f"Yth. Bapak/Ibu {service.customer.name},",
            "",
            f"Layanan internet Anda (Paket: {service.package.name}) telah diisolir "
            "karena terdapat tagihan yang belum dibayar.",
            "",
            "*Detail Tagihan:*",
            f"- Nomor Invoice: #{invoice.id}",
            f"- Jumlah: {format_rupiah(invoice.amount)}",
            f"- Jatuh Tempo: {format_date(invoice.due_date)}",
            "- Status: Belum Dibayar",
            "",
            "*Instruksi Pembayaran:*",
            "Silakan lakukan pembayaran melalui link berikut:",
            payment_link,
            "",
            "Setelah pembayaran dikonfirmasi, layanan Anda akan segera diaktifkan "
            "kembali secara otomatis.",
            "",
            "Jika Anda memiliki pertanyaan atau memerlukan bantuan, silakan hubungi "
            "customer service kami.",
            "",
            _SIGNATURE,
        ]
    )


def build_restoration_message(service: Service) -> str:
    return "\n".join(
        [
            "*LAYANAN TELAH DIAKTIFKAN KEMBALI*",
            "",
            f"Yth. Bapak/Ibu {service.customer.name},",
            "",
            "Terima kasih atas pembayaran Anda!",
            "",
            "*Detail Layanan:*",
            f"- Paket: {service.package.name}",
            f"- Kecepatan: {service.package.speed}",
            "- Status: Aktif",
            f"- Berlaku hingga: {format_date(service.expiry_date)}",
            "",
            "Anda sekarang dapat menikmati layanan internet dengan kecepatan penuh.",
            "",
            _SIGNATURE,
        ]
    )


def build_payment_confirmation_message(invoice: Invoice, payment: Payment) -> str:
    service = invoice.service
    package_name = service.package.name if service.package else "N/A"
    return "\n".join(
        [
            "*KONFIRMASI PEMBAYARAN*",
            "",
            f"Yth. Bapak/Ibu {service.customer.name},",
            "",
            "Pembayaran Anda telah berhasil dikonfirmasi!",
            "",
            "*Detail Pembayaran:*",
            f"- Paket: {package_name}",
            f"- Jumlah: {format_rupiah(payment.amount)}",
            f"- ID Transaksi: {payment.transaction_id}",
            f"- Tanggal: {format_date(invoice.paid_at, with_time=True)}",
            "",
            "*Status Layanan:*",
            f"Layanan internet Anda telah diperpanjang hingga {format_date(service.expiry_date)}.",
            "",
            _SIGNATURE,
        ]
    )


# ----------------------------------------------------------------------
# Job bodies
# ----------------------------------------------------------------------


def _unpaid_invoice(db: Session, service: Service) -> Invoice | None:
    stmt = (
        select(Invoice)
        .where(Invoice.service_id == service.id)
        .where(Invoice.status == InvoiceStatus.unpaid)
        .order_by(Invoice.due_date.asc())
        .limit(1)
    )
    return db.scalars(stmt).first()


def notify_isolation(
    db: Session, sender: NotificationSender, service_id, invoice_id=None
) -> dict[str, bool] | None:
    """Tell the customer their service was isolated. None if there is nothing to send."""
    service = db.get(Service, coerce_uuid(service_id))
    if service is None or service.customer is None:
        logger.warning("Isolation notice skipped: service %s not found", service_id)
        return None
    invoice = db.get(Invoice, coerce_uuid(invoice_id)) if invoice_id else None
    invoice = invoice or _unpaid_invoice(db, service)
    if invoice is None:
        logger.warning("Isolation notice skipped: no unpaid invoice for service %s", service_id)
        return None
    outcome = sender.notify_customer(
        service.customer, build_isolation_message(service, invoice), ISOLATION_SUBJECT
    )
    logger.info("Isolation notice sent for service %s: %s", service_id, outcome)
    return outcome


def notify_restoration(
    db: Session, sender: NotificationSender, service_id
) -> dict[str, bool] | None:
    service = db.get(Service, coerce_uuid(service_id))
    if service is None or service.customer is None:
        logger.warning("Restoration notice skipped: service %s not found", service_id)
        return None
    outcome = sender.notify_customer(
        service.customer, build_restoration_message(service), RESTORATION_SUBJECT
    )
    logger.info("Restoration notice sent for service %s: %s", service_id, outcome)
    return outcome


def notify_payment_confirmation(
    db: Session, sender: NotificationSender, invoice_id, payment_id
) -> dict[str, bool] | None:
    invoice = db.get(Invoice, coerce_uuid(invoice_id))
    payment = db.get(Payment, coerce_uuid(payment_id))
    if invoice is None or payment is None or invoice.service is None:
        logger.warning(
            "Payment confirmation skipped: invoice %s or payment %s not found",
            invoice_id,
            payment_id,
        )
        return None
    outcome = sender.notify_customer(
        invoice.service.customer,
        build_payment_confirmation_message(invoice, payment),
        PAYMENT_CONFIRMATION_SUBJECT,
    )
    logger.info("Payment confirmation sent for invoice %s: %s", invoice_id, outcome)
    return outcome
