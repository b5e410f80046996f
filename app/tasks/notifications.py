import logging

from app.celery_app import celery_app
from app.db import SessionLocal
from app.services import notification as notification_service
from app.services.notification import (
    MIN_BULK_SUCCESS_RATE,
    BulkRecipient,
    NotificationError,
    bulk_success_rate,
    get_notification_sender,
)
from app.services.retry import NOTIFICATION_POLICY, retry_or_escalate

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="app.tasks.notifications.send_notification",
    max_retries=NOTIFICATION_POLICY.max_retries,
)
def send_notification(self, channel: str, recipient: str, message: str, subject: str | None = None):
    context = {"channel": channel, "recipient": recipient}
    try:
        delivered = get_notification_sender().send(channel, recipient, message, subject)
    except Exception as exc:
        retry_or_escalate(self, NOTIFICATION_POLICY, exc, context)
    if not delivered:
        retry_or_escalate(
            self,
            NOTIFICATION_POLICY,
            NotificationError(f"{channel} delivery to {recipient} failed"),
            context,
        )
    return True


@celery_app.task(
    bind=True,
    name="app.tasks.notifications.send_bulk_notification",
    max_retries=NOTIFICATION_POLICY.max_retries,
)
def send_bulk_notification(self, channel: str, recipients: list[dict]):
    """Send a batch; when most of it fails, retry only the failed recipients."""
    items = [BulkRecipient(**item) for item in recipients]
    results = get_notification_sender().send_bulk(channel, items)
    delivered = sum(1 for result in results if result.success)
    summary = {"total": len(results), "sent": delivered, "failed": len(results) - delivered}
    logger.info("Bulk %s notification finished: %s", channel, summary)

    if results and bulk_success_rate(results) < MIN_BULK_SUCCESS_RATE:
        failed = {result.recipient for result in results if not result.success}
        pending = [item for item in recipients if item["recipient"] in failed]
        retry_or_escalate(
            self,
            NOTIFICATION_POLICY,
            NotificationError(f"Bulk {channel} delivery below success threshold: {summary}"),
            summary,
            retry_args=(channel, pending),
        )
    return summary


def _run_notice(task, context: dict, notify, *args):
    session = SessionLocal()
    try:
        return notify(session, get_notification_sender(), *args)
    except Exception as exc:
        session.rollback()
        retry_or_escalate(task, NOTIFICATION_POLICY, exc, context)
    finally:
        session.close()


@celery_app.task(
    bind=True,
    name="app.tasks.notifications.send_isolation_notification",
    max_retries=NOTIFICATION_POLICY.max_retries,
)
def send_isolation_notification(self, service_id: str, invoice_id: str | None = None):
    return _run_notice(
        self,
        {"service_id": service_id, "invoice_id": invoice_id},
        notification_service.notify_isolation,
        service_id,
        invoice_id,
    )


@celery_app.task(
    bind=True,
    name="app.tasks.notifications.send_restoration_notification",
    max_retries=NOTIFICATION_POLICY.max_retries,
)
def send_restoration_notification(self, service_id: str):
    return _run_notice(
        self,
        {"service_id": service_id},
        notification_service.notify_restoration,
        service_id,
    )


@celery_app.task(
    bind=True,
    name="app.tasks.notifications.send_payment_confirmation",
    max_retries=NOTIFICATION_POLICY.max_retries,
)
def send_payment_confirmation(self, invoice_id: str, payment_id: str):
    return _run_notice(
        self,
        {"invoice_id": invoice_id, "payment_id": payment_id},
        notification_service.notify_payment_confirmation,
        invoice_id,
        payment_id,
    )
