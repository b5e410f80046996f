from app.tasks.billing import check_overdue_invoices, generate_invoices
from app.tasks.isolation import process_isolation, restore_service
from app.tasks.notifications import (
    send_bulk_notification,
    send_isolation_notification,
    send_notification,
    send_payment_confirmation,
    send_restoration_notification,
)

__all__ = [
    "generate_invoices",
    "check_overdue_invoices",
    "process_isolation",
    "restore_service",
    "send_notification",
    "send_bulk_notification",
    "send_isolation_notification",
    "send_restoration_notification",
    "send_payment_confirmation",
]
