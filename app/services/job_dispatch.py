"""Hands follow-up work to the Celery workers.

Task modules are imported lazily because they import the service layer.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class JobDispatcher(Protocol):
    def enqueue_isolation(self, service_id, invoice_id) -> None: ...

    def enqueue_restoration(self, service_id) -> None: ...

    def enqueue_isolation_notification(self, service_id, invoice_id) -> None: ...

    def enqueue_restoration_notification(self, service_id) -> None: ...

    def enqueue_payment_confirmation(self, invoice_id, payment_id) -> None: ...


class CeleryJobDispatcher:
    def enqueue_isolation(self, service_id, invoice_id) -> None:
        from app.tasks.isolation import process_isolation

        process_isolation.delay(str(service_id), str(invoice_id))

    def enqueue_restoration(self, service_id) -> None:
        from app.tasks.isolation import restore_service

        restore_service.delay(str(service_id))

    def enqueue_isolation_notification(self, service_id, invoice_id) -> None:
        from app.tasks.notifications import send_isolation_notification

        send_isolation_notification.delay(str(service_id), str(invoice_id))

    def enqueue_restoration_notification(self, service_id) -> None:
        from app.tasks.notifications import send_restoration_notification

        send_restoration_notification.delay(str(service_id))

    def enqueue_payment_confirmation(self, invoice_id, payment_id) -> None:
        from app.tasks.notifications import send_payment_confirmation

        send_payment_confirmation.delay(str(invoice_id), str(payment_id))
