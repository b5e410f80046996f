"""Overdue detection and service isolation/restoration.

A service moves ``active -> isolated`` when an invoice stays unpaid past
its due date plus the grace period, and back to ``active`` once paid.
Both directions go through ``_switch_profile``: change the PPPoE profile
on the router, then persist the new status. Router failures become a
``router_failed`` outcome instead of an exception so the calling job
decides whether to retry.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import Invoice, InvoiceStatus
from app.models.catalog import Service, ServiceStatus
from app.services.common import coerce_uuid, utc_now
from app.services.common import today as current_date
from app.services.job_dispatch import JobDispatcher
from app.services.mikrotik import RouterControlClient
from app.services.profiles import PackageProfile, ProfileResolver, isolation_profile

logger = logging.getLogger(__name__)


class SwitchOutcome(enum.Enum):
    applied = "applied"
    precondition_failed = "precondition_failed"
    router_failed = "router_failed"
    superseded = "superseded"


class IsolationEngine:
    def __init__(
        self,
        router_client: RouterControlClient,
        grace_period_days: int | None = None,
        isolation_resolver: ProfileResolver | None = None,
        restore_resolver: ProfileResolver | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.router_client = router_client
        self.grace_period_days = (
            settings.grace_period_days if grace_period_days is None else grace_period_days
        )
        self.isolation_resolver = isolation_resolver or isolation_profile()
        self.restore_resolver = restore_resolver or PackageProfile()
        self._clock = clock

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def overdue_cutoff(self, today: date | None = None) -> date:
        return (today or current_date()) - timedelta(days=self.grace_period_days)

    def check_overdue_services(self, db: Session, today: date | None = None) -> list[Service]:
        """Active services holding an unpaid invoice past due date plus grace."""
        cutoff = self.overdue_cutoff(today)
        has_overdue = (
            select(Invoice.id)
            .where(Invoice.service_id == Service.id)
            .where(Invoice.status == InvoiceStatus.unpaid)
            .where(Invoice.due_date < cutoff)
            .exists()
        )
        stmt = (
            select(Service)
            .where(Service.status == ServiceStatus.active)
            .where(has_overdue)
            .order_by(Service.created_at.asc())
        )
        return list(db.scalars(stmt))

    def oldest_overdue_invoice(
        self, db: Session, service: Service, today: date | None = None
    ) -> Invoice | None:
        stmt = (
            select(Invoice)
            .where(Invoice.service_id == service.id)
            .where(Invoice.status == InvoiceStatus.unpaid)
            .where(Invoice.due_date < self.overdue_cutoff(today))
            .order_by(Invoice.due_date.asc(), Invoice.created_at.asc())
            .limit(1)
        )
        return db.scalars(stmt).first()

    def overdue_work(
        self, db: Session, today: date | None = None
    ) -> list[tuple[Service, Invoice]]:
        """Pair each overdue service with the invoice that triggers its isolation."""
        work = []
        for service in self.check_overdue_services(db, today):
            invoice = self.oldest_overdue_invoice(db, service, today)
            if invoice is not None:
                work.append((service, invoice))
        return work

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    @staticmethod
    def is_isolated(service: Service) -> bool:
        return service.status == ServiceStatus.isolated

    @staticmethod
    def can_be_isolated(service: Service) -> bool:
        return (
            service.status == ServiceStatus.active
            and bool(service.mikrotik_user_id)
            and service.router_id is not None
        )

    def get_isolation_history(
        self, db: Session, service: Service, today: date | None = None
    ) -> dict:
        today = today or current_date()
        unpaid = db.scalars(
            select(Invoice)
            .where(Invoice.service_id == service.id)
            .where(Invoice.status == InvoiceStatus.unpaid)
            .order_by(Invoice.due_date.asc())
        ).all()
        return {
            "service_id": str(service.id),
            "status": service.status.value,
            "is_isolated": self.is_isolated(service),
            "isolation_timestamp": service.isolation_timestamp,
            "unpaid_invoices": [
                {
                    "id": str(invoice.id),
                    "amount": invoice.amount,
                    "due_date": invoice.due_date,
                    "days_overdue": max((today - invoice.due_date).days, 0),
                    "overdue": invoice.is_overdue(today, self.grace_period_days),
                }
                for invoice in unpaid
            ],
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def isolate_service(
        self, db: Session, service: Service, invoice: Invoice | None = None
    ) -> bool:
        return self.isolate(db, service, invoice) is SwitchOutcome.applied

    def restore_service(self, db: Session, service: Service) -> bool:
        return self.restore(db, service) is SwitchOutcome.applied

    def isolate(
        self,
        db: Session,
        service: Service,
        invoice: Invoice | None = None,
        resolver: ProfileResolver | None = None,
    ) -> SwitchOutcome:
        if service.status != ServiceStatus.active:
            logger.warning(
                "Not isolating service %s: status is %s", service.id, service.status.value
            )
            return SwitchOutcome.precondition_failed

        def still_eligible(current: Service) -> bool:
            if current.status != ServiceStatus.active:
                return False
            if invoice is None:
                return True
            db.refresh(invoice)
            return invoice.status == InvoiceStatus.unpaid

        return self._switch_profile(
            db,
            service,
            resolver or self.isolation_resolver,
            ServiceStatus.isolated,
            action="isolate",
            still_eligible=still_eligible,
            revert_resolver=self.restore_resolver,
            invoice=invoice,
        )

    def restore(
        self,
        db: Session,
        service: Service,
        resolver: ProfileResolver | None = None,
    ) -> SwitchOutcome:
        if service.status != ServiceStatus.isolated:
            logger.warning(
                "Not restoring service %s: status is %s", service.id, service.status.value
            )
            return SwitchOutcome.precondition_failed
        if service.package is None:
            logger.warning("Cannot restore service %s: no package", service.id)
            return SwitchOutcome.precondition_failed
        return self._switch_profile(
            db,
            service,
            resolver or self.restore_resolver,
            ServiceStatus.active,
            action="restore",
            still_eligible=lambda current: current.status == ServiceStatus.isolated,
        )

    def _switch_profile(
        self,
        db: Session,
        service: Service,
        resolver: ProfileResolver,
        target_status: ServiceStatus,
        action: str,
        still_eligible: Callable[[Service], bool] | None = None,
        revert_resolver: ProfileResolver | None = None,
        invoice: Invoice | None = None,
    ) -> SwitchOutcome:
        if not service.mikrotik_user_id or service.router is None:
            logger.warning(
                "Cannot %s service %s: missing router user id or router", action, service.id
            )
            return SwitchOutcome.precondition_failed
        profile = resolver.resolve(service)
        if not profile:
            logger.warning("Cannot %s service %s: no profile resolved", action, service.id)
            return SwitchOutcome.precondition_failed

        router = service.router
        try:
            self.router_client.update_user_profile(router, service.mikrotik_user_id, profile)
        except Exception as exc:
            logger.error(
                "Failed to %s service %s on router %s (user_id=%s, profile=%s, invoice=%s): %s",
                action,
                service.id,
                router.name,
                service.mikrotik_user_id,
                profile,
                invoice.id if invoice is not None else None,
                exc,
                exc_info=True,
            )
            return SwitchOutcome.router_failed

        try:
            # Lock the row and re-read it; a payment may have landed meanwhile.
            db.refresh(service, with_for_update=True)
            if still_eligible is not None and not still_eligible(service):
                db.rollback()
                logger.warning(
                    "Service %s changed state during %s, discarding the change", service.id, action
                )
                if revert_resolver is not None:
                    self._revert_profile(service, revert_resolver)
                return SwitchOutcome.superseded

            service.status = target_status
            service.isolation_timestamp = (
                self._clock() if target_status == ServiceStatus.isolated else None
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(service)
        logger.info(
            "Service %s %s: router %s profile=%s status=%s",
            service.id,
            "isolated" if target_status == ServiceStatus.isolated else "restored",
            router.name,
            profile,
            target_status.value,
        )
        return SwitchOutcome.applied

    def _revert_profile(self, service: Service, resolver: ProfileResolver) -> None:
        profile = resolver.resolve(service)
        if not profile or service.router is None or not service.mikrotik_user_id:
            return
        try:
            self.router_client.update_user_profile(
                service.router, service.mikrotik_user_id, profile
            )
        except Exception as exc:
            logger.critical(
                "Router profile for service %s left at isolation after a superseded "
                "isolation; needs manual intervention: %s",
                service.id,
                exc,
            )

    # ------------------------------------------------------------------
    # Job bodies
    # ------------------------------------------------------------------

    def process_isolation(self, db: Session, service_id, invoice_id) -> SwitchOutcome:
        """Isolate one service if it is still eligible when the job runs."""
        service = db.get(Service, coerce_uuid(service_id))
        if service is None:
            logger.warning("Isolation skipped: service %s not found", service_id)
            return SwitchOutcome.precondition_failed
        invoice = db.get(Invoice, coerce_uuid(invoice_id))
        if invoice is None or invoice.status != InvoiceStatus.unpaid:
            logger.info(
                "Isolation skipped for service %s: invoice %s no longer unpaid",
                service_id,
                invoice_id,
            )
            return SwitchOutcome.superseded
        if service.status != ServiceStatus.active:
            logger.info(
                "Isolation skipped for service %s: status is %s",
                service_id,
                service.status.value,
            )
            return SwitchOutcome.superseded
        if not self.can_be_isolated(service):
            logger.warning(
                "Isolation skipped for service %s: missing router user id or router",
                service_id,
            )
            return SwitchOutcome.precondition_failed
        return self.isolate(db, service, invoice)

    def process_restoration(self, db: Session, service_id) -> SwitchOutcome:
        service = db.get(Service, coerce_uuid(service_id))
        if service is None:
            logger.warning("Restoration skipped: service %s not found", service_id)
            return SwitchOutcome.precondition_failed
        if service.status != ServiceStatus.isolated:
            logger.info(
                "Restoration skipped for service %s: status is %s",
                service_id,
                service.status.value,
            )
            return SwitchOutcome.superseded
        return self.restore(db, service)


def queue_overdue_isolations(
    db: Session,
    engine: IsolationEngine,
    dispatcher: JobDispatcher,
    today: date | None = None,
) -> int:
    """Enqueue one isolation job per overdue service; returns how many were queued."""
    queued = 0
    work = engine.overdue_work(db, today)
    logger.info("Overdue check found %s services to isolate", len(work))
    for service, invoice in work:
        try:
            dispatcher.enqueue_isolation(service.id, invoice.id)
        except Exception:
            logger.error(
                "Failed to queue isolation for service %s (invoice %s)",
                service.id,
                invoice.id,
                exc_info=True,
            )
            continue
        queued += 1
        logger.info(
            "Queued isolation for service %s (invoice %s due %s)",
            service.id,
            invoice.id,
            invoice.due_date,
        )
    return queued
