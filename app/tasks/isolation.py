import logging

from app.celery_app import celery_app
from app.db import SessionLocal
from app.services.engines import get_isolation_engine, get_job_dispatcher
from app.services.isolation import SwitchOutcome
from app.services.retry import ISOLATION_POLICY, RESTORATION_POLICY, retry_or_escalate

logger = logging.getLogger(__name__)


class RouterUpdateFailed(Exception):
    pass


@celery_app.task(
    bind=True,
    name="app.tasks.isolation.process_isolation",
    max_retries=ISOLATION_POLICY.max_retries,
)
def process_isolation(self, service_id: str, invoice_id: str):
    """Isolate a service for an overdue invoice.

    The job re-checks eligibility before touching the router, so a payment
    that lands after queueing turns it into a no-op.
    """
    context = {"service_id": service_id, "invoice_id": invoice_id}
    session = SessionLocal()
    try:
        outcome = get_isolation_engine().process_isolation(session, service_id, invoice_id)
    except Exception as exc:
        session.rollback()
        retry_or_escalate(self, ISOLATION_POLICY, exc, context)
    finally:
        session.close()

    if outcome is SwitchOutcome.router_failed:
        retry_or_escalate(
            self,
            ISOLATION_POLICY,
            RouterUpdateFailed(f"Router did not accept isolation of service {service_id}"),
            context,
        )
    if outcome is SwitchOutcome.applied:
        try:
            get_job_dispatcher().enqueue_isolation_notification(service_id, invoice_id)
        except Exception:
            logger.error(
                "Could not queue isolation notice for service %s", service_id, exc_info=True
            )
    return outcome.value


@celery_app.task(
    bind=True,
    name="app.tasks.isolation.restore_service",
    max_retries=RESTORATION_POLICY.max_retries,
)
def restore_service(self, service_id: str):
    context = {"service_id": service_id}
    session = SessionLocal()
    try:
        outcome = get_isolation_engine().process_restoration(session, service_id)
    except Exception as exc:
        session.rollback()
        retry_or_escalate(self, RESTORATION_POLICY, exc, context)
    finally:
        session.close()

    if outcome is SwitchOutcome.router_failed:
        retry_or_escalate(
            self,
            RESTORATION_POLICY,
            RouterUpdateFailed(f"Router did not accept restoration of service {service_id}"),
            context,
        )
    if outcome is SwitchOutcome.applied:
        try:
            get_job_dispatcher().enqueue_restoration_notification(service_id)
        except Exception:
            logger.error(
                "Could not queue restoration notice for service %s", service_id, exc_info=True
            )
    return outcome.value
