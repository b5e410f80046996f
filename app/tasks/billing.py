import logging

from app.celery_app import celery_app
from app.db import SessionLocal
from app.services.engines import (
    get_billing_engine,
    get_isolation_engine,
    get_job_dispatcher,
)
from app.services.isolation import queue_overdue_isolations

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.billing.generate_invoices")
def generate_invoices():
    session = SessionLocal()
    try:
        result = get_billing_engine().generate_invoices_for_due_services(session)
        return result.summary()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="app.tasks.billing.check_overdue_invoices")
def check_overdue_invoices():
    """Queue one isolation job per service past its grace period."""
    session = SessionLocal()
    try:
        queued = queue_overdue_isolations(
            session, get_isolation_engine(), get_job_dispatcher()
        )
        return {"queued": queued}
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
