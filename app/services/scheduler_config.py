import logging
import os

from celery.schedules import crontab

from app.config import settings

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_bool(name: str) -> bool | None:
    raw = _env_value(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_time_of_day(value: str, default: tuple[int, int]) -> tuple[int, int]:
    """Parse ``HH:MM``; malformed values fall back to the default."""
    try:
        hour_text, minute_text = value.strip().split(":", 1)
        hour, minute = int(hour_text), int(minute_text)
    except (AttributeError, ValueError):
        logger.warning("Invalid schedule time %r, using %02d:%02d", value, *default)
        return default
    if not (0 <= hour < 24 and 0 <= minute < 60):
        logger.warning("Out of range schedule time %r, using %02d:%02d", value, *default)
        return default
    return hour, minute


def get_celery_config() -> dict:
    broker = (
        _env_value("CELERY_BROKER_URL")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/0"
    )
    backend = (
        _env_value("CELERY_RESULT_BACKEND")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    timezone = _env_value("CELERY_TIMEZONE") or settings.billing_timezone
    return {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": timezone,
        "enable_utc": True,
        "task_acks_late": True,
        "task_always_eager": bool(_env_bool("CELERY_TASK_ALWAYS_EAGER")),
    }


def build_beat_schedule() -> dict:
    """Daily invoice generation and overdue check, in the billing timezone."""
    invoice_hour, invoice_minute = parse_time_of_day(settings.invoice_generation_time, (0, 0))
    check_hour, check_minute = parse_time_of_day(settings.isolation_check_time, (1, 0))
    schedule: dict[str, dict] = {
        "generate_invoices": {
            "task": "app.tasks.billing.generate_invoices",
            "schedule": crontab(hour=invoice_hour, minute=invoice_minute),
        },
        "check_overdue_invoices": {
            "task": "app.tasks.billing.check_overdue_invoices",
            "schedule": crontab(hour=check_hour, minute=check_minute),
        },
    }
    logger.info(
        "Beat schedule: invoices at %02d:%02d, overdue check at %02d:%02d (%s)",
        invoice_hour,
        invoice_minute,
        check_hour,
        check_minute,
        settings.billing_timezone,
    )
    return schedule
