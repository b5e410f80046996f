"""Process-wide engine instances wired from settings."""

from functools import lru_cache

from app.services.billing import BillingEngine
from app.services.isolation import IsolationEngine
from app.services.job_dispatch import CeleryJobDispatcher
from app.services.mikrotik import get_router_client
from app.services.payment_gateways import get_gateway_registry
from app.services.payment_webhooks import PaymentWebhookProcessor
from app.services.provisioning import ProvisioningEngine


@lru_cache(maxsize=1)
def get_billing_engine() -> BillingEngine:
    return BillingEngine()


@lru_cache(maxsize=1)
def get_isolation_engine() -> IsolationEngine:
    return IsolationEngine(get_router_client())


@lru_cache(maxsize=1)
def get_provisioning_engine() -> ProvisioningEngine:
    return ProvisioningEngine(get_router_client(), get_isolation_engine())


@lru_cache(maxsize=1)
def get_job_dispatcher() -> CeleryJobDispatcher:
    return CeleryJobDispatcher()


@lru_cache(maxsize=1)
def get_webhook_processor() -> PaymentWebhookProcessor:
    return PaymentWebhookProcessor(get_gateway_registry(), get_job_dispatcher())
