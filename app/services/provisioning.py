"""PPPoE service creation and router provisioning.

A service row is created first (status ``pending``) and then pushed to
the router. Router failure marks the row ``provisioning_failed`` instead
of rolling it back, so an operator can retry later.
"""

from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.catalog import Package, Service, ServiceStatus
from app.models.customer import Customer, CustomerStatus
from app.models.network import MikrotikRouter
from app.services.common import today as current_date
from app.services.credential_crypto import decrypt_credential, encrypt_credential
from app.services.isolation import IsolationEngine, SwitchOutcome
from app.services.mikrotik import RouterControlClient
from app.services.profiles import UnderscoredPackageProfile

logger = logging.getLogger(__name__)

USERNAME_PREFIX = "pppoe_"
USERNAME_SUFFIX_LENGTH = 6
USERNAME_MAX_ATTEMPTS = 10
PASSWORD_LENGTH = 12
FIRST_CYCLE_DAYS = 30

_USERNAME_ALPHABET = string.ascii_uppercase + string.digits
_PASSWORD_SETS = (
    string.ascii_uppercase,
    string.ascii_lowercase,
    string.digits,
    "!@#$%^&*",
)


class CredentialGenerationError(Exception):
    pass


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str


@dataclass
class ProvisioningResult:
    service: Service
    success: bool
    credentials: Credentials


@dataclass
class ActionResult:
    """Operator-facing outcome of an administrative action."""

    level: str
    message: str
    service: Service | None = None
    credentials: Credentials | None = None

    @property
    def ok(self) -> bool:
        return self.level != "error"


def generate_password(length: int = PASSWORD_LENGTH, rng: secrets.SystemRandom | None = None) -> str:
    """One character from each class, the rest from all classes, shuffled."""
    rng = rng or secrets.SystemRandom()
    if length < len(_PASSWORD_SETS):
        raise ValueError(f"Password length must be at least {len(_PASSWORD_SETS)}")
    alphabet = "".join(_PASSWORD_SETS)
    chars = [rng.choice(charset) for charset in _PASSWORD_SETS]
    chars.extend(rng.choice(alphabet) for _ in range(length - len(chars)))
    rng.shuffle(chars)
    return "".join(chars)


class ProvisioningEngine:
    def __init__(
        self,
        router_client: RouterControlClient,
        isolation_engine: IsolationEngine | None = None,
        today: Callable[[], date] = current_date,
        rng: secrets.SystemRandom | None = None,
    ):
        self.router_client = router_client
        self.isolation_engine = isolation_engine or IsolationEngine(router_client)
        self._today = today
        self._rng = rng or secrets.SystemRandom()
        self.profile_resolver = UnderscoredPackageProfile()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def _candidate_username(self) -> str:
        suffix = "".join(self._rng.choice(_USERNAME_ALPHABET) for _ in range(USERNAME_SUFFIX_LENGTH))
        return f"{USERNAME_PREFIX}{self._today():%Y%m%d}_{suffix}"

    def username_exists(self, db: Session, username: str) -> bool:
        return db.scalar(select(Service.id).where(Service.username == username)) is not None

    def generate_credentials(self, db: Session) -> Credentials:
        for attempt in range(1, USERNAME_MAX_ATTEMPTS + 1):
            username = self._candidate_username()
            if not self.username_exists(db, username):
                return Credentials(username=username, password=generate_password(rng=self._rng))
            logger.debug("Username %s taken (attempt %s)", username, attempt)
        raise CredentialGenerationError(
            f"Could not generate a unique PPPoE username after {USERNAME_MAX_ATTEMPTS} attempts"
        )

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def create_service(
        self,
        db: Session,
        customer: Customer,
        package: Package,
        router: MikrotikRouter,
        credentials: Credentials | None = None,
    ) -> Service:
        credentials = credentials or self.generate_credentials(db)
        today = self._today()
        service = Service(
            customer_id=customer.id,
            package_id=package.id,
            router_id=router.id,
            username=credentials.username,
            password_encrypted=encrypt_credential(credentials.password),
            status=ServiceStatus.pending,
            activation_date=today,
            expiry_date=today + timedelta(days=FIRST_CYCLE_DAYS),
        )
        try:
            db.add(service)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(service)
        logger.info(
            "Service %s created for customer %s (username=%s, package=%s)",
            service.id,
            customer.id,
            service.username,
            package.name,
        )
        return service

    def provision_to_router(self, db: Session, service: Service) -> bool:
        router = service.router
        profile = self.profile_resolver.resolve(service)
        try:
            if router is None or profile is None:
                raise ValueError("service has no router or package")
            user_id = self.router_client.create_pppoe_user(
                router,
                service.username,
                decrypt_credential(service.password_encrypted),
                profile,
            )
        except Exception as exc:
            logger.error(
                "Provisioning service %s (username=%s) to router failed: %s",
                service.id,
                service.username,
                exc,
                exc_info=True,
            )
            service.status = ServiceStatus.provisioning_failed
            service.mikrotik_user_id = None
            db.commit()
            return False

        service.mikrotik_user_id = user_id
        service.status = ServiceStatus.active
        db.commit()
        db.refresh(service)
        logger.info(
            "Service %s provisioned on router %s (user_id=%s, profile=%s)",
            service.id,
            router.name,
            user_id,
            profile,
        )
        return True

    def provision_service(
        self, db: Session, customer: Customer, package: Package, router: MikrotikRouter
    ) -> ProvisioningResult:
        """Create and provision a service.

        The returned credentials hold the only plaintext copy of the password.
        """
        credentials = self.generate_credentials(db)
        service = self.create_service(db, customer, package, router, credentials)
        success = self.provision_to_router(db, service)
        return ProvisioningResult(service=service, success=success, credentials=credentials)

    def retry_provisioning(self, db: Session, service: Service) -> bool:
        if service.status not in (ServiceStatus.provisioning_failed, ServiceStatus.pending):
            logger.warning(
                "Service %s is %s, not retrying provisioning", service.id, service.status.value
            )
            return False
        return self.provision_to_router(db, service)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def isolate_service(self, db: Session, service: Service) -> bool:
        return self.isolation_engine.isolate_service(db, service)

    def restore_service(self, db: Session, service: Service) -> bool:
        """Restore to the profile this layer provisioned with."""
        outcome = self.isolation_engine.restore(db, service, resolver=self.profile_resolver)
        return outcome is SwitchOutcome.applied

    def terminate_service(self, db: Session, service: Service) -> bool:
        if service.status == ServiceStatus.terminated:
            return True
        if service.mikrotik_user_id and service.router is not None:
            try:
                self.router_client.delete_user(service.router, service.mikrotik_user_id)
            except Exception as exc:
                logger.error(
                    "Failed to remove PPPoE user %s for service %s: %s",
                    service.mikrotik_user_id,
                    service.id,
                    exc,
                    exc_info=True,
                )
                return False
        service.status = ServiceStatus.terminated
        service.mikrotik_user_id = None
        service.isolation_timestamp = None
        db.commit()
        logger.info("Service %s terminated", service.id)
        return True

    def approve_installation(
        self,
        db: Session,
        customer: Customer,
        package: Package,
        router: MikrotikRouter,
    ) -> ActionResult:
        if customer.status != CustomerStatus.survey_complete:
            return ActionResult("error", "Customer has not completed the site survey.")
        if not package.is_active:
            return ActionResult("error", "The selected package is not active.")
        if not router.is_active:
            return ActionResult("error", "The selected router is not active.")

        try:
            customer.status = CustomerStatus.approved
            db.commit()
            logger.info(
                "Installation approved for customer %s (package=%s, router=%s)",
                customer.id,
                package.name,
                router.name,
            )
            result = self.provision_service(db, customer, package, router)
        except Exception as exc:
            db.rollback()
            logger.exception("Failed to approve installation for customer %s", customer.id)
            return ActionResult("error", f"Installation approval failed: {exc}")

        if result.success:
            customer.status = CustomerStatus.active
            db.commit()
            return ActionResult(
                "success",
                f"Installation for {customer.name} approved and service activated. "
                f"PPPoE username: {result.credentials.username}",
                service=result.service,
                credentials=result.credentials,
            )
        logger.warning(
            "Service %s for customer %s marked provisioning_failed",
            result.service.id,
            customer.id,
        )
        return ActionResult(
            "warning",
            f"Installation for {customer.name} approved, but router provisioning failed. "
            f"Service {result.service.id} is marked provisioning_failed; retry provisioning manually.",
            service=result.service,
            credentials=result.credentials,
        )

