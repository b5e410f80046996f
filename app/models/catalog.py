import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, Enum, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class PackageType(enum.Enum):
    residential = "residential"
    business = "business"


class ServiceStatus(enum.Enum):
    pending = "pending"
    active = "active"
    isolated = "isolated"
    suspended = "suspended"
    terminated = "terminated"
    provisioning_failed = "provisioning_failed"


class Package(Base):
    __tablename__ = "packages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    speed: Mapped[str] = mapped_column(String(40), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    type: Mapped[PackageType] = mapped_column(
        Enum(PackageType), default=PackageType.residential
    )
    description: Mapped[str | None] = mapped_column(Text)
    mikrotik_profile: Mapped[str | None] = mapped_column(String(120))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    services = relationship("Service", back_populates="package")


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (Index("ix_services_status_expiry", "status", "expiry_date"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False
    )
    package_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("packages.id")
    )
    router_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("mikrotik_routers.id")
    )
    username: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    # Fernet token from app.services.credential_crypto, never plaintext.
    password_encrypted: Mapped[str] = mapped_column(String(512), nullable=False)
    mikrotik_user_id: Mapped[str | None] = mapped_column(String(64))
    status: Mapped[ServiceStatus] = mapped_column(
        Enum(ServiceStatus), default=ServiceStatus.pending
    )
    activation_date: Mapped[date | None] = mapped_column(Date)
    expiry_date: Mapped[date | None] = mapped_column(Date)
    isolation_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    customer = relationship("Customer", back_populates="services")
    package = relationship("Package", back_populates="services")
    router = relationship("MikrotikRouter", back_populates="services")
    invoices = relationship("Invoice", back_populates="service")
