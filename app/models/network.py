import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class MikrotikRouter(Base):
    __tablename__ = "mikrotik_routers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    username: Mapped[str] = mapped_column(String(120), nullable=False)
    password_encrypted: Mapped[str | None] = mapped_column(String(512))
    # Stored for a RouterOS API transport; the client currently connects over ssh_port.
    api_port: Mapped[int] = mapped_column(Integer, default=8728)
    ssh_port: Mapped[int] = mapped_column(Integer, default=22)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    services = relationship("Service", back_populates="router")

    @property
    def pool_key(self) -> str:
        return f"router_{self.id}_{self.ip_address}"
