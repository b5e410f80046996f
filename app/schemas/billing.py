from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.billing import InvoiceStatus


class NormalizedPayload(BaseModel):
    """Gateway-independent view of a payment notification."""

    transaction_id: str | None = None
    status: str | None = None
    amount: Decimal | None = None
    external_id: str | None = None
    invoice_id: str | None = None
    order_id: str | None = None
    paid_at: datetime | None = None
    metadata: dict = Field(default_factory=dict)

    def invoice_references(self) -> list[str]:
        """Candidate invoice keys in lookup order."""
        return [
            ref for ref in (self.external_id, self.invoice_id, self.order_id) if ref
        ]


class WebhookResponse(BaseModel):
    success: bool
    message: str


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    service_id: UUID
    amount: Decimal
    status: InvoiceStatus
    invoice_date: date
    due_date: date
    paid_at: datetime | None = None
    payment_link: str | None = None


class PaymentLinkRequest(BaseModel):
    gateway: str = Field(min_length=1, max_length=40)
