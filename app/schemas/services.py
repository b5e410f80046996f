from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel


class InstallationApproval(BaseModel):
    package_id: UUID
    router_id: UUID


class ProvisionRequest(BaseModel):
    customer_id: UUID
    package_id: UUID
    router_id: UUID


class ActionResponse(BaseModel):
    level: str
    message: str
    service_id: UUID | None = None
    username: str | None = None
    password: str | None = None
