from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.billing import Invoice
from app.models.catalog import Package, Service
from app.models.customer import Customer
from app.models.network import MikrotikRouter
from app.schemas.billing import InvoiceRead, PaymentLinkRequest
from app.schemas.services import ActionResponse, InstallationApproval, ProvisionRequest
from app.services.common import parse_uuid
from app.services.engines import (
    get_billing_engine,
    get_isolation_engine,
    get_provisioning_engine,
)
from app.services.payment_gateways import get_gateway_registry
from app.services.provisioning import ActionResult

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_or_404(db: Session, model, object_id: str, label: str):
    key = parse_uuid(object_id)
    instance = db.get(model, key) if key is not None else None
    if instance is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return instance


def _action_response(result: ActionResult) -> ActionResponse:
    return ActionResponse(
        level=result.level,
        message=result.message,
        service_id=result.service.id if result.service is not None else None,
        username=result.credentials.username if result.credentials else None,
        password=result.credentials.password if result.credentials else None,
    )


@router.post("/customers/{customer_id}/approve", response_model=ActionResponse)
def approve_installation(
    customer_id: str, payload: InstallationApproval, db: Session = Depends(get_db)
):
    customer = _get_or_404(db, Customer, customer_id, "Customer")
    package = _get_or_404(db, Package, str(payload.package_id), "Package")
    router_ = _get_or_404(db, MikrotikRouter, str(payload.router_id), "Router")
    result = get_provisioning_engine().approve_installation(db, customer, package, router_)
    return _action_response(result)


@router.post("/services", response_model=ActionResponse, status_code=201)
def provision_service(payload: ProvisionRequest, db: Session = Depends(get_db)):
    customer = _get_or_404(db, Customer, str(payload.customer_id), "Customer")
    package = _get_or_404(db, Package, str(payload.package_id), "Package")
    router_ = _get_or_404(db, MikrotikRouter, str(payload.router_id), "Router")
    result = get_provisioning_engine().provision_service(db, customer, package, router_)
    if result.success:
        action = ActionResult(
            "success", "Service provisioned.", result.service, result.credentials
        )
    else:
        action = ActionResult(
            "warning",
            "Service created, but router provisioning failed.",
            result.service,
            result.credentials,
        )
    return _action_response(action)


@router.post("/services/{service_id}/retry-provisioning", response_model=ActionResponse)
def retry_provisioning(service_id: str, db: Session = Depends(get_db)):
    service = _get_or_404(db, Service, service_id, "Service")
    if get_provisioning_engine().retry_provisioning(db, service):
        return ActionResponse(level="success", message="Service provisioned.", service_id=service.id)
    return ActionResponse(
        level="error", message="Provisioning retry failed.", service_id=service.id
    )


@router.post("/services/{service_id}/isolate", response_model=ActionResponse)
def isolate_service(service_id: str, db: Session = Depends(get_db)):
    service = _get_or_404(db, Service, service_id, "Service")
    if get_provisioning_engine().isolate_service(db, service):
        return ActionResponse(level="success", message="Service isolated.", service_id=service.id)
    return ActionResponse(level="error", message="Service could not be isolated.", service_id=service.id)


@router.post("/services/{service_id}/restore", response_model=ActionResponse)
def restore_service(service_id: str, db: Session = Depends(get_db)):
    service = _get_or_404(db, Service, service_id, "Service")
    if get_provisioning_engine().restore_service(db, service):
        return ActionResponse(level="success", message="Service restored.", service_id=service.id)
    return ActionResponse(level="error", message="Service could not be restored.", service_id=service.id)


@router.post("/services/{service_id}/terminate", response_model=ActionResponse)
def terminate_service(service_id: str, db: Session = Depends(get_db)):
    service = _get_or_404(db, Service, service_id, "Service")
    if get_provisioning_engine().terminate_service(db, service):
        return ActionResponse(level="success", message="Service terminated.", service_id=service.id)
    return ActionResponse(
        level="error",
        message="Router user could not be removed; service left unchanged.",
        service_id=service.id,
    )


@router.get("/services/{service_id}/isolation-history")
def isolation_history(service_id: str, db: Session = Depends(get_db)):
    service = _get_or_404(db, Service, service_id, "Service")
    return get_isolation_engine().get_isolation_history(db, service)


@router.post("/invoices/{invoice_id}/payment-link", response_model=InvoiceRead)
def create_payment_link(
    invoice_id: str, payload: PaymentLinkRequest, db: Session = Depends(get_db)
):
    invoice = _get_or_404(db, Invoice, invoice_id, "Invoice")
    gateway = get_gateway_registry().get(payload.gateway)
    if gateway is None:
        raise HTTPException(status_code=404, detail="Unknown payment gateway")
    get_billing_engine().create_payment_link(db, invoice, gateway)
    return invoice
