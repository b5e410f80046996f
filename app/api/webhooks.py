from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.db import get_db
from app.schemas.billing import WebhookResponse
from app.services.engines import get_webhook_processor
from app.services.payment_gateways import WebhookRequest

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payment/{gateway}", response_model=WebhookResponse)
async def payment_webhook(gateway: str, request: Request, db: Session = Depends(get_db)):
    webhook = WebhookRequest(
        body=await request.body(),
        headers=dict(request.headers),
        client_ip=request.client.host if request.client else None,
    )
    outcome = await run_in_threadpool(get_webhook_processor().process, db, gateway, webhook)
    return outcome.to_response()
