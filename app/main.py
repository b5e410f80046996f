import logging

from fastapi import FastAPI

from app.api.services import router as admin_router
from app.api.webhooks import router as webhooks_router
from app.errors import register_error_handlers
from app.logging import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="ISP Billing API")
register_error_handlers(app)

app.include_router(webhooks_router)
app.include_router(admin_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}
