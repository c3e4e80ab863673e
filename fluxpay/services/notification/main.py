"""Notification service lifecycle: runs the webhook retry worker."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from fluxpay.common.audit import AuditService
from fluxpay.common.config import settings
from fluxpay.common.db import SessionLocal
from fluxpay.common.delivery_queue import update_delivery_backlog_metrics
from fluxpay.common.encryption import EncryptionService
from fluxpay.common.logging import configure_logging
from fluxpay.common.metrics import metrics_response
from fluxpay.common.startup import log_startup_config
from fluxpay.common.tracing import instrument_app, setup_tracing
from fluxpay.services.notification.service import WebhookDeliveryService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "ENCRYPTION_KEY",
        "WEBHOOK_MAX_ATTEMPTS",
        "WEBHOOK_RETRY_POLL_SECONDS",
        "WEBHOOK_DELIVERY_TIMEOUT_SECONDS",
    ],
)
service = WebhookDeliveryService(
    SessionLocal,
    EncryptionService(),
    AuditService(SessionLocal),
    service_name=settings.service_name,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the retry worker with FastAPI application lifecycle."""

    worker_task = asyncio.create_task(service.run_forever())
    yield
    worker_task.cancel()
    try:
        await worker_task
    except asyncio.CancelledError:
        pass


app = FastAPI(title="FluxPay Notification Service", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    with SessionLocal() as db:
        update_delivery_backlog_metrics(db, settings.service_name)
    return metrics_response()
