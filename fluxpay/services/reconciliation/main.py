"""Reconciliation service: daily worker plus on-demand reports for ops."""

import asyncio
from contextlib import asynccontextmanager
from datetime import date

from fastapi import FastAPI, Header, HTTPException

from fluxpay.common.audit import AuditService
from fluxpay.common.config import settings
from fluxpay.common.db import SessionLocal
from fluxpay.common.logging import configure_logging
from fluxpay.common.metrics import metrics_response
from fluxpay.common.startup import log_startup_config
from fluxpay.common.tracing import instrument_app, setup_tracing
from fluxpay.providers.registry import build_default_registry
from fluxpay.services.reconciliation.service import ReconciliationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "RECONCILIATION_RUN_HOUR_UTC",
        "PAGARME_API_KEY",
        "PAGARME_SANDBOX",
        "GERENCIANET_CLIENT_ID",
        "GERENCIANET_SANDBOX",
    ],
)
service = ReconciliationService(
    SessionLocal,
    build_default_registry(),
    AuditService(SessionLocal),
    service_name=settings.service_name,
)


def enforce_api_key(x_api_key: str | None) -> None:
    """Simple API-key gate for ops endpoints."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the daily reconciliation worker with application lifecycle."""

    worker_task = asyncio.create_task(service.run_forever())
    yield
    worker_task.cancel()
    try:
        await worker_task
    except asyncio.CancelledError:
        pass


app = FastAPI(title="FluxPay Reconciliation Service", lifespan=lifespan)
instrument_app(app)


@app.get("/reconciliation/{day}")
async def run_reconciliation(day: date, x_api_key: str | None = Header(default=None)):
    """Reconcile one UTC date now and return the report."""

    enforce_api_key(x_api_key)
    report = await service.reconcile(day)
    return report.model_dump(mode="json")


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
