"""Antifraud service API.

Ops-facing endpoints over the antifraud engine; callers in the payment path
post the attempt context and get back an allow/deny decision.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from fluxpay.common.audit import AuditService
from fluxpay.common.config import settings
from fluxpay.common.counter_store import CounterStore
from fluxpay.common.db import SessionLocal
from fluxpay.common.logging import configure_logging
from fluxpay.common.metrics import metrics_response
from fluxpay.common.startup import log_startup_config
from fluxpay.common.tracing import instrument_app, setup_tracing
from fluxpay.services.antifraud.service import AntifraudService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "REDIS_URL",
        "ANTIFRAUD_IP_VELOCITY_LIMIT",
        "ANTIFRAUD_FAILED_ATTEMPTS_THRESHOLD",
        "ANTIFRAUD_IP_BLOCK_SECONDS",
    ],
)
store = CounterStore()
service = AntifraudService(store, AuditService(SessionLocal), service_name=settings.service_name)


class PaymentCheckRequest(BaseModel):
    """Attempt context screened by `POST /ops/antifraud/check`."""

    ip_address: str = Field(min_length=1)
    cpf: str | None = None
    card_bin: str | None = Field(default=None, max_length=19)
    amount_cents: int = Field(ge=0)


class FailedAttemptRequest(BaseModel):
    ip_address: str = Field(min_length=1)


def enforce_api_key(x_api_key: str | None) -> None:
    """Simple API-key gate for ops endpoints."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await store.close()


app = FastAPI(title="FluxPay Antifraud Service", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.post("/ops/antifraud/check")
async def check_payment(req: PaymentCheckRequest, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    decision = await service.check_payment(req.ip_address, req.cpf, req.card_bin, req.amount_cents)
    return decision.model_dump(mode="json")


@app.post("/ops/antifraud/failed-attempts")
async def record_failed_attempt(req: FailedAttemptRequest, x_api_key: str | None = Header(default=None)):
    """Count a failed payment attempt; reports whether the IP is now blocked."""

    enforce_api_key(x_api_key)
    block_activated = await service.record_failed_attempt(req.ip_address)
    return {"ip_address": req.ip_address, "block_activated": block_activated}


@app.get("/ops/antifraud/blocks/{ip}")
async def get_block(ip: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return {"ip_address": ip, "blocked": await service.is_ip_blocked(ip)}
