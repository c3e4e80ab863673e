"""Inbound PSP webhook endpoint.

Notifications are authenticated inline and acknowledged with
`{"received": true}`; state changes run as a background task after the
response is sent.
"""

from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse

from fluxpay.common.audit import AuditService
from fluxpay.common.config import settings
from fluxpay.common.counter_store import CounterStore, NonceStore
from fluxpay.common.db import SessionLocal
from fluxpay.common.encryption import EncryptionService
from fluxpay.common.logging import configure_logging, logger
from fluxpay.common.metrics import metrics_response
from fluxpay.common.startup import log_startup_config
from fluxpay.common.tracing import instrument_app, setup_tracing
from fluxpay.providers.base import ProviderNotSupportedError
from fluxpay.providers.registry import build_default_registry
from fluxpay.services.notification.service import WebhookDeliveryService
from fluxpay.services.provider_webhooks.service import ProviderWebhookService
from fluxpay.services.provider_webhooks.validator import ProviderWebhookValidator, WebhookRejection

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "REDIS_URL",
        "WEBHOOK_TIMESTAMP_SKEW_SECONDS",
        "PAGARME_WEBHOOK_SECRET",
        "GERENCIANET_WEBHOOK_SECRET",
    ],
)
store = CounterStore()
audit = AuditService(SessionLocal)
validator = ProviderWebhookValidator(
    build_default_registry(),
    NonceStore(store),
    audit,
    service_name=settings.service_name,
)
service = ProviderWebhookService(
    SessionLocal,
    WebhookDeliveryService(SessionLocal, EncryptionService(), audit, service_name=settings.service_name),
    audit,
    service_name=settings.service_name,
)

REJECTION_CODES = {
    WebhookRejection.TIMESTAMP_SKEW: ("TIMESTAMP_SKEW", "Webhook timestamp outside allowed window"),
    WebhookRejection.NONCE_REUSED: ("NONCE_REUSED", "Webhook nonce already used"),
    WebhookRejection.INVALID_SIGNATURE: ("INVALID_SIGNATURE", "Invalid webhook signature"),
}


def _webhook_error(code: str, message: str, status_code: int = 401) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await store.close()


app = FastAPI(title="FluxPay Provider Webhooks", lifespan=lifespan)
instrument_app(app)


@app.post("/v1/webhooks/provider")
async def receive_provider_webhook(request: Request, background_tasks: BackgroundTasks):
    provider = request.headers.get("X-Provider")
    request_signature = request.headers.get("X-Signature")
    timestamp = request.headers.get("X-Timestamp")
    nonce = request.headers.get("X-Nonce")
    if not provider or not request_signature or not timestamp or not nonce:
        return _webhook_error("INVALID_WEBHOOK", "Missing required webhook headers")
    try:
        ts = int(timestamp)
    except ValueError:
        return _webhook_error("INVALID_TIMESTAMP", "Invalid timestamp format")
    try:
        payload = (await request.body()).decode("utf-8")
    except UnicodeDecodeError:
        return _webhook_error("INVALID_WEBHOOK", "Webhook body is not valid UTF-8")

    try:
        result = await validator.validate(provider, payload, request_signature, ts, nonce)
    except ProviderNotSupportedError as exc:
        logger.warning("provider webhook for unknown provider=%s", provider)
        return _webhook_error("UNKNOWN_PROVIDER", str(exc))
    if not result.valid:
        code, message = REJECTION_CODES[result.rejection]
        return _webhook_error(code, message)

    background_tasks.add_task(service.process, result.provider, payload)
    return {"received": True}


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
