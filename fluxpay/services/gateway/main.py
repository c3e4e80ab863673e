"""Merchant-facing API.

Every `/v1` route requires an HMAC-signed request (see `auth.py`) and is then
rate-limited per merchant; the resolved merchant is passed to handlers
explicitly as a dependency.
"""

from datetime import timedelta
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from fluxpay.common.audit import AuditService
from fluxpay.common.config import settings
from fluxpay.common.counter_store import CounterStore, NonceStore
from fluxpay.common.db import SessionLocal
from fluxpay.common.encryption import EncryptionService
from fluxpay.common.logging import configure_logging, logger, trace_id_ctx
from fluxpay.common.metrics import (
    api_auth_rejections_total,
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
)
from fluxpay.common.models import Merchant
from fluxpay.common.startup import log_startup_config
from fluxpay.common.tracing import instrument_app, setup_tracing
from fluxpay.services.antifraud.rate_limiter import RateLimiter
from fluxpay.services.gateway.auth import AuthenticatedMerchant, RequestAuthenticator, merchant_dependency
from fluxpay.services.notification.service import WebhookDeliveryService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "REDIS_URL",
        "ENCRYPTION_KEY",
        "API_TIMESTAMP_SKEW_SECONDS",
        "NONCE_TTL_SECONDS",
        "AUDIT_API_AUTH_FAILURES",
        "RATE_LIMIT_PER_MINUTE",
    ],
)
encryption = EncryptionService()
audit = AuditService(SessionLocal)
counter_store = CounterStore()
rate_limiter = RateLimiter(counter_store)
authenticator = RequestAuthenticator(
    SessionLocal,
    NonceStore(counter_store),
    encryption,
    audit=audit,
    service_name=settings.service_name,
)
deliveries = WebhookDeliveryService(SessionLocal, encryption, audit, service_name=settings.service_name)
require_merchant = merchant_dependency(authenticator)

RATE_LIMIT_WINDOW = timedelta(minutes=1)

app = FastAPI(title="FluxPay Gateway")
instrument_app(app)


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    """Return structured auth errors as-is; plain details keep FastAPI's shape."""

    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_id_ctx.set(request.headers.get("X-Trace-Id") or str(uuid4()))
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


async def enforce_rate_limit(
    merchant: AuthenticatedMerchant = Depends(require_merchant),
) -> AuthenticatedMerchant:
    """Per-merchant sliding window, applied once the request is authenticated."""

    limit = settings.rate_limit_per_minute
    result = await rate_limiter.check_rate_limit(f"merchant:{merchant.merchant_id}", limit, RATE_LIMIT_WINDOW)
    if not result.allowed:
        api_auth_rejections_total.labels(service=settings.service_name, code="RATE_LIMIT_EXCEEDED").inc()
        logger.warning("merchant rate limit exceeded merchant_id=%s limit=%s", merchant.merchant_id, limit)
        raise HTTPException(
            status_code=429,
            detail={"error": {"code": "RATE_LIMIT_EXCEEDED", "message": "Rate limit exceeded"}},
            headers={
                "Retry-After": str(int(RATE_LIMIT_WINDOW.total_seconds())),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            },
        )
    return merchant


class WebhookTestRequest(BaseModel):
    """Payload accepted by `POST /v1/webhooks/merchant/test`."""

    url: str = Field(min_length=1, pattern=r"^https?://")


@app.get("/v1/merchant")
def get_merchant(merchant: AuthenticatedMerchant = Depends(enforce_rate_limit)):
    """Echo the identity the request was authenticated as."""

    with SessionLocal() as db:
        row = db.get(Merchant, merchant.merchant_id)
    return {
        "merchant_id": merchant.merchant_id,
        "key_id": merchant.key_id,
        "name": row.name if row else None,
        "active": row.active if row else None,
    }


@app.post("/v1/webhooks/merchant/test")
async def test_merchant_webhook(
    req: WebhookTestRequest,
    merchant: AuthenticatedMerchant = Depends(enforce_rate_limit),
):
    result = await deliveries.send_test_webhook(merchant.merchant_id, req.url)
    return result.model_dump()


@app.get("/v1/webhooks/deliveries")
def list_webhook_deliveries(
    status: str | None = None,
    limit: int = 50,
    merchant: AuthenticatedMerchant = Depends(enforce_rate_limit),
):
    """Recent deliveries for the calling merchant, newest first."""

    rows = deliveries.list_deliveries(merchant.merchant_id, status=status, limit=max(1, min(limit, 200)))
    return [
        {
            "id": row.id,
            "payment_id": row.payment_id,
            "event_type": row.event_type,
            "status": row.status,
            "attempt_count": row.attempt_count,
            "last_error": row.last_error,
            "next_retry_at": row.next_retry_at.isoformat() if row.next_retry_at else None,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
