"""Outbound merchant webhook delivery with a bounded retry ladder.

Every send, first attempt or retry, goes through `WebhookDeliveryService.attempt`.
A delivery that keeps failing is retried on the ladder below and becomes
terminal after `webhook_max_attempts` attempts.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from time import perf_counter, time
from uuid import uuid4

import httpx
from pydantic import BaseModel
from sqlalchemy import select

from fluxpay.common import signature
from fluxpay.common.audit import AuditEntry, AuditService
from fluxpay.common.config import settings
from fluxpay.common.delivery_queue import (
    lock_due_delivery,
    select_due_delivery_ids,
    update_delivery_backlog_metrics,
)
from fluxpay.common.encryption import DecryptionError, EncryptionService
from fluxpay.common.events import EventEnvelope, payment_event_type
from fluxpay.common.logging import logger, trace_id_ctx
from fluxpay.common.metrics import webhook_delivery_attempts_total, webhook_delivery_latency_seconds
from fluxpay.common.models import DeliveryStatus, MerchantWebhook, Payment, WebhookDelivery
from fluxpay.common.tracing import tracer

# Minutes to wait after the Nth failed attempt.
RETRY_DELAYS_MINUTES = (1, 5, 15, 30, 60, 120, 240, 480, 720, 1440)

AUDIT_ACTOR = "system:webhook_retry_worker"
NO_ENDPOINT_ERROR = "No active webhook endpoint configured"


def retry_delay(attempt: int) -> timedelta:
    """Delay before the next try after `attempt` failures; past the ladder the last rung repeats."""

    index = min(max(attempt, 1), len(RETRY_DELAYS_MINUTES)) - 1
    return timedelta(minutes=RETRY_DELAYS_MINUTES[index])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SendOutcome:
    status_code: int | None
    body: str
    error: str | None
    elapsed_ms: int

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300


class WebhookTestResult(BaseModel):
    success: bool
    status_code: int | None = None
    response_time_ms: int
    response_body: str | None = None
    error_message: str | None = None


class WebhookDeliveryService:
    """Creates, sends and retries merchant webhook deliveries."""

    def __init__(
        self,
        session_factory,
        encryption: EncryptionService,
        audit: AuditService,
        transport: httpx.AsyncBaseTransport | None = None,
        service_name: str = "notification",
    ) -> None:
        self.session_factory = session_factory
        self.encryption = encryption
        self.audit = audit
        self.transport = transport
        self.service_name = service_name
        self.max_attempts = settings.webhook_max_attempts
        self.timeout_seconds = settings.webhook_delivery_timeout_seconds
        self.poll_seconds = settings.webhook_retry_poll_seconds
        self.pending_grace = timedelta(seconds=settings.webhook_pending_grace_seconds)

    def create_delivery(self, db, payment: Payment) -> WebhookDelivery:
        """Queue a notification for the payment's current status in the caller's transaction."""

        event_type = payment_event_type(payment.status)
        envelope = EventEnvelope(
            event_type=event_type,
            aggregate_id=payment.payment_id,
            trace_id=trace_id_ctx.get() or str(uuid4()),
            payload={
                "payment_id": payment.payment_id,
                "merchant_id": payment.merchant_id,
                "status": payment.status,
                "amount_cents": payment.amount_cents,
                "method": payment.method,
                "provider": payment.provider,
                "provider_payment_id": payment.provider_payment_id,
            },
        )
        delivery = WebhookDelivery(
            id=str(uuid4()),
            merchant_id=payment.merchant_id,
            payment_id=payment.payment_id,
            event_type=event_type,
            payload=envelope.to_json(),
            status=DeliveryStatus.PENDING,
            attempt_count=0,
        )
        db.add(delivery)
        return delivery

    def _active_endpoint(self, db, merchant_id: str) -> MerchantWebhook | None:
        return db.execute(
            select(MerchantWebhook)
            .where(MerchantWebhook.merchant_id == merchant_id, MerchantWebhook.active.is_(True))
            .order_by(MerchantWebhook.created_at)
            .limit(1)
        ).scalar_one_or_none()

    async def _send(self, url: str, secret: str, payload: str, trace_id: str) -> SendOutcome:
        timestamp = str(int(time()))
        nonce = uuid4().hex
        headers = {
            "Content-Type": "application/json",
            "X-Signature": signature.sign(secret, f"{timestamp}.{nonce}.{payload}"),
            "X-Timestamp": timestamp,
            "X-Nonce": nonce,
            "X-Trace-Id": trace_id,
        }
        start = perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                resp = await client.post(url, content=payload.encode("utf-8"), headers=headers)
        except Exception as exc:
            elapsed = perf_counter() - start
            webhook_delivery_latency_seconds.labels(service=self.service_name).observe(elapsed)
            return SendOutcome(None, "", f"{type(exc).__name__}: {exc}", int(elapsed * 1000))
        elapsed = perf_counter() - start
        webhook_delivery_latency_seconds.labels(service=self.service_name).observe(elapsed)
        error = None if 200 <= resp.status_code < 300 else f"HTTP {resp.status_code}: {resp.text[:500]}"
        return SendOutcome(resp.status_code, resp.text, error, int(elapsed * 1000))

    @staticmethod
    def _trace_id(delivery: WebhookDelivery) -> str:
        try:
            return json.loads(delivery.payload).get("trace_id") or delivery.id
        except (ValueError, AttributeError):
            return delivery.id

    def _audit(self, db, delivery: WebhookDelivery, action: str, changes: dict) -> None:
        self.audit.log(
            AuditEntry(
                actor=AUDIT_ACTOR,
                action=action,
                resource_type="webhook_delivery",
                resource_id=delivery.id,
                merchant_id=delivery.merchant_id,
                changes={"payment_id": delivery.payment_id, "event_type": delivery.event_type, **changes},
            ),
            db=db,
        )

    def _record_outcome(
        self,
        db,
        delivery: WebhookDelivery,
        endpoint: MerchantWebhook,
        outcome: SendOutcome,
        is_retry: bool,
    ) -> bool:
        now = _utcnow()
        if outcome.ok:
            delivery.status = DeliveryStatus.SUCCESS
            delivery.last_error = None
            delivery.next_retry_at = None
            endpoint.last_success_at = now
            webhook_delivery_attempts_total.labels(service=self.service_name, outcome="success").inc()
            logger.info(
                "webhook delivered delivery_id=%s attempt=%s status_code=%s",
                delivery.id,
                delivery.attempt_count,
                outcome.status_code,
            )
            self._audit(
                db,
                delivery,
                "webhook.retry_succeeded" if is_retry else "webhook.delivered",
                {"attempt": delivery.attempt_count, "status_code": outcome.status_code},
            )
            return True

        delivery.last_error = outcome.error
        if delivery.attempt_count >= self.max_attempts:
            self._mark_permanently_failed(db, delivery, outcome.error)
            return False
        delivery.status = DeliveryStatus.FAILED
        delivery.next_retry_at = now + retry_delay(delivery.attempt_count)
        webhook_delivery_attempts_total.labels(service=self.service_name, outcome="failed").inc()
        logger.warning(
            "webhook delivery failed delivery_id=%s attempt=%s next_retry_at=%s error=%s",
            delivery.id,
            delivery.attempt_count,
            delivery.next_retry_at.isoformat(),
            outcome.error,
        )
        return False

    def _mark_permanently_failed(self, db, delivery: WebhookDelivery, error: str | None) -> None:
        delivery.status = DeliveryStatus.PERMANENTLY_FAILED
        delivery.last_error = error
        delivery.next_retry_at = None
        webhook_delivery_attempts_total.labels(service=self.service_name, outcome="permanently_failed").inc()
        logger.error("webhook permanently failed delivery_id=%s attempts=%s", delivery.id, delivery.attempt_count)
        self._audit(
            db,
            delivery,
            "webhook.permanently_failed",
            {"attempts": delivery.attempt_count, "last_error": error},
        )

    async def attempt(self, db, delivery: WebhookDelivery, is_retry: bool = False) -> bool:
        """Send one delivery and update its row in `db`; returns True on a 2xx.

        The caller commits. If the calling task is cancelled mid-POST, the POST
        still completes and its outcome is committed before the cancellation
        propagates.
        """

        endpoint = self._active_endpoint(db, delivery.merchant_id)
        if endpoint is None:
            self._mark_permanently_failed(db, delivery, NO_ENDPOINT_ERROR)
            return False

        delivery.attempt_count += 1
        try:
            secret = self.encryption.decrypt(endpoint.secret_encrypted)
        except DecryptionError as exc:
            logger.error("webhook secret could not be decrypted endpoint_id=%s: %s", endpoint.id, exc)
            return self._record_outcome(db, delivery, endpoint, SendOutcome(None, "", str(exc), 0), is_retry)

        with tracer.start_as_current_span("webhook.deliver") as span:
            span.set_attribute("fluxpay.delivery_id", delivery.id)
            span.set_attribute("fluxpay.attempt", delivery.attempt_count)
            send = asyncio.ensure_future(
                self._send(endpoint.endpoint_url, secret, delivery.payload, self._trace_id(delivery))
            )
            try:
                outcome = await asyncio.shield(send)
            except asyncio.CancelledError:
                outcome = await send
                self._record_outcome(db, delivery, endpoint, outcome, is_retry)
                db.commit()
                raise
            return self._record_outcome(db, delivery, endpoint, outcome, is_retry)

    async def deliver(self, delivery_id: str) -> bool:
        """First attempt for a freshly queued delivery."""

        with self.session_factory() as db:
            delivery = db.get(WebhookDelivery, delivery_id)
            if delivery is None or delivery.status != DeliveryStatus.PENDING:
                return False
            delivered = await self.attempt(db, delivery)
            db.commit()
            return delivered

    async def process_due_deliveries(self, now: datetime | None = None) -> int:
        """Attempt every due delivery once, one row at a time; returns how many were attempted.

        Due rows are failed deliveries whose retry time has come and PENDING rows
        whose first attempt never completed. A row that raises is logged and
        left for the next pass without blocking the others.
        """

        with self.session_factory() as db:
            due_ids = select_due_delivery_ids(db, self.max_attempts, now, self.pending_grace)
        processed = 0
        for delivery_id in due_ids:
            try:
                with self.session_factory() as db:
                    delivery = lock_due_delivery(db, delivery_id, self.max_attempts, now, self.pending_grace)
                    if delivery is None:
                        continue
                    await self.attempt(db, delivery, is_retry=delivery.attempt_count > 0)
                    db.commit()
                    processed += 1
            except Exception as exc:
                logger.exception("webhook retry failed delivery_id=%s: %s", delivery_id, exc)
        with self.session_factory() as db:
            update_delivery_backlog_metrics(db, self.service_name)
        if due_ids:
            logger.info("webhook retry pass due=%s attempted=%s", len(due_ids), processed)
        return processed

    async def run_forever(self) -> None:
        """Poll for due retries until cancelled."""

        while True:
            try:
                await self.process_due_deliveries()
            except Exception as exc:
                logger.exception("webhook retry loop error: %s", exc)
                await asyncio.sleep(60)
                continue
            await asyncio.sleep(self.poll_seconds)

    def list_deliveries(self, merchant_id: str, status: str | None = None, limit: int = 50) -> list[WebhookDelivery]:
        with self.session_factory() as db:
            query = select(WebhookDelivery).where(WebhookDelivery.merchant_id == merchant_id)
            if status:
                query = query.where(WebhookDelivery.status == status)
            return list(db.execute(query.order_by(WebhookDelivery.created_at.desc()).limit(limit)).scalars())

    async def send_test_webhook(self, merchant_id: str, url: str) -> WebhookTestResult:
        """POST a signed sample event to `url` using the merchant's endpoint secret."""

        with self.session_factory() as db:
            endpoint = self._active_endpoint(db, merchant_id)
        if endpoint is None:
            return WebhookTestResult(success=False, response_time_ms=0, error_message=NO_ENDPOINT_ERROR)
        try:
            secret = self.encryption.decrypt(endpoint.secret_encrypted)
        except DecryptionError as exc:
            return WebhookTestResult(success=False, response_time_ms=0, error_message=str(exc))

        trace_id = trace_id_ctx.get() or str(uuid4())
        envelope = EventEnvelope(
            event_type="webhook.test",
            aggregate_id=merchant_id,
            trace_id=trace_id,
            payload={"merchant_id": merchant_id, "message": "This is a test webhook from FluxPay"},
        )
        outcome = await self._send(url, secret, envelope.to_json(), trace_id)
        logger.info("test webhook sent merchant_id=%s status_code=%s", merchant_id, outcome.status_code)
        return WebhookTestResult(
            success=outcome.ok,
            status_code=outcome.status_code,
            response_time_ms=outcome.elapsed_ms,
            response_body=outcome.body[:1000] if outcome.body else None,
            error_message=outcome.error,
        )
