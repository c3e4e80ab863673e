"""Applies authenticated PSP notifications to payments."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select

from fluxpay.common.audit import AuditEntry, AuditService
from fluxpay.common.logging import logger, payment_id_ctx
from fluxpay.common.metrics import payment_transitions_total
from fluxpay.common.models import Payment, PaymentStatus, WebhookReceived
from fluxpay.common.state_machine import can_transition
from fluxpay.services.notification.service import WebhookDeliveryService
from fluxpay.services.provider_webhooks.validator import extract_event_summary, nonce_principal

# PSP status vocabulary (lowercased) -> internal status this subsystem may drive.
PROVIDER_STATUS_MAP: dict[str, str] = {
    "paid": PaymentStatus.PAID,
    "captured": PaymentStatus.PAID,
    "concluida": PaymentStatus.PAID,
    "approved": PaymentStatus.PAID,
    "refunded": PaymentStatus.REFUNDED,
    "failed": PaymentStatus.FAILED,
    "refused": PaymentStatus.FAILED,
    "error": PaymentStatus.FAILED,
    "expired": PaymentStatus.EXPIRED,
    "removida_pelo_usuario_recebedor": PaymentStatus.EXPIRED,
    "removida_pelo_psp": PaymentStatus.EXPIRED,
}


def map_provider_status(provider_status: str | None) -> str | None:
    if not provider_status:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status.strip().lower())


class ProviderWebhookService:
    """Records every accepted notification, then applies it at most once."""

    def __init__(
        self,
        session_factory,
        deliveries: WebhookDeliveryService,
        audit: AuditService,
        service_name: str = "provider-webhooks",
    ) -> None:
        self.session_factory = session_factory
        self.deliveries = deliveries
        self.audit = audit
        self.service_name = service_name

    def _apply(self, db, provider: str, payment: Payment, provider_status: str | None, record_id: str) -> str | None:
        """Move the payment to the mapped status; returns the queued delivery id on change."""

        new_status = map_provider_status(provider_status)
        if new_status is None:
            logger.info("provider status not mapped provider=%s status=%s", provider, provider_status)
            return None
        if new_status == payment.status:
            logger.info("payment already in status=%s, webhook ignored", new_status)
            return None
        if not can_transition(payment.status, new_status):
            logger.warning("invalid transition skipped from=%s to=%s", payment.status, new_status)
            return None

        previous = payment.status
        payment.status = new_status
        payment.updated_at = datetime.now(timezone.utc)
        delivery = self.deliveries.create_delivery(db, payment)
        self.audit.log(
            AuditEntry(
                actor=nonce_principal(provider),
                action="payment.status_changed",
                resource_type="payment",
                resource_id=payment.payment_id,
                merchant_id=payment.merchant_id,
                changes={
                    "from": previous,
                    "to": new_status,
                    "provider_status": provider_status,
                    "webhook_id": record_id,
                },
            ),
            db=db,
        )
        payment_transitions_total.labels(service=self.service_name, provider=provider, to_status=new_status).inc()
        logger.info("payment transition applied from=%s to=%s", previous, new_status)
        return delivery.id

    async def process(self, provider: str, payload: str) -> str | None:
        """Handle one validated notification; returns the `WebhookReceived` id.

        Runs after the HTTP response, so failures are logged here and not raised.
        """

        try:
            return await self._process(provider, payload)
        except Exception as exc:
            logger.exception("provider webhook processing failed provider=%s: %s", provider, exc)
            return None

    async def _process(self, provider: str, payload: str) -> str:
        summary = extract_event_summary(payload)
        delivery_id = None
        with self.session_factory() as db:
            record = WebhookReceived(
                id=str(uuid4()),
                provider=provider,
                event_type=summary.event_type,
                payload=payload,
                processed=False,
            )
            db.add(record)
            db.commit()

            payment = None
            if summary.provider_payment_id:
                payment = db.execute(
                    select(Payment)
                    .where(
                        Payment.provider == provider,
                        Payment.provider_payment_id == summary.provider_payment_id,
                    )
                    .with_for_update()
                ).scalar_one_or_none()
            if payment is None:
                logger.info(
                    "no payment for provider webhook provider=%s provider_payment_id=%s event=%s",
                    provider,
                    summary.provider_payment_id,
                    summary.event_type,
                )
            else:
                payment_id_ctx.set(payment.payment_id)
                delivery_id = self._apply(db, provider, payment, summary.status, record.id)

            record.processed = True
            record.processed_at = datetime.now(timezone.utc)
            db.commit()
            record_id = record.id

        if delivery_id is not None:
            await self.deliveries.deliver(delivery_id)
        return record_id
