"""Authentication of inbound PSP notifications.

Checks run in order: timestamp skew, nonce replay (per provider), provider
signature. Every rejection is audited; the nonce is only stored after the
signature checks out.
"""

import json
import time
from dataclasses import dataclass
from enum import Enum

from fluxpay.common.audit import AuditEntry, AuditService
from fluxpay.common.config import settings
from fluxpay.common.counter_store import NonceStore
from fluxpay.common.logging import logger
from fluxpay.common.metrics import provider_webhooks_total
from fluxpay.providers.registry import ProviderRegistry


class WebhookRejection(str, Enum):
    TIMESTAMP_SKEW = "timestamp_skew"
    NONCE_REUSED = "nonce_reused"
    INVALID_SIGNATURE = "invalid_signature"


@dataclass(frozen=True)
class WebhookValidationResult:
    provider: str
    rejection: WebhookRejection | None = None

    @property
    def valid(self) -> bool:
        return self.rejection is None


@dataclass(frozen=True)
class WebhookEventSummary:
    event_type: str
    provider_payment_id: str | None = None
    status: str | None = None


def extract_event_summary(payload: str) -> WebhookEventSummary:
    """Pull event name, PSP payment id and PSP status out of a webhook body.

    Accepts `transaction.{id,status}` or `data.{id,status}`; anything that is
    not a JSON object yields an `unknown` event with no id.
    """

    try:
        data = json.loads(payload)
    except ValueError:
        return WebhookEventSummary("unknown")
    if not isinstance(data, dict):
        return WebhookEventSummary("unknown")
    event_type = str(data.get("event") or data.get("type") or "unknown")
    for key in ("transaction", "data"):
        obj = data.get(key)
        if isinstance(obj, dict) and obj.get("id"):
            status = obj.get("status")
            return WebhookEventSummary(event_type, str(obj["id"]), str(status) if status else None)
    return WebhookEventSummary(event_type)


def nonce_principal(provider: str) -> str:
    return f"provider:{provider}"


class ProviderWebhookValidator:
    def __init__(
        self,
        registry: ProviderRegistry,
        nonce_store: NonceStore,
        audit: AuditService,
        clock=time.time,
        skew_seconds: int | None = None,
        service_name: str = "provider-webhooks",
    ) -> None:
        self.registry = registry
        self.nonce_store = nonce_store
        self.audit = audit
        self.clock = clock
        self.skew_seconds = skew_seconds if skew_seconds is not None else settings.webhook_timestamp_skew_seconds
        self.service_name = service_name

    async def validate(
        self,
        provider: str,
        payload: str,
        request_signature: str,
        timestamp: int,
        nonce: str,
    ) -> WebhookValidationResult:
        """Raises `ProviderNotSupportedError` for a provider with no adapter."""

        adapter = self.registry.get(provider)
        name = adapter.name.value

        if abs(int(self.clock()) - timestamp) > self.skew_seconds:
            return self._reject(name, WebhookRejection.TIMESTAMP_SKEW, timestamp, nonce)

        principal = nonce_principal(name)
        if not await self.nonce_store.is_nonce_unique(principal, nonce):
            return self._reject(name, WebhookRejection.NONCE_REUSED, timestamp, nonce)

        if not await adapter.validate_webhook_signature(request_signature, payload, timestamp):
            return self._reject(name, WebhookRejection.INVALID_SIGNATURE, timestamp, nonce)

        await self.nonce_store.store_nonce(principal, nonce)
        provider_webhooks_total.labels(service=self.service_name, provider=name, outcome="accepted").inc()
        return WebhookValidationResult(provider=name)

    def _reject(self, provider: str, rejection: WebhookRejection, timestamp: int, nonce: str) -> WebhookValidationResult:
        provider_webhooks_total.labels(service=self.service_name, provider=provider, outcome=rejection.value).inc()
        logger.warning("provider webhook rejected provider=%s reason=%s", provider, rejection.value)
        self.audit.log(
            AuditEntry(
                actor=nonce_principal(provider),
                action=f"webhook.rejected.{rejection.value}",
                resource_type="webhook",
                changes={"provider": provider, "timestamp": timestamp, "nonce": nonce},
            )
        )
        return WebhookValidationResult(provider=provider, rejection=rejection)
