"""Capability set every PSP adapter provides to this subsystem."""

import hmac
from abc import ABC, abstractmethod
from datetime import date, datetime
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from fluxpay.common import signature


class ProviderName(str, Enum):
    PAGARME = "pagarme"
    GERENCIANET = "gerencianet"


class ProviderNotSupportedError(LookupError):
    """Raised for a provider name with no registered adapter."""


class ProviderTransaction(BaseModel):
    """One row of a PSP's daily transaction report."""

    provider_payment_id: str
    status: str
    amount_cents: int
    transaction_date: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ProviderAdapter(ABC):
    """Webhook signature check + transaction report for one PSP.

    PSP webhook signatures are base64 HMAC-SHA256 over `"{timestamp}.{payload}"`
    keyed with the provider's webhook secret.
    """

    name: ProviderName

    def __init__(
        self,
        webhook_secret: str,
        base_url: str,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.webhook_secret = webhook_secret
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self.transport,
            **kwargs,
        )

    async def validate_webhook_signature(self, sig: str, payload: str, timestamp: int) -> bool:
        if not self.webhook_secret or not sig or not payload:
            return False
        expected = signature.sign(self.webhook_secret, f"{timestamp}.{payload}")
        return hmac.compare_digest(expected.encode("ascii"), sig.encode("utf-8"))

    @abstractmethod
    async def get_transaction_report(self, day: date) -> list[ProviderTransaction]:
        """Return every transaction the PSP recorded on `day` (UTC)."""
