"""Merchant-facing event envelope.

The serialized envelope is stored on the delivery row and sent byte-for-byte
on every attempt, so its signature input never changes between retries.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class EventEnvelope(BaseModel):
    """Canonical event shape posted to merchant webhook endpoints."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]

    def to_json(self) -> str:
        return self.model_dump_json()


def payment_event_type(status: str) -> str:
    """`PAID` -> `payment.paid`."""

    return f"payment.{status.lower()}"
