"""Shared fixtures: test environment, throwaway sqlite databases, in-memory Redis double."""

import base64
import os
from collections import defaultdict
from datetime import datetime, timezone

TEST_ENCRYPTION_KEY = base64.b64encode(b"fluxpay-test-encryption-key-32b!").decode("ascii")

# Settings and the engine are built at import time, so the environment goes first.
os.environ.setdefault("SERVICE_NAME", "test")
os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "ops-key")
os.environ.setdefault("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
os.environ.setdefault("AUDIT_SIGNING_KEY", "audit-signing-key")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "http://127.0.0.1:4318/v1/traces")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fluxpay.common.audit import AuditService
from fluxpay.common.db import Base
from fluxpay.common.encryption import EncryptionService
from fluxpay.common.models import Merchant, MerchantWebhook, Payment, PaymentStatus


class InMemoryCounterStore:
    """Same contract as `CounterStore`, without Redis; expiry is not simulated."""

    def __init__(self) -> None:
        self.windows: dict[str, list[int]] = defaultdict(list)
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def append_and_count(self, key: str, now_ms: int, window_ms: int) -> int:
        kept = [ts for ts in self.windows[key] if ts > now_ms - window_ms]
        kept.append(now_ms)
        self.windows[key] = kept
        return len(kept)

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        self.values[key] = value
        self.ttls[key] = ttl_seconds

    async def exists(self, key: str) -> bool:
        return key in self.values

    async def close(self) -> None:
        return None


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def counter_store():
    return InMemoryCounterStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def encryption():
    return EncryptionService(TEST_ENCRYPTION_KEY)


@pytest.fixture
def audit(session_factory):
    return AuditService(session_factory, signing_key="audit-signing-key")


@pytest.fixture
def merchant(session_factory):
    with session_factory() as db:
        row = Merchant(merchant_id="m-1", name="Loja Exemplo", email="ops@loja.example", active=True)
        db.add(row)
        db.commit()
    return row


@pytest.fixture
def merchant_webhook(session_factory, merchant, encryption):
    with session_factory() as db:
        row = MerchantWebhook(
            id="wh-1",
            merchant_id=merchant.merchant_id,
            endpoint_url="https://merchant.example/hooks",
            secret_encrypted=encryption.encrypt("merchant-webhook-secret"),
            active=True,
        )
        db.add(row)
        db.commit()
    return row


@pytest.fixture
def make_payment(session_factory):
    """Insert a payment row; keyword arguments override the defaults."""

    def build(**overrides) -> Payment:
        values = {
            "payment_id": "pay-1",
            "merchant_id": "m-1",
            "amount_cents": 10_000,
            "method": "pix",
            "status": PaymentStatus.PENDING,
            "provider": "pagarme",
            "provider_payment_id": "or_123",
            "created_at": datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc),
        }
        values.update(overrides)
        with session_factory() as db:
            payment = Payment(**values)
            db.add(payment)
            db.commit()
        return payment

    return build
