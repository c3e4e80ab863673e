"""HMAC request authentication and the gateway routes behind it."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi import Depends, FastAPI, HTTPException
from fastapi.testclient import TestClient
from sqlalchemy import select

from fluxpay.common.config import settings
from fluxpay.common.counter_store import NonceStore
from fluxpay.common.logging import merchant_id_ctx
from fluxpay.common.models import ApiKey, AuditLog, Merchant, WebhookDelivery
from fluxpay.common.signature import sign
from fluxpay.services.gateway import main as gateway_main
from fluxpay.services.antifraud.rate_limiter import RateLimiter
from fluxpay.services.gateway.auth import (
    AuthenticatedMerchant,
    AuthErrorCode,
    RequestAuthenticator,
    canonical_request,
    merchant_dependency,
)
from fluxpay.services.notification.service import WebhookDeliveryService

KEY_ID = "pk_test_1"
KEY_SECRET = "sk_test_secret"


@pytest.fixture
def api_key(session_factory, merchant, encryption):
    with session_factory() as db:
        db.add(
            ApiKey(
                id="key-1",
                merchant_id=merchant.merchant_id,
                key_id=KEY_ID,
                key_secret_encrypted=encryption.encrypt(KEY_SECRET),
                active=True,
            )
        )
        db.commit()
    return KEY_ID


@pytest.fixture
def authenticator(session_factory, counter_store, encryption, audit, clock):
    return RequestAuthenticator(session_factory, NonceStore(counter_store), encryption, audit=audit, clock=clock)


def signed_headers(clock, method="GET", path="/v1/merchant", body=b"", nonce="nonce-1", secret=KEY_SECRET, ts=None):
    ts = int(clock.now) if ts is None else ts
    return {
        "X-Api-Key": KEY_ID,
        "X-Timestamp": str(ts),
        "X-Nonce": nonce,
        "X-Signature": sign(secret, canonical_request(ts, nonce, method, path, body)),
    }


async def _authenticate(authenticator, headers, method="GET", path="/v1/merchant", body=b""):
    return await authenticator.authenticate(
        method=method,
        path=path,
        body=body,
        api_key=headers.get("X-Api-Key"),
        timestamp=headers.get("X-Timestamp"),
        nonce=headers.get("X-Nonce"),
        request_signature=headers.get("X-Signature"),
    )


class TestRequestAuthenticator:
    @pytest.mark.anyio
    async def test_valid_request_returns_merchant(self, authenticator, api_key, clock):
        result = await _authenticate(authenticator, signed_headers(clock))

        assert result.ok
        assert result.merchant == AuthenticatedMerchant(merchant_id="m-1", key_id=KEY_ID)

    @pytest.mark.anyio
    async def test_authentication_does_not_touch_logging_context(self, authenticator, api_key, clock):
        token = merchant_id_ctx.set("")
        try:
            assert (await _authenticate(authenticator, signed_headers(clock))).ok
            assert merchant_id_ctx.get() == ""
        finally:
            merchant_id_ctx.reset(token)

    @pytest.mark.anyio
    async def test_body_is_part_of_the_signature(self, authenticator, api_key, clock):
        headers = signed_headers(clock, method="POST", path="/v1/payments", body=b'{"amount_cents":100}')

        result = await _authenticate(
            authenticator, headers, method="POST", path="/v1/payments", body=b'{"amount_cents":999}'
        )

        assert result.error_code == AuthErrorCode.INVALID_SIGNATURE

    @pytest.mark.anyio
    async def test_missing_header(self, authenticator, api_key, clock):
        headers = signed_headers(clock)
        del headers["X-Nonce"]

        result = await _authenticate(authenticator, headers)

        assert result.error_code == AuthErrorCode.INVALID_API_KEY
        assert result.status_code == 401

    @pytest.mark.anyio
    async def test_unparseable_timestamp(self, authenticator, api_key, clock):
        headers = signed_headers(clock)
        headers["X-Timestamp"] = "yesterday"

        result = await _authenticate(authenticator, headers)

        assert result.error_code == AuthErrorCode.INVALID_API_KEY

    @pytest.mark.anyio
    @pytest.mark.parametrize("offset", [-61, 61, -300])
    async def test_timestamp_outside_skew(self, authenticator, api_key, clock, offset):
        headers = signed_headers(clock, ts=int(clock.now) + offset)

        result = await _authenticate(authenticator, headers)

        assert result.error_code == AuthErrorCode.TIMESTAMP_SKEW

    @pytest.mark.anyio
    async def test_timestamp_at_skew_edge_is_accepted(self, authenticator, api_key, clock):
        result = await _authenticate(authenticator, signed_headers(clock, ts=int(clock.now) - 60))

        assert result.ok

    @pytest.mark.anyio
    async def test_unknown_key(self, authenticator, merchant, clock):
        result = await _authenticate(authenticator, signed_headers(clock))

        assert result.error_code == AuthErrorCode.INVALID_API_KEY

    @pytest.mark.anyio
    async def test_inactive_key(self, authenticator, api_key, session_factory, clock):
        with session_factory() as db:
            db.execute(select(ApiKey)).scalar_one().active = False
            db.commit()

        result = await _authenticate(authenticator, signed_headers(clock))

        assert result.error_code == AuthErrorCode.INVALID_API_KEY

    @pytest.mark.anyio
    async def test_expired_key(self, authenticator, api_key, session_factory, clock):
        with session_factory() as db:
            db.execute(select(ApiKey)).scalar_one().expires_at = datetime.now(timezone.utc) - timedelta(days=1)
            db.commit()

        result = await _authenticate(authenticator, signed_headers(clock))

        assert result.error_code == AuthErrorCode.INVALID_API_KEY

    @pytest.mark.anyio
    async def test_disabled_merchant(self, authenticator, api_key, session_factory, clock):
        with session_factory() as db:
            db.get(Merchant, "m-1").active = False
            db.commit()

        result = await _authenticate(authenticator, signed_headers(clock))

        assert result.error_code == AuthErrorCode.MERCHANT_DISABLED
        assert result.status_code == 403

    @pytest.mark.anyio
    async def test_replayed_nonce(self, authenticator, api_key, clock):
        headers = signed_headers(clock)
        assert (await _authenticate(authenticator, headers)).ok

        result = await _authenticate(authenticator, headers)

        assert result.error_code == AuthErrorCode.NONCE_REUSED

    @pytest.mark.anyio
    async def test_nonce_is_not_burned_by_a_bad_signature(self, authenticator, api_key, clock):
        forged = signed_headers(clock, secret="wrong-secret")
        assert (await _authenticate(authenticator, forged)).error_code == AuthErrorCode.INVALID_SIGNATURE

        assert (await _authenticate(authenticator, signed_headers(clock))).ok

    @pytest.mark.anyio
    async def test_failures_audited_when_enabled(self, authenticator, api_key, clock, session_factory, monkeypatch):
        monkeypatch.setattr(settings, "audit_api_auth_failures", True)

        await _authenticate(authenticator, signed_headers(clock, secret="wrong-secret"))

        with session_factory() as db:
            actions = list(db.execute(select(AuditLog.action)).scalars())
        assert actions == ["api_auth.rejected.invalid_signature"]

    @pytest.mark.anyio
    async def test_failures_not_audited_by_default(self, authenticator, api_key, clock, session_factory):
        await _authenticate(authenticator, signed_headers(clock, secret="wrong-secret"))

        with session_factory() as db:
            assert db.execute(select(AuditLog)).first() is None


class TestMerchantDependency:
    @pytest.fixture
    def client(self, authenticator):
        app = FastAPI()
        app.add_exception_handler(HTTPException, gateway_main.http_exception_handler)
        require_merchant = merchant_dependency(authenticator)

        @app.post("/v1/echo")
        async def echo(merchant: AuthenticatedMerchant = Depends(require_merchant)):
            return {
                "merchant_id": merchant.merchant_id,
                "key_id": merchant.key_id,
                "log_merchant": merchant_id_ctx.get(),
            }

        return TestClient(app)

    def test_signed_request_reaches_handler(self, client, api_key, clock):
        body = b'{"hello":"world"}'
        resp = client.post("/v1/echo", content=body, headers=signed_headers(clock, "POST", "/v1/echo", body))

        assert resp.status_code == 200
        assert resp.json() == {"merchant_id": "m-1", "key_id": KEY_ID, "log_merchant": "m-1"}

    def test_failure_uses_error_envelope(self, client, api_key, clock):
        headers = signed_headers(clock, "POST", "/v1/echo", b"")
        headers["X-Signature"] = "bm90LXRoZS1zaWduYXR1cmU="

        resp = client.post("/v1/echo", headers=headers)

        assert resp.status_code == 401
        assert resp.json() == {"error": {"code": "INVALID_SIGNATURE", "message": "Invalid signature"}}


class TestGatewayRoutes:
    @pytest.fixture
    def client(self, session_factory, encryption, audit, merchant, counter_store, clock, monkeypatch):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="ok"))
        monkeypatch.setattr(gateway_main, "SessionLocal", session_factory)
        monkeypatch.setattr(gateway_main, "rate_limiter", RateLimiter(counter_store, clock=clock))
        monkeypatch.setattr(
            gateway_main,
            "deliveries",
            WebhookDeliveryService(session_factory, encryption, audit, transport=transport),
        )
        gateway_main.app.dependency_overrides[gateway_main.require_merchant] = lambda: AuthenticatedMerchant(
            merchant_id="m-1", key_id=KEY_ID
        )
        yield TestClient(gateway_main.app)
        gateway_main.app.dependency_overrides.clear()

    def test_merchant_identity_echo(self, client):
        resp = client.get("/v1/merchant")

        assert resp.status_code == 200
        assert resp.json() == {"merchant_id": "m-1", "key_id": KEY_ID, "name": "Loja Exemplo", "active": True}

    def test_test_webhook_reports_result(self, client, merchant_webhook):
        resp = client.post("/v1/webhooks/merchant/test", json={"url": "https://merchant.example/test"})

        body = resp.json()
        assert body["success"] is True
        assert body["status_code"] == 200
        assert body["response_body"] == "ok"
        assert body["error_message"] is None

    def test_deliveries_listing_is_scoped_to_merchant(self, client, session_factory, make_payment):
        make_payment()
        with session_factory() as db:
            db.add(WebhookDelivery(id="d-1", merchant_id="m-1", payment_id="pay-1", event_type="payment.paid", payload="{}"))
            db.commit()

        resp = client.get("/v1/webhooks/deliveries")

        assert [row["id"] for row in resp.json()] == ["d-1"]
        assert resp.json()[0]["status"] == "PENDING"

    def test_health(self, client):
        assert client.get("/health").json() == {"ok": True}

    def test_merchant_is_rate_limited_after_authentication(self, client, counter_store, clock, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_per_minute", 2)

        assert client.get("/v1/merchant").status_code == 200
        assert client.get("/v1/webhooks/deliveries").status_code == 200
        resp = client.get("/v1/merchant")

        assert resp.status_code == 429
        assert resp.json() == {"error": {"code": "RATE_LIMIT_EXCEEDED", "message": "Rate limit exceeded"}}
        assert resp.headers["Retry-After"] == "60"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert len(counter_store.windows["ratelimit:merchant:m-1"]) == 3

    def test_rate_limit_window_slides(self, client, clock, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_per_minute", 1)
        assert client.get("/v1/merchant").status_code == 200
        assert client.get("/v1/merchant").status_code == 429

        clock.advance(61)

        assert client.get("/v1/merchant").status_code == 200
