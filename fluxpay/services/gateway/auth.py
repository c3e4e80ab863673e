"""HMAC request authentication for the merchant API.

A merchant signs `"{timestamp}.{nonce}.{METHOD}.{path}.{sha256hex(body)}"`
with the secret of one of its API keys. Checks run cheapest first and the
nonce is only stored once the signature has been verified, so a forged
request can never burn a legitimate nonce.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from fastapi import HTTPException, Request
from sqlalchemy import select

from fluxpay.common import signature
from fluxpay.common.audit import AuditEntry, AuditService
from fluxpay.common.config import settings
from fluxpay.common.counter_store import NonceStore
from fluxpay.common.encryption import DecryptionError, EncryptionService
from fluxpay.common.logging import logger, merchant_id_ctx
from fluxpay.common.metrics import api_auth_rejections_total
from fluxpay.common.models import ApiKey, Merchant


class AuthErrorCode(str, Enum):
    INVALID_API_KEY = "INVALID_API_KEY"
    TIMESTAMP_SKEW = "TIMESTAMP_SKEW"
    MERCHANT_DISABLED = "MERCHANT_DISABLED"
    NONCE_REUSED = "NONCE_REUSED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


@dataclass(frozen=True)
class AuthenticatedMerchant:
    merchant_id: str
    key_id: str


@dataclass(frozen=True)
class AuthResult:
    merchant: AuthenticatedMerchant | None = None
    error_code: AuthErrorCode | None = None
    message: str = ""
    status_code: int = 200

    @property
    def ok(self) -> bool:
        return self.merchant is not None

    @classmethod
    def success(cls, merchant: AuthenticatedMerchant) -> "AuthResult":
        return cls(merchant=merchant)

    @classmethod
    def failure(cls, code: AuthErrorCode, message: str, status_code: int = 401) -> "AuthResult":
        return cls(error_code=code, message=message, status_code=status_code)


def canonical_request(timestamp: int, nonce: str, method: str, path: str, body: bytes | str | None) -> str:
    return f"{timestamp}.{nonce}.{method.upper()}.{path}.{signature.sha256_hex(body)}"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RequestAuthenticator:
    """Resolves a signed merchant request to an allow/deny value; never raises for bad credentials."""

    def __init__(
        self,
        session_factory,
        nonce_store: NonceStore,
        encryption: EncryptionService,
        audit: AuditService | None = None,
        clock=time.time,
        skew_seconds: int | None = None,
        service_name: str = "gateway",
    ) -> None:
        self.session_factory = session_factory
        self.nonce_store = nonce_store
        self.encryption = encryption
        self.audit = audit
        self.clock = clock
        self.skew_seconds = skew_seconds if skew_seconds is not None else settings.api_timestamp_skew_seconds
        self.service_name = service_name

    async def authenticate(
        self,
        method: str,
        path: str,
        body: bytes | None,
        api_key: str | None,
        timestamp: str | None,
        nonce: str | None,
        request_signature: str | None,
    ) -> AuthResult:
        if not api_key or not timestamp or not nonce or not request_signature:
            return self._reject(AuthErrorCode.INVALID_API_KEY, "Missing authentication headers", api_key)
        try:
            ts = int(timestamp)
        except ValueError:
            return self._reject(AuthErrorCode.INVALID_API_KEY, "Invalid timestamp header", api_key)

        if abs(int(self.clock()) - ts) > self.skew_seconds:
            return self._reject(AuthErrorCode.TIMESTAMP_SKEW, "Request timestamp outside allowed window", api_key)

        with self.session_factory() as db:
            row = db.execute(
                select(ApiKey, Merchant)
                .join(Merchant, Merchant.merchant_id == ApiKey.merchant_id)
                .where(ApiKey.key_id == api_key)
            ).first()
        if row is None or not row.ApiKey.active:
            return self._reject(AuthErrorCode.INVALID_API_KEY, "Invalid API key", api_key)
        key, merchant = row.ApiKey, row.Merchant
        if key.expires_at is not None and _as_utc(key.expires_at) <= datetime.now(timezone.utc):
            return self._reject(AuthErrorCode.INVALID_API_KEY, "API key expired", api_key)
        if not merchant.active:
            return self._reject(
                AuthErrorCode.MERCHANT_DISABLED, "Merchant account is disabled", api_key, status_code=403
            )

        if not await self.nonce_store.is_nonce_unique(merchant.merchant_id, nonce):
            return self._reject(AuthErrorCode.NONCE_REUSED, "Nonce already used", api_key)

        try:
            secret = self.encryption.decrypt(key.key_secret_encrypted)
        except DecryptionError as exc:
            logger.error("api key secret could not be decrypted key_id=%s: %s", api_key, exc)
            return self._reject(AuthErrorCode.INVALID_SIGNATURE, "Invalid signature", api_key)
        message = canonical_request(ts, nonce, method, path, body)
        try:
            valid = signature.verify(secret, message, request_signature)
        except ValueError:
            valid = False
        if not valid:
            return self._reject(AuthErrorCode.INVALID_SIGNATURE, "Invalid signature", api_key)

        await self.nonce_store.store_nonce(merchant.merchant_id, nonce)
        return AuthResult.success(AuthenticatedMerchant(merchant_id=merchant.merchant_id, key_id=key.key_id))

    def _reject(
        self,
        code: AuthErrorCode,
        message: str,
        api_key: str | None,
        status_code: int = 401,
    ) -> AuthResult:
        api_auth_rejections_total.labels(service=self.service_name, code=code.value).inc()
        logger.warning("api auth rejected code=%s key_id=%s", code.value, api_key)
        if self.audit is not None and settings.audit_api_auth_failures:
            self.audit.log(
                AuditEntry(
                    actor=f"api_key:{api_key}" if api_key else "anonymous",
                    action=f"api_auth.rejected.{code.value.lower()}",
                    resource_type="api_key",
                    resource_id=api_key,
                    changes={"message": message},
                )
            )
        return AuthResult.failure(code, message, status_code)


def merchant_dependency(authenticator: RequestAuthenticator):
    """Build a FastAPI dependency yielding the `AuthenticatedMerchant` for a request."""

    async def require_merchant(request: Request) -> AuthenticatedMerchant:
        body = await request.body()
        result = await authenticator.authenticate(
            method=request.method,
            path=request.url.path,
            body=body,
            api_key=request.headers.get("X-Api-Key"),
            timestamp=request.headers.get("X-Timestamp"),
            nonce=request.headers.get("X-Nonce"),
            request_signature=request.headers.get("X-Signature"),
        )
        if not result.ok:
            raise HTTPException(
                status_code=result.status_code,
                detail={"error": {"code": result.error_code.value, "message": result.message}},
            )
        merchant_id_ctx.set(result.merchant.merchant_id)
        return result.merchant

    return require_merchant
