"""Gerencianet (Efí) adapter for PIX charges and boletos."""

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation

import httpx

from fluxpay.common.logging import logger
from fluxpay.providers.base import ProviderAdapter, ProviderName, ProviderTransaction

SANDBOX_URL = "https://api-pix-h.gerencianet.com.br"
PRODUCTION_URL = "https://api-pix.gerencianet.com.br"


def _reais_to_cents(value) -> int:
    """PIX amounts come as decimal strings in reais ("12.34")."""

    try:
        return int((Decimal(str(value)) * 100).to_integral_value())
    except (InvalidOperation, TypeError, ValueError):
        return 0


class GerencianetAdapter(ProviderAdapter):
    name = ProviderName.GERENCIANET

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_secret: str,
        sandbox: bool = True,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            webhook_secret=webhook_secret,
            base_url=SANDBOX_URL if sandbox else PRODUCTION_URL,
            timeout_seconds=timeout_seconds,
            transport=transport,
        )
        self.client_id = client_id
        self.client_secret = client_secret
        self._access_token: str | None = None
        self._token_expiry: datetime | None = None

    async def _ensure_token(self, client: httpx.AsyncClient) -> str:
        now = datetime.now(timezone.utc)
        if self._access_token and self._token_expiry and now < self._token_expiry:
            return self._access_token
        resp = await client.post(
            "/oauth/token",
            json={"grant_type": "client_credentials"},
            auth=httpx.BasicAuth(self.client_id, self.client_secret),
        )
        resp.raise_for_status()
        data = resp.json()
        self._access_token = data["access_token"]
        # Refresh a minute early.
        self._token_expiry = now + timedelta(seconds=int(data.get("expires_in", 3600)) - 60)
        return self._access_token

    async def get_transaction_report(self, day: date) -> list[ProviderTransaction]:
        """List PIX charges (`cobs`) created on `day`, keyed by txid."""

        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        params = {
            "inicio": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "fim": end.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        async with self._client() as client:
            token = await self._ensure_token(client)
            resp = await client.get("/v2/cob", params=params, headers={"Authorization": f"Bearer {token}"})
        resp.raise_for_status()
        cobs = resp.json().get("cobs") or []

        reports: list[ProviderTransaction] = []
        for cob in cobs:
            txid = cob.get("txid")
            if not txid:
                continue
            created = (cob.get("calendario") or {}).get("criacao")
            reports.append(
                ProviderTransaction(
                    provider_payment_id=str(txid),
                    status=str(cob.get("status") or "unknown"),
                    amount_cents=_reais_to_cents((cob.get("valor") or {}).get("original")),
                    transaction_date=datetime.fromisoformat(created.replace("Z", "+00:00")) if created else None,
                    raw=cob,
                )
            )
        logger.info("gerencianet report fetched date=%s rows=%s", day, len(reports))
        return reports
