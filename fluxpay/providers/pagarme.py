"""Pagar.me adapter (cards, subscriptions)."""

from datetime import date, datetime, time, timedelta, timezone

import httpx

from fluxpay.common.logging import logger
from fluxpay.providers.base import ProviderAdapter, ProviderName, ProviderTransaction

SANDBOX_URL = "https://api.pagar.me/sandbox/v5"
PRODUCTION_URL = "https://api.pagar.me/core/v5"


def _parse_datetime(value) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class PagarMeAdapter(ProviderAdapter):
    name = ProviderName.PAGARME

    def __init__(
        self,
        api_key: str,
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
        self.api_key = api_key

    async def get_transaction_report(self, day: date) -> list[ProviderTransaction]:
        """List orders created on `day`; one report row per charge, keyed by order id."""

        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        params = {
            "created_since": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "created_until": end.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        async with self._client(auth=httpx.BasicAuth(self.api_key, "")) as client:
            resp = await client.get("/orders", params=params)
        resp.raise_for_status()
        orders = resp.json().get("data") or []

        reports: list[ProviderTransaction] = []
        for order in orders:
            order_id = order.get("id")
            if not order_id:
                continue
            for charge in order.get("charges") or []:
                reports.append(
                    ProviderTransaction(
                        provider_payment_id=str(order_id),
                        status=str(charge.get("status") or "unknown"),
                        amount_cents=int(charge.get("amount") or 0),
                        transaction_date=_parse_datetime(charge.get("created_at")),
                        raw=order,
                    )
                )
        logger.info("pagarme report fetched date=%s orders=%s rows=%s", day, len(orders), len(reports))
        return reports
