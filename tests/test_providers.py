"""PSP adapters against mocked HTTP, plus the registry."""

from datetime import date

import httpx
import pytest

from fluxpay.common.signature import sign
from fluxpay.providers.base import ProviderName, ProviderNotSupportedError
from fluxpay.providers.gerencianet import GerencianetAdapter
from fluxpay.providers.pagarme import PagarMeAdapter
from fluxpay.providers.registry import ProviderRegistry


class TestWebhookSignature:
    @pytest.mark.anyio
    async def test_signature_over_timestamp_and_payload(self):
        adapter = PagarMeAdapter(api_key="ak", webhook_secret="whsec")
        payload = '{"type":"order.paid"}'

        assert await adapter.validate_webhook_signature(sign("whsec", f"1700000000.{payload}"), payload, 1700000000)
        assert not await adapter.validate_webhook_signature(sign("whsec", f"1700000001.{payload}"), payload, 1700000000)
        assert not await adapter.validate_webhook_signature(sign("other", f"1700000000.{payload}"), payload, 1700000000)

    @pytest.mark.anyio
    async def test_unconfigured_secret_never_validates(self):
        adapter = GerencianetAdapter(client_id="c", client_secret="s", webhook_secret="")

        assert not await adapter.validate_webhook_signature("c2ln", "{}", 1700000000)


class TestPagarMeReport:
    @pytest.mark.anyio
    async def test_one_row_per_charge_keyed_by_order(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "id": "or_1",
                            "charges": [{"status": "paid", "amount": 1500, "created_at": "2026-10-18T10:00:00Z"}],
                        },
                        {"id": "or_2", "charges": [{"status": "failed", "amount": 990}]},
                        {"charges": [{"status": "paid", "amount": 1}]},
                    ]
                },
            )

        adapter = PagarMeAdapter(api_key="ak_test", webhook_secret="", transport=httpx.MockTransport(handler))

        rows = await adapter.get_transaction_report(date(2026, 10, 18))

        assert [(r.provider_payment_id, r.status, r.amount_cents) for r in rows] == [
            ("or_1", "paid", 1500),
            ("or_2", "failed", 990),
        ]
        assert rows[0].transaction_date.year == 2026
        assert seen[0].url.path == "/sandbox/v5/orders"
        assert seen[0].url.params["created_since"] == "2026-10-18T00:00:00Z"
        assert seen[0].url.params["created_until"] == "2026-10-19T00:00:00Z"
        assert seen[0].headers["Authorization"].startswith("Basic ")

    @pytest.mark.anyio
    async def test_http_error_propagates(self):
        adapter = PagarMeAdapter(
            api_key="ak",
            webhook_secret="",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        with pytest.raises(httpx.HTTPStatusError):
            await adapter.get_transaction_report(date(2026, 10, 18))


class TestGerencianetReport:
    @pytest.mark.anyio
    async def test_token_is_cached_and_amounts_converted(self):
        token_requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/oauth/token":
                token_requests.append(request)
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
            assert request.headers["Authorization"] == "Bearer tok"
            return httpx.Response(
                200,
                json={
                    "cobs": [
                        {
                            "txid": "tx1",
                            "status": "CONCLUIDA",
                            "valor": {"original": "12.34"},
                            "calendario": {"criacao": "2026-10-18T10:00:00Z"},
                        },
                        {"status": "ATIVA", "valor": {"original": "1.00"}},
                    ]
                },
            )

        adapter = GerencianetAdapter(
            client_id="cid",
            client_secret="csecret",
            webhook_secret="",
            transport=httpx.MockTransport(handler),
        )

        rows = await adapter.get_transaction_report(date(2026, 10, 18))
        await adapter.get_transaction_report(date(2026, 10, 18))

        assert len(token_requests) == 1
        assert [(r.provider_payment_id, r.status, r.amount_cents) for r in rows] == [("tx1", "CONCLUIDA", 1234)]


class TestRegistry:
    def test_lookup_is_case_insensitive(self):
        adapter = PagarMeAdapter(api_key="ak", webhook_secret="")
        registry = ProviderRegistry({ProviderName.PAGARME: adapter})

        assert registry.get("PagarMe") is adapter
        assert registry.get(ProviderName.PAGARME) is adapter
        assert registry.names() == ["pagarme"]

    def test_unknown_provider(self):
        registry = ProviderRegistry({})

        with pytest.raises(ProviderNotSupportedError):
            registry.get("stripe")

    def test_known_but_unconfigured_provider(self):
        registry = ProviderRegistry({ProviderName.PAGARME: PagarMeAdapter(api_key="ak", webhook_secret="")})

        with pytest.raises(LookupError):
            registry.get("gerencianet")
